"""CLI for the following feed."""
import asyncio
import argparse
import logging
import sys
import json

from .assembler import FeedPage
from .config import settings
from .database import create_session_factory, init_db
from .models import utc_now
from .pipeline import build_pipeline
from .stores import DocumentCursor


def _open_session():
    session_factory = create_session_factory(settings.database_url)
    init_db(session_factory)
    return session_factory()


def _print_page(page: FeedPage, as_json: bool):
    next_cursor = page.continuation_cursor.encode() if page.continuation_cursor else None

    if as_json:
        print(json.dumps({
            "items": [
                {
                    "id": p.id,
                    "author_id": p.author_id,
                    "created_at": p.created_at.isoformat(),
                    "media_urls": p.media_urls,
                    "caption": p.caption,
                }
                for p in page.items
            ],
            "next_cursor": next_cursor,
            "has_more": page.has_more,
        }, indent=2))
        return

    if not page.items:
        print("No posts")
    for post in page.items:
        caption = (post.caption or "").replace("\n", " ").strip()
        if len(caption) > 60:
            caption = f"{caption[:57]}..."
        print(f"- {post.id} by {post.author_id} ({post.created_at:%Y-%m-%d %H:%M})")
        if caption:
            print(f"  {caption}")
        if post.media_urls:
            print(f"  Media: {len(post.media_urls)}")

    print("-" * 40)
    print(f"Has more: {'yes' if page.has_more else 'no'}")
    if next_cursor:
        print(f"Next cursor: {next_cursor}")


def cmd_init(args):
    """Initialize the database."""
    print("Initializing database...")
    init_db(create_session_factory(settings.database_url))
    print("Database initialized successfully")


def cmd_follow(args):
    """Follow an account."""
    db = _open_session()
    try:
        _, stores = build_pipeline(db, settings)
        edge = stores.relations.follow(args.follower, args.followee)
        print(f"Following: {edge.edge_id}")
    finally:
        db.close()


def cmd_unfollow(args):
    """Unfollow an account."""
    db = _open_session()
    try:
        _, stores = build_pipeline(db, settings)
        if stores.relations.unfollow(args.follower, args.followee):
            print(f"Unfollowed: {args.follower} -> {args.followee}")
        else:
            print("Not following")
            return 1
    finally:
        db.close()


def cmd_post(args):
    """Store a post document."""
    db = _open_session()
    try:
        data = json.loads(args.data) if args.data else {}
        data.setdefault("createdBy", args.author)
        data.setdefault("createdAt", utc_now())
        if args.caption:
            data["caption"] = args.caption

        _, stores = build_pipeline(db, settings)
        document = stores.documents.add_document(args.post_id, data)
        print(f"Stored post {document.post_id}")
    finally:
        db.close()


async def cmd_feed_async(args):
    """Print one page of a viewer's feed."""
    try:
        cursor = DocumentCursor.decode(args.cursor) if args.cursor else None
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    db = _open_session()
    try:
        pipeline, _ = build_pipeline(db, settings)
        if args.for_you:
            page = await pipeline.for_you(args.viewer, cursor)
        else:
            page = await pipeline.fetch(args.viewer, cursor)
        _print_page(page, args.json)
    finally:
        db.close()


def cmd_feed(args):
    """Print a feed page (sync wrapper)."""
    return asyncio.run(cmd_feed_async(args))


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Following Feed - chunked feed aggregation"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize database")
    init_parser.set_defaults(func=cmd_init)

    # follow / unfollow
    follow_parser = subparsers.add_parser("follow", help="Follow an account")
    follow_parser.add_argument("follower", help="Follower user ID")
    follow_parser.add_argument("followee", help="Followed user ID")
    follow_parser.set_defaults(func=cmd_follow)

    unfollow_parser = subparsers.add_parser("unfollow", help="Unfollow an account")
    unfollow_parser.add_argument("follower", help="Follower user ID")
    unfollow_parser.add_argument("followee", help="Followed user ID")
    unfollow_parser.set_defaults(func=cmd_unfollow)

    # post
    post_parser = subparsers.add_parser("post", help="Store a post document")
    post_parser.add_argument("post_id", help="Post ID")
    post_parser.add_argument("author", help="Author user ID")
    post_parser.add_argument("--caption", help="Post caption")
    post_parser.add_argument("--data", help="Extra document fields as JSON")
    post_parser.set_defaults(func=cmd_post)

    # feed
    feed_parser = subparsers.add_parser("feed", help="Show a viewer's following feed")
    feed_parser.add_argument("viewer", help="Viewer user ID")
    feed_parser.add_argument("--cursor", help="Continuation cursor from a previous page")
    feed_parser.add_argument("--json", action="store_true", help="Output JSON")
    feed_parser.set_defaults(func=cmd_feed, for_you=False)

    for_you_parser = subparsers.add_parser("for-you", help="Show a viewer's discovery feed")
    for_you_parser.add_argument("viewer", help="Viewer user ID")
    for_you_parser.add_argument("--cursor", help="Continuation cursor from a previous page")
    for_you_parser.add_argument("--json", action="store_true", help="Output JSON")
    for_you_parser.set_defaults(func=cmd_feed, for_you=True)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
