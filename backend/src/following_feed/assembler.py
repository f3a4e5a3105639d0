"""Feed assembler - turns raw post documents into a clean feed page.

Steps, in order:
1. Normalize legacy author/media/count field names
2. Drop records without a usable createdAt
3. Deduplicate by id (last seen wins)
4. Sort by createdAt descending, id descending on ties
5. Truncate to the page size and compute has_more
"""
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable, Optional

if TYPE_CHECKING:
    from .stores import DocumentCursor


logger = logging.getLogger(__name__)


# Legacy field names, highest priority first
AUTHOR_ID_FIELDS = ("authorId", "createdBy", "userId", "ownerId")
MEDIA_URL_LIST_FIELDS = ("mediaUrls", "imageURLs")
FINAL_MEDIA_URL_FIELD = "finalCroppedUrl"
MEDIA_ITEMS_FIELD = "media"
MEDIA_ITEM_URL_KEYS = ("url", "uri", "finalCroppedUrl")
LEGACY_IMAGE_URL_FIELDS = ("imageURL", "imageUrl", "mediaUrl", "photoUrl", "coverImage")
LIKE_COUNT_FIELDS = ("likeCount", "likesCount")
COMMENT_COUNT_FIELDS = ("commentCount", "commentsCount")


class MalformedRecordError(Exception):
    """Raw record cannot be normalized into a PostRecord."""
    pass


@dataclass
class PostRecord:
    """Normalized feed item."""
    id: str
    author_id: Optional[str]
    created_at: datetime
    media_urls: list[str] = field(default_factory=list)
    like_count: int = 0
    comment_count: int = 0
    caption: str = ""
    location: Optional[str] = None
    username: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)


@dataclass
class FeedPage:
    """One computed page of the feed; never persisted."""
    items: list[PostRecord] = field(default_factory=list)
    continuation_cursor: Optional["DocumentCursor"] = None
    has_more: bool = False


# =============================================================================
# Timestamps
# =============================================================================

def parse_created_at(value: Any) -> Optional[datetime]:
    """
    Convert any stored createdAt shape to an aware UTC datetime.

    Accepts datetimes, epoch milliseconds, ISO-8601 strings and
    {"seconds", "nanoseconds"} mappings. Returns None when unusable.
    """
    if not value or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)

        if isinstance(value, str):
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            return parse_created_at(parsed)

        if isinstance(value, Mapping):
            seconds = value.get("seconds", value.get("_seconds"))
            nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
            if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
                return None
            if isinstance(nanos, bool) or not isinstance(nanos, (int, float)):
                nanos = 0
            if not seconds and not nanos:
                return None
            return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None

    return None


def has_usable_created_at(record: Any) -> bool:
    """Feed eligibility: the record carries a parseable createdAt."""
    if isinstance(record, PostRecord):
        return record.created_at is not None
    if isinstance(record, Mapping):
        return parse_created_at(record.get("createdAt")) is not None
    return False


# =============================================================================
# Normalization
# =============================================================================

def _first_string(data: Mapping, fields: Iterable[str]) -> Optional[str]:
    for name in fields:
        value = data.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def extract_author_id(data: Mapping) -> Optional[str]:
    """Canonical author id from any of the legacy field names."""
    return _first_string(data, AUTHOR_ID_FIELDS)


def _url_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise MalformedRecordError(f"{field_name} is {type(value).__name__}, expected a list")
    return [url for url in value if isinstance(url, str) and url]


def _media_item_urls(items: Any) -> list[str]:
    if items is None:
        return []
    if not isinstance(items, (list, tuple)):
        raise MalformedRecordError(f"media is {type(items).__name__}, expected a list")

    urls = []
    for item in items:
        if item is None:
            continue
        if isinstance(item, str):
            if item:
                urls.append(item)
        elif isinstance(item, Mapping):
            url = _first_string(item, MEDIA_ITEM_URL_KEYS)
            if url:
                urls.append(url)
        else:
            raise MalformedRecordError(f"media item of type {type(item).__name__}")
    return urls


def extract_media_urls(data: Mapping) -> list[str]:
    """First non-empty media source wins; sources are never merged."""
    for name in MEDIA_URL_LIST_FIELDS:
        urls = _url_list(data.get(name), name)
        if urls:
            return urls

    final_url = data.get(FINAL_MEDIA_URL_FIELD)
    if isinstance(final_url, str) and final_url:
        return [final_url]

    urls = _media_item_urls(data.get(MEDIA_ITEMS_FIELD))
    if urls:
        return urls

    legacy_url = _first_string(data, LEGACY_IMAGE_URL_FIELDS)
    return [legacy_url] if legacy_url else []


def _count(data: Mapping, fields: Iterable[str]) -> int:
    for name in fields:
        value = data.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return max(0, int(value))
    return 0


def _location(data: Mapping) -> Optional[str]:
    location = data.get("location")
    if isinstance(location, str) and location:
        return location
    metadata = data.get("metadata")
    if isinstance(metadata, Mapping):
        location = metadata.get("location")
        if isinstance(location, str) and location:
            return location
    return None


def normalize_post(record: Any) -> PostRecord:
    """Map a raw post document onto the canonical PostRecord."""
    if isinstance(record, PostRecord):
        return record
    if not isinstance(record, Mapping):
        raise MalformedRecordError(f"record is {type(record).__name__}, expected a mapping")

    post_id = record.get("id")
    if not isinstance(post_id, str) or not post_id:
        raise MalformedRecordError(f"record has no usable id: {post_id!r}")

    created_at = parse_created_at(record.get("createdAt"))
    if created_at is None:
        raise MalformedRecordError(f"post {post_id} has no usable createdAt")

    caption = record.get("caption")
    if not isinstance(caption, str):
        caption = record.get("content") if isinstance(record.get("content"), str) else ""

    username = record.get("username")

    return PostRecord(
        id=post_id,
        author_id=extract_author_id(record),
        created_at=created_at,
        media_urls=extract_media_urls(record),
        like_count=_count(record, LIKE_COUNT_FIELDS),
        comment_count=_count(record, COMMENT_COUNT_FIELDS),
        caption=caption,
        location=_location(record),
        username=username if isinstance(username, str) else None,
        raw=dict(record),
    )


# =============================================================================
# Assembly
# =============================================================================

def dedupe_posts(posts: Iterable[PostRecord]) -> list[PostRecord]:
    """Keep one record per id; the last one seen wins."""
    unique: dict[str, PostRecord] = {}
    for post in posts:
        unique[post.id] = post
    return list(unique.values())


def sort_posts(posts: Iterable[PostRecord]) -> list[PostRecord]:
    """Newest first; equal timestamps fall back to id descending."""
    return sorted(posts, key=lambda post: (post.created_at, post.id), reverse=True)


def assemble(
    raw_records: Iterable[Any],
    page_size: int,
    may_have_more: bool = False,
    continuation_cursor: Optional["DocumentCursor"] = None,
) -> FeedPage:
    """Build a feed page. Never raises for individual malformed records."""
    normalized = []
    for record in raw_records:
        try:
            normalized.append(normalize_post(record))
        except MalformedRecordError as e:
            logger.warning(f"Dropping malformed post record: {e}")

    valid = [post for post in normalized if has_usable_created_at(post)]
    ordered = sort_posts(dedupe_posts(valid))

    return FeedPage(
        items=ordered[:page_size],
        continuation_cursor=continuation_cursor,
        has_more=len(ordered) > page_size or bool(may_have_more),
    )


def merge_pages(existing: Iterable[PostRecord], incoming: Iterable[PostRecord]) -> list[PostRecord]:
    """Append a newly loaded page to what is already shown, without duplicates."""
    return sort_posts(dedupe_posts([*existing, *incoming]))
