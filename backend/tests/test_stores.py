"""Test SQLAlchemy-backed relation and document stores."""
import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from following_feed.database import Base
from following_feed.models import FollowEdge, PostDocument
from following_feed.stores import (
    DocumentCursor, SqlDocumentStore, SqlRelationStore, StoreError, Subscription
)


BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def ts(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


@pytest.fixture
def db_session():
    """Create in-memory database session for testing."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def documents(db_session):
    return SqlDocumentStore(db_session)


@pytest.fixture
def relations(db_session):
    return SqlRelationStore(db_session)


class TestRelationStore:
    """Test follow edges and change notifications."""

    def test_follow_creates_edge(self, db_session, relations):
        edge = relations.follow("alice", "bob")

        assert edge.edge_id == "alice_bob"
        assert db_session.query(FollowEdge).count() == 1

    def test_follow_is_idempotent(self, db_session, relations):
        relations.follow("alice", "bob")
        relations.follow("alice", "bob")

        assert db_session.query(FollowEdge).count() == 1

    def test_edges_are_directional(self, relations):
        relations.follow("alice", "bob")
        relations.follow("bob", "alice")

        assert relations._current_set("alice") == frozenset({"bob"})
        assert relations._current_set("bob") == frozenset({"alice"})

    @pytest.mark.asyncio
    async def test_followee_ids(self, relations):
        relations.follow("alice", "bob")
        relations.follow("alice", "carol")
        relations.follow("dave", "erin")

        assert sorted(await relations.followee_ids("alice")) == ["bob", "carol"]
        assert await relations.followee_ids("nobody") == []

    def test_unfollow(self, relations):
        relations.follow("alice", "bob")

        assert relations.unfollow("alice", "bob") is True
        assert relations.unfollow("alice", "bob") is False

    def test_subscribers_receive_snapshots(self, relations):
        received = []
        relations.subscribe("alice", received.append)

        relations.follow("alice", "bob")
        relations.follow("alice", "carol")
        relations.unfollow("alice", "bob")
        relations.follow("dave", "bob")  # other follower, no notification

        assert received == [
            frozenset({"bob"}),
            frozenset({"bob", "carol"}),
            frozenset({"carol"}),
        ]

    def test_cancelled_subscription_stops_delivery(self, relations):
        received = []
        subscription = relations.subscribe("alice", received.append)

        subscription.cancel()
        subscription.cancel()
        relations.follow("alice", "bob")

        assert received == []
        assert subscription.active is False

    def test_subscription_handle(self):
        calls = []
        subscription = Subscription(lambda: calls.append(1))
        subscription.cancel()
        subscription.cancel()
        assert calls == [1]


@pytest.mark.asyncio
class TestDocumentStore:
    """Test ordered membership queries."""

    async def test_query_orders_newest_first(self, documents):
        documents.add_document("p1", {"createdBy": "u1", "createdAt": ts(1)})
        documents.add_document("p2", {"createdBy": "u2", "createdAt": ts(3)})
        documents.add_document("p3", {"createdBy": "u1", "createdAt": ts(2)})
        documents.add_document("p4", {"createdBy": "u3", "createdAt": ts(9)})

        results = await documents.query_by_authors(["u1", "u2"], limit=10)

        assert [d.doc_id for d in results] == ["p2", "p3", "p1"]

    async def test_query_respects_limit(self, documents):
        for i in range(5):
            documents.add_document(f"p{i}", {"createdBy": "u1", "createdAt": ts(i)})

        results = await documents.query_by_authors(["u1"], limit=2)

        assert [d.doc_id for d in results] == ["p4", "p3"]

    async def test_start_after_is_exclusive(self, documents):
        for i in range(5):
            documents.add_document(f"p{i}", {"createdBy": "u1", "createdAt": ts(i)})

        first = await documents.query_by_authors(["u1"], limit=2)
        second = await documents.query_by_authors(["u1"], limit=2, start_after=first[-1].cursor)

        assert [d.doc_id for d in second] == ["p2", "p1"]

    async def test_start_after_breaks_ties_on_id(self, documents):
        for post_id in ("a", "b", "c"):
            documents.add_document(post_id, {"createdBy": "u1", "createdAt": ts(0)})

        first = await documents.query_by_authors(["u1"], limit=1)
        rest = await documents.query_by_authors(["u1"], limit=5, start_after=first[0].cursor)

        assert first[0].doc_id == "c"
        assert [d.doc_id for d in rest] == ["b", "a"]

    async def test_missing_created_at_sorts_last(self, documents):
        documents.add_document("undated", {"createdBy": "u1"})
        documents.add_document("dated", {"createdBy": "u1", "createdAt": ts(0)})

        results = await documents.query_by_authors(["u1"], limit=5)

        assert [d.doc_id for d in results] == ["dated", "undated"]
        assert results[1].cursor.created_at is None

    async def test_user_id_used_when_created_by_missing(self, documents):
        documents.add_document("p1", {"userId": "u1", "createdAt": ts(0)})

        results = await documents.query_by_authors(["u1"], limit=5)

        assert [d.doc_id for d in results] == ["p1"]

    async def test_membership_cap_enforced(self, documents):
        with pytest.raises(StoreError) as exc_info:
            await documents.query_by_authors([f"u{i}" for i in range(11)], limit=5)
        assert exc_info.value.code == "invalid-argument"

    async def test_empty_membership_rejected(self, documents):
        with pytest.raises(StoreError):
            await documents.query_by_authors([], limit=5)

    async def test_query_latest(self, documents):
        documents.add_document("p1", {"createdBy": "u1", "createdAt": ts(1)})
        documents.add_document("p2", {"createdBy": "u2", "createdAt": ts(2)})

        results = await documents.query_latest(limit=1)

        assert [d.doc_id for d in results] == ["p2"]

    async def test_record_keeps_legacy_fields(self, documents):
        documents.add_document("p1", {"userId": "u1", "createdAt": ts(0), "imageURL": "x.jpg"})

        record = (await documents.query_by_authors(["u1"], limit=1))[0].as_record()

        assert record["id"] == "p1"
        assert record["imageURL"] == "x.jpg"
        assert record["createdAt"] == ts(0).isoformat()

    async def test_add_document_replaces(self, db_session, documents):
        documents.add_document("p1", {"createdBy": "u1", "createdAt": ts(0), "caption": "a"})
        documents.add_document("p1", {"createdBy": "u1", "createdAt": ts(0), "caption": "b"})

        assert db_session.query(PostDocument).count() == 1
        assert db_session.get(PostDocument, "p1").data["caption"] == "b"


class TestDocumentCursor:
    """Test opaque cursor encoding."""

    def test_encode_decode(self):
        cursor = DocumentCursor(ts(5), "p9")
        assert DocumentCursor.decode(cursor.encode()) == cursor

    def test_decode_rejects_garbage(self):
        with pytest.raises(ValueError):
            DocumentCursor.decode("not-a-cursor")
