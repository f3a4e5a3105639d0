"""Relation and document store interfaces plus their SQLAlchemy bindings."""
import base64
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Protocol

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .assembler import parse_created_at
from .models import FollowEdge, PostDocument, follow_edge_id


logger = logging.getLogger(__name__)

# Backend limit on the number of values in one "in" filter
MAX_MEMBERSHIP_VALUES = 10


class StoreError(Exception):
    """Store error carrying the backend's error code."""
    def __init__(self, code: str, message: str = ""):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}" if message else code)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DocumentCursor:
    """Position of a document in (created_at desc, doc_id desc) order."""
    created_at: Optional[datetime]
    doc_id: str

    def encode(self) -> str:
        """Opaque string form for CLI/HTTP callers."""
        payload = json.dumps({
            "t": self.created_at.isoformat() if self.created_at else None,
            "id": self.doc_id,
        })
        return base64.urlsafe_b64encode(payload.encode()).decode()

    @classmethod
    def decode(cls, token: str) -> "DocumentCursor":
        try:
            payload = json.loads(base64.urlsafe_b64decode(token.encode()))
            created_at = datetime.fromisoformat(payload["t"]) if payload["t"] else None
            return cls(created_at=as_utc(created_at), doc_id=str(payload["id"]))
        except (ValueError, KeyError, TypeError) as e:
            raise ValueError(f"Invalid cursor: {token!r}") from e


@dataclass
class StoredDocument:
    """A document as returned by a store query."""
    doc_id: str
    data: dict
    cursor: DocumentCursor

    def as_record(self) -> dict:
        return {**self.data, "id": self.doc_id}


class Subscription:
    """Cancellation handle for a live subscription."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self.active = True

    def cancel(self):
        if self.active:
            self.active = False
            self._cancel()


FollowListener = Callable[[frozenset], None]


class RelationStore(Protocol):
    async def followee_ids(self, follower_id: str) -> list[str]: ...

    def subscribe(self, follower_id: str, listener: FollowListener) -> Subscription: ...


class DocumentStore(Protocol):
    async def query_by_authors(
        self,
        author_ids: list[str],
        limit: int,
        start_after: Optional[DocumentCursor] = None,
    ) -> list[StoredDocument]: ...

    async def query_latest(
        self,
        limit: int,
        start_after: Optional[DocumentCursor] = None,
    ) -> list[StoredDocument]: ...


# =============================================================================
# SQLAlchemy bindings
# =============================================================================

class SqlRelationStore:
    """Relation store over the follows table."""

    def __init__(self, db: Session):
        self.db = db
        self._listeners: dict[str, list[FollowListener]] = defaultdict(list)

    async def followee_ids(self, follower_id: str) -> list[str]:
        try:
            rows = self.db.query(FollowEdge.followee_id).filter(
                FollowEdge.follower_id == follower_id
            ).all()
        except SQLAlchemyError as e:
            raise StoreError("unavailable", str(e)) from e
        return [row.followee_id for row in rows]

    def _current_set(self, follower_id: str) -> frozenset:
        rows = self.db.query(FollowEdge.followee_id).filter(
            FollowEdge.follower_id == follower_id
        ).all()
        return frozenset(row.followee_id for row in rows)

    def subscribe(self, follower_id: str, listener: FollowListener) -> Subscription:
        self._listeners[follower_id].append(listener)

        def cancel():
            listeners = self._listeners.get(follower_id, [])
            if listener in listeners:
                listeners.remove(listener)

        return Subscription(cancel)

    def _notify(self, follower_id: str):
        listeners = list(self._listeners.get(follower_id, []))
        if not listeners:
            return
        snapshot = self._current_set(follower_id)
        for listener in listeners:
            listener(snapshot)

    def follow(self, follower_id: str, followee_id: str) -> FollowEdge:
        """Create the edge (idempotent) and notify subscribers."""
        edge = self.db.get(FollowEdge, follow_edge_id(follower_id, followee_id))
        if edge is None:
            edge = FollowEdge.between(follower_id, followee_id)
            self.db.add(edge)
            self.db.commit()
            self._notify(follower_id)
        return edge

    def unfollow(self, follower_id: str, followee_id: str) -> bool:
        """Delete the edge; returns False when it did not exist."""
        edge = self.db.get(FollowEdge, follow_edge_id(follower_id, followee_id))
        if edge is None:
            return False
        self.db.delete(edge)
        self.db.commit()
        self._notify(follower_id)
        return True


def _json_default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class SqlDocumentStore:
    """Document store over the posts table."""

    def __init__(self, db: Session):
        self.db = db

    def add_document(self, doc_id: str, data: dict) -> PostDocument:
        """Insert or replace a raw post document."""
        stored = json.loads(json.dumps(data, default=_json_default))
        document = PostDocument(
            post_id=doc_id,
            created_by=data.get("createdBy") or data.get("userId"),
            created_at=parse_created_at(data.get("createdAt")),
            data=stored,
        )
        document = self.db.merge(document)
        self.db.commit()
        return document

    def _to_stored(self, document: PostDocument) -> StoredDocument:
        return StoredDocument(
            doc_id=document.post_id,
            data=dict(document.data or {}),
            cursor=DocumentCursor(as_utc(document.created_at), document.post_id),
        )

    def _ordered(self, query, limit: int, start_after: Optional[DocumentCursor]):
        if start_after is not None:
            if start_after.created_at is None:
                raise StoreError("invalid-argument", "cursor has no createdAt")
            query = query.filter(or_(
                PostDocument.created_at < start_after.created_at,
                and_(
                    PostDocument.created_at == start_after.created_at,
                    PostDocument.post_id < start_after.doc_id,
                ),
            ))
        return query.order_by(
            PostDocument.created_at.desc().nulls_last(),
            PostDocument.post_id.desc(),
        ).limit(limit)

    async def query_by_authors(
        self,
        author_ids: Iterable[str],
        limit: int,
        start_after: Optional[DocumentCursor] = None,
    ) -> list[StoredDocument]:
        author_ids = list(author_ids)
        if not author_ids or len(author_ids) > MAX_MEMBERSHIP_VALUES:
            raise StoreError(
                "invalid-argument",
                f"'in' filters support 1-{MAX_MEMBERSHIP_VALUES} values, got {len(author_ids)}"
            )

        query = self.db.query(PostDocument).filter(PostDocument.created_by.in_(author_ids))
        try:
            documents = self._ordered(query, limit, start_after).all()
        except SQLAlchemyError as e:
            raise StoreError("unavailable", str(e)) from e
        return [self._to_stored(d) for d in documents]

    async def query_latest(
        self,
        limit: int,
        start_after: Optional[DocumentCursor] = None,
    ) -> list[StoredDocument]:
        try:
            documents = self._ordered(self.db.query(PostDocument), limit, start_after).all()
        except SQLAlchemyError as e:
            raise StoreError("unavailable", str(e)) from e
        return [self._to_stored(d) for d in documents]
