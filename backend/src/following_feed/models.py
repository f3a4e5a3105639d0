"""SQLAlchemy models for the relation store and the posts document store.

- follows: one row per ordered (follower, followee) pair
- posts: raw post documents, legacy field names kept intact in `data`
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def utc_now():
    """Timezone-aware UTC now (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


def follow_edge_id(follower_id: str, followee_id: str) -> str:
    """Deterministic identity key for a follow edge (order-sensitive)."""
    return f"{follower_id}_{followee_id}"


class FollowEdge(Base):
    """Follower follows followee."""
    __tablename__ = "follows"

    edge_id: Mapped[str] = mapped_column(String(255), primary_key=True)  # "<follower>_<followee>"
    follower_id: Mapped[str] = mapped_column(String(128), index=True)
    followee_id: Mapped[str] = mapped_column(String(128), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    @classmethod
    def between(cls, follower_id: str, followee_id: str) -> "FollowEdge":
        return cls(
            edge_id=follow_edge_id(follower_id, followee_id),
            follower_id=follower_id,
            followee_id=followee_id,
        )


class PostDocument(Base):
    """Raw post document as written by clients."""
    __tablename__ = "posts"

    post_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict)

    __table_args__ = (
        # composite index backing "created_by in (...) order by created_at desc"
        Index("ix_posts_created_by_created_at", "created_by", "created_at"),
    )
