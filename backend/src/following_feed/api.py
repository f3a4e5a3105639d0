"""FastAPI application for the following feed."""
from datetime import datetime
from typing import Any, Optional
from fastapi import FastAPI, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .assembler import FeedPage, PostRecord
from .config import settings
from .database import create_session_factory, init_db
from .pipeline import build_pipeline
from .stores import DocumentCursor


app = FastAPI(
    title="Following Feed API",
    description="Chunked following-feed aggregation and pagination",
    version="0.1.0"
)

SessionLocal = create_session_factory(settings.database_url)


def get_db():
    """Dependency for FastAPI - yields database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# Startup
# =============================================================================

@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    init_db(SessionLocal)


# =============================================================================
# Schemas
# =============================================================================

class PostItem(BaseModel):
    """Normalized post in a feed page."""
    id: str
    author_id: Optional[str]
    created_at: datetime
    media_urls: list[str]
    like_count: int
    comment_count: int
    caption: str
    location: Optional[str] = None
    username: Optional[str] = None

    @classmethod
    def from_record(cls, record: PostRecord) -> "PostItem":
        return cls(
            id=record.id,
            author_id=record.author_id,
            created_at=record.created_at,
            media_urls=record.media_urls,
            like_count=record.like_count,
            comment_count=record.comment_count,
            caption=record.caption,
            location=record.location,
            username=record.username,
        )


class FeedPageResponse(BaseModel):
    """One page of a feed."""
    items: list[PostItem]
    next_cursor: Optional[str] = None
    has_more: bool

    @classmethod
    def from_page(cls, page: FeedPage) -> "FeedPageResponse":
        return cls(
            items=[PostItem.from_record(p) for p in page.items],
            next_cursor=page.continuation_cursor.encode() if page.continuation_cursor else None,
            has_more=page.has_more,
        )


class FollowRequest(BaseModel):
    """Follower starts following followee."""
    follower_id: str = Field(min_length=1)
    followee_id: str = Field(min_length=1)


class PostRequest(BaseModel):
    """Raw post document, legacy field names allowed."""
    id: str = Field(min_length=1)
    data: dict[str, Any]


def _decode_cursor(cursor: Optional[str]) -> Optional[DocumentCursor]:
    if not cursor:
        return None
    try:
        return DocumentCursor.decode(cursor)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/")
async def root():
    """Health check."""
    return {
        "service": "following-feed",
        "status": "healthy",
        "version": "0.1.0"
    }


@app.get("/feed/{viewer_id}", response_model=FeedPageResponse)
async def get_feed(
    viewer_id: str,
    cursor: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Posts from accounts the viewer follows, newest first."""
    start_after = _decode_cursor(cursor)
    pipeline, _ = build_pipeline(db, settings)
    page = await pipeline.fetch(viewer_id, start_after)
    return FeedPageResponse.from_page(page)


@app.get("/feed/{viewer_id}/for-you", response_model=FeedPageResponse)
async def get_for_you(
    viewer_id: str,
    cursor: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Recent posts from accounts the viewer does not follow."""
    start_after = _decode_cursor(cursor)
    pipeline, _ = build_pipeline(db, settings)
    page = await pipeline.for_you(viewer_id, start_after)
    return FeedPageResponse.from_page(page)


@app.post("/follows")
async def follow(request: FollowRequest, db: Session = Depends(get_db)):
    """Create a follow edge."""
    if request.follower_id == request.followee_id:
        raise HTTPException(status_code=400, detail="Cannot follow yourself")
    _, stores = build_pipeline(db, settings)
    edge = stores.relations.follow(request.follower_id, request.followee_id)
    return {"edge_id": edge.edge_id}


@app.delete("/follows/{follower_id}/{followee_id}")
async def unfollow(follower_id: str, followee_id: str, db: Session = Depends(get_db)):
    """Delete a follow edge."""
    _, stores = build_pipeline(db, settings)
    if not stores.relations.unfollow(follower_id, followee_id):
        raise HTTPException(status_code=404, detail="Follow not found")
    return {"deleted": True}


@app.post("/posts")
async def create_post(request: PostRequest, db: Session = Depends(get_db)):
    """Store a raw post document."""
    _, stores = build_pipeline(db, settings)
    document = stores.documents.add_document(request.id, request.data)
    return {"post_id": document.post_id}
