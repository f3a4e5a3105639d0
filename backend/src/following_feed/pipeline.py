"""Feed pipeline - resolver -> chunked fetcher -> assembler."""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from .assembler import FeedPage, assemble
from .config import Settings, settings as default_settings
from .fetcher import ChunkedFeedFetcher, FetchResult
from .resolver import FollowSetResolver
from .retry import RetryPolicy
from .stores import DocumentCursor, SqlDocumentStore, SqlRelationStore


logger = logging.getLogger(__name__)


class FeedPipeline:
    """One feed computation per call; never raises for store or data problems."""

    def __init__(
        self,
        resolver: FollowSetResolver,
        fetcher: ChunkedFeedFetcher,
        page_size: int = 20,
        discovery_overfetch: int = 2,
    ):
        self.resolver = resolver
        self.fetcher = fetcher
        self.page_size = page_size
        self.discovery_overfetch = discovery_overfetch

    async def fetch(
        self,
        viewer_id: str,
        cursor: Optional[DocumentCursor] = None,
        following: Optional[Iterable[str]] = None,
    ) -> FeedPage:
        """Following feed page for viewer_id, resuming after cursor."""
        if following is None:
            following = await self.resolver.resolve(viewer_id)
        following = frozenset(following)
        if not following:
            return FeedPage()

        result = await self.fetcher.fetch_page(following, cursor, self.page_size)
        return self._assemble(result)

    async def for_you(
        self,
        viewer_id: str,
        cursor: Optional[DocumentCursor] = None,
        following: Optional[Iterable[str]] = None,
    ) -> FeedPage:
        """Discovery feed: recent posts from accounts the viewer does not follow."""
        if not viewer_id:
            return FeedPage()
        if following is None:
            following = await self.resolver.resolve(viewer_id)

        result = await self.fetcher.fetch_discovery(
            viewer_id, following, cursor, self.page_size, self.discovery_overfetch
        )
        return self._assemble(result)

    def _assemble(self, result: FetchResult) -> FeedPage:
        page = assemble(
            result.raw_records,
            self.page_size,
            may_have_more=result.may_have_more,
            continuation_cursor=result.last_cursor,
        )
        logger.debug(
            f"Assembled {len(page.items)} posts from {len(result.raw_records)} candidates "
            f"({result.queries_issued} queries, {result.failed_chunks} failed)"
        )
        return page


@dataclass
class FeedStores:
    """Store handles owned by the composition root."""
    relations: SqlRelationStore
    documents: SqlDocumentStore


def build_pipeline(db: Session, settings: Settings = None) -> tuple[FeedPipeline, FeedStores]:
    """Wire stores, retry policy, resolver and fetcher for one database session."""
    settings = settings or default_settings
    retry = RetryPolicy.from_settings(settings)
    stores = FeedStores(relations=SqlRelationStore(db), documents=SqlDocumentStore(db))

    pipeline = FeedPipeline(
        resolver=FollowSetResolver(stores.relations, retry),
        fetcher=ChunkedFeedFetcher(stores.documents, retry, chunk_size=settings.chunk_size),
        page_size=settings.page_size,
        discovery_overfetch=settings.discovery_overfetch,
    )
    return pipeline, stores
