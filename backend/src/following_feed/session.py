"""Feed session - pagination state for one viewer."""
import asyncio
import logging
from enum import Enum
from typing import Optional

from .assembler import FeedPage, PostRecord, merge_pages
from .pipeline import FeedPipeline
from .stores import DocumentCursor, Subscription


logger = logging.getLogger(__name__)


class FeedState(str, Enum):
    IDLE = "idle"
    LOADING_INITIAL = "loading_initial"
    READY = "ready"
    LOADING_MORE = "loading_more"
    REFRESHING = "refreshing"


BUSY_STATES = {FeedState.LOADING_INITIAL, FeedState.LOADING_MORE, FeedState.REFRESHING}


class FeedSession:
    """
    Owns the items shown to one viewer.

    At most one load runs at a time; requests made while a load is in
    flight are ignored. When the following set changes, any page computed
    against the previous set is discarded and the feed reloads.
    """

    def __init__(self, viewer_id: str, pipeline: FeedPipeline):
        self.viewer_id = viewer_id
        self.pipeline = pipeline
        self.state = FeedState.IDLE
        self.items: list[PostRecord] = []
        self.has_more = False
        self.cursor: Optional[DocumentCursor] = None
        self.following: Optional[frozenset] = None
        self.reload_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._subscription: Optional[Subscription] = None

    @property
    def busy(self) -> bool:
        return self.state in BUSY_STATES

    async def load_initial(self) -> bool:
        if self.busy:
            logger.debug(f"Feed for {self.viewer_id} busy ({self.state.value}); ignoring initial load")
            return False
        return await self._run(FeedState.LOADING_INITIAL, resolve=True, append=False)

    async def refresh(self) -> bool:
        if self.busy:
            logger.debug(f"Feed for {self.viewer_id} busy ({self.state.value}); ignoring refresh")
            return False
        if self.state == FeedState.IDLE:
            return await self.load_initial()
        return await self._run(FeedState.REFRESHING, resolve=True, append=False)

    async def load_more(self) -> bool:
        if self.busy or self.state != FeedState.READY:
            return False
        if not self.has_more or not self.following:
            return False
        return await self._run(FeedState.LOADING_MORE, resolve=False, append=True)

    async def _run(self, state: FeedState, resolve: bool, append: bool) -> bool:
        self.state = state
        try:
            if resolve:
                generation = self._generation
                following = await self.pipeline.resolver.resolve(self.viewer_id)
                # a subscription update that landed meanwhile is newer
                if generation == self._generation:
                    self.following = following

            while True:
                generation = self._generation
                cursor = self.cursor if append else None
                page = await self.pipeline.fetch(
                    self.viewer_id, cursor, following=self.following or frozenset()
                )
                if generation == self._generation:
                    break
                logger.info(
                    f"Following set for {self.viewer_id} changed mid-flight; discarding page"
                )
                append = False

            self._apply(page, append)
            return True
        finally:
            self.state = FeedState.READY

    def _apply(self, page: FeedPage, append: bool):
        if append:
            self.items = merge_pages(self.items, page.items)
        else:
            self.items = list(page.items)
        self.cursor = page.continuation_cursor
        self.has_more = page.has_more

    # =========================================================================
    # Live following set
    # =========================================================================

    def watch(self) -> Subscription:
        """Reload the feed whenever the viewer follows or unfollows someone."""
        if self._subscription is None or not self._subscription.active:
            self._subscription = self.pipeline.resolver.subscribe(
                self.viewer_id, self._on_following_changed, initial=self.following
            )
        return self._subscription

    def _on_following_changed(self, following: frozenset):
        self._generation += 1
        self.following = following
        if self.busy:
            # the in-flight load sees the new generation and restarts
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; feed for {self.viewer_id} reloads on next request")
            return
        self.reload_task = loop.create_task(self._reload())

    async def _reload(self):
        if self.busy:
            return
        await self._run(FeedState.REFRESHING, resolve=False, append=False)

    def close(self):
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self.reload_task is not None and not self.reload_task.done():
            self.reload_task.cancel()
