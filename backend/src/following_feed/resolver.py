"""Follow set resolver - who does a viewer follow."""
import logging
from typing import Callable, Optional

from .retry import RetryPolicy
from .stores import RelationStore, StoreError, Subscription


logger = logging.getLogger(__name__)


class FollowSetResolver:
    """
    Resolves a viewer's following set from the relation store.

    Subscribed viewers keep a cached snapshot that every change
    notification replaces.
    """

    def __init__(self, relation_store: RelationStore, retry_policy: RetryPolicy = None):
        self.store = relation_store
        self.retry = retry_policy or RetryPolicy()
        self._cache: dict[str, frozenset] = {}

    def cached(self, viewer_id: str) -> Optional[frozenset]:
        return self._cache.get(viewer_id)

    async def resolve(self, viewer_id: str) -> frozenset:
        """Current following set; empty on invalid input or store failure."""
        if not viewer_id or not viewer_id.strip():
            return frozenset()

        try:
            ids = await self.retry.call(self.store.followee_ids, viewer_id)
        except StoreError as e:
            logger.warning(f"Could not resolve following set for {viewer_id}: {e}")
            return frozenset()

        following = frozenset(i for i in ids if i)
        if viewer_id in self._cache:
            self._cache[viewer_id] = following
        return following

    def subscribe(
        self,
        viewer_id: str,
        on_change: Callable[[frozenset], None],
        initial: Optional[frozenset] = None,
    ) -> Subscription:
        """Call on_change whenever the viewer's following set really changes."""
        self._cache[viewer_id] = initial if initial is not None else self._cache.get(viewer_id, frozenset())

        def listener(following: frozenset):
            following = frozenset(following)
            if following == self._cache.get(viewer_id):
                return
            logger.info(f"Following set for {viewer_id} changed: {len(following)} accounts")
            self._cache[viewer_id] = following
            on_change(following)

        store_subscription = self.store.subscribe(viewer_id, listener)

        def cancel():
            store_subscription.cancel()
            self._cache.pop(viewer_id, None)

        return Subscription(cancel)
