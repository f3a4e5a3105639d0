"""Chunked feed fetcher - posts authored by a following set."""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .assembler import extract_author_id, has_usable_created_at
from .retry import RetryPolicy
from .stores import (
    MAX_MEMBERSHIP_VALUES, DocumentCursor, DocumentStore, StoreError, StoredDocument
)


logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Raw output of one page fetch, before assembly."""
    raw_records: list[dict] = field(default_factory=list)
    last_cursor: Optional[DocumentCursor] = None
    may_have_more: bool = False
    queries_issued: int = 0
    failed_chunks: int = 0


def chunk_ids(ids: Iterable[str], size: int = MAX_MEMBERSHIP_VALUES) -> list[list[str]]:
    """Split ids into ordered chunks of at most `size`."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    ids = list(ids)
    return [ids[i:i + size] for i in range(0, len(ids), size)]


def _eligible(documents: list[StoredDocument]) -> list[StoredDocument]:
    return [d for d in documents if has_usable_created_at(d.data)]


class ChunkedFeedFetcher:
    """
    Fetches feed candidates in membership-query chunks:
    1. Partition the following set into chunks of <= 10 ids
    2. One "author in chunk" query per chunk, newest first, limited to page size
    3. Drop documents without createdAt
    4. Concatenate; ordering is left to the assembler
    """

    def __init__(
        self,
        document_store: DocumentStore,
        retry_policy: RetryPolicy = None,
        chunk_size: int = MAX_MEMBERSHIP_VALUES,
    ):
        self.store = document_store
        self.retry = retry_policy or RetryPolicy()
        self.chunk_size = min(chunk_size, MAX_MEMBERSHIP_VALUES)

    async def fetch_page(
        self,
        following: Iterable[str],
        cursor: Optional[DocumentCursor] = None,
        page_size: int = 20,
    ) -> FetchResult:
        # Snapshot for the whole call
        following = sorted(set(following))
        if not following:
            return FetchResult()

        result = FetchResult()
        chunks = chunk_ids(following, self.chunk_size)

        for index, chunk in enumerate(chunks):
            result.queries_issued += 1
            try:
                documents = await self.retry.call(
                    self.store.query_by_authors, chunk, page_size, cursor
                )
            except StoreError as e:
                result.failed_chunks += 1
                logger.warning(
                    f"Feed chunk {index + 1}/{len(chunks)} failed ({len(chunk)} authors): {e}"
                )
                continue

            if len(documents) >= page_size:
                result.may_have_more = True

            eligible = _eligible(documents)
            if len(eligible) < len(documents):
                logger.debug(f"Skipped {len(documents) - len(eligible)} posts without createdAt")

            if eligible:
                result.last_cursor = eligible[-1].cursor
            result.raw_records.extend(d.as_record() for d in eligible)

        if result.failed_chunks == len(chunks):
            logger.warning(f"All {len(chunks)} feed chunks failed; returning empty result")
            return FetchResult(queries_issued=result.queries_issued, failed_chunks=result.failed_chunks)

        return result

    async def fetch_discovery(
        self,
        viewer_id: str,
        following: Iterable[str],
        cursor: Optional[DocumentCursor] = None,
        page_size: int = 20,
        overfetch: int = 2,
    ) -> FetchResult:
        """Newest posts from accounts the viewer neither is nor follows."""
        excluded = set(following)
        excluded.add(viewer_id)
        limit = page_size * max(1, overfetch)

        try:
            documents = await self.retry.call(self.store.query_latest, limit, cursor)
        except StoreError as e:
            logger.warning(f"Discovery feed query failed for {viewer_id}: {e}")
            return FetchResult(queries_issued=1, failed_chunks=1)

        result = FetchResult(queries_issued=1, may_have_more=len(documents) >= limit)
        eligible = _eligible(documents)
        if eligible:
            result.last_cursor = eligible[-1].cursor

        for document in eligible:
            record = document.as_record()
            owner = extract_author_id(record)
            if owner and owner not in excluded:
                result.raw_records.append(record)

        return result
