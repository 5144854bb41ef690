"""Thread reply resolution for a batch of records.

Records whose message started a thread get their whole thread flattened into
`replies` (root message included, newline-joined, in fetch order). Records with
no replies pass through untouched. Failures never block the batch: the
affected record is kept without replies and the failure is handed back to the
caller for logging.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from slack_harvester.exceptions import UpstreamAPIError
from slack_harvester.models.records import NormalizedRecord, RawMessage

logger = logging.getLogger(__name__)

REPLY_SEPARATOR = "\n"


class ThreadFetcher(Protocol):
    async def fetch_thread(self, channel_id: str, thread_ts: str) -> List[RawMessage]: ...


@dataclass(frozen=True)
class ReplyOutcome:
    """Result of resolving one record. `error` is set when the thread fetch failed."""

    record: NormalizedRecord
    error: Optional[UpstreamAPIError] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class ReplyResolver:
    """Scatter/gather stage fetching threads concurrently for one batch.

    Args:
        fetcher: Object providing `fetch_thread` (normally `SlackHistorySource`).
        concurrency: Max in-flight thread fetches; capped by the batch size anyway.
    """

    def __init__(self, fetcher: ThreadFetcher, concurrency: int = 25):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.fetcher = fetcher
        self.concurrency = concurrency

    async def resolve(self, channel_id: str, record: NormalizedRecord) -> NormalizedRecord:
        """Return `record` with `replies` filled in.

        Raises:
            UpstreamAPIError: When the thread fetch fails or the record has no
                timestamp to identify its thread.
        """
        if not record.needs_replies:
            return record
        if not record.parent_ts:
            raise UpstreamAPIError("conversations.replies", "message has replies but no thread timestamp")
        thread = await self.fetcher.fetch_thread(channel_id, record.parent_ts)
        replies = REPLY_SEPARATOR.join(m.text for m in thread)
        return record.model_copy(update={"replies": replies})

    async def resolve_batch(self, channel_id: str, batch: Sequence[NormalizedRecord]) -> List[ReplyOutcome]:
        """Resolve every record of a batch, concurrently, keeping input order.

        Every task's failure is captured individually; one failed thread never
        cancels the others.
        """
        semaphore = asyncio.Semaphore(min(self.concurrency, max(1, len(batch))))

        async def _one(record: NormalizedRecord) -> ReplyOutcome:
            if not record.needs_replies:
                return ReplyOutcome(record)
            async with semaphore:
                try:
                    return ReplyOutcome(await self.resolve(channel_id, record))
                except UpstreamAPIError as e:
                    logger.error(f"Error getting replies for thread {record.parent_ts}: {e.error}")
                    return ReplyOutcome(record, e)

        return list(await asyncio.gather(*(_one(r) for r in batch)))
