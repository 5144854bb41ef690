"""Harvest pipeline: pages -> records -> batches -> sinks.

For every history page the pipeline normalizes all messages, splits them into
batches, resolves thread replies for each batch concurrently and then hands
the batch to the datastore sink and/or the embedding sink.

Every downstream failure (history page, thread fetch, bulk put, embedding
POST) is logged with the operation name and error payload, recorded in the
`HarvestResult`, and skipped. Nothing aborts the run: even an unexpected
exception is caught at the top and turned into a normal return. The result is
always `completed=False`, leaving completion to whoever owns the surrounding
workflow.
"""

import logging
from time import perf_counter
from typing import Any, Optional, Sequence

from slack_harvester.metrics.metrics import FAILURES, OP_ITEMS, OP_LATENCY
from slack_harvester.models.config import HarvesterConfig
from slack_harvester.models.records import HarvestResult, NormalizedRecord, RunState
from slack_harvester.pipeline.batcher import Batcher
from slack_harvester.pipeline.normalizer import IdFactory, MessageNormalizer, random_object_id
from slack_harvester.pipeline.replies import ReplyResolver
from slack_harvester.sinks.datastore import PersistenceSink, create_datastore_sink
from slack_harvester.sinks.embedding import EmbeddingSink
from slack_harvester.sources.policy import CallPolicy
from slack_harvester.sources.slack import SlackHistorySource

logger = logging.getLogger(__name__)


class HarvestPipeline:
    """Drive a channel harvest end to end.

    Args:
        source: Slack history source (pagination, threads, join).
        datastore: Persistence sink, or None to skip datastore writes.
        embedding: Embedding sink, or None to skip embedding requests.
        datastore_name: Datastore receiving the bulk puts.
        normalizer: Message normalizer (inject one with a fixed id factory for tests).
        batcher: Batcher, 25 records per batch by default.
        reply_concurrency: Max concurrent thread fetches per batch.
        join_channel: Whether to join the channel before reading its history.
    """

    def __init__(
        self,
        source: SlackHistorySource,
        datastore: Optional[PersistenceSink] = None,
        embedding: Optional[EmbeddingSink] = None,
        datastore_name: str = "SampleObjects",
        normalizer: Optional[MessageNormalizer] = None,
        batcher: Optional[Batcher] = None,
        reply_concurrency: int = 25,
        join_channel: bool = False,
    ):
        if datastore is None and embedding is None:
            raise ValueError("At least one sink (datastore or embedding) is required")
        self.source = source
        self.datastore = datastore
        self.embedding = embedding
        self.datastore_name = datastore_name
        self.normalizer = normalizer or MessageNormalizer()
        self.batcher = batcher or Batcher()
        self.resolver = ReplyResolver(source, concurrency=min(reply_concurrency, self.batcher.batch_size))
        self.join_channel = join_channel

    @classmethod
    def from_config(
        cls,
        config: HarvesterConfig,
        secrets: Optional[dict] = None,
        id_factory: IdFactory = random_object_id,
    ) -> "HarvestPipeline":
        """Build a pipeline and its collaborators from configuration."""
        policy = CallPolicy(config.policy)
        source = SlackHistorySource.create(config.slack, secrets=secrets, policy=policy)
        datastore = create_datastore_sink(config.datastore, source) if config.datastore.enabled else None
        embedding = EmbeddingSink(config.embedding, policy=policy) if config.embedding.enabled else None
        return cls(
            source=source,
            datastore=datastore,
            embedding=embedding,
            datastore_name=config.datastore.name,
            normalizer=MessageNormalizer(id_factory),
            batcher=Batcher(config.pipeline.batch_size),
            reply_concurrency=config.pipeline.reply_concurrency,
            join_channel=config.slack.join_channel,
        )

    async def aclose(self) -> None:
        if self.embedding is not None:
            await self.embedding.aclose()

    def _fail(self, result: HarvestResult, operation: str, unit: str, error: Any) -> None:
        logger.error(f"Error during {operation} ({unit}): {error}")
        FAILURES.labels(operation=operation).inc()
        result.add_failure(operation, unit, error)

    async def run(self, channel_id: str) -> HarvestResult:
        """Harvest a channel and deliver every batch to the enabled sinks.

        Args:
            channel_id: Slack channel ID.

        Returns:
            HarvestResult: Counters and failures; `completed` is always False and
            `state` is `AWAITING_EXTERNAL_COMPLETION` once the run is over.
        """
        result = HarvestResult(channel=channel_id)
        start = perf_counter()
        logger.info(f"Harvesting channel {channel_id}")
        try:
            if self.join_channel and not await self.source.join_channel(channel_id):
                self._fail(result, "conversations.join", channel_id, "join failed")

            async for page in self.source.iter_history_pages(channel_id):
                result.pages += 1
                if not page.ok:
                    self._fail(result, "conversations.history", f"page {page.page_number}", page.error)
                    continue
                records = self.normalizer.normalize_all(page.messages)
                result.records += len(records)
                logger.info(
                    f"Page {page.page_number}: {len(records)} messages in {self.batcher.count(len(records))} batches"
                )
                for batch_number, batch in enumerate(self.batcher.batches(records), start=1):
                    unit = f"page {page.page_number} batch {batch_number}"
                    await self._process_batch(channel_id, unit, batch, result)
        except Exception as e:
            logger.exception(f"Unexpected exception while harvesting {channel_id}: {e}")
            FAILURES.labels(operation="run").inc()
            result.add_failure("run", channel_id, e)
        finally:
            result.state = RunState.AWAITING_EXTERNAL_COMPLETION
            elapsed = perf_counter() - start
            OP_LATENCY.labels(source_id=self.source.source_id, operation="harvest").observe(elapsed)
            OP_ITEMS.labels(source_id=self.source.source_id, operation="harvest").observe(result.records)
            logger.info(
                f"Harvest of {channel_id} done: pages={result.pages} records={result.records} "
                f"batches={result.batches} failures={len(result.failures)} elapsed={elapsed:.3f}s"
            )
        return result

    async def _process_batch(
        self, channel_id: str, unit: str, batch: Sequence[NormalizedRecord], result: HarvestResult
    ) -> None:
        outcomes = await self.resolver.resolve_batch(channel_id, batch)
        for outcome in outcomes:
            if outcome.failed:
                self._fail(
                    result, "conversations.replies", f"{unit} thread {outcome.record.parent_ts}", outcome.error.error
                )
        records = [o.record for o in outcomes]
        result.batches += 1
        logger.debug(f"{unit}: {len(records)} records resolved")

        if self.datastore is not None:
            put_result = await self.datastore.put(self.datastore_name, records)
            if put_result.ok:
                result.datastore_batches += 1
            else:
                self._fail(result, "apps.datastore.bulkPut", unit, put_result.error)

        if self.embedding is not None:
            embed_result = await self.embedding.send(records)
            if not embed_result.ok:
                self._fail(result, "embedding.predict", unit, embed_result.error)
            elif embed_result.body is not None:
                result.embedding_batches += 1
