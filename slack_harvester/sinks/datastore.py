"""Persistence sinks: bulk upsert of normalized records keyed by `object_id`.

Two backends share the `put(datastore_name, items)` contract:
- `SlackDatastoreSink` writes to a Slack-hosted datastore via `apps.datastore.bulkPut`.
- `JsonFileDatastore` keeps a local JSON file per datastore, useful for local
  runs and for checking upsert semantics.

Neither raises on a failed write; the outcome is returned as a `SinkResult`.
"""

import asyncio
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from slack_harvester.exceptions import UpstreamAPIError
from slack_harvester.metrics.metrics import SINK_WRITES
from slack_harvester.models.records import NormalizedRecord, SinkResult
from slack_harvester.pipeline.batcher import MAX_BATCH_SIZE
from slack_harvester.sources.slack import SlackHistorySource

logger = logging.getLogger(__name__)

PRIMARY_KEY = "object_id"


class DatastoreConfig(BaseModel):
    """Configuration for the persistence sink."""

    enabled: bool = Field(default=True, description="Whether batches are written to the datastore")
    backend: Literal["slack", "file"] = Field(default="slack", description="Datastore backend")
    name: str = Field(default="SampleObjects", description="Datastore name")
    path: str = Field(default="data/datastore", description="Directory for the file backend")


class PersistenceSink(Protocol):
    async def put(self, datastore_name: str, items: Sequence[NormalizedRecord]) -> SinkResult: ...


def _check_batch(items: Sequence[NormalizedRecord]) -> None:
    if len(items) > MAX_BATCH_SIZE:
        raise ValueError(f"bulk put accepts at most {MAX_BATCH_SIZE} items, got {len(items)}")


class SlackDatastoreSink:
    """Bulk upsert into a Slack-hosted datastore.

    Args:
        source: Slack source whose client, rate limiter and call policy are reused.
    """

    METHOD = "apps.datastore.bulkPut"

    def __init__(self, source: SlackHistorySource):
        self.source = source

    async def put(self, datastore_name: str, items: Sequence[NormalizedRecord]) -> SinkResult:
        _check_batch(items)
        payload = {"datastore": datastore_name, "items": [r.to_item() for r in items]}
        try:
            await self.source.api_call(self.METHOD, self.source.client.api_call, api_method=self.METHOD, json=payload)
        except UpstreamAPIError as e:
            SINK_WRITES.labels(sink="datastore", outcome="error").inc()
            return SinkResult(ok=False, error=e.error)
        SINK_WRITES.labels(sink="datastore", outcome="ok").inc()
        return SinkResult(ok=True)


class JsonFileDatastore:
    """JSON-file datastore with upsert semantics.

    Each datastore is one file `<directory>/<datastore_name>.json` holding a
    mapping of `object_id` to item. Writes go through a temp file and
    `os.replace` so a crash never leaves a truncated store.
    """

    def __init__(self, directory: str):
        self._dir = Path(directory).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, datastore_name: str) -> Path:
        return self._dir / f"{datastore_name}.json"

    def load(self, datastore_name: str) -> Dict[str, Dict[str, Any]]:
        """Return the whole datastore as `{object_id: item}`."""
        path = self._path(datastore_name)
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def _save(self, datastore_name: str, data: Dict[str, Dict[str, Any]]) -> None:
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp_datastore_", dir=str(self._dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmpf:
                json.dump(data, tmpf, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self._path(datastore_name))
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    def _put_sync(self, datastore_name: str, items: List[Dict[str, Any]]) -> None:
        with self._lock:
            data = self.load(datastore_name)
            for item in items:
                data[item[PRIMARY_KEY]] = item
            self._save(datastore_name, data)

    async def put(self, datastore_name: str, items: Sequence[NormalizedRecord]) -> SinkResult:
        _check_batch(items)
        try:
            await asyncio.to_thread(self._put_sync, datastore_name, [r.to_item() for r in items])
        except (OSError, ValueError) as e:
            logger.debug(f"File datastore write failed for {datastore_name}: {e}")
            SINK_WRITES.labels(sink="datastore", outcome="error").inc()
            return SinkResult(ok=False, error=str(e))
        SINK_WRITES.labels(sink="datastore", outcome="ok").inc()
        return SinkResult(ok=True)


def create_datastore_sink(config: DatastoreConfig, source: Optional[SlackHistorySource]) -> PersistenceSink:
    """Build the configured persistence sink."""
    if config.backend == "file":
        return JsonFileDatastore(config.path)
    if source is None:
        raise ValueError("The slack datastore backend needs a Slack source")
    return SlackDatastoreSink(source)
