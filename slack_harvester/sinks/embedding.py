"""Embedding sink: one `predict` POST per batch to an embedding endpoint.

The request body is `{"instances": [{"task_type", "title", "content"}, ...]}`,
the format of Vertex AI text-embedding `predict` endpoints. Entries with an
empty title or content are dropped before sending. A non-2xx response is a
failure; on success the raw response text is returned and, if configured,
appended as one line to `output_path`.
"""

import logging
import os
from pathlib import Path
from time import perf_counter
from typing import Optional, Sequence

import httpx
from pydantic import BaseModel, Field

from slack_harvester.exceptions import UpstreamAPIError
from slack_harvester.metrics.metrics import API_CALLS, API_LATENCY, SINK_WRITES
from slack_harvester.models.records import RETRIEVAL_DOCUMENT, NormalizedRecord, SinkResult, build_embedding_instances
from slack_harvester.sources.policy import CallPolicy

logger = logging.getLogger(__name__)


class EmbeddingConfig(BaseModel):
    """Configuration for the embedding sink."""

    enabled: bool = Field(default=False, description="Whether batches are sent to the embedding endpoint")
    endpoint: str = Field(
        default=(
            "https://us-central1-aiplatform.googleapis.com/v1/projects/PROJECT_ID/locations/us-central1"
            "/publishers/google/models/text-embedding-004:predict"
        ),
        description="Embedding predict endpoint",
    )
    task_type: str = Field(default=RETRIEVAL_DOCUMENT, description="task_type sent with every instance")
    access_token: Optional[str] = Field(default=None, description="Bearer token, EMBEDDING_ACCESS_TOKEN if unset")
    output_path: Optional[str] = Field(default=None, description="File receiving raw responses, one per line")


class EmbeddingSink:
    """POST batches to the embedding endpoint.

    Args:
        config: Embedding configuration.
        policy: Call policy (timeout/retries) for the POST.
        client: Optional `httpx.AsyncClient`; one is created (and owned) otherwise.
    """

    METHOD = "embedding.predict"

    def __init__(
        self, config: EmbeddingConfig, policy: Optional[CallPolicy] = None, client: Optional[httpx.AsyncClient] = None
    ):
        self.config = config
        self.policy = policy or CallPolicy()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()
        token = config.access_token or os.getenv("EMBEDDING_ACCESS_TOKEN")
        self._headers = {"Content-Type": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _post(self, body: dict) -> str:
        call_start = perf_counter()
        status = "error"
        try:
            resp = await self.client.post(self.config.endpoint, json=body, headers=self._headers)
            status = str(resp.status_code)
            if not resp.is_success:
                raise UpstreamAPIError(self.METHOD, resp.text)
            return resp.text
        except httpx.HTTPError as e:
            raise UpstreamAPIError(self.METHOD, str(e)) from e
        finally:
            API_CALLS.labels(source_id="embedding", method=self.METHOD, status=status).inc()
            API_LATENCY.labels(source_id="embedding", method=self.METHOD, status=status).observe(
                perf_counter() - call_start
            )

    def _write_output(self, text: str) -> None:
        path = Path(self.config.output_path or "")
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(text.replace("\n", " ").strip())
            handle.write("\n")

    async def send(self, records: Sequence[NormalizedRecord]) -> SinkResult:
        """Send one batch. An all-empty batch is skipped without a request."""
        instances = build_embedding_instances(list(records), self.config.task_type)
        if not instances:
            logger.debug("No embeddable instances in batch, skipping POST")
            return SinkResult(ok=True)
        body = {"instances": [i.model_dump() for i in instances]}
        try:
            text = await self.policy.run(self.METHOD, lambda: self._post(body))
        except UpstreamAPIError as e:
            SINK_WRITES.labels(sink="embedding", outcome="error").inc()
            return SinkResult(ok=False, error=e.error)
        SINK_WRITES.labels(sink="embedding", outcome="ok").inc()
        if self.config.output_path:
            try:
                self._write_output(text)
            except OSError as e:
                logger.warning(f"Failed to write embedding response to {self.config.output_path}: {e}")
        return SinkResult(ok=True, body=text)
