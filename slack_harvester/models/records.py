"""Data model for harvested Slack messages.

Raw messages come straight from `conversations.history` / `conversations.replies`.
Normalized records are what the sinks receive; the datastore schema is
`object_id` (primary key), `user`, `message` and the optional `replies`.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"


class RawMessage(BaseModel):
    """A message as returned by the Slack Web API.

    Only the fields the pipeline needs are declared; anything else Slack sends
    is kept as extra data and ignored.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    user: str = ""
    text: str = ""
    ts: Optional[str] = None
    thread_ts: Optional[str] = None
    reply_count: int = 0

    @field_validator("user", "text", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("reply_count", mode="before")
    @classmethod
    def _reply_count_default(cls, value: Any) -> int:
        return 0 if value is None else int(value)


class NormalizedRecord(BaseModel):
    """Internal record persisted to the datastore and sent to the embedding service.

    `ts`, `thread_ts` and `reply_count` are carried for reply resolution only
    and never leave the pipeline.
    """

    object_id: str
    user: str
    message: str
    replies: Optional[str] = None
    ts: Optional[str] = Field(default=None, exclude=True)
    thread_ts: Optional[str] = Field(default=None, exclude=True)
    reply_count: int = Field(default=0, exclude=True)

    @property
    def parent_ts(self) -> Optional[str]:
        """Timestamp identifying the thread: `thread_ts`, or the message's own `ts`."""
        return self.thread_ts or self.ts

    @property
    def needs_replies(self) -> bool:
        return self.reply_count > 0

    def to_item(self) -> Dict[str, str]:
        """Datastore item; `replies` is omitted entirely when absent."""
        return self.model_dump(exclude_none=True)


class EmbeddingInstance(BaseModel):
    """One entry of an embedding `predict` request."""

    task_type: str = RETRIEVAL_DOCUMENT
    title: str
    content: str

    @classmethod
    def from_record(cls, record: NormalizedRecord, task_type: str = RETRIEVAL_DOCUMENT) -> "EmbeddingInstance":
        content = record.replies if record.replies is not None else record.message
        return cls(task_type=task_type, title=record.message, content=content)

    @property
    def is_empty(self) -> bool:
        return self.title == "" or self.content == ""


def build_embedding_instances(
    records: List[NormalizedRecord], task_type: str = RETRIEVAL_DOCUMENT
) -> List[EmbeddingInstance]:
    """Build embedding instances for a batch, dropping entries with empty title or content."""
    instances = [EmbeddingInstance.from_record(r, task_type) for r in records]
    return [i for i in instances if not i.is_empty]


@dataclass(frozen=True)
class HistoryPage:
    """One page of channel history.

    A failed page (`ok=False`) carries no messages but may still carry a cursor.
    """

    page_number: int
    ok: bool
    messages: Tuple[RawMessage, ...] = ()
    next_cursor: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SinkResult:
    """Outcome of a sink call."""

    ok: bool
    error: Any = None
    body: Optional[str] = None


class RunState(str, Enum):
    """Lifecycle of a harvest run."""

    RUNNING = "RUNNING"
    AWAITING_EXTERNAL_COMPLETION = "AWAITING_EXTERNAL_COMPLETION"


class FailureRecord(BaseModel):
    """A logged-and-skipped failure."""

    operation: str
    unit: str
    error: Optional[str] = None


@dataclass
class HarvestResult:
    """Result of `HarvestPipeline.run`.

    `completed` is always False: completion is signalled later by whoever owns
    the surrounding workflow.
    """

    channel: str
    completed: bool = False
    state: RunState = RunState.RUNNING
    pages: int = 0
    records: int = 0
    batches: int = 0
    datastore_batches: int = 0
    embedding_batches: int = 0
    failures: List[FailureRecord] = field(default_factory=list)

    def add_failure(self, operation: str, unit: str, error: Any) -> None:
        self.failures.append(FailureRecord(operation=operation, unit=unit, error=None if error is None else str(error)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "state": self.state.value,
            "channel": self.channel,
            "pages": self.pages,
            "records": self.records,
            "batches": self.batches,
            "datastore_batches": self.datastore_batches,
            "embedding_batches": self.embedding_batches,
            "failures": [f.model_dump() for f in self.failures],
        }
