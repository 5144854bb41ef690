"""Raw Slack message -> NormalizedRecord."""

import uuid
from typing import Callable, Iterable, List

from slack_harvester.models.records import NormalizedRecord, RawMessage

IdFactory = Callable[[], str]


def random_object_id() -> str:
    return str(uuid.uuid4())


class MessageNormalizer:
    """Copy author and text from a raw message and assign a fresh `object_id`.

    The identifier factory is injectable so tests can pin ids (for instance to
    check that re-running over the same history overwrites datastore rows).
    No text validation happens here; empty messages are filtered at the
    embedding boundary.
    """

    def __init__(self, id_factory: IdFactory = random_object_id):
        self._id_factory = id_factory

    def normalize(self, message: RawMessage) -> NormalizedRecord:
        return NormalizedRecord(
            object_id=str(self._id_factory()),
            user=message.user,
            message=message.text,
            ts=message.ts,
            thread_ts=message.thread_ts,
            reply_count=message.reply_count,
        )

    def normalize_all(self, messages: Iterable[RawMessage]) -> List[NormalizedRecord]:
        return [self.normalize(m) for m in messages]
