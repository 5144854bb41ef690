from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from slack_harvester.sources.policy import CallPolicy, PolicyConfig
from slack_harvester.sources.slack import SlackConfig, SlackHistorySource
from tests.factories import history_response


@pytest.fixture
def temp_dir(tmpdir):
    return tmpdir


@pytest.fixture
def slack_client() -> MagicMock:
    client = MagicMock()
    client.conversations_history = AsyncMock(return_value=history_response([]))
    client.conversations_replies = AsyncMock(return_value={"ok": True, "messages": []})
    client.conversations_join = AsyncMock(return_value={"ok": True})
    client.api_call = AsyncMock(return_value={"ok": True})
    return client


@pytest.fixture
def rate_limiter() -> MagicMock:
    limiter = MagicMock()
    limiter.acquire = AsyncMock()
    return limiter


@pytest.fixture
def make_source(slack_client: MagicMock, rate_limiter: MagicMock):
    def _make(**config: Any) -> SlackHistorySource:
        return SlackHistorySource(
            SlackConfig(id="test", **config),
            client=slack_client,
            rate_limiter=rate_limiter,
            policy=CallPolicy(PolicyConfig(timeout_seconds=5)),
        )

    return _make
