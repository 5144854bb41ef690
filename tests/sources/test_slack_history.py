"""Tests for Slack history pagination, thread fetching and channel join."""

from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest
from slack_sdk.errors import SlackApiError

from slack_harvester.exceptions import ConfigurationError, UpstreamAPIError
from slack_harvester.models.records import HistoryPage
from slack_harvester.sources.slack import SlackConfig, SlackHistorySource
from tests.factories import history_response, make_message


async def collect(source: SlackHistorySource, channel: str = "C123") -> List[HistoryPage]:
    return [page async for page in source.iter_history_pages(channel)]


@pytest.mark.asyncio
async def test_first_page_has_no_cursor_and_next_pages_carry_previous_cursor(make_source, slack_client) -> None:
    """Test cursor threading across pages."""
    slack_client.conversations_history.side_effect = [
        history_response([make_message(1)], cursor="c1"),
        history_response([make_message(2)], cursor="c2"),
        history_response([make_message(3)]),
    ]
    pages = await collect(make_source())

    assert [p.page_number for p in pages] == [1, 2, 3]
    cursors = [c.kwargs["cursor"] for c in slack_client.conversations_history.call_args_list]
    assert cursors == [None, "c1", "c2"]
    assert all(c.kwargs["channel"] == "C123" for c in slack_client.conversations_history.call_args_list)
    assert [p.messages[0].text for p in pages] == ["message 1", "message 2", "message 3"]


@pytest.mark.asyncio
async def test_stops_when_no_cursor(make_source, slack_client) -> None:
    """Test stopping when no cursor is returned."""
    slack_client.conversations_history.return_value = history_response([make_message(1), make_message(2)])
    pages = await collect(make_source())

    assert len(pages) == 1
    assert pages[0].ok
    assert len(pages[0].messages) == 2
    assert slack_client.conversations_history.call_count == 1


@pytest.mark.asyncio
async def test_page_ceiling_limits_history_calls(make_source, slack_client) -> None:
    """Test the default three page ceiling."""
    slack_client.conversations_history.side_effect = [
        history_response([make_message(i)], cursor=f"c{i}") for i in range(10)
    ]
    pages = await collect(make_source())

    assert len(pages) == 3
    assert slack_client.conversations_history.call_count == 3


@pytest.mark.asyncio
async def test_page_ceiling_is_configurable(make_source, slack_client) -> None:
    """Test a configured page ceiling."""
    slack_client.conversations_history.side_effect = [
        history_response([make_message(i)], cursor=f"c{i}") for i in range(10)
    ]
    pages = await collect(make_source(max_pages=5))

    assert len(pages) == 5


@pytest.mark.asyncio
async def test_failed_page_with_cursor_continues(make_source, slack_client) -> None:
    """Test that a failed page with a cursor continues."""
    slack_client.conversations_history.side_effect = [
        history_response([], cursor="c1", ok=False, error="internal_error"),
        history_response([make_message(2)]),
    ]
    pages = await collect(make_source())

    assert len(pages) == 2
    assert not pages[0].ok
    assert pages[0].messages == ()
    assert pages[0].error == "internal_error"
    assert pages[1].ok
    assert slack_client.conversations_history.call_args_list[1].kwargs["cursor"] == "c1"


@pytest.mark.asyncio
async def test_failed_page_without_cursor_stops(make_source, slack_client) -> None:
    """Test that a failed page without a cursor stops."""
    slack_client.conversations_history.side_effect = [
        history_response([make_message(1)], cursor="c1"),
        history_response([], ok=False, error="channel_not_found"),
        history_response([make_message(3)]),
    ]
    pages = await collect(make_source())

    assert [p.ok for p in pages] == [True, False]
    assert slack_client.conversations_history.call_count == 2


@pytest.mark.asyncio
async def test_failed_page_is_not_retried(make_source, slack_client) -> None:
    """Test that a failed page is not retried."""
    slack_client.conversations_history.return_value = history_response([], ok=False, error="fatal_error")
    pages = await collect(make_source())

    assert len(pages) == 1
    assert slack_client.conversations_history.call_count == 1


@pytest.mark.asyncio
async def test_slack_api_error_is_a_failed_page(make_source, slack_client) -> None:
    """Test that SlackApiError gives a failed page."""
    response = MagicMock(status_code=200, data={"ok": False, "error": "not_in_channel"}, headers={})
    slack_client.conversations_history.side_effect = SlackApiError("not_in_channel", response)
    pages = await collect(make_source())

    assert len(pages) == 1
    assert not pages[0].ok
    assert pages[0].error == "not_in_channel"


@pytest.mark.asyncio
async def test_rate_limited_call_notifies_limiter(make_source, slack_client, rate_limiter) -> None:
    """Test that a 429 notifies the rate limiter."""
    response = MagicMock(status_code=429, data={"ok": False, "error": "ratelimited"}, headers={"Retry-After": "7"})
    slack_client.conversations_history.side_effect = SlackApiError("ratelimited", response)
    pages = await collect(make_source())

    assert pages[0].error == "ratelimited"
    rate_limiter.on_rate_limited.assert_called_once_with("conversations.history", 7)
    rate_limiter.acquire.assert_awaited_with("conversations.history")


@pytest.mark.asyncio
async def test_transport_error_is_a_failed_page(make_source, slack_client) -> None:
    """Test that a transport error gives a failed page."""
    slack_client.conversations_history.side_effect = ConnectionError("connection reset")
    pages = await collect(make_source())

    assert len(pages) == 1
    assert not pages[0].ok
    assert "connection reset" in (pages[0].error or "")


@pytest.mark.asyncio
async def test_raw_message_defaults(make_source, slack_client) -> None:
    """Test defaults for missing message fields."""
    slack_client.conversations_history.return_value = history_response(
        [{"ts": "1.0", "subtype": "channel_join", "text": None}]
    )
    pages = await collect(make_source())
    message = pages[0].messages[0]

    assert message.user == ""
    assert message.text == ""
    assert message.reply_count == 0


@pytest.mark.asyncio
async def test_fetch_thread_follows_cursors(make_source, slack_client) -> None:
    """Test thread fetch across reply cursors."""
    slack_client.conversations_replies.side_effect = [
        {"ok": True, "messages": [{"text": "root"}, {"text": "first"}], "response_metadata": {"next_cursor": "r1"}},
        {"ok": True, "messages": [{"text": "second"}]},
    ]
    thread = await make_source().fetch_thread("C123", "1700000001.000100")

    assert [m.text for m in thread] == ["root", "first", "second"]
    calls = slack_client.conversations_replies.call_args_list
    assert calls[0].kwargs["ts"] == "1700000001.000100"
    assert calls[1].kwargs["cursor"] == "r1"


@pytest.mark.asyncio
async def test_fetch_thread_raises_on_failure(make_source, slack_client) -> None:
    """Test that a failed thread fetch raises UpstreamAPIError."""
    slack_client.conversations_replies.return_value = {"ok": False, "error": "thread_not_found"}

    with pytest.raises(UpstreamAPIError) as exc_info:
        await make_source().fetch_thread("C123", "1.0")
    assert exc_info.value.operation == "conversations.replies"
    assert exc_info.value.error == "thread_not_found"


@pytest.mark.asyncio
async def test_join_channel(make_source, slack_client) -> None:
    """Test joining a channel."""
    source = make_source()
    assert await source.join_channel("C123") is True
    slack_client.conversations_join.assert_awaited_once_with(channel="C123")

    slack_client.conversations_join.return_value = {"ok": False, "error": "is_archived"}
    assert await source.join_channel("C123") is False


def test_missing_token_is_rejected() -> None:
    """Test that a missing token is a configuration error."""
    with pytest.raises(ConfigurationError):
        SlackHistorySource(SlackConfig(), secrets={})


def test_create_reads_token_from_env(monkeypatch) -> None:
    """Test reading SLACK_BOT_TOKEN."""
    monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")
    source = SlackHistorySource.create(SlackConfig(id="env"))

    assert source.source_id == "env"
    assert source.client.token == "xoxb-test"


def test_injected_client_is_used(rate_limiter) -> None:
    """Test injecting client and limiter."""
    client = MagicMock()
    client.conversations_history = AsyncMock()
    source = SlackHistorySource(SlackConfig(), client=client, rate_limiter=rate_limiter)

    assert source.client is client
    assert source.rate_limiter is rate_limiter


@pytest.mark.asyncio
async def test_malformed_message_is_a_failed_page(make_source, slack_client) -> None:
    """Test that a message Slack sends in an unexpected shape fails only its page."""
    slack_client.conversations_history.side_effect = [
        history_response([make_message(1), {"ts": "2.0", "reply_count": "n/a"}], cursor="c1"),
        history_response([make_message(3)]),
    ]
    pages = await collect(make_source())

    assert [p.ok for p in pages] == [False, True]
    assert "malformed" in (pages[0].error or "")
    assert slack_client.conversations_history.call_args_list[1].kwargs["cursor"] == "c1"


@pytest.mark.asyncio
async def test_fetch_thread_raises_upstream_error_on_malformed_reply(make_source, slack_client) -> None:
    """Test that a malformed reply surfaces as an upstream error for conversations.replies."""
    slack_client.conversations_replies.return_value = {
        "ok": True,
        "messages": [{"text": "root"}, {"reply_count": "n/a"}],
    }

    with pytest.raises(UpstreamAPIError) as exc_info:
        await make_source().fetch_thread("C123", "1.0")
    assert exc_info.value.operation == "conversations.replies"
