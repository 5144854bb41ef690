"""Slack source: channel history pagination and thread retrieval.

This module implements the messaging side of the harvester:
- Uses the async Slack WebClient with a rate-limit retry handler (respecting Retry-After).
- Applies an adaptive, tier-aware rate limiter per method.
- Wraps every call in a `CallPolicy` (timeout, optional retries).
- Emits Prometheus metrics for per-call latency/count and per-operation totals.
- Logs operation lifecycle at INFO and per-page details at DEBUG.

Non-ok responses are never retried by default: a failed history page yields no
messages and a failed thread fetch leaves the record without replies.
"""

import logging
import os
from time import perf_counter
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError
from slack_sdk.errors import SlackApiError
from slack_sdk.http_retry.builtin_async_handlers import AsyncRateLimitErrorRetryHandler
from slack_sdk.web.async_client import AsyncWebClient

from slack_harvester.exceptions import ConfigurationError, UpstreamAPIError
from slack_harvester.metrics.metrics import API_CALLS, API_LATENCY, OP_ITEMS, OP_LATENCY
from slack_harvester.models.records import HistoryPage, RawMessage
from slack_harvester.sources.policy import CallPolicy
from slack_harvester.sources.ratelimiter import AdaptiveRateLimiter

logger = logging.getLogger(__name__)


class SlackConfig(BaseModel):
    """Configuration for the Slack messaging API."""

    id: str = Field(default="slack-main", description="Source ID used in metrics and logs")
    page_limit: int = Field(default=200, ge=1, le=1000, description="Messages requested per history page")
    max_pages: int = Field(default=3, ge=1, description="Max history pages per run (first page included)")
    join_channel: bool = Field(default=False, description="Call conversations.join before harvesting")
    tier3_rpm: float = Field(default=45.0, description="Target RPM for Tier 3 methods")
    tier3_cap: float = Field(default=60.0, description="Max RPM for Tier 3 methods")
    tier4_rpm: float = Field(default=90.0, description="Target RPM for Tier 4 methods")
    tier4_cap: float = Field(default=120.0, description="Max RPM for Tier 4 methods")


def _next_cursor(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    metadata = (payload or {}).get("response_metadata") or {}
    return metadata.get("next_cursor") or None


def _parse_messages(method: str, payload: Dict[str, Any]) -> List[RawMessage]:
    try:
        return [RawMessage.model_validate(m) for m in payload.get("messages") or []]
    except ValidationError as e:
        raise UpstreamAPIError(method, f"malformed message payload: {e}", response=payload) from e


class SlackHistorySource:
    """Async access to a channel's history, threads and membership.

    Args:
        config: Slack configuration.
        secrets: Must contain `bot_token` unless `client` is injected.
        client: Optional pre-built `AsyncWebClient` (tests inject mocks here).
        rate_limiter: Optional limiter; a tier-aware default is built otherwise.
        policy: Optional call policy; defaults to no retries with a 30 s timeout.
    """

    @classmethod
    def create(
        cls, config: SlackConfig, secrets: Optional[dict] = None, policy: Optional[CallPolicy] = None
    ) -> "SlackHistorySource":
        """Create a source, taking the bot token from `SLACK_BOT_TOKEN` when not in `secrets`."""
        secrets = dict(secrets or {})
        if not secrets.get("bot_token"):
            token = os.getenv("SLACK_BOT_TOKEN")
            if token:
                secrets["bot_token"] = token
        return cls(config=config, secrets=secrets, policy=policy)

    def __init__(
        self,
        config: SlackConfig,
        secrets: Optional[dict] = None,
        client: Optional[AsyncWebClient] = None,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
        policy: Optional[CallPolicy] = None,
    ):
        self.config = config
        self.source_id = config.id
        self.policy = policy or CallPolicy()

        if client is not None:
            self.client = client
        else:
            token = (secrets or {}).get("bot_token")
            if not token:
                raise ConfigurationError("Slack bot token is not set")
            self.client = AsyncWebClient(
                token=token,
                retry_handlers=[AsyncRateLimitErrorRetryHandler(max_retry_count=5)],
            )

        if rate_limiter:
            self.rate_limiter = rate_limiter
        else:
            tier3 = {"rpm": config.tier3_rpm, "cap": config.tier3_cap, "burst": 10}
            tier4 = {"rpm": config.tier4_rpm, "cap": config.tier4_cap, "burst": 25}
            self.rate_limiter = AdaptiveRateLimiter(
                defaults={
                    "conversations.history": tier3,
                    "conversations.replies": tier3,
                    "conversations.join": tier3,
                    "apps.datastore.bulkPut": tier4,
                }
            )

    async def api_call(self, method: str, func: Callable[..., Awaitable[Any]], **kwargs: Any) -> Dict[str, Any]:
        """Execute a Slack API call with rate limiting, the call policy and metrics.

        Args:
            method: Slack method name for metrics and rate limiting (e.g. "conversations.history").
            func: The async client function to call.
            **kwargs: Arguments for the function.

        Returns:
            The response payload of an ok response.

        Raises:
            UpstreamAPIError: The response was not ok, the call timed out, or the
                transport failed. `response` holds the payload when one exists.
        """

        async def acquire() -> None:
            await self.rate_limiter.acquire(method)

        async def attempt() -> Dict[str, Any]:
            call_start = perf_counter()
            status = "200"
            try:
                resp = await func(**kwargs)
                status = str(getattr(resp, "status_code", 200))
                data: Dict[str, Any] = dict(getattr(resp, "data", resp) or {})
                if not data.get("ok", False):
                    raise UpstreamAPIError(method, data.get("error"), response=data)
                return data
            except SlackApiError as e:
                response = getattr(e, "response", None)
                status = str(getattr(response, "status_code", 400))
                body = getattr(response, "data", None)
                data = dict(body) if isinstance(body, dict) else {}
                if status == "429":
                    headers = getattr(response, "headers", None) or {}
                    retry_after = int(headers.get("Retry-After", "1"))
                    logger.info(f"429 on {method}, Retry-After={retry_after}s")
                    self.rate_limiter.on_rate_limited(method, retry_after)
                raise UpstreamAPIError(method, data.get("error") or str(e), response=data) from e
            except UpstreamAPIError:
                raise
            except Exception as e:
                status = "error"
                logger.debug(f"Unexpected error in {method}: {e}")
                raise UpstreamAPIError(method, str(e)) from e
            finally:
                API_CALLS.labels(source_id=self.source_id, method=method, status=status).inc()
                API_LATENCY.labels(source_id=self.source_id, method=method, status=status).observe(
                    perf_counter() - call_start
                )

        return await self.policy.run(method, attempt, prepare=acquire)

    async def join_channel(self, channel_id: str) -> bool:
        """Join the channel so its history is readable. Returns False on failure."""
        try:
            await self.api_call("conversations.join", self.client.conversations_join, channel=channel_id)
        except UpstreamAPIError as e:
            logger.error(f"Error during request conversations.join for {channel_id}: {e.error}")
            return False
        logger.info(f"Joined channel {channel_id}")
        return True

    async def iter_history_pages(self, channel_id: str) -> AsyncIterator[HistoryPage]:
        """Yield history pages for a channel, newest first, as Slack returns them.

        The first request carries no cursor; each next request carries the cursor
        of the previous response. Iteration stops when no cursor is returned or
        after `max_pages` pages. A failed page is yielded empty and iteration only
        continues if the failed response still carried a cursor.

        Args:
            channel_id: Slack channel/conversation ID.

        Yields:
            HistoryPage: One page per API call.
        """
        op_start = perf_counter()
        op_items = 0
        cursor: Optional[str] = None
        page_number = 0
        logger.debug(f"history: start channel={channel_id} max_pages={self.config.max_pages}")
        while page_number < self.config.max_pages:
            page_number += 1
            try:
                resp = await self.api_call(
                    "conversations.history",
                    self.client.conversations_history,
                    channel=channel_id,
                    cursor=cursor,
                    limit=self.config.page_limit,
                )
                messages = tuple(_parse_messages("conversations.history", resp))
                cursor = _next_cursor(resp)
                page = HistoryPage(page_number=page_number, ok=True, messages=messages, next_cursor=cursor)
                op_items += len(messages)
                logger.debug(f"history: page={page_number} channel={channel_id} messages={len(messages)}")
            except UpstreamAPIError as e:
                cursor = _next_cursor(e.response)
                logger.error(f"Error during request conversations.history! page={page_number} error={e.error}")
                page = HistoryPage(page_number=page_number, ok=False, next_cursor=cursor, error=str(e.error))
            yield page
            if not cursor:
                break

        op_elapsed = perf_counter() - op_start
        logger.info(
            f"history: done channel={channel_id} pages={page_number} items={op_items} elapsed={op_elapsed:.3f}s"
        )
        OP_LATENCY.labels(source_id=self.source_id, operation="history").observe(op_elapsed)
        OP_ITEMS.labels(source_id=self.source_id, operation="history").observe(op_items)

    async def fetch_thread(self, channel_id: str, thread_ts: str) -> List[RawMessage]:
        """Fetch every message of a thread (root first), following reply cursors.

        Raises:
            UpstreamAPIError: When any replies page fails or carries a malformed message.
        """
        messages: List[RawMessage] = []
        cursor: Optional[str] = None
        while True:
            resp = await self.api_call(
                "conversations.replies",
                self.client.conversations_replies,
                channel=channel_id,
                ts=thread_ts,
                cursor=cursor,
                limit=self.config.page_limit,
            )
            messages.extend(_parse_messages("conversations.replies", resp))
            cursor = _next_cursor(resp)
            if not cursor:
                return messages
