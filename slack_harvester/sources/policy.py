"""Call policy applied to every downstream call site.

A `CallPolicy` bundles timeout, retry count and exponential backoff. The
defaults keep the harvester's conservative behaviour (no retries: a failed
call is logged and skipped) while bounding each call with a timeout so a hung
upstream cannot stall the whole run.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, Field

from slack_harvester.exceptions import CallTimeoutError, UpstreamAPIError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PolicyConfig(BaseModel):
    """Timeout/retry/backoff settings shared by every downstream call."""

    timeout_seconds: Optional[float] = Field(default=30.0, description="Per-call timeout, None disables it")
    max_retries: int = Field(default=0, ge=0, description="Retries after the first attempt")
    backoff_base_seconds: float = Field(default=1.0, ge=0, description="Base of the exponential backoff")
    backoff_max_seconds: float = Field(default=30.0, ge=0, description="Upper bound for a single backoff sleep")


class CallPolicy:
    """Run coroutines under a timeout with optional retries.

    Only `UpstreamAPIError` (which includes timeouts) is retried. Anything else
    is a programming or transport error and propagates immediately.

    Args:
        config: Policy settings.
        sleep: Awaitable sleep function, injectable for tests.
    """

    def __init__(
        self, config: Optional[PolicyConfig] = None, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = config or PolicyConfig()
        self._sleep = sleep

    def backoff_for(self, attempt: int) -> float:
        """Return the sleep before retry number `attempt` (1-based), with 0-10% jitter."""
        base = self.config.backoff_base_seconds * (2 ** (attempt - 1))
        wait = min(self.config.backoff_max_seconds, base)
        return wait + random.uniform(0, wait * 0.1)

    async def run(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        prepare: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> T:
        """Await `call()` under the policy.

        Args:
            operation: Operation name used in logs and errors.
            call: Zero-argument factory returning a fresh awaitable per attempt.
            prepare: Awaited before every attempt, outside the timeout (rate limiter pacing).

        Returns:
            The awaited result.

        Raises:
            UpstreamAPIError: When the last attempt failed or timed out.
        """
        attempt = 0
        while True:
            if prepare is not None:
                await prepare()
            try:
                if self.config.timeout_seconds is None:
                    return await call()
                try:
                    return await asyncio.wait_for(call(), timeout=self.config.timeout_seconds)
                except asyncio.TimeoutError as e:
                    raise CallTimeoutError(operation, self.config.timeout_seconds) from e
            except UpstreamAPIError as e:
                attempt += 1
                if attempt > self.config.max_retries:
                    raise
                wait_seconds = self.backoff_for(attempt)
                logger.warning(
                    f"{operation} failed ({e.error}), retry {attempt}/{self.config.max_retries} in {wait_seconds:.2f}s"
                )
                await self._sleep(wait_seconds)
