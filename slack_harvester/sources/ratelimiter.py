"""Adaptive, per-method rate limiter for async Slack Web API usage.

Each Slack method gets a token bucket refilled at `rpm / 60` tokens per second
with capacity `burst`. `acquire` awaits until a token is available, adding a
small jitter when it has to wait. A 429 halves the method's target RPM (down to
a floor), collapses the burst to 1 and blocks the method until `Retry-After`
has elapsed. After 120 s without a 429 the bucket recovers by 10% per step up
to `cap`, widening the burst back to its configured size.

Slack rate tiers: https://docs.slack.dev/apis/web-api/rate-limits/
`conversations.history` and `conversations.replies` are Tier 3, `apps.datastore.*`
methods are Tier 4. Targets are seeded slightly under the nominal thresholds.

The limiter is event-loop local. Concurrent reply fetches of one batch share
the `conversations.replies` bucket, so a burst of up to 25 tasks is paced
rather than fired at once.
"""

import asyncio
import logging
import random
import time
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class _Bucket:
    """Token bucket for a single API method with backoff and recovery."""

    def __init__(self, rpm: float, cap: float, burst: int):
        self.target_rpm = max(1.0, float(rpm))
        self.cap_rpm = max(self.target_rpm, float(cap))
        self.burst_capacity = max(1, int(burst))
        self.recovery_max_burst = self.burst_capacity
        self.tokens = float(self.burst_capacity)
        self.last_refill_ts = time.monotonic()
        self.next_allowed_after: float = 0.0
        self.healthy_since_ts: float = time.monotonic()
        self.min_rpm = 6.0

    def refill(self, now: float) -> None:
        per_sec = self.target_rpm / 60.0
        elapsed = max(0.0, now - self.last_refill_ts)
        added = elapsed * per_sec
        if added > 0:
            self.tokens = min(self.burst_capacity, self.tokens + added)
            self.last_refill_ts = now

    def acquire_one(self, now: float) -> float:
        """Consume a token if possible and return the seconds to wait otherwise."""
        self.refill(now)
        if now < self.next_allowed_after:
            return self.next_allowed_after - now
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return 0.0
        per_sec = self.target_rpm / 60.0
        deficit = 1.0 - self.tokens
        return deficit / per_sec

    def on_rate_limited(self, wait_seconds: float) -> None:
        now = time.monotonic()
        self.healthy_since_ts = now
        new_rpm = max(self.min_rpm, self.target_rpm * 0.5)
        if new_rpm < self.target_rpm:
            logger.info(f"Limiter backoff: rpm {self.target_rpm:.2f} -> {new_rpm:.2f}")
        self.target_rpm = new_rpm
        self.burst_capacity = 1
        self.tokens = min(self.tokens, 1.0)
        self.next_allowed_after = max(self.next_allowed_after, now + float(wait_seconds))

    def maybe_recover(self, now: float) -> None:
        if now - self.healthy_since_ts < 120.0:
            return
        increased = min(self.cap_rpm, self.target_rpm * 1.10)
        if increased > self.target_rpm:
            logger.debug(f"Limiter recovery: rpm {self.target_rpm:.2f} -> {increased:.2f}")
            self.target_rpm = increased
        if self.burst_capacity < self.recovery_max_burst:
            self.burst_capacity += 1
        self.healthy_since_ts = now


class AdaptiveRateLimiter:
    """Per-method async rate limiter.

    Args:
        defaults: Mapping of method -> {"rpm": float, "cap": float, "burst": int}.
            Unknown methods get a conservative default bucket.
    """

    def __init__(self, defaults: Dict[str, Dict[str, float]]):
        self._buckets: Dict[str, _Bucket] = {}
        for method, cfg in defaults.items():
            self._buckets[method] = _Bucket(
                rpm=float(cfg.get("rpm", 20.0)),
                cap=float(cfg.get("cap", 20.0)),
                burst=int(cfg.get("burst", 5)),
            )

    def _get_bucket(self, method: str) -> _Bucket:
        if method not in self._buckets:
            self._buckets[method] = _Bucket(rpm=20.0, cap=20.0, burst=5)
        return self._buckets[method]

    async def acquire(self, method: str) -> None:
        """Wait until a request for `method` may proceed."""
        bucket = self._get_bucket(method)
        while True:
            now = time.monotonic()
            bucket.maybe_recover(now)
            sleep_needed = bucket.acquire_one(now)
            if sleep_needed <= 0:
                return
            jitter = random.uniform(0.05, 0.15)
            logger.debug(
                f"[{method}] pacing: sleeping {sleep_needed + jitter:.3f}s "
                f"(rpm {bucket.target_rpm:.2f}, burst {bucket.burst_capacity}, tokens {bucket.tokens:.2f})"
            )
            await asyncio.sleep(sleep_needed + jitter)

    def on_rate_limited(self, method: str, wait_seconds: Optional[float]) -> None:
        """Record a 429 for `method`, honoring `Retry-After` (defaults to 1 s)."""
        if wait_seconds is None or wait_seconds <= 0:
            wait_seconds = 1
        self._get_bucket(method).on_rate_limited(wait_seconds)
