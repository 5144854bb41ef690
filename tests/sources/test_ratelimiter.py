"""Tests for the async adaptive rate limiter."""

import time
from unittest.mock import AsyncMock, patch

import pytest

from slack_harvester.sources.ratelimiter import AdaptiveRateLimiter, _Bucket


def test_bucket_consumes_burst_then_waits() -> None:
    """Test burst consumption then waiting."""
    bucket = _Bucket(rpm=60, cap=60, burst=2)
    now = bucket.last_refill_ts

    assert bucket.acquire_one(now) == 0.0
    assert bucket.acquire_one(now) == 0.0
    wait = bucket.acquire_one(now)
    assert wait == pytest.approx(1.0, rel=0.01)


def test_bucket_backoff_on_rate_limit() -> None:
    """Test backoff after a 429."""
    bucket = _Bucket(rpm=40, cap=60, burst=10)
    bucket.on_rate_limited(5)

    assert bucket.target_rpm == 20
    assert bucket.burst_capacity == 1
    assert bucket.next_allowed_after > time.monotonic() + 4
    assert bucket.acquire_one(time.monotonic()) > 4


def test_bucket_backoff_respects_floor() -> None:
    """Test the minimum RPM floor."""
    bucket = _Bucket(rpm=8, cap=8, burst=1)
    bucket.on_rate_limited(1)

    assert bucket.target_rpm == bucket.min_rpm


def test_bucket_recovers_after_healthy_period() -> None:
    """Test recovery after a healthy period."""
    bucket = _Bucket(rpm=40, cap=60, burst=3)
    bucket.on_rate_limited(0)
    bucket.maybe_recover(bucket.healthy_since_ts + 121)

    assert bucket.target_rpm == pytest.approx(22.0)
    assert bucket.burst_capacity == 2


@pytest.mark.asyncio
async def test_acquire_does_not_sleep_with_tokens_available() -> None:
    """Test acquire without waiting while tokens remain."""
    limiter = AdaptiveRateLimiter(defaults={"conversations.history": {"rpm": 45, "cap": 60, "burst": 10}})
    with patch("slack_harvester.sources.ratelimiter.asyncio.sleep", new=AsyncMock()) as sleep:
        for _ in range(10):
            await limiter.acquire("conversations.history")
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_acquire_sleeps_during_cooldown() -> None:
    """Test acquire waiting out a Retry-After cooldown."""
    limiter = AdaptiveRateLimiter(defaults={})
    limiter.on_rate_limited("conversations.replies", 2)
    calls = []

    async def fake_sleep(seconds: float) -> None:
        calls.append(seconds)
        bucket = limiter._get_bucket("conversations.replies")
        bucket.next_allowed_after = 0.0

    with patch("slack_harvester.sources.ratelimiter.asyncio.sleep", new=fake_sleep):
        await limiter.acquire("conversations.replies")
    assert len(calls) == 1
    assert calls[0] > 1.5


def test_unknown_method_gets_default_bucket() -> None:
    """Test the default bucket for unknown methods."""
    limiter = AdaptiveRateLimiter(defaults={})
    bucket = limiter._get_bucket("apps.datastore.bulkPut")

    assert bucket.target_rpm == 20.0
    assert bucket.burst_capacity == 5
