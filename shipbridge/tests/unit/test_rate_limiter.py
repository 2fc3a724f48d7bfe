from __future__ import annotations

import asyncio

import pytest

from shipbridge.core.config import get_settings
from shipbridge.core.errors import ProviderConfigError, RateLimitedError
from shipbridge.services.coordination import InMemoryCoordinationStore
from shipbridge.services.rate_limit import (
    DEFAULT_OPERATION_LIMITS,
    OPERATION_CREATE_SHIPMENT,
    OPERATION_DEFAULT,
    OPERATION_TRACK,
    BucketConfig,
    RateLimiter,
    parse_operation_limits,
)
from shipbridge.services.telemetry import counters_snapshot


class FakeClock:
    # Frozen wall clock advanced only by the injected sleep.
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(clock: FakeClock, **kwargs) -> RateLimiter:
    return RateLimiter(
        InMemoryCoordinationStore(),
        limits={OPERATION_CREATE_SHIPMENT: BucketConfig(capacity=2, refill_per_s=2.0)},
        time_provider=clock.time,
        sleep=clock.sleep,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_third_call_in_same_instant_waits_for_refill() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, max_wait_ms=5000, fail_fast=False)

    first = await limiter.acquire("t1", "bluedart", OPERATION_CREATE_SHIPMENT)
    second = await limiter.acquire("t1", "bluedart", OPERATION_CREATE_SHIPMENT)
    third = await limiter.acquire("t1", "bluedart", OPERATION_CREATE_SHIPMENT)

    assert first.waited_ms == 0 and second.waited_ms == 0
    assert third.allowed is True
    assert third.waited_ms >= 500
    assert clock.sleeps == [0.5]
    assert counters_snapshot()["rate_limit_waits_total"] == 1


@pytest.mark.asyncio
async def test_third_call_fails_fast_with_retry_hint() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, fail_fast=True)

    await limiter.acquire("t1", "bluedart", OPERATION_CREATE_SHIPMENT)
    await limiter.acquire("t1", "bluedart", OPERATION_CREATE_SHIPMENT)
    with pytest.raises(RateLimitedError) as exc_info:
        await limiter.acquire("t1", "bluedart", OPERATION_CREATE_SHIPMENT)

    assert exc_info.value.scope == "local"
    assert exc_info.value.retry_after_ms == 500
    assert clock.sleeps == []
    assert counters_snapshot()[f"rate_limited_total.bluedart.{OPERATION_CREATE_SHIPMENT}"] == 1


@pytest.mark.asyncio
async def test_wait_budget_is_bounded() -> None:
    clock = FakeClock()
    limiter = RateLimiter(
        InMemoryCoordinationStore(),
        limits={OPERATION_TRACK: BucketConfig(capacity=1, refill_per_s=0.1)},
        time_provider=clock.time,
        sleep=clock.sleep,
        max_wait_ms=2000,
        fail_fast=False,
    )
    await limiter.acquire("t1", "delhivery", OPERATION_TRACK)

    with pytest.raises(RateLimitedError) as exc_info:
        await limiter.acquire("t1", "delhivery", OPERATION_TRACK)

    assert exc_info.value.retry_after_ms == 10_000
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_bucket_never_serves_more_than_capacity_within_refill_window() -> None:
    clock = FakeClock()
    limiter = RateLimiter(
        InMemoryCoordinationStore(),
        limits={OPERATION_TRACK: BucketConfig(capacity=5, refill_per_s=1.0)},
        time_provider=clock.time,
        sleep=clock.sleep,
    )

    decisions = await asyncio.gather(
        *[limiter.check("t1", "delhivery", OPERATION_TRACK) for _ in range(20)]
    )
    assert sum(1 for decision in decisions if decision.allowed) == 5

    # Two seconds refill two tokens, still below capacity.
    clock.now += 2.0
    decisions = await asyncio.gather(
        *[limiter.check("t1", "delhivery", OPERATION_TRACK) for _ in range(20)]
    )
    assert sum(1 for decision in decisions if decision.allowed) == 2


@pytest.mark.asyncio
async def test_buckets_are_scoped_per_tenant_and_provider() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, fail_fast=True)

    for tenant, provider in [("t1", "bluedart"), ("t2", "bluedart"), ("t1", "delhivery")]:
        await limiter.acquire(tenant, provider, OPERATION_CREATE_SHIPMENT)
        await limiter.acquire(tenant, provider, OPERATION_CREATE_SHIPMENT)


def test_limits_resolution_order() -> None:
    limiter = RateLimiter(InMemoryCoordinationStore())
    limiter.set_provider_limits("bluedart", {OPERATION_TRACK: BucketConfig(capacity=50, refill_per_s=50.0)})

    assert limiter.limits_for("bluedart", OPERATION_TRACK).capacity == 50
    assert limiter.limits_for("delhivery", OPERATION_TRACK) == DEFAULT_OPERATION_LIMITS[OPERATION_TRACK]
    assert limiter.limits_for("delhivery", "bulk_label") == DEFAULT_OPERATION_LIMITS[OPERATION_DEFAULT]


def test_settings_override_operation_limits(monkeypatch) -> None:
    monkeypatch.setenv("RL_OPERATION_LIMITS_JSON", '{"track": {"capacity": 25, "refill_per_s": 12.5}}')
    get_settings.cache_clear()

    limiter = RateLimiter(InMemoryCoordinationStore())
    assert limiter.limits_for("any", OPERATION_TRACK) == BucketConfig(capacity=25, refill_per_s=12.5)


@pytest.mark.parametrize(
    "raw",
    [
        '["track"]',
        '{"track": {"capacity": 0, "refill_per_s": 1}}',
        '{"track": {"refill_per_s": 1}}',
        '{"track": {"capacity": 1, "refill_per_s": -1}}',
    ],
)
def test_parse_operation_limits_rejects_bad_config(raw: str) -> None:
    with pytest.raises(ProviderConfigError):
        parse_operation_limits(raw)
