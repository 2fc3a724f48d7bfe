from __future__ import annotations

import asyncio

import pytest

from shipbridge.core.config import get_settings
from shipbridge.core.errors import ProviderConfigError
from shipbridge.services.coordination import (
    DistributedLock,
    InMemoryCoordinationStore,
    LockNotAcquiredError,
    build_coordination_store,
    coordination_key,
)
from shipbridge.services.coordination import buckets


def _clock(start: float = 100.0):
    now = {"t": start}
    return now, lambda: now["t"]


def test_coordination_key_uses_prefix(monkeypatch) -> None:
    monkeypatch.setenv("COORDINATION_PREFIX", "staging")
    get_settings.cache_clear()
    assert coordination_key("rl", "t1", "bluedart") == "staging:rl:t1:bluedart"


def test_build_coordination_store_selects_backend(monkeypatch) -> None:
    assert isinstance(build_coordination_store(), InMemoryCoordinationStore)
    monkeypatch.setenv("COORDINATION_BACKEND", "etcd")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        build_coordination_store()


@pytest.mark.asyncio
async def test_set_if_absent_respects_ttl() -> None:
    now, time_source = _clock()
    store = InMemoryCoordinationStore(time_source=time_source)

    assert await store.set_if_absent("k", "a", 1000) is True
    assert await store.set_if_absent("k", "b", 1000) is False
    now["t"] += 1.5
    assert await store.get("k") is None
    assert await store.set_if_absent("k", "b", 1000) is True
    assert await store.get("k") == "b"


@pytest.mark.asyncio
async def test_compare_and_swap_only_applies_on_expected_value() -> None:
    store = InMemoryCoordinationStore()

    assert await store.compare_and_swap("doc", None, "v1") is True
    assert await store.compare_and_swap("doc", None, "v2") is False
    assert await store.compare_and_swap("doc", "stale", "v2") is False
    assert await store.compare_and_swap("doc", "v1", "v2") is True
    assert await store.get("doc") == "v2"


@pytest.mark.asyncio
async def test_compare_and_delete_and_incr() -> None:
    store = InMemoryCoordinationStore()
    await store.set_if_absent("lock", "holder-1", 5000)

    assert await store.compare_and_delete("lock", "holder-2") is False
    assert await store.compare_and_delete("lock", "holder-1") is True
    assert await store.get("lock") is None

    assert await store.incr("count") == 1
    assert await store.incr("count", 4) == 5


def test_bucket_math_refills_and_caps() -> None:
    assert buckets.refill_tokens(tokens=0.0, last_ms=0, now_ms=1_000, rate=2.0, capacity=5) == 2.0
    assert buckets.refill_tokens(tokens=4.5, last_ms=0, now_ms=10_000, rate=2.0, capacity=5) == 5.0
    # Clock skew backwards never adds tokens.
    assert buckets.refill_tokens(tokens=1.0, last_ms=5_000, now_ms=4_000, rate=2.0, capacity=5) == 1.0


def test_bucket_retry_after_computation() -> None:
    assert buckets.retry_after_ms(0.0, rate=2.0, cost=1) == 500
    assert buckets.retry_after_ms(2.0, rate=2.0, cost=1) == 0
    assert buckets.retry_after_ms(0.0, rate=0.0, cost=1) == 1000


@pytest.mark.asyncio
async def test_take_tokens_denies_past_capacity() -> None:
    store = InMemoryCoordinationStore()
    results = [
        await store.take_tokens("b", capacity=2, refill_per_s=2.0, cost=1, now_ms=1_000)
        for _ in range(3)
    ]

    assert [result.allowed for result in results] == [True, True, False]
    assert results[2].retry_after_ms == 500

    later = await store.take_tokens("b", capacity=2, refill_per_s=2.0, cost=1, now_ms=1_500)
    assert later.allowed is True


@pytest.mark.asyncio
async def test_lock_excludes_second_holder() -> None:
    store = InMemoryCoordinationStore()
    first = DistributedLock(store, "t1:bluedart:auth", ttl_ms=5000, wait_ms=0)
    second = DistributedLock(store, "t1:bluedart:auth", ttl_ms=5000, wait_ms=20, poll_interval_ms=5)

    assert await first.acquire() is True
    assert await second.acquire() is False
    assert await first.release() is True
    assert await second.acquire() is True
    assert second.held


@pytest.mark.asyncio
async def test_expired_lock_release_does_not_remove_new_holder() -> None:
    now, time_source = _clock()
    store = InMemoryCoordinationStore(time_source=time_source)
    stale = DistributedLock(store, "res", ttl_ms=1000, wait_ms=0)
    fresh = DistributedLock(store, "res", ttl_ms=1000, wait_ms=0)

    assert await stale.acquire() is True
    now["t"] += 2
    assert await fresh.acquire() is True

    assert await stale.release() is False
    assert await store.get(fresh.key) is not None


@pytest.mark.asyncio
async def test_hold_raises_when_lock_is_busy() -> None:
    store = InMemoryCoordinationStore()
    holder = DistributedLock(store, "busy", ttl_ms=5000, wait_ms=0)
    await holder.acquire()

    with pytest.raises(LockNotAcquiredError):
        async with DistributedLock(store, "busy", ttl_ms=5000, wait_ms=10, poll_interval_ms=5).hold():
            pass


@pytest.mark.asyncio
async def test_hold_releases_on_error() -> None:
    store = InMemoryCoordinationStore()
    lock = DistributedLock(store, "work", ttl_ms=5000, wait_ms=0)

    with pytest.raises(RuntimeError):
        async with lock.hold():
            raise RuntimeError("boom")

    assert await store.get(lock.key) is None


@pytest.mark.asyncio
async def test_renewed_hold_outlives_ttl() -> None:
    store = InMemoryCoordinationStore()
    lock = DistributedLock(store, "slow-work", ttl_ms=40, wait_ms=0)
    rival = DistributedLock(store, "slow-work", ttl_ms=40, wait_ms=0)

    async with lock.hold(renew=True):
        await asyncio.sleep(0.2)
        assert await rival.acquire() is False
        assert await store.get(lock.key) is not None

    assert await store.get(lock.key) is None
    assert await rival.acquire() is True


@pytest.mark.asyncio
async def test_extend_fails_once_ownership_is_lost() -> None:
    now, time_source = _clock()
    store = InMemoryCoordinationStore(time_source=time_source)
    lock = DistributedLock(store, "res", ttl_ms=1000, wait_ms=0)

    assert await lock.extend() is False
    assert await lock.acquire() is True
    assert await lock.extend() is True
    now["t"] += 2
    assert await DistributedLock(store, "res", ttl_ms=1000, wait_ms=0).acquire() is True
    assert await lock.extend() is False
