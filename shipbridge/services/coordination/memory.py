from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

from shipbridge.services.coordination import buckets
from shipbridge.services.coordination.buckets import TokenTake


@dataclass
class _Entry:
    value: str
    expires_at: float | None


@dataclass
class _Bucket:
    tokens: float
    ts_ms: int
    expires_at: float


class InMemoryCoordinationStore:
    """Single-process coordination store for tests and local development.

    Mirrors the Redis semantics (TTL expiry, NX writes, compare-and-delete)
    under one asyncio lock so operations stay atomic with respect to each
    other inside the event loop.
    """

    def __init__(self, *, time_source: Callable[[], float] | None = None) -> None:
        self._time = time_source or time.monotonic
        self._entries: dict[str, _Entry] = {}
        self._buckets: dict[str, _Bucket] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._time():
            del self._entries[key]
            return None
        return entry

    def _expiry(self, ttl_ms: int | None) -> float | None:
        if ttl_ms is None or ttl_ms <= 0:
            return None
        return self._time() + ttl_ms / 1000.0

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = _Entry(value, self._expiry(ttl_ms))
            return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry.value != expected:
                return False
            del self._entries[key]
            return True

    async def compare_and_swap(
        self,
        key: str,
        expected: str | None,
        value: str,
        ttl_ms: int | None = None,
    ) -> bool:
        async with self._lock:
            entry = self._live(key)
            current = entry.value if entry else None
            if current != expected:
                return False
            self._entries[key] = _Entry(value, self._expiry(ttl_ms))
            return True

    async def incr(self, key: str, amount: int = 1, ttl_ms: int | None = None) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry("0", self._expiry(ttl_ms))
                self._entries[key] = entry
            entry.value = str(int(entry.value) + amount)
            return int(entry.value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)
            self._buckets.pop(key, None)

    async def take_tokens(
        self,
        key: str,
        *,
        capacity: int,
        refill_per_s: float,
        cost: int,
        now_ms: int,
    ) -> TokenTake:
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is not None and bucket.expires_at <= self._time():
                bucket = None
            decision, tokens, ts_ms = buckets.take(
                tokens=bucket.tokens if bucket else None,
                last_ms=bucket.ts_ms if bucket else None,
                now_ms=now_ms,
                rate=refill_per_s,
                capacity=capacity,
                cost=cost,
            )
            ttl_s = buckets.bucket_ttl_seconds(refill_per_s, capacity)
            self._buckets[key] = _Bucket(tokens=tokens, ts_ms=ts_ms, expires_at=self._time() + ttl_s)
            return decision
