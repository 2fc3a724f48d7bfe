from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import random
import secrets
import time
from typing import AsyncIterator

from shipbridge.core.config import get_settings
from shipbridge.core.errors import ShipbridgeError
from shipbridge.services.coordination.base import CoordinationStore, coordination_key
from shipbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class LockNotAcquiredError(ShipbridgeError):
    """Lock wait bound elapsed while another holder kept the lock."""


class DistributedLock:
    """TTL lock in the coordination store, released only by its holder token."""

    def __init__(
        self,
        store: CoordinationStore,
        resource: str,
        *,
        ttl_ms: int,
        wait_ms: int,
        poll_interval_ms: int | None = None,
    ) -> None:
        self._store = store
        self._key = coordination_key("lock", resource)
        self._ttl_ms = max(1, int(ttl_ms))
        self._wait_ms = max(0, int(wait_ms))
        self._poll_ms = max(1, int(poll_interval_ms or get_settings().lock_poll_interval_ms))
        self._holder: str | None = None

    @property
    def key(self) -> str:
        return self._key

    @property
    def held(self) -> bool:
        return self._holder is not None

    async def acquire(self) -> bool:
        # Poll SET-NX until acquired or the wait bound elapses.
        token = secrets.token_hex(16)
        deadline = time.monotonic() + self._wait_ms / 1000.0
        while True:
            if await self._store.set_if_absent(self._key, token, self._ttl_ms):
                self._holder = token
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            # Jitter polls so waiters do not stampede the store in lockstep.
            sleep_s = min(remaining, (self._poll_ms / 1000.0) * random.uniform(0.5, 1.5))
            await asyncio.sleep(sleep_s)

    async def release(self) -> bool:
        if self._holder is None:
            return False
        token, self._holder = self._holder, None
        released = await self._store.compare_and_delete(self._key, token)
        if not released:
            # TTL expired and someone else may now hold the lock; never delete by key alone.
            logger.warning("lock_release_skipped key=%s reason=not_holder", self._key)
        return released

    async def extend(self) -> bool:
        # Reset the TTL, but only while our holder token is still the one stored.
        if self._holder is None:
            return False
        return await self._store.compare_and_swap(self._key, self._holder, self._holder, self._ttl_ms)

    async def _keep_alive(self) -> None:
        interval_s = max(1.0, self._ttl_ms / 3.0) / 1000.0
        while self._holder is not None:
            await asyncio.sleep(interval_s)
            if not await self.extend():
                increment_counter("lock_renewal_lost_total")
                logger.error("lock_renewal_lost key=%s", self._key)
                return

    @asynccontextmanager
    async def hold(self, *, renew: bool = False) -> AsyncIterator["DistributedLock"]:
        """Hold the lock for the body of the ``async with`` block.

        With ``renew`` the TTL is extended in the background until the block
        exits, so bodies that outlive ``ttl_ms`` keep exclusive ownership. The
        TTL then only bounds how long a crashed holder blocks others.
        """
        if not await self.acquire():
            raise LockNotAcquiredError(f"lock {self._key} not acquired within {self._wait_ms}ms")
        keeper = asyncio.create_task(self._keep_alive()) if renew else None
        try:
            yield self
        finally:
            if keeper is not None:
                keeper.cancel()
            # Shield the release so a cancelled caller still frees the lock.
            await asyncio.shield(self.release())
