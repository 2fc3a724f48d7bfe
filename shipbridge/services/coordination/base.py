from __future__ import annotations

from typing import Protocol

from shipbridge.core.config import get_settings
from shipbridge.services.coordination.buckets import TokenTake


class CoordinationStore(Protocol):
    """Atomic primitives shared by every process talking to one provider.

    Every mutation is a single atomic operation on the backend; callers never
    read a value and write it back unconditionally.
    """

    async def get(self, key: str) -> str | None:
        ...

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        ...

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        ...

    async def compare_and_swap(
        self,
        key: str,
        expected: str | None,
        value: str,
        ttl_ms: int | None = None,
    ) -> bool:
        ...

    async def incr(self, key: str, amount: int = 1, ttl_ms: int | None = None) -> int:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def take_tokens(
        self,
        key: str,
        *,
        capacity: int,
        refill_per_s: float,
        cost: int,
        now_ms: int,
    ) -> TokenTake:
        ...


def coordination_key(*parts: str) -> str:
    # Namespace coordination keys so environments can share one Redis.
    prefix = get_settings().coordination_prefix
    return ":".join([prefix, *parts])
