from __future__ import annotations

from shipbridge.core.config import get_settings
from shipbridge.core.errors import ProviderConfigError
from shipbridge.services.coordination.base import CoordinationStore, coordination_key
from shipbridge.services.coordination.buckets import TokenTake
from shipbridge.services.coordination.locks import DistributedLock, LockNotAcquiredError
from shipbridge.services.coordination.memory import InMemoryCoordinationStore
from shipbridge.services.coordination.redis_store import RedisCoordinationStore


def build_coordination_store() -> CoordinationStore:
    settings = get_settings()
    backend = settings.coordination_backend.lower()
    if backend == "redis":
        return RedisCoordinationStore()
    if backend == "memory":
        return InMemoryCoordinationStore()
    raise ProviderConfigError(f"Unsupported coordination backend: {settings.coordination_backend}")


__all__ = [
    "CoordinationStore",
    "DistributedLock",
    "InMemoryCoordinationStore",
    "LockNotAcquiredError",
    "RedisCoordinationStore",
    "TokenTake",
    "build_coordination_store",
    "coordination_key",
]
