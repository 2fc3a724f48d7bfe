from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from shipbridge.core.config import get_settings
from shipbridge.domain.models import Base
from shipbridge.persistence.db import build_engine
from shipbridge.services.coordination import InMemoryCoordinationStore
from shipbridge.services.coordination.redis_store import reset_coordination_redis
from shipbridge.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def _reset_settings_cache(monkeypatch) -> None:
    # Keep coordination in-process and polls short so lock waits stay fast.
    monkeypatch.setenv("COORDINATION_BACKEND", "memory")
    monkeypatch.setenv("LOCK_POLL_INTERVAL_MS", "5")
    get_settings.cache_clear()
    reset_telemetry()
    reset_coordination_redis()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
async def session_factory(tmp_path):
    # File-backed SQLite so concurrent sessions see each other's commits.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'shipbridge.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store() -> InMemoryCoordinationStore:
    return InMemoryCoordinationStore()
