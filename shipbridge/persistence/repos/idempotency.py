from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shipbridge.core.timeutils import utc_now
from shipbridge.domain.models import IdempotencyRecord


async def get_active_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    provider: str,
    key: str,
) -> IdempotencyRecord | None:
    result = await session.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.tenant_id == tenant_id,
            IdempotencyRecord.provider == provider,
            IdempotencyRecord.idem_key == key,
            IdempotencyRecord.expires_at > utc_now(),
        )
    )
    return result.scalar_one_or_none()


async def insert_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    provider: str,
    key: str,
    operation: str,
    outcome: str,
    result_json: Any | None,
    error_json: dict[str, Any] | None,
    expires_at: datetime,
) -> bool:
    # Uniqueness-constrained insert; returns False when another writer already won.
    # Expired rows that pruning has not reached yet must not block the key forever.
    await session.execute(
        delete(IdempotencyRecord).where(
            IdempotencyRecord.tenant_id == tenant_id,
            IdempotencyRecord.provider == provider,
            IdempotencyRecord.idem_key == key,
            IdempotencyRecord.expires_at <= utc_now(),
        )
    )
    session.add(
        IdempotencyRecord(
            tenant_id=tenant_id,
            provider=provider,
            idem_key=key,
            operation=operation,
            outcome=outcome,
            result_json=result_json,
            error_json=error_json,
            created_at=utc_now(),
            expires_at=expires_at,
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return False
    return True


async def prune_expired(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Remove expired idempotency records to keep storage bounded.
    result = await session.execute(
        delete(IdempotencyRecord).where(IdempotencyRecord.expires_at < (now or utc_now()))
    )
    await session.commit()
    return int(result.rowcount or 0)
