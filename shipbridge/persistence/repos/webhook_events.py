from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shipbridge.core.timeutils import utc_now
from shipbridge.domain.models import WebhookEvent


WEBHOOK_STATUS_PENDING = "pending"
WEBHOOK_STATUS_PROCESSING = "processing"
WEBHOOK_STATUS_PROCESSED = "processed"
WEBHOOK_STATUS_FAILED = "failed"
WEBHOOK_STATUS_DUPLICATE = "duplicate"


async def get_event(session: AsyncSession, event_id: int) -> WebhookEvent | None:
    result = await session.execute(select(WebhookEvent).where(WebhookEvent.id == event_id))
    return result.scalar_one_or_none()


async def claim_for_processing(
    session: AsyncSession,
    event_id: int,
    *,
    stale_before: datetime,
) -> WebhookEvent | None:
    """Atomically move an event to processing; None when someone else owns it.

    Pending and failed events are claimable, as are processing claims taken
    before ``stale_before`` (their worker died mid-run).
    """
    result = await session.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.id == event_id,
            or_(
                WebhookEvent.status.in_([WEBHOOK_STATUS_PENDING, WEBHOOK_STATUS_FAILED]),
                and_(
                    WebhookEvent.status == WEBHOOK_STATUS_PROCESSING,
                    WebhookEvent.claimed_at < stale_before,
                ),
            ),
        )
        .values(status=WEBHOOK_STATUS_PROCESSING, claimed_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount != 1:
        return None
    return await get_event(session, event_id)


async def get_first_delivery(
    session: AsyncSession,
    *,
    provider: str,
    tenant_id: str,
    content_hash: str,
) -> WebhookEvent | None:
    result = await session.execute(
        select(WebhookEvent).where(
            WebhookEvent.provider == provider,
            WebhookEvent.tenant_id == tenant_id,
            WebhookEvent.dedupe_hash == content_hash,
        )
    )
    return result.scalar_one_or_none()


async def insert_first_delivery(
    session: AsyncSession,
    *,
    provider: str,
    tenant_id: str,
    topic: str | None,
    content_hash: str,
    signature: str | None,
    signature_valid: bool,
    payload_json: Any | None,
    expires_at: datetime,
) -> WebhookEvent | None:
    # Returns None when (provider, tenant, hash) was already recorded.
    event = WebhookEvent(
        provider=provider,
        tenant_id=tenant_id,
        topic=topic,
        content_hash=content_hash,
        dedupe_hash=content_hash,
        signature=signature,
        signature_valid=signature_valid,
        status=WEBHOOK_STATUS_PENDING,
        payload_json=payload_json,
        received_at=utc_now(),
        expires_at=expires_at,
    )
    session.add(event)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return None
    return event


async def insert_duplicate(
    session: AsyncSession,
    *,
    provider: str,
    tenant_id: str,
    topic: str | None,
    content_hash: str,
    signature: str | None,
    duplicate_of_id: int | None,
    expires_at: datetime,
) -> WebhookEvent:
    # Duplicates keep a NULL dedupe_hash so they never collide with the first delivery.
    event = WebhookEvent(
        provider=provider,
        tenant_id=tenant_id,
        topic=topic,
        content_hash=content_hash,
        dedupe_hash=None,
        duplicate_of_id=duplicate_of_id,
        signature=signature,
        signature_valid=True,
        status=WEBHOOK_STATUS_DUPLICATE,
        received_at=utc_now(),
        expires_at=expires_at,
    )
    session.add(event)
    await session.commit()
    return event


async def mark_processed(session: AsyncSession, event_id: int, *, canonical_status: str | None) -> None:
    await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .values(
            status=WEBHOOK_STATUS_PROCESSED,
            canonical_status=canonical_status,
            failure_reason=None,
            processed_at=utc_now(),
        )
    )
    await session.commit()


async def mark_failed(session: AsyncSession, event_id: int, *, reason: str) -> None:
    await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .values(
            status=WEBHOOK_STATUS_FAILED,
            failure_reason=reason[:2000],
            processed_at=utc_now(),
        )
    )
    await session.commit()


async def list_failed(session: AsyncSession, *, provider: str | None = None, limit: int = 100) -> list[WebhookEvent]:
    # Surface failed events for inspection and manual replay.
    stmt = select(WebhookEvent).where(WebhookEvent.status == WEBHOOK_STATUS_FAILED)
    if provider is not None:
        stmt = stmt.where(WebhookEvent.provider == provider)
    result = await session.execute(stmt.order_by(WebhookEvent.id).limit(limit))
    return list(result.scalars().all())


async def prune_expired(session: AsyncSession, *, now: datetime | None = None) -> int:
    result = await session.execute(delete(WebhookEvent).where(WebhookEvent.expires_at < (now or utc_now())))
    await session.commit()
    return int(result.rowcount or 0)
