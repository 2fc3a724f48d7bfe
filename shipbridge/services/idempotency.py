from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Awaitable, Callable

from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import SQLAlchemyError

from shipbridge.core.config import get_settings
from shipbridge.core.errors import (
    TERMINAL_ERRORS,
    IdempotencyConflictError,
    IdempotencyInProgressError,
    NotServiceableError,
    ValidationFailedError,
)
from shipbridge.core.timeutils import utc_now
from shipbridge.domain.models import IdempotencyRecord
from shipbridge.persistence.db import SessionFactory, get_session
from shipbridge.persistence.repos import idempotency as idempotency_repo
from shipbridge.services.coordination import CoordinationStore, DistributedLock, LockNotAcquiredError
from shipbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
MAX_KEY_LENGTH = 128


@dataclass(frozen=True)
class IdempotentResult:
    value: Any
    replayed: bool


def normalize_key(value: str) -> str:
    # Enforce idempotency key size constraints for storage safety.
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationFailedError("Idempotency key is empty")
    if len(cleaned) > MAX_KEY_LENGTH:
        raise ValidationFailedError(f"Idempotency key exceeds {MAX_KEY_LENGTH} characters")
    return cleaned


class IdempotencyStore:
    """Runs a mutation at most once per (tenant, provider, key).

    Durable records in Postgres are the source of truth for replay; the
    coordination lock only serializes concurrent first attempts so the
    provider is called once while a duplicate waits for the outcome. The
    lock is renewed while the mutation runs, so a slow provider call never
    lets a waiting duplicate in before the outcome is recorded.
    """

    def __init__(
        self,
        *,
        store: CoordinationStore,
        session_factory: SessionFactory | None = None,
        ttl_hours: int | None = None,
        lock_ttl_ms: int | None = None,
        lock_wait_ms: int | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._session_factory = session_factory or get_session
        self._ttl_hours = settings.idempotency_ttl_hours if ttl_hours is None else ttl_hours
        self._lock_ttl_ms = settings.idempotency_lock_ttl_ms if lock_ttl_ms is None else lock_ttl_ms
        self._lock_wait_ms = settings.idempotency_lock_wait_ms if lock_wait_ms is None else lock_wait_ms

    def _expires_at(self, ttl_hours: int | None = None) -> datetime:
        return utc_now() + timedelta(hours=self._ttl_hours if ttl_hours is None else ttl_hours)

    async def lookup(self, tenant_id: str, provider: str, key: str) -> IdempotencyRecord | None:
        async with self._session_factory() as session:
            return await idempotency_repo.get_active_record(
                session,
                tenant_id=tenant_id,
                provider=provider,
                key=normalize_key(key),
            )

    def _replay(self, record: IdempotencyRecord, operation: str) -> IdempotentResult:
        if record.operation != operation:
            raise IdempotencyConflictError(
                f"Idempotency key already used for operation {record.operation}"
            )
        increment_counter("idempotency_replays_total")
        logger.info(
            "idempotency_replay tenant=%s provider=%s operation=%s outcome=%s",
            record.tenant_id,
            record.provider,
            operation,
            record.outcome,
        )
        if record.outcome == OUTCOME_FAILED:
            error = record.error_json or {}
            error_cls = TERMINAL_ERRORS.get(str(error.get("code")), ValidationFailedError)
            raise error_cls(
                str(error.get("message") or "Stored terminal failure"),
                provider_code=error.get("provider_code"),
            )
        return IdempotentResult(value=record.result_json, replayed=True)

    async def _persist(
        self,
        *,
        tenant_id: str,
        provider: str,
        key: str,
        operation: str,
        outcome: str,
        result_json: Any | None = None,
        error_json: dict[str, Any] | None = None,
        ttl_hours: int | None = None,
    ) -> bool:
        async with self._session_factory() as session:
            return await idempotency_repo.insert_record(
                session,
                tenant_id=tenant_id,
                provider=provider,
                key=key,
                operation=operation,
                outcome=outcome,
                result_json=result_json,
                error_json=error_json,
                expires_at=self._expires_at(ttl_hours),
            )

    async def with_idempotency(
        self,
        tenant_id: str,
        provider: str,
        key: str,
        operation: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        ttl_hours: int | None = None,
    ) -> IdempotentResult:
        key = normalize_key(key)
        record = await self.lookup(tenant_id, provider, key)
        if record is not None:
            return self._replay(record, operation)

        lock = DistributedLock(
            self._store,
            f"idem:{tenant_id}:{provider}:{key}",
            ttl_ms=self._lock_ttl_ms,
            wait_ms=self._lock_wait_ms,
        )
        try:
            async with lock.hold(renew=True):
                # The in-flight holder may have finished while we waited.
                record = await self.lookup(tenant_id, provider, key)
                if record is not None:
                    return self._replay(record, operation)
                return await self._execute(tenant_id, provider, key, operation, fn, ttl_hours=ttl_hours)
        except LockNotAcquiredError as exc:
            increment_counter("idempotency_in_progress_total")
            raise IdempotencyInProgressError(
                "A call with this idempotency key is still in progress"
            ) from exc

    async def _execute(
        self,
        tenant_id: str,
        provider: str,
        key: str,
        operation: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        ttl_hours: int | None,
    ) -> IdempotentResult:
        try:
            value = await fn()
        except (ValidationFailedError, NotServiceableError) as exc:
            # Terminal rejections replay as the same error instead of re-calling the provider.
            try:
                await self._persist(
                    tenant_id=tenant_id,
                    provider=provider,
                    key=key,
                    operation=operation,
                    outcome=OUTCOME_FAILED,
                    error_json=exc.to_dict(),
                    ttl_hours=ttl_hours,
                )
            except SQLAlchemyError:
                # The caller must still see the provider's rejection, not the storage failure.
                logger.exception(
                    "idempotency_persist_failed tenant=%s provider=%s operation=%s outcome=%s",
                    tenant_id,
                    provider,
                    operation,
                    OUTCOME_FAILED,
                )
            raise

        payload = jsonable_encoder(value)
        try:
            stored = await self._persist(
                tenant_id=tenant_id,
                provider=provider,
                key=key,
                operation=operation,
                outcome=OUTCOME_SUCCEEDED,
                result_json=payload,
                ttl_hours=ttl_hours,
            )
        except SQLAlchemyError:
            # The provider side effect already happened; hand the result back regardless.
            logger.exception(
                "idempotency_persist_failed tenant=%s provider=%s operation=%s",
                tenant_id,
                provider,
                operation,
            )
            return IdempotentResult(value=payload, replayed=False)
        if not stored:
            # Lock TTL lapsed and another caller recorded first; its outcome wins.
            winner = await self.lookup(tenant_id, provider, key)
            if winner is not None:
                logger.warning(
                    "idempotency_record_race tenant=%s provider=%s operation=%s",
                    tenant_id,
                    provider,
                    operation,
                )
                return self._replay(winner, operation)
        return IdempotentResult(value=payload, replayed=False)
