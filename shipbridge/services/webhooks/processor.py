from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Protocol

from shipbridge.core.config import get_settings
from shipbridge.core.errors import ProviderConfigError
from shipbridge.core.timeutils import utc_now
from shipbridge.domain.models import WebhookEvent
from shipbridge.persistence.db import SessionFactory, get_session
from shipbridge.persistence.repos import webhook_events as webhook_repo
from shipbridge.services.status_mapper import MappedStatus, StatusMapper
from shipbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedWebhook:
    raw_status: str
    # Provider-side shipment reference such as an AWB number.
    reference: str | None = None
    occurred_at: datetime | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


WebhookParser = Callable[[Any], ParsedWebhook]


class StatusUpdateHandler(Protocol):
    async def __call__(
        self,
        *,
        tenant_id: str,
        provider: str,
        event: ParsedWebhook,
        mapped: MappedStatus,
    ) -> None:
        ...


@dataclass(frozen=True)
class _Registration:
    parser: WebhookParser
    handler: StatusUpdateHandler


class WebhookProcessor:
    def __init__(
        self,
        *,
        status_mapper: StatusMapper,
        session_factory: SessionFactory | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self._status_mapper = status_mapper
        self._session_factory = session_factory or get_session
        self._timeout_s = get_settings().webhook_processing_timeout_s if timeout_s is None else timeout_s
        # Handling is bounded by the timeout, so an older claim belongs to a dead worker.
        self._claim_stale_after = timedelta(seconds=self._timeout_s * 2)
        self._providers: dict[str, _Registration] = {}

    def register_provider(self, provider: str, *, parser: WebhookParser, handler: StatusUpdateHandler) -> None:
        self._providers[provider] = _Registration(parser=parser, handler=handler)

    async def process(self, event_id: int) -> str | None:
        """Process one stored event; returns its resulting status, or None if it does not exist."""
        current: WebhookEvent | None = None
        async with self._session_factory() as session:
            event = await webhook_repo.claim_for_processing(
                session,
                event_id,
                stale_before=utc_now() - self._claim_stale_after,
            )
            if event is None:
                current = await webhook_repo.get_event(session, event_id)
        if event is None:
            if current is None:
                logger.warning("webhook_event_missing event_id=%s", event_id)
                return None
            logger.info("webhook_claim_skipped event_id=%s status=%s", event_id, current.status)
            return current.status

        try:
            canonical = await asyncio.wait_for(self._handle(event), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            await self._fail(event, f"processing timed out after {self._timeout_s}s")
            return webhook_repo.WEBHOOK_STATUS_FAILED
        except Exception as exc:  # noqa: BLE001 - failures are recorded on the event for replay
            logger.exception("webhook_processing_failed provider=%s event_id=%s", event.provider, event.id)
            await self._fail(event, f"{type(exc).__name__}: {exc}")
            return webhook_repo.WEBHOOK_STATUS_FAILED

        async with self._session_factory() as session:
            await webhook_repo.mark_processed(session, event.id, canonical_status=canonical)
        increment_counter(f"webhook_processed_total.{event.provider}")
        logger.info(
            "webhook_processed provider=%s tenant=%s event_id=%s status=%s",
            event.provider,
            event.tenant_id,
            event.id,
            canonical,
        )
        return webhook_repo.WEBHOOK_STATUS_PROCESSED

    async def _handle(self, event: WebhookEvent) -> str:
        registration = self._providers.get(event.provider)
        if registration is None:
            raise ProviderConfigError(f"no webhook parser registered for provider {event.provider}")
        if event.payload_json is None:
            raise ValueError("payload is not valid JSON")
        parsed = registration.parser(event.payload_json)
        mapped = self._status_mapper.map(event.provider, parsed.raw_status)
        await registration.handler(
            tenant_id=event.tenant_id,
            provider=event.provider,
            event=parsed,
            mapped=mapped,
        )
        return mapped.canonical_status.value

    async def _fail(self, event: WebhookEvent, reason: str) -> None:
        increment_counter(f"webhook_failed_total.{event.provider}")
        logger.warning("webhook_marked_failed provider=%s event_id=%s reason=%s", event.provider, event.id, reason)
        async with self._session_factory() as session:
            await webhook_repo.mark_failed(session, event.id, reason=reason)

    async def replay_failed(self, *, provider: str | None = None, limit: int = 100) -> int:
        # Re-run failed events after a fix; returns how many now succeeded.
        async with self._session_factory() as session:
            failed = await webhook_repo.list_failed(session, provider=provider, limit=limit)
        recovered = 0
        for event in failed:
            if await self.process(event.id) == webhook_repo.WEBHOOK_STATUS_PROCESSED:
                recovered += 1
        return recovered

