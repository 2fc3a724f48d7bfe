from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import timedelta
import json
import logging
from typing import Any, Protocol

from shipbridge.core.config import get_settings
from shipbridge.core.errors import WebhookSignatureError
from shipbridge.core.timeutils import utc_now
from shipbridge.persistence.db import SessionFactory, get_session
from shipbridge.persistence.repos import webhook_events as webhook_repo
from shipbridge.services.telemetry import increment_counter
from shipbridge.services.webhooks.signatures import verify_signature


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookAck:
    accepted: bool
    duplicate: bool
    event_id: int | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class WebhookDispatcher(Protocol):
    async def dispatch(self, event_id: int) -> None:
        ...


def _decode_payload(raw_payload: bytes) -> Any | None:
    # Undecodable bodies are still recorded; processing marks them failed.
    try:
        return json.loads(raw_payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None


class WebhookIngestor:
    """Verifies, deduplicates and records inbound webhooks, then hands them off.

    The ack never waits for status mapping or downstream updates; those run
    through the dispatcher after the event row is committed.
    """

    def __init__(
        self,
        *,
        dispatcher: WebhookDispatcher,
        session_factory: SessionFactory | None = None,
        allow_unsigned: bool | None = None,
        retention_days: int | None = None,
    ) -> None:
        settings = get_settings()
        self._dispatcher = dispatcher
        self._session_factory = session_factory or get_session
        self._allow_unsigned = settings.webhook_allow_unsigned if allow_unsigned is None else allow_unsigned
        self._retention_days = settings.webhook_retention_days if retention_days is None else retention_days

    async def ingest(
        self,
        provider: str,
        tenant_id: str,
        raw_payload: bytes,
        signature_header: str | None,
        provider_secret: str | None,
        *,
        topic: str | None = None,
    ) -> WebhookAck:
        verification = verify_signature(
            raw_payload,
            signature_header,
            provider_secret,
            allow_unsigned=self._allow_unsigned,
        )
        if not verification.ok:
            increment_counter(f"webhook_signature_rejected_total.{provider}")
            logger.warning(
                "webhook_signature_rejected provider=%s tenant=%s reason=%s",
                provider,
                tenant_id,
                verification.reason,
            )
            raise WebhookSignatureError("Webhook signature verification failed", reason=verification.reason)
        if verification.reason == "unsigned_allowed":
            logger.warning("webhook_unsigned_accepted provider=%s tenant=%s", provider, tenant_id)

        content_hash = verification.payload_sha256
        expires_at = utc_now() + timedelta(days=self._retention_days)
        async with self._session_factory() as session:
            event = await webhook_repo.insert_first_delivery(
                session,
                provider=provider,
                tenant_id=tenant_id,
                topic=topic,
                content_hash=content_hash,
                signature=signature_header,
                signature_valid=verification.reason == "ok",
                payload_json=_decode_payload(raw_payload),
                expires_at=expires_at,
            )
            if event is None:
                first = await webhook_repo.get_first_delivery(
                    session,
                    provider=provider,
                    tenant_id=tenant_id,
                    content_hash=content_hash,
                )
                duplicate = await webhook_repo.insert_duplicate(
                    session,
                    provider=provider,
                    tenant_id=tenant_id,
                    topic=topic,
                    content_hash=content_hash,
                    signature=signature_header,
                    duplicate_of_id=first.id if first is not None else None,
                    expires_at=expires_at,
                )
                increment_counter(f"webhook_duplicates_total.{provider}")
                logger.info(
                    "webhook_duplicate provider=%s tenant=%s event_id=%s duplicate_of=%s",
                    provider,
                    tenant_id,
                    duplicate.id,
                    duplicate.duplicate_of_id,
                )
                return WebhookAck(accepted=True, duplicate=True, event_id=duplicate.id)
            event_id = event.id

        increment_counter(f"webhook_received_total.{provider}")
        try:
            await self._dispatcher.dispatch(event_id)
        except Exception as exc:  # noqa: BLE001 - the event is stored; record the handoff failure for replay
            logger.exception("webhook_dispatch_failed provider=%s event_id=%s", provider, event_id)
            async with self._session_factory() as session:
                await webhook_repo.mark_failed(session, event_id, reason=f"dispatch failed: {type(exc).__name__}")
        return WebhookAck(accepted=True, duplicate=False, event_id=event_id)
