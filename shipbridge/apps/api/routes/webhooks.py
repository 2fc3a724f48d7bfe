from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from shipbridge.apps.api.deps import AppServices, get_services
from shipbridge.core.config import get_settings


router = APIRouter(tags=["webhooks"])

TOPIC_HEADER = "X-Webhook-Topic"


class WebhookAckResponse(BaseModel):
    accepted: bool
    duplicate: bool
    event_id: int | None


@router.post("/webhooks/{provider}/{tenant_id}", response_model=WebhookAckResponse)
async def receive_webhook(
    provider: str,
    tenant_id: str,
    request: Request,
    services: AppServices = Depends(get_services),
) -> dict:
    # Verify against the exact raw bytes; parsed JSON would not reproduce the signature.
    raw_body = await request.body()
    settings = get_settings()
    ack = await services.ingestor.ingest(
        provider,
        tenant_id,
        raw_body,
        request.headers.get(settings.webhook_signature_header),
        services.secret_resolver(provider, tenant_id),
        topic=request.headers.get(TOPIC_HEADER),
    )
    return ack.to_dict()
