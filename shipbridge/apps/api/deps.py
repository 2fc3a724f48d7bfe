from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Callable

from fastapi import Request

from shipbridge.core.config import get_settings
from shipbridge.core.errors import ProviderConfigError
from shipbridge.persistence.db import SessionFactory
from shipbridge.services.coordination import CoordinationStore, build_coordination_store
from shipbridge.services.gateway import ProviderGateway, ProviderRegistry, build_gateway
from shipbridge.services.status_mapper import StatusMapper
from shipbridge.services.webhooks import (
    WebhookDispatcher,
    WebhookIngestor,
    WebhookProcessor,
    build_webhook_dispatcher,
)


SecretResolver = Callable[[str, str], str | None]


@dataclass
class AppServices:
    # Process-scoped components shared by every request.
    gateway: ProviderGateway
    ingestor: WebhookIngestor
    processor: WebhookProcessor
    dispatcher: WebhookDispatcher
    status_mapper: StatusMapper
    secret_resolver: SecretResolver


def settings_secret_resolver(provider: str, tenant_id: str) -> str | None:
    # Tenant-specific secrets take precedence over a provider-wide one.
    raw = get_settings().webhook_secrets_json or "{}"
    try:
        secrets = json.loads(raw)
    except ValueError as exc:
        raise ProviderConfigError("webhook_secrets_json is not valid JSON") from exc
    if not isinstance(secrets, dict):
        raise ProviderConfigError("webhook_secrets_json must be a JSON object")
    return secrets.get(f"{provider}:{tenant_id}") or secrets.get(provider)


def build_services(
    *,
    registry: ProviderRegistry | None = None,
    status_mapper: StatusMapper | None = None,
    store: CoordinationStore | None = None,
    session_factory: SessionFactory | None = None,
    secret_resolver: SecretResolver | None = None,
) -> AppServices:
    store = store or build_coordination_store()
    status_mapper = status_mapper or StatusMapper()
    processor = WebhookProcessor(status_mapper=status_mapper, session_factory=session_factory)
    dispatcher = build_webhook_dispatcher(processor)
    return AppServices(
        gateway=build_gateway(registry, store=store, session_factory=session_factory),
        ingestor=WebhookIngestor(
            dispatcher=dispatcher,
            session_factory=session_factory,
        ),
        processor=processor,
        dispatcher=dispatcher,
        status_mapper=status_mapper,
        secret_resolver=secret_resolver or settings_secret_resolver,
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services
