from __future__ import annotations

from shipbridge.core.config import get_settings
from shipbridge.core.errors import ProviderConfigError
from shipbridge.services.webhooks.dispatchers import ArqWebhookDispatcher, BackgroundWebhookDispatcher
from shipbridge.services.webhooks.ingestor import WebhookAck, WebhookDispatcher, WebhookIngestor
from shipbridge.services.webhooks.processor import ParsedWebhook, StatusUpdateHandler, WebhookParser, WebhookProcessor
from shipbridge.services.webhooks.signatures import compute_signature, verify_signature


def build_webhook_dispatcher(processor: WebhookProcessor) -> WebhookDispatcher:
    # Select in-process tasks or the arq queue from settings.
    mode = get_settings().webhook_execution_mode.lower()
    if mode == "background":
        return BackgroundWebhookDispatcher(processor)
    if mode == "queue":
        return ArqWebhookDispatcher()
    raise ProviderConfigError(f"Unsupported webhook execution mode: {mode}")


__all__ = [
    "ArqWebhookDispatcher",
    "BackgroundWebhookDispatcher",
    "ParsedWebhook",
    "StatusUpdateHandler",
    "WebhookAck",
    "WebhookDispatcher",
    "WebhookIngestor",
    "WebhookParser",
    "WebhookProcessor",
    "build_webhook_dispatcher",
    "compute_signature",
    "verify_signature",
]
