from __future__ import annotations

from importlib import import_module
import logging
from typing import Callable

from arq.connections import RedisSettings

from shipbridge.core.config import get_settings
from shipbridge.core.errors import ProviderConfigError
from shipbridge.core.logging import configure_logging
from shipbridge.services.status_mapper import StatusMapper
from shipbridge.services.webhooks import WebhookProcessor


logger = logging.getLogger(__name__)


def load_processor_factory(path: str | None) -> Callable[[], WebhookProcessor]:
    # Resolve "package.module:function"; without one the worker has no parsers registered.
    if not path:
        return lambda: WebhookProcessor(status_mapper=StatusMapper())
    module_name, separator, attr = path.partition(":")
    if not separator or not module_name or not attr:
        raise ProviderConfigError(f"webhook_processor_factory must look like module:function, got {path!r}")
    factory = getattr(import_module(module_name), attr, None)
    if not callable(factory):
        raise ProviderConfigError(f"webhook_processor_factory {path!r} is not callable")
    return factory


async def process_webhook_event(ctx, event_id: int) -> str:
    # Consume queued event ids; the outcome is recorded on the event row itself.
    processor: WebhookProcessor = ctx["processor"]
    status = await processor.process(event_id)
    return status or "missing"


async def _startup(ctx) -> None:
    configure_logging()
    ctx["processor"] = load_processor_factory(get_settings().webhook_processor_factory)()
    logger.info("webhook_worker_started queue=%s", get_settings().webhook_queue_name)


async def _shutdown(ctx) -> None:
    logger.info("webhook_worker_stopped")


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.webhook_queue_name
    max_tries = max(1, int(settings.webhook_worker_max_tries))
    functions = [process_webhook_event]
    on_startup = _startup
    on_shutdown = _shutdown
