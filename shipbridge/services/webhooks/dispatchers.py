from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from shipbridge.core.config import get_settings
from shipbridge.services.webhooks.processor import WebhookProcessor


logger = logging.getLogger(__name__)

PROCESS_WEBHOOK_JOB = "process_webhook_event"


class BackgroundWebhookDispatcher:
    # Run processing as an in-process task so the ack returns immediately.
    def __init__(self, processor: WebhookProcessor) -> None:
        self._processor = processor
        self._tasks: set[asyncio.Task] = set()

    async def dispatch(self, event_id: int) -> None:
        task = asyncio.create_task(self._run(event_id))
        # Hold a reference until done so the task is not garbage collected mid-flight.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, event_id: int) -> None:
        try:
            await self._processor.process(event_id)
        except Exception:  # noqa: BLE001 - background task has no caller to propagate to
            logger.exception("webhook_background_processing_failed event_id=%s", event_id)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        # Wait for in-flight processing on shutdown.
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class ArqWebhookDispatcher:
    # Hand event ids to the arq worker; the row in webhook_events is the payload.
    def __init__(self, pool: ArqRedis | None = None, *, queue_name: str | None = None) -> None:
        self._pool = pool
        self._pool_loop: asyncio.AbstractEventLoop | None = None
        self._queue_name = queue_name or get_settings().webhook_queue_name

    async def _get_pool(self) -> ArqRedis:
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and (self._pool_loop is None or self._pool_loop == current_loop):
            return self._pool
        settings = get_settings()
        self._pool = await create_pool(
            RedisSettings.from_dsn(settings.redis_url),
            default_queue_name=self._queue_name,
        )
        self._pool_loop = current_loop
        return self._pool

    async def dispatch(self, event_id: int) -> None:
        pool = await self._get_pool()
        # A stable job id keeps a re-dispatched event from being queued twice.
        await pool.enqueue_job(
            PROCESS_WEBHOOK_JOB,
            event_id,
            _job_id=f"webhook-event-{event_id}",
            _queue_name=self._queue_name,
        )
        logger.info("webhook_enqueued event_id=%s queue=%s", event_id, self._queue_name)
