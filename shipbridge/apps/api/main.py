from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request

from shipbridge.apps.api.deps import AppServices, build_services
from shipbridge.apps.api.errors import (
    gateway_exception_handler,
    provider_config_exception_handler,
    unhandled_exception_handler,
)
from shipbridge.apps.api.routes.health import router as health_router
from shipbridge.apps.api.routes.webhooks import router as webhooks_router
from shipbridge.core.errors import GatewayError, ProviderConfigError
from shipbridge.core.logging import configure_logging
from shipbridge.services.webhooks import BackgroundWebhookDispatcher


def create_app(services: AppServices | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        # Let in-process webhook processing finish before the loop goes away.
        dispatcher = app.state.services.dispatcher
        if isinstance(dispatcher, BackgroundWebhookDispatcher):
            await dispatcher.drain()

    app = FastAPI(title="Shipbridge Gateway", lifespan=lifespan)
    app.state.services = services or build_services()

    @app.exception_handler(GatewayError)
    async def _gateway_exception_handler(request: Request, exc: GatewayError):
        return await gateway_exception_handler(request, exc)

    @app.exception_handler(ProviderConfigError)
    async def _provider_config_exception_handler(request: Request, exc: ProviderConfigError):
        return await provider_config_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(webhooks_router)
    return app


app = create_app()
