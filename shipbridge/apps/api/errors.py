from __future__ import annotations

import logging
import math

from fastapi import Request
from fastapi.responses import JSONResponse

from shipbridge.core.errors import GatewayError, ProviderConfigError, RateLimitedError


logger = logging.getLogger(__name__)


async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
    # Expose only the stable error shape; never leak tokens or credentials.
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after_ms is not None:
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_ms / 1000)))
    return JSONResponse(content={"detail": exc.to_dict()}, status_code=exc.http_status, headers=headers)


async def provider_config_exception_handler(request: Request, exc: ProviderConfigError) -> JSONResponse:
    return JSONResponse(
        content={"detail": {"code": "PROVIDER_NOT_CONFIGURED", "message": str(exc)}},
        status_code=404,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Log unexpected failures and return a generic 500 without internals.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return JSONResponse(
        content={"detail": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
        status_code=500,
    )
