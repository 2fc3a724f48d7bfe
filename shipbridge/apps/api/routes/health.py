from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from shipbridge.apps.api.deps import AppServices, get_services
from shipbridge.services.telemetry import counters_snapshot, gauges_snapshot, provider_call_stats


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


class CircuitStateResponse(BaseModel):
    tenant_id: str
    provider: str
    state: str
    failures: int
    last_failure_at: float | None
    retry_at: float | None
    trial_in_flight: bool


@router.get("/health", response_model=HealthResponse)
async def health() -> dict:
    return {"status": "ok"}


@router.get("/ops/circuits/{tenant_id}/{provider}", response_model=CircuitStateResponse)
async def circuit_state(
    tenant_id: str,
    provider: str,
    services: AppServices = Depends(get_services),
) -> dict:
    # Expose breaker state for operators deciding on manual fallbacks.
    state = await services.gateway.circuit_state(tenant_id, provider)
    return {
        "tenant_id": tenant_id,
        "provider": provider,
        "state": state.state,
        "failures": state.failures,
        "last_failure_at": state.last_failure_at,
        "retry_at": state.retry_at,
        "trial_in_flight": state.trial_started_at is not None,
    }


@router.get("/ops/metrics")
async def ops_metrics(window_s: int = 300) -> dict[str, Any]:
    # JSON metrics for dashboards when no Prometheus scraper is wired up.
    return {
        "window_s": window_s,
        "provider_calls": provider_call_stats(window_s),
        "provider_operations": provider_call_stats(window_s, by_operation=True),
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
    }
