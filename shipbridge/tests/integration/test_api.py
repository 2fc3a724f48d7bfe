from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from shipbridge.apps.api.deps import build_services
from shipbridge.apps.api.main import create_app
from shipbridge.domain.models import WebhookEvent
from shipbridge.services.gateway import ProviderConfig, ProviderRegistry
from shipbridge.services.resilience import CircuitBreakerConfig
from shipbridge.services.status_mapper import StatusMapper
from shipbridge.services.webhooks import ParsedWebhook, compute_signature


SECRET = "whsec_api"


def _secret_resolver(provider: str, tenant_id: str) -> str | None:
    return SECRET if provider == "delhivery" else None


@pytest.fixture
async def services(store, session_factory):
    mapper = StatusMapper()
    mapper.register("delhivery", {"Delivered": "delivered"})
    built = build_services(
        registry=ProviderRegistry(
            [
                ProviderConfig(
                    name="pincode-api",
                    requires_auth=False,
                    breaker=CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=30, trial_timeout_seconds=30),
                )
            ]
        ),
        status_mapper=mapper,
        store=store,
        session_factory=session_factory,
        secret_resolver=_secret_resolver,
    )

    async def _noop(**kwargs) -> None:
        return None

    built.processor.register_provider(
        "delhivery",
        parser=lambda payload: ParsedWebhook(raw_status=payload["status"], reference=payload.get("awb")),
        handler=_noop,
    )
    return built


@pytest.fixture
async def client(services):
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_signed_webhook_is_acked_and_deduplicated(client, services, session_factory) -> None:
    body = json.dumps({"awb": "AWB1", "status": "Delivered"}).encode("utf-8")
    headers = {"X-Webhook-Signature": compute_signature(body, SECRET), "X-Webhook-Topic": "shipment.status"}

    first = await client.post("/webhooks/delhivery/t1", content=body, headers=headers)
    second = await client.post("/webhooks/delhivery/t1", content=body, headers=headers)
    await services.dispatcher.drain()

    assert first.status_code == 200
    assert first.json()["duplicate"] is False
    assert second.json()["duplicate"] is True

    async with session_factory() as session:
        events = (await session.execute(select(WebhookEvent).order_by(WebhookEvent.id))).scalars().all()
    assert [event.status for event in events] == ["processed", "duplicate"]
    assert events[0].topic == "shipment.status"


@pytest.mark.asyncio
async def test_bad_signature_returns_401_without_records(client, session_factory) -> None:
    body = b'{"awb": "AWB2", "status": "Delivered"}'

    response = await client.post(
        "/webhooks/delhivery/t1",
        content=body,
        headers={"X-Webhook-Signature": compute_signature(b"{}", SECRET)},
    )

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    async with session_factory() as session:
        assert (await session.execute(select(WebhookEvent))).scalars().all() == []


@pytest.mark.asyncio
async def test_circuit_state_endpoint(client, services) -> None:
    breaker = services.gateway.breaker_for("pincode-api")
    await breaker.record_failure("t1", "pincode-api")

    response = await client.get("/ops/circuits/t1/pincode-api")
    assert response.status_code == 200
    payload = response.json()
    assert payload["state"] == "open"
    assert payload["failures"] == 1
    assert payload["trial_in_flight"] is False

    missing = await client.get("/ops/circuits/t1/unknown-courier")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "PROVIDER_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_ops_metrics_reports_breaker_gauges(client, services) -> None:
    await services.gateway.breaker_for("pincode-api").record_failure("t1", "pincode-api")

    response = await client.get("/ops/metrics", params={"window_s": 60})
    assert response.status_code == 200
    payload = response.json()
    assert payload["window_s"] == 60
    assert payload["gauges"]["circuit_breaker_state.t1:pincode-api"] == 1.0
    assert payload["counters"]["circuit_breaker_open_total"] == 1
    assert payload["provider_calls"] == {}
