from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Mapping

import httpx
import pytest

from shipbridge.core.errors import (
    CircuitOpenError,
    GatewayError,
    ProviderConfigError,
    ProviderUnavailableError,
    RateLimitedError,
)
from shipbridge.core.timeutils import utc_now
from shipbridge.services.gateway import ProviderConfig, ProviderRegistry, build_gateway
from shipbridge.services.rate_limit import OPERATION_CREATE_SHIPMENT, OPERATION_TRACK, BucketConfig
from shipbridge.services.resilience import (
    STATE_CLOSED,
    STATE_OPEN,
    CircuitBreakerConfig,
    RetryPolicy,
    worst_case_call_ms,
)
from shipbridge.services.telemetry import provider_call_stats
from shipbridge.services.tokens import IssuedToken


FAST_RETRY = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1, max_backoff_ms=5)


class SequencedAuthenticator:
    def __init__(self) -> None:
        self.calls = 0

    async def authenticate(self, credentials: Mapping[str, Any]) -> IssuedToken:
        self.calls += 1
        issued_at = utc_now()
        return IssuedToken(
            access_token=f"session-{self.calls}",
            issued_at=issued_at,
            expires_at=issued_at + timedelta(hours=1),
        )


class FakeCourier:
    """Scripted provider API: pops one response per request."""

    def __init__(self, responses: list[httpx.Response] | None = None, *, default_status: int = 200) -> None:
        self.responses = list(responses or [])
        self.default_status = default_status
        self.requests: list[httpx.Request] = []
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._handle), base_url="https://courier.test")

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(self.default_status, json={"awb": "AWB-OK"})

    def create_shipment(self, payload: dict):
        async def _request(token: str | None) -> dict:
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            response = await self.client.post("/shipments", json=payload, headers=headers)
            response.raise_for_status()
            return response.json()

        return _request


async def _gateway(store, session_factory, **config_overrides):
    authenticator = SequencedAuthenticator()
    config = ProviderConfig(
        name="bluedart",
        authenticator=authenticator,
        retry=FAST_RETRY,
        breaker=CircuitBreakerConfig(failure_threshold=2, cooldown_seconds=60, trial_timeout_seconds=90),
        **config_overrides,
    )
    gateway = build_gateway(ProviderRegistry([config]), store=store, session_factory=session_factory)
    await gateway.tokens.set_credentials("t1", "bluedart", {"login": "ops", "license_key": "secret"})
    return gateway, authenticator


@pytest.mark.asyncio
async def test_create_succeeds_after_transient_503(store, session_factory) -> None:
    gateway, _ = await _gateway(store, session_factory)
    courier = FakeCourier([httpx.Response(503), httpx.Response(200, json={"awb": "AWB-2"})])

    result = await gateway.call("t1", "bluedart", OPERATION_CREATE_SHIPMENT, courier.create_shipment({"order": 1}))

    assert result.data == {"awb": "AWB-2"}
    assert result.attempts == 2
    assert result.replayed is False
    assert len(courier.requests) == 2
    state = await gateway.circuit_state("t1", "bluedart")
    assert state.state == STATE_CLOSED
    assert state.failures == 0
    assert provider_call_stats(60)["bluedart"]["error_rate"] == pytest.approx(1 / 3)
    assert provider_call_stats(60, by_operation=True)["bluedart.create_shipment"]["calls"] == 2


@pytest.mark.asyncio
async def test_rejected_session_is_refreshed_once(store, session_factory) -> None:
    gateway, authenticator = await _gateway(store, session_factory)
    courier = FakeCourier([httpx.Response(401, json={"code": "SESSION_EXPIRED"})])

    result = await gateway.call("t1", "bluedart", OPERATION_CREATE_SHIPMENT, courier.create_shipment({"order": 2}))

    assert result.data == {"awb": "AWB-OK"}
    assert authenticator.calls == 2
    assert [request.headers["Authorization"] for request in courier.requests] == [
        "Bearer session-1",
        "Bearer session-2",
    ]


@pytest.mark.asyncio
async def test_idempotent_create_replays_without_provider_call(store, session_factory) -> None:
    gateway, _ = await _gateway(store, session_factory)
    courier = FakeCourier()
    request_fn = courier.create_shipment({"order": 3})

    first = await gateway.call("t1", "bluedart", OPERATION_CREATE_SHIPMENT, request_fn, idempotency_key="order-3")
    second = await gateway.call("t1", "bluedart", OPERATION_CREATE_SHIPMENT, request_fn, idempotency_key="order-3")

    assert first.data == second.data == {"awb": "AWB-OK"}
    assert second.replayed is True
    assert second.attempts == 0
    assert len(courier.requests) == 1


@pytest.mark.asyncio
async def test_concurrent_idempotent_creates_reach_provider_once(store, session_factory) -> None:
    gateway, _ = await _gateway(store, session_factory)
    courier = FakeCourier()
    request_fn = courier.create_shipment({"order": 4})

    results = await asyncio.gather(
        *(
            gateway.call("t1", "bluedart", OPERATION_CREATE_SHIPMENT, request_fn, idempotency_key="order-4")
            for _ in range(4)
        )
    )

    assert len(courier.requests) == 1
    assert all(result.data == {"awb": "AWB-OK"} for result in results)
    assert sum(1 for result in results if not result.replayed) == 1


@pytest.mark.asyncio
async def test_provider_throttling_exhausts_as_unavailable(store, session_factory) -> None:
    gateway, _ = await _gateway(store, session_factory)
    gateway.register_provider(
        ProviderConfig(
            name="bluedart",
            authenticator=SequencedAuthenticator(),
            retry=RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1, max_backoff_ms=5),
            breaker=CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=60, trial_timeout_seconds=90),
        )
    )
    courier = FakeCourier(
        [httpx.Response(429, headers={"Retry-After": "2"}), httpx.Response(429, headers={"Retry-After": "2"})]
    )

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await gateway.call("t1", "bluedart", OPERATION_TRACK, courier.create_shipment({}))

    assert exc_info.value.code == "PROVIDER_UNAVAILABLE"
    assert exc_info.value.retry_after_ms == 2000
    assert isinstance(exc_info.value.__cause__, RateLimitedError)
    assert len(courier.requests) == 2
    # Throttling is not an outage.
    state = await gateway.circuit_state("t1", "bluedart")
    assert state.state == STATE_CLOSED
    assert state.failures == 0


@pytest.mark.asyncio
async def test_trial_timeout_covers_the_worst_case_call(store, session_factory) -> None:
    gateway, _ = await _gateway(store, session_factory)
    floor_s = worst_case_call_ms(FAST_RETRY, refresh_ms=gateway.tokens.refresh_budget_ms) / 1000.0
    assert floor_s > 90

    assert gateway.breaker_for("bluedart").config.trial_timeout_seconds == floor_s

    gateway.register_provider(
        ProviderConfig(
            name="bluedart",
            authenticator=SequencedAuthenticator(),
            retry=FAST_RETRY,
            breaker=CircuitBreakerConfig(failure_threshold=2, cooldown_seconds=60, trial_timeout_seconds=3600),
        )
    )
    assert gateway.breaker_for("bluedart").config.trial_timeout_seconds == 3600


@pytest.mark.asyncio
async def test_breaker_opens_and_sheds_calls(store, session_factory) -> None:
    gateway, _ = await _gateway(store, session_factory)
    gateway.register_provider(
        ProviderConfig(
            name="bluedart",
            authenticator=SequencedAuthenticator(),
            retry=RetryPolicy(timeout_ms=1000, max_attempts=1, backoff_ms=1, max_backoff_ms=1),
            breaker=CircuitBreakerConfig(failure_threshold=2, cooldown_seconds=60, trial_timeout_seconds=90),
        )
    )
    courier = FakeCourier(default_status=503)

    for _ in range(2):
        with pytest.raises(ProviderUnavailableError):
            await gateway.call("t1", "bluedart", OPERATION_TRACK, courier.create_shipment({}))
    assert (await gateway.circuit_state("t1", "bluedart")).state == STATE_OPEN

    with pytest.raises(CircuitOpenError):
        await gateway.call("t1", "bluedart", OPERATION_TRACK, courier.create_shipment({}))
    assert len(courier.requests) == 2

    # Other tenants keep their own breaker.
    assert (await gateway.circuit_state("t2", "bluedart")).state == STATE_CLOSED


@pytest.mark.asyncio
async def test_local_rate_limit_fails_fast_without_tripping_breaker(store, session_factory) -> None:
    gateway, _ = await _gateway(
        store,
        session_factory,
        operation_limits={OPERATION_CREATE_SHIPMENT: BucketConfig(capacity=1, refill_per_s=0.01)},
    )
    courier = FakeCourier()

    await gateway.call("t1", "bluedart", OPERATION_CREATE_SHIPMENT, courier.create_shipment({}))
    with pytest.raises(RateLimitedError) as exc_info:
        await gateway.call(
            "t1",
            "bluedart",
            OPERATION_CREATE_SHIPMENT,
            courier.create_shipment({}),
            rate_limit_wait=False,
        )

    assert exc_info.value.scope == "local"
    assert exc_info.value.retry_after_ms > 0
    assert len(courier.requests) == 1
    assert (await gateway.circuit_state("t1", "bluedart")).failures == 0


@pytest.mark.asyncio
async def test_provider_without_auth_gets_no_token(store, session_factory) -> None:
    gateway = build_gateway(
        ProviderRegistry([ProviderConfig(name="pincode-api", requires_auth=False, retry=FAST_RETRY)]),
        store=store,
        session_factory=session_factory,
    )
    seen: list[str | None] = []

    async def lookup(token: str | None) -> dict:
        seen.append(token)
        return {"serviceable": True}

    result = await gateway.call("t1", "pincode-api", "serviceability", lookup)
    assert result.data == {"serviceable": True}
    assert seen == [None]


@pytest.mark.asyncio
async def test_unknown_provider_and_unexpected_errors(store, session_factory) -> None:
    gateway, _ = await _gateway(store, session_factory)

    with pytest.raises(ProviderConfigError):
        await gateway.call("t1", "ecom-express", OPERATION_TRACK, FakeCourier().create_shipment({}))

    async def broken(token: str | None) -> None:
        raise KeyError("awb")

    with pytest.raises(GatewayError) as exc_info:
        await gateway.call("t1", "bluedart", OPERATION_TRACK, broken)
    assert exc_info.value.code == "GATEWAY_ERROR"
    assert isinstance(exc_info.value.__cause__, KeyError)


def test_registry_requires_authenticator_for_token_providers() -> None:
    with pytest.raises(ProviderConfigError):
        ProviderRegistry([ProviderConfig(name="bluedart")])
