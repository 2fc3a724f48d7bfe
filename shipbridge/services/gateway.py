from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import logging
from typing import Any, Awaitable, Callable, Mapping

from shipbridge.core.errors import GatewayError, ProviderConfigError
from shipbridge.persistence.db import SessionFactory
from shipbridge.services.coordination import CoordinationStore, build_coordination_store
from shipbridge.services.idempotency import IdempotencyStore
from shipbridge.services.rate_limit import BucketConfig, RateLimiter
from shipbridge.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    RetryPolicy,
    default_circuit_breaker_config,
    default_retry_policy,
    retry_async,
    worst_case_call_ms,
)
from shipbridge.services.telemetry import record_provider_call
from shipbridge.services.tokens import ProviderAuthenticator, TokenManager


logger = logging.getLogger(__name__)

RequestFn = Callable[[str | None], Awaitable[Any]]


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    authenticator: ProviderAuthenticator | None = None
    # Providers with static API keys skip the token manager entirely.
    requires_auth: bool = True
    operation_limits: Mapping[str, BucketConfig] = field(default_factory=dict)
    breaker: CircuitBreakerConfig | None = None
    retry: RetryPolicy | None = None
    idempotency_ttl_hours: int | None = None


class ProviderRegistry:
    def __init__(self, configs: list[ProviderConfig] | None = None) -> None:
        self._configs: dict[str, ProviderConfig] = {}
        for config in configs or []:
            self.register(config)

    def register(self, config: ProviderConfig) -> None:
        if not config.name:
            raise ProviderConfigError("provider name is required")
        if config.requires_auth and config.authenticator is None:
            raise ProviderConfigError(f"provider {config.name} requires an authenticator")
        self._configs[config.name] = config

    def get(self, provider: str) -> ProviderConfig:
        config = self._configs.get(provider)
        if config is None:
            raise ProviderConfigError(f"provider {provider} is not registered")
        return config

    def configs(self) -> list[ProviderConfig]:
        return list(self._configs.values())


@dataclass(frozen=True)
class GatewayResult:
    data: Any
    # True when the result came from a stored idempotent outcome.
    replayed: bool
    attempts: int


class ProviderGateway:
    """Single entry point for outbound provider calls.

    Composition, outermost first: idempotency, circuit breaker, retry, and per
    attempt the rate limiter, a valid token and the caller's request function.
    """

    def __init__(
        self,
        *,
        store: CoordinationStore,
        registry: ProviderRegistry,
        tokens: TokenManager,
        rate_limiter: RateLimiter,
        idempotency: IdempotencyStore,
        on_breaker_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._tokens = tokens
        self._rate_limiter = rate_limiter
        self._idempotency = idempotency
        self._on_breaker_transition = on_breaker_transition
        self._breakers: dict[str, CircuitBreaker] = {}
        for config in registry.configs():
            self._apply(config)

    @property
    def tokens(self) -> TokenManager:
        return self._tokens

    def register_provider(self, config: ProviderConfig) -> None:
        self._registry.register(config)
        self._apply(config)

    def _apply(self, config: ProviderConfig) -> None:
        if config.authenticator is not None:
            self._tokens.register_authenticator(config.name, config.authenticator)
        if config.operation_limits:
            self._rate_limiter.set_provider_limits(config.name, config.operation_limits)
        self._breakers.pop(config.name, None)

    def _breaker_config(self, config: ProviderConfig) -> CircuitBreakerConfig:
        # A half-open trial runs a whole retry sequence; it must not be declared abandoned while still running.
        breaker_config = config.breaker or default_circuit_breaker_config()
        refresh_ms = self._tokens.refresh_budget_ms if config.requires_auth else 0
        floor_s = worst_case_call_ms(config.retry or default_retry_policy(), refresh_ms=refresh_ms) / 1000.0
        if breaker_config.trial_timeout_seconds >= floor_s:
            return breaker_config
        logger.warning(
            "circuit_trial_timeout_raised provider=%s configured_s=%s effective_s=%s",
            config.name,
            breaker_config.trial_timeout_seconds,
            floor_s,
        )
        return replace(breaker_config, trial_timeout_seconds=floor_s)

    def breaker_for(self, provider: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider)
        if breaker is None:
            config = self._registry.get(provider)
            breaker = CircuitBreaker(
                self._store,
                config=self._breaker_config(config),
                on_transition=self._on_breaker_transition,
            )
            self._breakers[provider] = breaker
        return breaker

    async def circuit_state(self, tenant_id: str, provider: str) -> CircuitBreakerState:
        return await self.breaker_for(provider).get_state(tenant_id, provider)

    async def call(
        self,
        tenant_id: str,
        provider: str,
        operation: str,
        request_fn: RequestFn,
        *,
        idempotency_key: str | None = None,
        rate_limit_wait: bool = True,
    ) -> GatewayResult:
        config = self._registry.get(provider)
        breaker = self.breaker_for(provider)
        policy = config.retry or default_retry_policy()
        attempts = 0
        last_token: str | None = None

        async def _attempt() -> Any:
            nonlocal attempts, last_token
            attempts += 1
            await self._rate_limiter.acquire(
                tenant_id,
                provider,
                operation,
                fail_fast=None if rate_limit_wait else True,
            )
            token = await self._tokens.get_valid_token(tenant_id, provider) if config.requires_auth else None
            last_token = token
            loop = asyncio.get_running_loop()
            start = loop.time()
            success = False
            try:
                result = await request_fn(token)
                success = True
                return result
            finally:
                record_provider_call(
                    provider=provider,
                    operation=operation,
                    latency_ms=(loop.time() - start) * 1000.0,
                    ok=success,
                )

        async def _refresh_rejected_token() -> None:
            await self._tokens.refresh_token(tenant_id, provider, rejected_token=last_token)

        async def _guarded() -> Any:
            return await breaker.guard(
                tenant_id,
                provider,
                lambda: retry_async(
                    _attempt,
                    policy=policy,
                    on_auth_failure=_refresh_rejected_token if config.requires_auth else None,
                ),
            )

        try:
            if idempotency_key is None:
                data = await _guarded()
                return GatewayResult(data=data, replayed=False, attempts=attempts)
            outcome = await self._idempotency.with_idempotency(
                tenant_id,
                provider,
                idempotency_key,
                operation,
                _guarded,
                ttl_hours=config.idempotency_ttl_hours,
            )
            return GatewayResult(data=outcome.value, replayed=outcome.replayed, attempts=attempts)
        except GatewayError as exc:
            logger.info(
                "gateway_call_failed tenant=%s provider=%s operation=%s code=%s attempts=%s",
                tenant_id,
                provider,
                operation,
                exc.code,
                attempts,
            )
            raise
        except Exception as exc:  # noqa: BLE001 - callers only ever see the gateway taxonomy
            logger.exception(
                "gateway_call_unexpected_error tenant=%s provider=%s operation=%s",
                tenant_id,
                provider,
                operation,
            )
            raise GatewayError(f"Unexpected failure calling {provider}.{operation}") from exc


def build_gateway(
    registry: ProviderRegistry | None = None,
    *,
    store: CoordinationStore | None = None,
    session_factory: SessionFactory | None = None,
) -> ProviderGateway:
    # Wire one process-scoped gateway from settings.
    store = store or build_coordination_store()
    rate_limiter = RateLimiter(store)
    return ProviderGateway(
        store=store,
        registry=registry or ProviderRegistry(),
        tokens=TokenManager(store=store, session_factory=session_factory, rate_limiter=rate_limiter),
        rate_limiter=rate_limiter,
        idempotency=IdempotencyStore(store=store, session_factory=session_factory),
    )
