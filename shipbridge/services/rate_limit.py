from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
import time
from typing import Awaitable, Callable, Mapping

from shipbridge.core.config import get_settings
from shipbridge.core.errors import ProviderConfigError, RateLimitedError
from shipbridge.services.coordination import CoordinationStore, coordination_key
from shipbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OPERATION_AUTHENTICATE = "authenticate"
OPERATION_CREATE_SHIPMENT = "create_shipment"
OPERATION_TRACK = "track"
OPERATION_GET_RATE = "get_rate"
OPERATION_SERVICEABILITY = "serviceability"
OPERATION_CANCEL_SHIPMENT = "cancel_shipment"
OPERATION_MANIFEST = "manifest"
OPERATION_LABEL = "label"
OPERATION_DEFAULT = "default"


@dataclass(frozen=True)
class BucketConfig:
    # Burst capacity plus sustained refill rate for one operation.
    capacity: int
    refill_per_s: float


# Conservative defaults reflecting typical courier API limits.
DEFAULT_OPERATION_LIMITS: dict[str, BucketConfig] = {
    OPERATION_AUTHENTICATE: BucketConfig(capacity=10, refill_per_s=10 / 300),
    OPERATION_CREATE_SHIPMENT: BucketConfig(capacity=2, refill_per_s=2.0),
    OPERATION_TRACK: BucketConfig(capacity=10, refill_per_s=10.0),
    OPERATION_GET_RATE: BucketConfig(capacity=5, refill_per_s=5.0),
    OPERATION_SERVICEABILITY: BucketConfig(capacity=10, refill_per_s=10.0),
    OPERATION_CANCEL_SHIPMENT: BucketConfig(capacity=5, refill_per_s=5.0),
    OPERATION_MANIFEST: BucketConfig(capacity=2, refill_per_s=2.0),
    OPERATION_LABEL: BucketConfig(capacity=5, refill_per_s=5.0),
    OPERATION_DEFAULT: BucketConfig(capacity=5, refill_per_s=5.0),
}


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and retry hint for one acquire.
    allowed: bool
    operation: str
    retry_after_ms: int
    remaining: float
    waited_ms: int = 0


def parse_operation_limits(raw: str | Mapping[str, Mapping[str, float]] | None) -> dict[str, BucketConfig]:
    # Accept settings JSON like {"track": {"capacity": 20, "refill_per_s": 20}}.
    if not raw:
        return {}
    data = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(data, Mapping):
        raise ProviderConfigError("operation limits must be a JSON object")
    parsed: dict[str, BucketConfig] = {}
    for operation, spec in data.items():
        try:
            capacity = int(spec["capacity"])
            refill = float(spec["refill_per_s"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderConfigError(f"invalid rate limit for operation {operation}") from exc
        if capacity < 1 or refill < 0:
            raise ProviderConfigError(f"invalid rate limit for operation {operation}")
        parsed[str(operation)] = BucketConfig(capacity=capacity, refill_per_s=refill)
    return parsed


class RateLimiter:
    def __init__(
        self,
        store: CoordinationStore,
        *,
        limits: Mapping[str, BucketConfig] | None = None,
        time_provider: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        max_wait_ms: int | None = None,
        fail_fast: bool | None = None,
    ) -> None:
        # Allow injecting time and sleep for deterministic tests.
        settings = get_settings()
        self._store = store
        self._limits = {
            **DEFAULT_OPERATION_LIMITS,
            **parse_operation_limits(settings.rl_operation_limits_json),
            **dict(limits or {}),
        }
        self._provider_limits: dict[str, dict[str, BucketConfig]] = {}
        self._time_provider = time_provider or time.time
        self._sleep = sleep or asyncio.sleep
        self._max_wait_ms = settings.rl_max_wait_ms if max_wait_ms is None else max_wait_ms
        self._fail_fast = settings.rl_fail_fast if fail_fast is None else fail_fast

    @property
    def max_wait_ms(self) -> int:
        return self._max_wait_ms

    def set_provider_limits(self, provider: str, limits: Mapping[str, BucketConfig]) -> None:
        self._provider_limits[provider] = dict(limits)

    def limits_for(self, provider: str, operation: str) -> BucketConfig:
        provider_limits = self._provider_limits.get(provider, {})
        if operation in provider_limits:
            return provider_limits[operation]
        if operation in self._limits:
            return self._limits[operation]
        return provider_limits.get(OPERATION_DEFAULT) or self._limits[OPERATION_DEFAULT]

    def _bucket_key(self, tenant_id: str, provider: str, operation: str) -> str:
        return coordination_key("rl", tenant_id, provider, operation)

    async def check(
        self,
        tenant_id: str,
        provider: str,
        operation: str,
        *,
        cost: int = 1,
    ) -> RateLimitDecision:
        # One atomic refill-and-take against the shared bucket.
        config = self.limits_for(provider, operation)
        now_ms = int(self._time_provider() * 1000)
        take = await self._store.take_tokens(
            self._bucket_key(tenant_id, provider, operation),
            capacity=config.capacity,
            refill_per_s=config.refill_per_s,
            cost=cost,
            now_ms=now_ms,
        )
        return RateLimitDecision(
            allowed=take.allowed,
            operation=operation,
            retry_after_ms=take.retry_after_ms,
            remaining=take.tokens,
        )

    async def acquire(
        self,
        tenant_id: str,
        provider: str,
        operation: str,
        *,
        cost: int = 1,
        max_wait_ms: int | None = None,
        fail_fast: bool | None = None,
    ) -> RateLimitDecision:
        # Wait for the computed refill delay within the budget, or fail with RateLimitedError.
        budget_ms = self._max_wait_ms if max_wait_ms is None else max(0, max_wait_ms)
        fail_fast = self._fail_fast if fail_fast is None else fail_fast
        waited_ms = 0
        while True:
            decision = await self.check(tenant_id, provider, operation, cost=cost)
            if decision.allowed:
                if waited_ms:
                    increment_counter("rate_limit_waits_total")
                return RateLimitDecision(
                    allowed=True,
                    operation=operation,
                    retry_after_ms=0,
                    remaining=decision.remaining,
                    waited_ms=waited_ms,
                )
            wait_ms = max(1, decision.retry_after_ms)
            if fail_fast or waited_ms + wait_ms > budget_ms:
                increment_counter(f"rate_limited_total.{provider}.{operation}")
                logger.info(
                    "rate_limited tenant=%s provider=%s operation=%s retry_after_ms=%s",
                    tenant_id,
                    provider,
                    operation,
                    decision.retry_after_ms,
                )
                raise RateLimitedError(
                    f"Rate limit exceeded for {provider}.{operation}",
                    retry_after_ms=decision.retry_after_ms,
                    scope="local",
                )
            # No lock is held while sleeping; another process may take the refilled token first.
            await self._sleep(wait_ms / 1000.0)
            waited_ms += wait_ms
