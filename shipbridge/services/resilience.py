from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from shipbridge.core.config import get_settings
from shipbridge.core.errors import (
    AuthenticationFailedError,
    CircuitOpenError,
    GatewayError,
    NotServiceableError,
    ProviderUnavailableError,
    RateLimitedError,
    ShipbridgeError,
    ValidationFailedError,
)
from shipbridge.services.coordination import CoordinationStore, coordination_key
from shipbridge.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"

_STATE_GAUGE = {STATE_CLOSED: 0.0, STATE_HALF_OPEN: 0.5, STATE_OPEN: 1.0}
_CAS_ATTEMPTS = 50
_JITTER_RATIO = 0.3


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> int | None:
    # Retry-After is either delta-seconds or an HTTP date.
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value) * 1000
    try:
        target = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    delta = target - (now or datetime.now(timezone.utc))
    return max(0, int(delta.total_seconds() * 1000))


def _provider_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        for field in ("code", "error_code", "errorCode"):
            if body.get(field) is not None:
                return str(body[field])
    return None


def error_from_response(response: httpx.Response) -> GatewayError | None:
    """Map a provider HTTP response onto the gateway error taxonomy.

    Returns None for non-error responses so callers can use it inline.
    """
    status = response.status_code
    if status < 400:
        return None
    code = _provider_code(response) or str(status)
    if status in {401, 403}:
        return AuthenticationFailedError(f"Provider rejected authentication ({status})", provider_code=code)
    if status == 429:
        return RateLimitedError(
            "Provider rate limit exceeded",
            retry_after_ms=parse_retry_after(response.headers.get("Retry-After")),
            scope="provider",
            provider_code=code,
        )
    if status == 422:
        return NotServiceableError("Provider rejected the request as not serviceable", provider_code=code)
    if status in {408, 425} or status >= 500:
        return ProviderUnavailableError(f"Provider unavailable ({status})", provider_code=code)
    return ValidationFailedError(f"Provider rejected the request ({status})", provider_code=code)


def raise_for_provider_status(response: httpx.Response) -> httpx.Response:
    error = error_from_response(response)
    if error is not None:
        raise error
    return response


def classify_exception(exc: BaseException) -> GatewayError | None:
    # Unknown exceptions return None and propagate untouched.
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return error_from_response(exc.response)
    if isinstance(exc, httpx.TimeoutException):
        return ProviderUnavailableError("Provider request timed out")
    if isinstance(exc, httpx.TransportError):
        return ProviderUnavailableError("Provider connection failed")
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ProviderUnavailableError("Provider request timed out")
    if isinstance(exc, ConnectionError):
        return ProviderUnavailableError("Provider connection failed")
    return None


def _default_retryable(error: GatewayError) -> bool:
    # Our own empty bucket already waited its budget; retrying here would only spin.
    if isinstance(error, RateLimitedError) and error.scope == "local":
        return False
    return error.retryable


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    max_backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
        max_backoff_ms=settings.ext_retry_max_backoff_ms,
    )


def worst_case_call_ms(policy: RetryPolicy, *, refresh_ms: int = 0) -> int:
    """Upper bound on one retry_async run under this policy.

    Counts the extra attempt granted after a token refresh, a maximal backoff
    between attempts and at most one refresh per attempt.
    """
    attempts = max(policy.max_attempts, 1)
    return (
        (attempts + 1) * policy.timeout_ms
        + (attempts - 1) * policy.max_backoff_ms
        + attempts * max(0, refresh_ms)
    )


def compute_backoff_ms(
    policy: RetryPolicy,
    attempt: int,
    *,
    retry_after_ms: int | None = None,
    rng: Callable[[], float] = random.random,
) -> int:
    # A provider Retry-After hint replaces the computed delay.
    if retry_after_ms is not None:
        return min(max(0, retry_after_ms), policy.max_backoff_ms)
    delay = policy.backoff_ms * (2 ** max(0, attempt - 1))
    delay += delay * _JITTER_RATIO * rng()
    return int(min(delay, policy.max_backoff_ms))


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[GatewayError], bool] | None = None,
    on_auth_failure: Callable[[], Awaitable[None]] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> T:
    """Run func with a per-attempt deadline and bounded jittered backoff.

    Failures are classified into the gateway taxonomy first. The first
    session-level auth rejection triggers on_auth_failure and one extra
    attempt that does not count against max_attempts.
    """
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    sleep = sleep or asyncio.sleep
    max_attempts = max(policy.max_attempts, 1)
    attempt = 1
    auth_refreshed = False
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - classified below, unknown errors re-raised
            error = classify_exception(exc)
            if error is None:
                raise
            cause: BaseException = exc
            if (
                isinstance(error, AuthenticationFailedError)
                and not error.credentials_rejected
                and on_auth_failure is not None
                and not auth_refreshed
            ):
                auth_refreshed = True
                increment_counter("external_auth_refresh_retries_total")
                logger.info("retry_auth_refresh attempt=%s", attempt)
                try:
                    await on_auth_failure()
                except Exception as refresh_exc:  # noqa: BLE001 - a failed refresh joins the retry path below
                    refresh_error = classify_exception(refresh_exc)
                    if refresh_error is None:
                        raise
                    logger.warning("retry_auth_refresh_failed attempt=%s code=%s", attempt, refresh_error.code)
                    # Each failed refresh spends an attempt, so allowing another one stays bounded.
                    auth_refreshed = False
                    error, cause = refresh_error, refresh_exc
                else:
                    continue
            if not retryable(error):
                _raise(error, cause)
            if attempt >= max_attempts:
                increment_counter("external_retries_exhausted_total")
                if isinstance(error, RateLimitedError) and error.scope == "local":
                    _raise(error, cause)
                raise _exhausted(error, attempt) from cause
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            retry_after = error.retry_after_ms if isinstance(error, RateLimitedError) else None
            delay_ms = compute_backoff_ms(policy, attempt, retry_after_ms=retry_after)
            logger.info("retry_scheduled attempt=%s code=%s delay_ms=%s", attempt, error.code, delay_ms)
            await sleep(delay_ms / 1000.0)
            attempt += 1


def _exhausted(error: GatewayError, attempts: int) -> ProviderUnavailableError:
    # A spent retry budget always surfaces as PROVIDER_UNAVAILABLE.
    exhausted = ProviderUnavailableError(
        f"{error.message} after {attempts} attempts",
        provider_code=error.provider_code,
        retry_after_ms=getattr(error, "retry_after_ms", None),
    )
    # Breaker accounting follows the last underlying failure, not the wrapper.
    exhausted.counts_as_provider_failure = error.counts_as_provider_failure
    exhausted.provider_responded = error.provider_responded
    return exhausted


def _raise(error: GatewayError, cause: BaseException) -> None:
    if error is cause:
        raise error
    raise error from cause


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Store thresholds in settings so operators can tune without code changes.
    failure_threshold: int
    cooldown_seconds: float
    trial_timeout_seconds: float


def default_circuit_breaker_config() -> CircuitBreakerConfig:
    settings = get_settings()
    return CircuitBreakerConfig(
        failure_threshold=settings.cb_failure_threshold,
        cooldown_seconds=settings.cb_cooldown_seconds,
        trial_timeout_seconds=settings.cb_trial_timeout_s,
    )


@dataclass(frozen=True)
class CircuitBreakerState:
    state: str = STATE_CLOSED
    failures: int = 0
    last_failure_at: float | None = None
    retry_at: float | None = None
    # Set while the single half-open trial call is in flight.
    trial_started_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _decode_state(raw: str | None) -> CircuitBreakerState:
    if not raw:
        return CircuitBreakerState()
    data = json.loads(raw)
    return CircuitBreakerState(
        state=data.get("state", STATE_CLOSED),
        failures=int(data.get("failures", 0)),
        last_failure_at=data.get("last_failure_at"),
        retry_at=data.get("retry_at"),
        trial_started_at=data.get("trial_started_at"),
    )


def _encode_state(state: CircuitBreakerState) -> str:
    return json.dumps(state.to_dict(), sort_keys=True)


class CircuitBreaker:
    """Per (tenant, provider) breaker whose state is shared through the coordination store.

    Every transition is a compare-and-swap on one JSON document, so concurrent
    processes agree on the state and only one of them wins the half-open trial.
    """

    def __init__(
        self,
        store: CoordinationStore,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._store = store
        self._config = config or default_circuit_breaker_config()
        # Wall clock, since the state is compared across processes.
        self._time = time_source or time.time
        self._on_transition = on_transition

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def _key(self, tenant_id: str, provider: str) -> str:
        return coordination_key("cb", tenant_id, provider)

    def _ttl_ms(self) -> int:
        ttl_s = max(self._config.cooldown_seconds * 4, self._config.trial_timeout_seconds * 2, 3600)
        return int(ttl_s * 1000)

    async def _mutate(
        self,
        tenant_id: str,
        provider: str,
        change: Callable[[CircuitBreakerState], CircuitBreakerState | None],
    ) -> tuple[CircuitBreakerState, CircuitBreakerState]:
        # Re-read and retry until our swap lands on the version we decided from.
        key = self._key(tenant_id, provider)
        for _ in range(_CAS_ATTEMPTS):
            raw = await self._store.get(key)
            current = _decode_state(raw)
            updated = change(current)
            if updated is None or updated == current:
                return current, current
            if await self._store.compare_and_swap(key, raw, _encode_state(updated), self._ttl_ms()):
                await self._transition(tenant_id, provider, current, updated)
                return current, updated
        raise ShipbridgeError(f"circuit breaker state contention for {tenant_id}:{provider}")

    async def _transition(
        self,
        tenant_id: str,
        provider: str,
        before: CircuitBreakerState,
        after: CircuitBreakerState,
    ) -> None:
        # Emit logs on state transitions for operator visibility.
        if before.state == after.state:
            return
        name = f"{tenant_id}:{provider}"
        logger.warning("circuit_breaker_transition name=%s from=%s to=%s", name, before.state, after.state)
        increment_counter(f"circuit_breaker_transition_total.{provider}.{after.state}")
        if after.state == STATE_OPEN:
            increment_counter("circuit_breaker_open_total")
        set_gauge(f"circuit_breaker_state.{name}", _STATE_GAUGE.get(after.state, 0.0))
        if self._on_transition is not None:
            await self._on_transition(name, after.state)

    async def get_state(self, tenant_id: str, provider: str) -> CircuitBreakerState:
        return _decode_state(await self._store.get(self._key(tenant_id, provider)))

    async def reset(self, tenant_id: str, provider: str) -> None:
        before = await self.get_state(tenant_id, provider)
        await self._store.delete(self._key(tenant_id, provider))
        await self._transition(tenant_id, provider, before, CircuitBreakerState())

    async def before_call(self, tenant_id: str, provider: str) -> bool:
        """Admit or reject a call; returns True when the caller holds the half-open trial."""
        now = self._time()

        def _admit(state: CircuitBreakerState) -> CircuitBreakerState | None:
            if state.state == STATE_OPEN:
                if state.retry_at is not None and now < state.retry_at:
                    raise CircuitOpenError(f"Circuit open for {provider}", retry_at=state.retry_at)
                return replace(state, state=STATE_HALF_OPEN, trial_started_at=now)
            if state.state == STATE_HALF_OPEN:
                started = state.trial_started_at
                if started is not None and now - started < self._config.trial_timeout_seconds:
                    raise CircuitOpenError(
                        f"Circuit half-open trial in flight for {provider}",
                        retry_at=started + self._config.trial_timeout_seconds,
                    )
                # No trial in flight, or the previous one was abandoned.
                return replace(state, trial_started_at=now)
            return None

        try:
            before, after = await self._mutate(tenant_id, provider, _admit)
        except CircuitOpenError:
            increment_counter(f"circuit_open_rejections_total.{provider}")
            raise
        return after.state == STATE_HALF_OPEN and after is not before

    async def record_success(self, tenant_id: str, provider: str, *, trial: bool = False) -> None:
        def _success(state: CircuitBreakerState) -> CircuitBreakerState | None:
            if state.state == STATE_CLOSED:
                return replace(state, failures=0) if state.failures else None
            if state.state == STATE_HALF_OPEN and trial:
                return CircuitBreakerState()
            # Late successes from calls admitted before the breaker opened change nothing.
            return None

        await self._mutate(tenant_id, provider, _success)

    async def record_failure(self, tenant_id: str, provider: str, *, trial: bool = False) -> None:
        now = self._time()

        def _failure(state: CircuitBreakerState) -> CircuitBreakerState:
            failures = state.failures + 1
            if state.state == STATE_HALF_OPEN or (
                state.state == STATE_CLOSED and failures >= self._config.failure_threshold
            ):
                return CircuitBreakerState(
                    state=STATE_OPEN,
                    failures=failures,
                    last_failure_at=now,
                    retry_at=now + self._config.cooldown_seconds,
                )
            return replace(state, failures=failures, last_failure_at=now)

        await self._mutate(tenant_id, provider, _failure)

    async def release_trial(self, tenant_id: str, provider: str) -> None:
        # Hand the trial slot back when the call ended without a provider verdict.
        def _release(state: CircuitBreakerState) -> CircuitBreakerState | None:
            if state.state == STATE_HALF_OPEN and state.trial_started_at is not None:
                return replace(state, trial_started_at=None)
            return None

        await self._mutate(tenant_id, provider, _release)

    async def guard(self, tenant_id: str, provider: str, fn: Callable[[], Awaitable[T]]) -> T:
        trial = await self.before_call(tenant_id, provider)
        try:
            result = await fn()
        except GatewayError as exc:
            if exc.counts_as_provider_failure:
                await self.record_failure(tenant_id, provider, trial=trial)
            elif exc.provider_responded:
                # The provider answered; it is reachable even if it said no.
                await self.record_success(tenant_id, provider, trial=trial)
            elif trial:
                await self.release_trial(tenant_id, provider)
            raise
        except (asyncio.CancelledError, Exception):
            if trial:
                await asyncio.shield(self.release_trial(tenant_id, provider))
            raise
        await self.record_success(tenant_id, provider, trial=trial)
        return result
