from __future__ import annotations

from typing import Any


class ShipbridgeError(Exception):
    """Base error for shipbridge."""


class GatewayError(ShipbridgeError):
    """Error surfaced to gateway callers with a stable code and no secrets."""

    code = "GATEWAY_ERROR"
    retryable = False
    http_status = 502
    # Only failures that prove the provider is unhealthy feed the circuit breaker.
    counts_as_provider_failure = False
    # Errors raised after the provider answered prove the provider is reachable.
    provider_responded = False

    def __init__(self, message: str, *, provider_code: str | int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider_code = str(provider_code) if provider_code is not None else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.provider_code is not None:
            payload["provider_code"] = self.provider_code
        return payload


class AuthenticationFailedError(GatewayError):
    """Provider rejected our credentials or session token."""

    code = "AUTHENTICATION_FAILED"
    http_status = 401
    provider_responded = True

    def __init__(
        self,
        message: str,
        *,
        provider_code: str | int | None = None,
        credentials_rejected: bool = False,
    ) -> None:
        super().__init__(message, provider_code=provider_code)
        # True when the auth endpoint itself refused the static credentials;
        # a forced token refresh cannot fix that.
        self.credentials_rejected = credentials_rejected


class ValidationFailedError(GatewayError):
    """Provider rejected the request payload; the caller must fix input."""

    code = "VALIDATION_FAILED"
    http_status = 400
    provider_responded = True


class NotServiceableError(GatewayError):
    """Business-rule rejection such as an unserviceable pincode."""

    code = "NOT_SERVICEABLE"
    http_status = 422
    provider_responded = True


class RateLimitedError(GatewayError):
    code = "RATE_LIMITED"
    retryable = True
    http_status = 429

    def __init__(
        self,
        message: str,
        *,
        retry_after_ms: int | None = None,
        scope: str = "provider",
        provider_code: str | int | None = None,
    ) -> None:
        super().__init__(message, provider_code=provider_code)
        self.retry_after_ms = retry_after_ms
        # "local" when our own bucket is empty, "provider" for an upstream 429.
        self.scope = scope
        self.provider_responded = scope == "provider"

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["scope"] = self.scope
        if self.retry_after_ms is not None:
            payload["retry_after_ms"] = self.retry_after_ms
        return payload


class ProviderUnavailableError(GatewayError):
    """Network failure, timeout or 5xx from the provider."""

    code = "PROVIDER_UNAVAILABLE"
    retryable = True
    http_status = 503
    counts_as_provider_failure = True

    def __init__(
        self,
        message: str,
        *,
        provider_code: str | int | None = None,
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message, provider_code=provider_code)
        # Set when the last failure was an upstream 429 carrying a Retry-After hint.
        self.retry_after_ms = retry_after_ms

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.retry_after_ms is not None:
            payload["retry_after_ms"] = self.retry_after_ms
        return payload


class CircuitOpenError(GatewayError):
    """Calls are being shed while the provider circuit is open."""

    code = "CIRCUIT_OPEN"
    http_status = 503

    def __init__(self, message: str, *, retry_at: float | None = None) -> None:
        super().__init__(message)
        self.retry_at = retry_at


class TokenRefreshBusyError(GatewayError):
    """Another process holds the auth refresh lock beyond the wait bound."""

    code = "TOKEN_REFRESH_BUSY"
    retryable = True
    http_status = 503


class IdempotencyInProgressError(GatewayError):
    """A call with the same idempotency key is still in flight."""

    code = "IDEMPOTENCY_IN_PROGRESS"
    retryable = True
    http_status = 409


class IdempotencyConflictError(GatewayError):
    """Idempotency key was already used for a different operation."""

    code = "IDEMPOTENCY_CONFLICT"
    http_status = 409


class WebhookSignatureError(GatewayError):
    """Inbound webhook failed signature verification."""

    code = "WEBHOOK_SIGNATURE_INVALID"
    http_status = 401

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class UnmappedStatusError(ShipbridgeError):
    """Provider status has no entry in the registered mapping table."""


class StatusMappingConfigError(ShipbridgeError):
    """Status mapping table failed validation at registration."""


class ProviderConfigError(ShipbridgeError):
    """Missing or invalid provider configuration."""


class VaultError(ShipbridgeError):
    """Credential encryption or decryption failure."""


class DatabaseError(ShipbridgeError):
    """Database layer failure."""


# Error kinds that are safe to persist as terminal idempotency outcomes.
TERMINAL_ERRORS: dict[str, type[GatewayError]] = {
    ValidationFailedError.code: ValidationFailedError,
    NotServiceableError.code: NotServiceableError,
}
