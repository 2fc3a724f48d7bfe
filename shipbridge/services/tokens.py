from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Mapping, Protocol

import httpx

from shipbridge.core.config import get_settings
from shipbridge.core.errors import (
    AuthenticationFailedError,
    GatewayError,
    ProviderConfigError,
    ProviderUnavailableError,
    RateLimitedError,
    TokenRefreshBusyError,
    VaultError,
)
from shipbridge.core.timeutils import as_utc, utc_now
from shipbridge.persistence.db import SessionFactory, get_session
from shipbridge.persistence.repos import credentials as credentials_repo
from shipbridge.services.coordination import CoordinationStore, DistributedLock, LockNotAcquiredError
from shipbridge.services.crypto.vault import CredentialVault, mask_secret
from shipbridge.services.rate_limit import OPERATION_AUTHENTICATE, RateLimiter
from shipbridge.services.resilience import classify_exception, error_from_response
from shipbridge.services.telemetry import increment_counter, record_provider_call


logger = logging.getLogger(__name__)

PURPOSE_CREDENTIALS = "credentials"
PURPOSE_TOKEN = "token"


@dataclass(frozen=True)
class IssuedToken:
    access_token: str
    expires_at: datetime
    issued_at: datetime


class ProviderAuthenticator(Protocol):
    async def authenticate(self, credentials: Mapping[str, Any]) -> IssuedToken:
        ...


class HttpTokenAuthenticator:
    """Exchanges static credentials for a bearer token over HTTP.

    Works for the common JSON token endpoints: POST the credentials and read
    the token plus its lifetime back from the response body.
    """

    def __init__(
        self,
        token_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        token_field: str = "access_token",
        expires_in_field: str = "expires_in",
        default_ttl_s: int = 3600,
    ) -> None:
        self._token_url = token_url
        self._client = client
        self._token_field = token_field
        self._expires_in_field = expires_in_field
        self._default_ttl_s = default_ttl_s

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = get_settings().token_auth_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def authenticate(self, credentials: Mapping[str, Any]) -> IssuedToken:
        response = await self._get_client().post(self._token_url, json=dict(credentials))
        error = error_from_response(response)
        if isinstance(error, AuthenticationFailedError):
            # The token endpoint refused the static credentials; refreshing cannot help.
            raise AuthenticationFailedError(
                "Provider rejected the configured credentials",
                provider_code=error.provider_code,
                credentials_rejected=True,
            )
        if error is not None:
            raise error
        try:
            body = response.json()
            access_token = str(body[self._token_field])
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderUnavailableError("Provider returned a malformed token response") from exc
        issued_at = utc_now()
        ttl_s = body.get(self._expires_in_field) or self._default_ttl_s
        return IssuedToken(
            access_token=access_token,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=int(ttl_s)),
        )


@dataclass(frozen=True)
class CachedToken:
    access_token: str
    expires_at: datetime


class TokenManager:
    """Hands out valid bearer tokens per (tenant, provider).

    Lookups go memory cache, then the encrypted credential record, and only
    then a refresh. Refreshes always run under the distributed auth lock so a
    fleet seeing the same expired token authenticates once.
    """

    def __init__(
        self,
        *,
        store: CoordinationStore,
        vault: CredentialVault | None = None,
        session_factory: SessionFactory | None = None,
        authenticators: Mapping[str, ProviderAuthenticator] | None = None,
        rate_limiter: RateLimiter | None = None,
        refresh_buffer_s: int | None = None,
        lock_ttl_ms: int | None = None,
        lock_wait_ms: int | None = None,
        auth_timeout_ms: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._vault = vault or CredentialVault()
        self._session_factory = session_factory or get_session
        self._authenticators: dict[str, ProviderAuthenticator] = dict(authenticators or {})
        self._rate_limiter = rate_limiter
        self._buffer = timedelta(
            seconds=settings.token_refresh_buffer_s if refresh_buffer_s is None else refresh_buffer_s
        )
        self._lock_ttl_ms = settings.token_lock_ttl_ms if lock_ttl_ms is None else lock_ttl_ms
        self._lock_wait_ms = settings.token_lock_wait_ms if lock_wait_ms is None else lock_wait_ms
        self._auth_timeout_ms = settings.token_auth_timeout_ms if auth_timeout_ms is None else auth_timeout_ms
        self._clock = clock
        self._cache: dict[tuple[str, str], CachedToken] = {}

    @property
    def refresh_budget_ms(self) -> int:
        # Longest one refresh can take: two lock waits around an auth slot wait, then the auth call.
        slot_wait_ms = self._rate_limiter.max_wait_ms if self._rate_limiter is not None else 0
        return 2 * self._lock_wait_ms + slot_wait_ms + self._auth_timeout_ms

    def register_authenticator(self, provider: str, authenticator: ProviderAuthenticator) -> None:
        self._authenticators[provider] = authenticator

    def _usable(self, expires_at: datetime | None) -> bool:
        if expires_at is None:
            return False
        return as_utc(expires_at) - self._buffer > self._clock()

    async def get_valid_token(self, tenant_id: str, provider: str) -> str:
        cached = self._cache.get((tenant_id, provider))
        if cached is not None and self._usable(cached.expires_at):
            return cached.access_token
        stored = await self._load_stored(tenant_id, provider)
        if stored is not None and self._usable(stored.expires_at):
            self._cache[(tenant_id, provider)] = stored
            return stored.access_token
        return await self._refresh_with_lock(tenant_id, provider, rejected_token=None)

    async def refresh_token(self, tenant_id: str, provider: str, *, rejected_token: str | None = None) -> str:
        # Forced refresh after the provider rejected a token mid-flight.
        self._cache.pop((tenant_id, provider), None)
        return await self._refresh_with_lock(tenant_id, provider, rejected_token=rejected_token, force=True)

    async def invalidate(self, tenant_id: str, provider: str) -> None:
        # Drop the token everywhere so the next call authenticates again.
        self._cache.pop((tenant_id, provider), None)
        async with self._session_factory() as session:
            await credentials_repo.clear_token(session, tenant_id=tenant_id, provider=provider)
        logger.info("token_invalidated tenant=%s provider=%s", tenant_id, provider)

    async def set_credentials(self, tenant_id: str, provider: str, credentials: Mapping[str, Any]) -> None:
        ciphertext = self._vault.encrypt_json(
            tenant_id=tenant_id,
            provider=provider,
            purpose=PURPOSE_CREDENTIALS,
            value=dict(credentials),
        )
        async with self._session_factory() as session:
            await credentials_repo.upsert_credentials(
                session,
                tenant_id=tenant_id,
                provider=provider,
                credentials_ciphertext=ciphertext,
            )
        self._cache.pop((tenant_id, provider), None)
        logger.info("credentials_updated tenant=%s provider=%s", tenant_id, provider)

    async def _load_stored(self, tenant_id: str, provider: str) -> CachedToken | None:
        async with self._session_factory() as session:
            record = await credentials_repo.get_credential(session, tenant_id, provider)
        if record is None or not record.token_ciphertext or record.token_expires_at is None:
            return None
        try:
            token = self._vault.decrypt(
                tenant_id=tenant_id,
                provider=provider,
                purpose=PURPOSE_TOKEN,
                token=record.token_ciphertext,
            ).decode("utf-8")
        except VaultError:
            # An unreadable token is as good as none; the refresh path overwrites it.
            logger.warning("token_decrypt_failed tenant=%s provider=%s", tenant_id, provider)
            return None
        return CachedToken(access_token=token, expires_at=as_utc(record.token_expires_at))

    async def _refresh_with_lock(
        self,
        tenant_id: str,
        provider: str,
        *,
        rejected_token: str | None,
        force: bool = False,
    ) -> str:
        slot_reserved = False
        while True:
            try:
                return await self._refresh_once(
                    tenant_id,
                    provider,
                    rejected_token=rejected_token,
                    force=force,
                    slot_reserved=slot_reserved,
                )
            except RateLimitedError as exc:
                if exc.scope != "local" or slot_reserved or self._rate_limiter is None:
                    raise
            # Wait for an auth slot with the lock released, then re-check under the lock.
            await self._rate_limiter.acquire(tenant_id, provider, OPERATION_AUTHENTICATE)
            slot_reserved = True

    async def _refresh_once(
        self,
        tenant_id: str,
        provider: str,
        *,
        rejected_token: str | None,
        force: bool,
        slot_reserved: bool,
    ) -> str:
        lock = DistributedLock(
            self._store,
            f"{tenant_id}:{provider}:auth",
            ttl_ms=self._lock_ttl_ms,
            wait_ms=self._lock_wait_ms,
        )
        try:
            async with lock.hold(renew=True):
                # Another process may have refreshed while we waited for the lock.
                stored = await self._load_stored(tenant_id, provider)
                if stored is not None and self._usable(stored.expires_at):
                    if not force or (rejected_token is not None and stored.access_token != rejected_token):
                        self._cache[(tenant_id, provider)] = stored
                        return stored.access_token
                return await self._authenticate(tenant_id, provider, slot_reserved=slot_reserved)
        except LockNotAcquiredError as exc:
            increment_counter("token_refresh_lock_timeout_total")
            logger.warning("token_refresh_busy tenant=%s provider=%s", tenant_id, provider)
            raise TokenRefreshBusyError(f"Token refresh for {provider} is in progress elsewhere") from exc

    async def _load_credentials(self, tenant_id: str, provider: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            record = await credentials_repo.get_credential(session, tenant_id, provider)
        if record is None:
            raise AuthenticationFailedError(
                f"No credentials configured for {provider}",
                credentials_rejected=True,
            )
        try:
            return self._vault.decrypt_json(
                tenant_id=tenant_id,
                provider=provider,
                purpose=PURPOSE_CREDENTIALS,
                token=record.credentials_ciphertext,
            )
        except VaultError as exc:
            raise AuthenticationFailedError(
                f"Stored credentials for {provider} could not be decrypted",
                credentials_rejected=True,
            ) from exc

    async def _authenticate(self, tenant_id: str, provider: str, *, slot_reserved: bool = False) -> str:
        authenticator = self._authenticators.get(provider)
        if authenticator is None:
            raise ProviderConfigError(f"No authenticator registered for provider {provider}")
        credentials = await self._load_credentials(tenant_id, provider)
        if self._rate_limiter is not None and not slot_reserved:
            # Never sleep on the limiter while holding the auth lock.
            await self._rate_limiter.acquire(tenant_id, provider, OPERATION_AUTHENTICATE, fail_fast=True)

        start = asyncio.get_running_loop().time()
        success = False
        try:
            issued = await asyncio.wait_for(
                authenticator.authenticate(credentials),
                timeout=self._auth_timeout_ms / 1000.0,
            )
            success = True
        except GatewayError:
            raise
        except Exception as exc:  # noqa: BLE001 - transport failures map onto the gateway taxonomy
            error = classify_exception(exc)
            if error is None:
                raise
            raise error from exc
        finally:
            record_provider_call(
                provider=provider,
                operation=OPERATION_AUTHENTICATE,
                latency_ms=(asyncio.get_running_loop().time() - start) * 1000.0,
                ok=success,
            )

        ciphertext = self._vault.encrypt(
            tenant_id=tenant_id,
            provider=provider,
            purpose=PURPOSE_TOKEN,
            plaintext=issued.access_token.encode("utf-8"),
        )
        async with self._session_factory() as session:
            await credentials_repo.store_token(
                session,
                tenant_id=tenant_id,
                provider=provider,
                token_ciphertext=ciphertext,
                token_prefix=mask_secret(issued.access_token),
                issued_at=issued.issued_at,
                expires_at=issued.expires_at,
            )
        self._cache[(tenant_id, provider)] = CachedToken(
            access_token=issued.access_token,
            expires_at=as_utc(issued.expires_at),
        )
        increment_counter(f"token_refresh_total.{provider}")
        logger.info(
            "token_refreshed tenant=%s provider=%s token=%s expires_at=%s",
            tenant_id,
            provider,
            mask_secret(issued.access_token),
            issued.expires_at.isoformat(),
        )
        return issued.access_token
