from __future__ import annotations

import hashlib
import hmac
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shipbridge.core.config import get_settings
from shipbridge.core.errors import VaultError
from shipbridge.services.crypto.utils import NONCE_BYTES, canonical_json, decode_key_material, seal, unseal


class CredentialVault:
    """Encrypts provider credentials and session tokens at rest.

    Each (tenant, provider) pair gets its own AES-256-GCM key derived from the
    master key, and ciphertexts are bound to their purpose through the AAD so a
    token ciphertext cannot be swapped into the credentials column.
    """

    def __init__(self, master_key: bytes | None = None) -> None:
        self._master_key = master_key or _load_master_key()

    def encrypt(self, *, tenant_id: str, provider: str, purpose: str, plaintext: bytes) -> str:
        key = _derive_key(self._master_key, tenant_id=tenant_id, provider=provider)
        nonce = os.urandom(NONCE_BYTES)
        aad = _aad(tenant_id=tenant_id, provider=provider, purpose=purpose)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext, aad)
        return seal(nonce, ciphertext)

    def decrypt(self, *, tenant_id: str, provider: str, purpose: str, token: str) -> bytes:
        nonce, ciphertext = unseal(token)
        key = _derive_key(self._master_key, tenant_id=tenant_id, provider=provider)
        aad = _aad(tenant_id=tenant_id, provider=provider, purpose=purpose)
        try:
            return AESGCM(key).decrypt(nonce, ciphertext, aad)
        except InvalidTag as exc:
            raise VaultError("ciphertext failed authentication") from exc

    def encrypt_json(self, *, tenant_id: str, provider: str, purpose: str, value: dict[str, Any]) -> str:
        return self.encrypt(
            tenant_id=tenant_id,
            provider=provider,
            purpose=purpose,
            plaintext=canonical_json(value),
        )

    def decrypt_json(self, *, tenant_id: str, provider: str, purpose: str, token: str) -> dict[str, Any]:
        raw = self.decrypt(tenant_id=tenant_id, provider=provider, purpose=purpose, token=token)
        return json.loads(raw.decode("utf-8"))


def mask_secret(value: str | None, *, visible: int = 6) -> str:
    # Only a short prefix of any secret or token may reach logs.
    if not value:
        return "<none>"
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}…"


def _aad(*, tenant_id: str, provider: str, purpose: str) -> bytes:
    return f"{tenant_id}:{provider}:{purpose}".encode("utf-8")


def _load_master_key() -> bytes:
    settings = get_settings()
    if settings.vault_master_key:
        return _ensure_32_bytes(decode_key_material(settings.vault_master_key))
    # Deterministic fallback for dev/test to avoid breaking local workflows.
    seed = f"{settings.app_name}-credential-vault".encode("utf-8")
    return hashlib.sha256(seed).digest()


def _derive_key(master_key: bytes, *, tenant_id: str, provider: str) -> bytes:
    # HMAC-based derivation keeps per-integration keys deterministic without persisting them.
    message = f"{tenant_id}:{provider}".encode("utf-8")
    return hmac.new(master_key, message, hashlib.sha256).digest()


def _ensure_32_bytes(value: bytes) -> bytes:
    if len(value) == 32:
        return value
    return hashlib.sha256(value).digest()
