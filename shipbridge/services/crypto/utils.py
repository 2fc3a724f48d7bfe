from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from shipbridge.core.errors import VaultError


SEALED_VERSION = "v1"
NONCE_BYTES = 12
# AES-GCM appends a 16 byte tag, so shorter bodies can never authenticate.
_MIN_SEALED_BYTES = NONCE_BYTES + 16


def decode_key_material(value: str) -> bytes:
    """Decode a master key given as hex or base64 text."""
    text = value.strip()
    if not text:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(text)
    except ValueError:
        pass
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("key material must be base64 or hex") from exc


def seal(nonce: bytes, ciphertext: bytes) -> str:
    # Column format: "<version>.<base64(nonce || ciphertext || tag)>".
    body = base64.b64encode(nonce + ciphertext).decode("ascii")
    return f"{SEALED_VERSION}.{body}"


def unseal(token: str) -> tuple[bytes, bytes]:
    version, separator, body = token.partition(".")
    if separator != "." or version != SEALED_VERSION:
        raise VaultError("unsupported ciphertext format")
    try:
        payload = base64.b64decode(body.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise VaultError("ciphertext is not valid base64") from exc
    if len(payload) < _MIN_SEALED_BYTES:
        raise VaultError("ciphertext is truncated")
    return payload[:NONCE_BYTES], payload[NONCE_BYTES:]


def canonical_json(value: dict[str, Any]) -> bytes:
    return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")
