from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac


@dataclass(frozen=True)
class VerificationResult:
    # Stable reason codes let operators diagnose rejects without seeing secrets.
    ok: bool
    reason: str
    payload_sha256: str


def compute_hmac_sha256_hex(secret: str, raw_body: bytes) -> str:
    # Compute HMAC over raw bytes only; re-serialized JSON would not match the sender.
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def compute_signature(raw_body: bytes, secret: str) -> str:
    return f"sha256={compute_hmac_sha256_hex(secret, raw_body)}"


def payload_sha256(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def parse_signature(header_value: str) -> str:
    # Accept `sha256=<hex>` or a bare hex digest; anything else is malformed.
    raw = header_value.strip()
    algorithm, separator, digest = raw.partition("=")
    if separator:
        if algorithm.strip().lower() != "sha256":
            raise ValueError("invalid_signature_format")
        raw = digest
    digest_hex = raw.strip().lower()
    if len(digest_hex) != 64:
        raise ValueError("invalid_signature_format")
    try:
        int(digest_hex, 16)
    except ValueError as exc:
        raise ValueError("invalid_signature_format") from exc
    return digest_hex


def verify_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    allow_unsigned: bool = False,
) -> VerificationResult:
    digest = payload_sha256(raw_body)
    if not secret:
        if allow_unsigned:
            return VerificationResult(ok=True, reason="unsigned_allowed", payload_sha256=digest)
        return VerificationResult(ok=False, reason="secret_missing", payload_sha256=digest)
    if not signature_header:
        return VerificationResult(ok=False, reason="missing_signature", payload_sha256=digest)
    try:
        provided = parse_signature(signature_header)
    except ValueError:
        return VerificationResult(ok=False, reason="invalid_signature_format", payload_sha256=digest)
    expected = compute_hmac_sha256_hex(secret, raw_body)
    if not hmac.compare_digest(expected, provided):
        return VerificationResult(ok=False, reason="signature_mismatch", payload_sha256=digest)
    return VerificationResult(ok=True, reason="ok", payload_sha256=digest)
