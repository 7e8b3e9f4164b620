"""
Webhook Signatures - HMAC-SHA256 signing and verification.

Two schemes:

- ``timestamped`` (outbound, and inbound sources like Stripe):
  ``t=<unix_ts>,v1=<hex(HMAC-SHA256(secret, "<ts>.<payload>"))>``.
  The timestamp is covered by the MAC and checked against a tolerance window,
  so a captured request cannot be replayed later.
- ``sha256`` (inbound sources like Meta): ``sha256=<hex(HMAC-SHA256(secret, body))>``.

Every failure raises SignatureError; callers reject the request before
persisting anything.
"""
from __future__ import annotations

import enum
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass

from relay.core.exceptions import SignatureError

DEFAULT_TOLERANCE_SECONDS = 300


class SignatureScheme(str, enum.Enum):
    TIMESTAMPED = "timestamped"
    HEX_SHA256 = "sha256"


@dataclass(frozen=True)
class ParsedSignature:
    timestamp: int
    signatures: tuple[str, ...]


def _to_bytes(payload: bytes | str) -> bytes:
    return payload if isinstance(payload, bytes) else payload.encode("utf-8")


def generate_secret() -> str:
    """Random signing secret (64 hex chars)"""
    return secrets.token_hex(32)


def compute_signature(payload: bytes | str, secret: str, timestamp: int) -> str:
    """hex(HMAC-SHA256(secret, "<ts>.<payload>"))"""
    signed = f"{timestamp}.".encode("utf-8") + _to_bytes(payload)
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign(payload: bytes | str, secret: str, timestamp: int | None = None) -> str:
    """Build the ``t=...,v1=...`` header value for a payload"""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={ts},v1={compute_signature(payload, secret, ts)}"


def parse_signature_header(header: str | None) -> ParsedSignature:
    """
    Parse ``t=<ts>,v1=<hex>[,v1=<hex>...]``.

    Unknown keys (e.g. v0) are ignored; several v1 values are allowed so a
    sender can sign with an old and a new secret during rotation.
    """
    if not header:
        raise SignatureError("missing signature header")

    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureError("malformed timestamp") from None
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None:
        raise SignatureError("timestamp missing from signature header")
    if not signatures:
        raise SignatureError("no v1 signature in signature header")
    return ParsedSignature(timestamp=timestamp, signatures=tuple(signatures))


def verify(
    header: str | None,
    payload: bytes | str,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: int | None = None,
) -> ParsedSignature:
    """
    Verify a timestamped signature header against the raw payload.

    The timestamp check runs even when the MAC matches: a valid signature
    older (or newer) than ``tolerance`` seconds is rejected.

    Raises:
        SignatureError: header missing/malformed, MAC mismatch, or timestamp
            outside the tolerance window.
    """
    parsed = parse_signature_header(header)
    expected = compute_signature(payload, secret, parsed.timestamp)

    # השוואה בטוחה מפני timing attacks: על כל ערכי v1
    matched = False
    for candidate in parsed.signatures:
        if hmac.compare_digest(candidate, expected):
            matched = True
    if not matched:
        raise SignatureError("signature mismatch")

    current = int(time.time()) if now is None else int(now)
    if abs(current - parsed.timestamp) > tolerance:
        raise SignatureError("timestamp outside tolerance window")

    return parsed


def verify_hex_sha256(header: str | None, payload: bytes | str, secret: str) -> None:
    """Verify a ``sha256=<hex>`` header computed over the raw body"""
    if not header or not header.startswith("sha256="):
        raise SignatureError("missing or malformed sha256 signature header")
    expected = hmac.new(secret.encode("utf-8"), _to_bytes(payload), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(header[len("sha256="):], expected):
        raise SignatureError("signature mismatch")


def verify_with_scheme(
    scheme: SignatureScheme | str,
    header: str | None,
    payload: bytes | str,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: int | None = None,
) -> None:
    """Dispatch to the verifier for ``scheme``"""
    scheme = SignatureScheme(scheme)
    if scheme is SignatureScheme.TIMESTAMPED:
        verify(header, payload, secret, tolerance=tolerance, now=now)
    else:
        verify_hex_sha256(header, payload, secret)
