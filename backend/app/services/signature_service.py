"""Webhook signature verification (HMAC-SHA256, constant-time comparison)"""
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class SignatureCheck:
    valid: bool
    reason: Optional[str] = None


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def compute_hmac_sha256(secret: Union[str, bytes], payload: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 of payload keyed by secret"""
    return hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()


def sha256_hex(payload: Union[str, bytes]) -> str:
    """Content hash of the raw body (stored as payload_hash)"""
    return hashlib.sha256(_to_bytes(payload)).hexdigest()


def parse_stripe_signature_header(header: str) -> Tuple[Optional[str], List[str]]:
    """Split a Stripe-Signature header into (timestamp, [v1 signatures])

    Stripe sends ``t=<unix>,v1=<hex>[,v1=<hex>...][,v0=...]``; several v1 entries
    appear while a webhook secret is being rolled.
    """
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep or not value:
            continue
        if key == "t":
            timestamp = value.strip()
        elif key == "v1":
            signatures.append(value.strip())
    return timestamp, signatures


def verify_stripe_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None
) -> SignatureCheck:
    """Verify a Stripe webhook signature over the raw request bytes

    The signed payload is ``"{t}." + raw_body`` exactly as received; the body is
    never parsed or re-serialized before this check.

    Args:
        raw_body: Request body as received
        signature_header: Value of the Stripe-Signature header
        secret: Endpoint signing secret (whsec_...)
        tolerance_seconds: Maximum age (and clock skew) of the signed timestamp
        now: Current unix time override (tests)

    Returns:
        SignatureCheck(valid=True) or SignatureCheck(valid=False, reason=...)
    """
    if not signature_header or not secret:
        return SignatureCheck(False, "Missing signature or secret")

    timestamp, signatures = parse_stripe_signature_header(signature_header)
    if not timestamp or not signatures:
        return SignatureCheck(False, "Invalid signature format")

    try:
        ts = int(timestamp)
    except ValueError:
        return SignatureCheck(False, "Invalid signature format")

    current = time.time() if now is None else now
    if abs(current - ts) > tolerance_seconds:
        return SignatureCheck(False, "Timestamp outside tolerance")

    signed_payload = f"{timestamp}.".encode("utf-8") + _to_bytes(raw_body)
    expected = compute_hmac_sha256(secret, signed_payload)

    # Compare against every candidate so a rolled secret keeps working
    matched = False
    for candidate in signatures:
        if hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8")):
            matched = True

    if not matched:
        return SignatureCheck(False, "Signature mismatch")

    return SignatureCheck(True)


def verify_hmac_signature(raw_body: bytes, signature: Optional[str], secret: str) -> SignatureCheck:
    """Verify a bare hex HMAC-SHA256 signature (no timestamp in the scheme)"""
    if not signature or not secret:
        return SignatureCheck(False, "Missing signature or secret")

    expected = compute_hmac_sha256(secret, raw_body)
    if not hmac.compare_digest(signature.strip().encode("utf-8"), expected.encode("utf-8")):
        return SignatureCheck(False, "Signature mismatch")

    return SignatureCheck(True)


def build_stripe_signature_header(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Produce a Stripe-Signature header value for raw_body (local tooling and tests)"""
    ts = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{ts}.".encode("utf-8") + _to_bytes(raw_body)
    return f"t={ts},v1={compute_hmac_sha256(secret, signed_payload)}"
