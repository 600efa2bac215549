"""Stripe-style webhook signatures.

The ``Stripe-Signature`` header looks like ``t=1700000000,v1=<hex>[,v1=<hex>]``.
Each ``v1`` is HMAC-SHA256 of ``"{t}.{raw body}"`` keyed with the endpoint
secret. Deliveries older than the tolerance are rejected to stop replays.
"""

import hashlib
import hmac
import json
import time
from typing import Any, Optional

from services.store_service.errors import WebhookSignatureError


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a header value for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(payload, secret, timestamp)}"


def _parse_header(header: str) -> tuple[Optional[int], list[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_payload(
    payload: bytes,
    header: Optional[str],
    secret: str,
    *,
    tolerance: int,
    now: Optional[int] = None,
) -> dict[str, Any]:
    """Check the signature and return the decoded JSON body."""
    if not header:
        raise WebhookSignatureError("Missing signature")

    timestamp, signatures = _parse_header(header)
    if timestamp is None or not signatures:
        raise WebhookSignatureError("Invalid signature")

    now = int(time.time()) if now is None else now
    if tolerance and abs(now - timestamp) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Invalid signature")

    try:
        return json.loads(payload.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise WebhookSignatureError("Invalid payload")
