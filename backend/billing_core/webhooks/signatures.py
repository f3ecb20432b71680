"""
Webhook signature verification.

SECURITY: every delivery is verified before anything is stored.

Stripe signs deliveries with HMAC-SHA256 over "{timestamp}.{raw_body}" and
sends the result in the Stripe-Signature header:

    Stripe-Signature: t=1492774577,v1=5257a869e7ecebeda32affa62cdca3fa51cad7e7...

Several v1 entries may be present while a secret is being rolled; any one
matching is sufficient. Deliveries older than the tolerance are rejected to
limit replay.
"""

import hashlib
import hmac
import logging
import time
from typing import List, Optional, Tuple

from billing_core.errors import WebhookSignatureError

logger = logging.getLogger(__name__)

STRIPE_SIGNATURE_HEADER = "Stripe-Signature"
STRIPE_SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


def _parse_stripe_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == STRIPE_SIGNATURE_SCHEME:
            signatures.append(value)
    return timestamp, signatures


def compute_stripe_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_stripe_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """
    Verify a Stripe-Signature header against the raw body.

    Raises:
        WebhookSignatureError: if the header is missing, malformed, too old or
            matches none of the expected signatures
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret not configured")
    if not header:
        raise WebhookSignatureError("Missing signature header")

    timestamp, signatures = _parse_stripe_header(header)
    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    current = now if now is not None else time.time()
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_stripe_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Signature mismatch")


def build_stripe_header(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Produce a Stripe-Signature header value; used by tests and local tooling."""
    ts = int(timestamp if timestamp is not None else time.time())
    return f"t={ts},{STRIPE_SIGNATURE_SCHEME}={compute_stripe_signature(payload, secret, ts)}"
