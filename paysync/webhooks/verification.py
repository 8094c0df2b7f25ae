"""Webhook signature verification: constant-time HMAC-SHA256.

Security contract:
- The gateway sends X-Razorpay-Signature: hex HMAC-SHA256 of the raw body
- Verification runs on raw bytes, before JSON parsing
- All comparisons use hmac.compare_digest() (constant-time)
- Missing secret -> verification always fails (fail-closed)
"""

from __future__ import annotations

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-razorpay-signature"


def compute_signature(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``body`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature_header: str | None, secret: str) -> bool:
    """Verify a gateway webhook signature.

    Args:
        body: Raw request body bytes
        signature_header: Value of the X-Razorpay-Signature header
        secret: Shared webhook secret

    Returns:
        True if the signature is valid
    """
    if not secret:
        logger.warning("Webhook secret not set: rejecting webhook")
        return False
    if not signature_header:
        return False

    # Headers arrive latin-1 decoded; a hex digest is always ASCII.
    if not signature_header.isascii():
        return False

    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature_header.strip().lower().encode("ascii"))
