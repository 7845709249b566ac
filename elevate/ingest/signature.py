"""
Kajabi webhook signature verification.

Kajabi signs the exact request body with HMAC-SHA256 over the shared secret
and sends the hex digest in X-Kajabi-Signature. Verification runs on the raw
bytes before any parsing or database access.
"""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

_PREFIX = "sha256="


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    signature: str | None,
    secret: str | None,
) -> bool:
    """
    Verify a Kajabi webhook signature.

    Args:
        payload: Raw request body
        signature: X-Kajabi-Signature header (hex, optionally "sha256=" prefixed)
        secret: KAJABI_WEBHOOK_SECRET from settings

    Returns:
        True only when a secret is configured and the digest matches.
    """
    if not secret:
        logger.error("KAJABI_WEBHOOK_SECRET not configured - rejecting webhook")
        return False

    if not signature:
        logger.warning("Missing webhook signature header")
        return False

    provided = signature.strip()
    if provided.lower().startswith(_PREFIX):
        provided = provided[len(_PREFIX):]
    provided = provided.lower()

    expected = compute_signature(payload, secret)

    # compare_digest on str requires ASCII; a non-hex header is simply a mismatch
    if not provided.isascii():
        return False
    return hmac.compare_digest(provided, expected)
