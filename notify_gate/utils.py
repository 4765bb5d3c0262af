"""
Utility functions for the notification gate.
"""

import hmac
import hashlib
import logging
import re

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature over {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def normalize_phone(phone: str) -> str:
    """
    Canonical digits-only form of a phone number.

    Drops '+', '-', spaces, brackets and the '@c.us' chat suffix the
    provider appends to WhatsApp ids. normalize_phone(normalize_phone(x))
    equals normalize_phone(x).
    """
    if not phone:
        return ""
    return _NON_DIGITS.sub("", phone.split("@", 1)[0])


def mask_phone(phone: str) -> str:
    """Hide all but the first five characters of a phone number for logs."""
    if not phone:
        return ""
    return phone[:5] + "****"
