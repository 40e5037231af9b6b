"""
Utility functions for the inbox relay.
"""

import hmac
import hashlib
import logging

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify an HMAC-SHA256 webhook signature.

    Args:
        body: Raw request body bytes
        signature: X-Hub-Signature-256 header, "sha256=<hex>" or bare hex
        secret: App secret the provider signs with

    Returns:
        True if signature is valid, False otherwise
    """
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Constant-time comparison
    is_valid = hmac.compare_digest(expected_signature, signature.lower())
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
