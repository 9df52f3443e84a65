"""
Utility functions for the relay webhooks.
"""

import base64
import hashlib
import hmac
import logging
from typing import Any, Mapping

logger = logging.getLogger(__name__)


def compute_gateway_signature(url: str, params: Mapping[str, Any], secret: str) -> str:
    """
    Compute the gateway's webhook signature.

    The signed string is the full callback URL followed by every POST
    parameter, sorted by name, as name+value with no separators. The
    signature is base64(HMAC-SHA1(secret, signed string)).
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_gateway_signature(url: str, params: Mapping[str, Any], signature: str, secret: str) -> bool:
    """
    Verify a webhook signature header.

    Args:
        url: Full URL the gateway posted to
        params: Decoded form parameters
        signature: Value of the X-Twilio-Signature header
        secret: Gateway auth token

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        return False
    expected_signature = compute_gateway_signature(url, params, secret)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"Webhook signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
