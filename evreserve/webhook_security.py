"""
Webhook Security Module

Signature verification for settlement gateway callbacks:
- Constant-time signature comparison
- Timestamp validation against replayed callbacks
- Signed message is ``<timestamp>.<raw body>``
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300

SIGNATURE_HEADER = "X-Settlement-Signature"
TIMESTAMP_HEADER = "X-Settlement-Timestamp"


class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails"""

    pass


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_timestamp(
    timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS, now: Optional[float] = None
) -> bool:
    """
    Verify webhook timestamp is within acceptable range.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds

    Returns:
        True if timestamp is valid, False otherwise
    """
    if not timestamp:
        logger.warning("🚫 Webhook timestamp missing")
        return False

    try:
        webhook_time = int(timestamp)
        current_time = int(now if now is not None else time.time())
        age = abs(current_time - webhook_time)

        if age > max_age:
            logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
            return False

        return True
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False


def sign_settlement_payload(secret: str, timestamp: str, body: bytes) -> str:
    return compute_hmac_sha256(secret, timestamp.encode("utf-8") + b"." + body)


def verify_settlement_signature(
    body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    secret: str,
    now: Optional[float] = None,
) -> None:
    """Raise WebhookSignatureError unless the callback is fresh and signed with ``secret``"""
    if not signature:
        raise WebhookSignatureError("Missing signature header")
    if not verify_timestamp(timestamp, now=now):
        raise WebhookSignatureError("Webhook timestamp outside the accepted window")

    expected = sign_settlement_payload(secret, timestamp, body)
    # Gateways may prefix the digest with the scheme
    provided = signature.split("=", 1)[1] if signature.startswith("sha256=") else signature
    if not constant_time_compare(provided, expected):
        logger.warning("🚫 Settlement webhook signature mismatch")
        raise WebhookSignatureError("Invalid signature")

    logger.debug("✅ Settlement webhook signature verified")
