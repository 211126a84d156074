"""
Webhook Security Module

Signature verification for payment gateway callbacks, following the Standard
Webhooks scheme:
- Signed message is webhook-id.webhook-timestamp.payload
- HMAC-SHA256 with the base64-decoded "whsec_" secret, base64 encoded
- Header format "v1,<signature>" (several space-separated signatures allowed)
- Constant-time comparison and a timestamp window against replays
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


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


def extract_signing_key(secret: str) -> bytes:
    """
    Signing key bytes from a "whsec_BASE64KEY" style secret.

    Unprefixed secrets are tried as base64 first, then used as raw UTF-8.
    """
    try:
        if secret.startswith("whsec_"):
            return base64.b64decode(secret[6:], validate=True)
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        return secret.encode("utf-8")


def verify_timestamp(
    timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS, now: Optional[int] = None
) -> bool:
    """
    Verify webhook timestamp is within acceptable range.
    Prevents replay attacks by rejecting old webhooks.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds
        now: Current unix time (defaults to time.time())

    Returns:
        True if timestamp is valid, False otherwise
    """
    if not timestamp:
        return False

    try:
        webhook_time = int(timestamp)
        current_time = int(time.time()) if now is None else now
        age = abs(current_time - webhook_time)

        if age > max_age:
            logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
            return False

        return True
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False


def sign_payload(secret: str, webhook_id: str, timestamp: str, payload: bytes) -> str:
    """Signature header value ("v1,<base64>") for a payload"""
    signed_message = b".".join([webhook_id.encode("utf-8"), timestamp.encode("utf-8"), payload])
    digest = hmac.new(extract_signing_key(secret), signed_message, hashlib.sha256).digest()
    return f"v1,{base64.b64encode(digest).decode('utf-8')}"


def verify_signature(
    secret: str,
    webhook_id: str,
    timestamp: str,
    signature_header: str,
    payload: bytes,
    now: Optional[int] = None,
) -> None:
    """
    Check a webhook signature header against the payload.

    Raises:
        WebhookSignatureError: missing headers, stale timestamp or no matching signature
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret not configured")
    if not webhook_id or not timestamp or not signature_header:
        raise WebhookSignatureError("Missing webhook headers")
    if not verify_timestamp(timestamp, now=now):
        raise WebhookSignatureError("Webhook timestamp expired")

    expected = sign_payload(secret, webhook_id, timestamp, payload)
    for candidate in signature_header.split(" "):
        if candidate.startswith("v1,") and constant_time_compare(expected, candidate):
            return

    raise WebhookSignatureError("Invalid webhook signature")


async def verify_payment_webhook(request: Request, secret: Optional[str]) -> tuple[str, bytes]:
    """
    Verify a payment gateway webhook before anything is parsed or changed.

    Args:
        request: FastAPI request object
        secret: Webhook secret from the gateway dashboard

    Returns:
        Tuple of (webhook_id, raw_body)
    """
    # Get raw body BEFORE any parsing - the signature covers exact bytes
    raw_body = await request.body()

    webhook_id = request.headers.get("webhook-id", "")
    timestamp = request.headers.get("webhook-timestamp", "")
    signature_header = request.headers.get("webhook-signature", "")

    logger.info(f"📥 Payment webhook received: id={webhook_id or 'unknown'}")

    try:
        verify_signature(secret or "", webhook_id, timestamp, signature_header, raw_body)
    except WebhookSignatureError as e:
        client = request.client.host if request.client else "unknown"
        logger.warning(
            f"🚫 SECURITY: rejected payment webhook id={webhook_id or 'unknown'} "
            f"from {client}: {e}"
        )
        raise HTTPException(status_code=401, detail=str(e)) from e

    logger.info(f"✅ Payment webhook signature verified: {webhook_id}")
    return webhook_id, raw_body
