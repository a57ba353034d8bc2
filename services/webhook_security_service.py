"""
Webhook Security Service - payment gateway event verification
Validates Stripe-style signed payloads before events reach the orchestrator
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

from config import Config
from utils.exceptions import InvalidInput

logger = logging.getLogger(__name__)


def compute_signature(payload: str, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over "<timestamp>.<payload>", hex encoded"""
    signed_payload = f"{timestamp}.{payload}"
    return hmac.new(secret.encode(), signed_payload.encode(), hashlib.sha256).hexdigest()


def verify_stripe_signature(
    payload: str,
    signature_header: str,
    secret: str,
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """
    Validate a "t=<unix>,v1=<hex>[,v1=<hex>...]" signature header

    Args:
        payload: The raw request body as string
        signature_header: Value of the Stripe-Signature header
        secret: Endpoint signing secret
        tolerance_seconds: Maximum accepted age of the signature
        now: Current unix time (defaults to time.time())

    Returns:
        True if one of the v1 signatures matches and the timestamp is fresh
    """
    if not signature_header or not secret:
        return False

    tolerance = tolerance_seconds if tolerance_seconds is not None else Config.STRIPE_WEBHOOK_TOLERANCE_SECONDS

    timestamp = None
    signatures = []
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return False
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        logger.warning("Webhook signature header missing timestamp or v1 signature")
        return False

    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        logger.warning(f"Webhook signature timestamp outside tolerance: {timestamp}")
        return False

    expected = compute_signature(payload, secret, timestamp)
    # Use secure comparison
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


def parse_gateway_event(
    payload: str,
    signature_header: Optional[str] = None,
    secret: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Verify (when a signing secret is configured) and decode a gateway event

    Raises:
        InvalidInput: bad signature or malformed payload
    """
    secret = secret if secret is not None else Config.STRIPE_WEBHOOK_SECRET
    if secret:
        if not verify_stripe_signature(payload, signature_header or "", secret, now=now):
            logger.error("❌ WEBHOOK_SIGNATURE_INVALID: gateway event rejected")
            raise InvalidInput("Webhook signature verification failed", field="signature")
    else:
        logger.warning("⚠️ WEBHOOK_UNVERIFIED: no signing secret configured, accepting event as-is")

    try:
        event = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"Webhook payload is not valid JSON: {e}", field="payload")

    if not isinstance(event, dict) or "type" not in event:
        raise InvalidInput("Webhook payload is not a gateway event", field="payload")
    return event
