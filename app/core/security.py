"""
Webhook signature verification for payment processor events.

Signature header format:

    t=1700000000,v1=<hex hmac>[,v1=<hex hmac>...]

where each v1 value is HMAC-SHA256(secret, f"{t}.{raw_body}"). More than one
v1 entry is present while the processor rotates secrets.
"""
import hashlib
import hmac
import logging
import time
from typing import Optional, Tuple, List

from app.core.exceptions import WebhookSignatureError

logger = logging.getLogger(__name__)


def parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
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


def compute_signature(body: bytes, timestamp: int, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    body: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> None:
    """
    Verify a processor webhook body against its signature header.

    Args:
        body: Raw request body bytes, exactly as received
        header: Signature header value
        secret: Shared webhook signing secret
        tolerance: Maximum accepted age of the signature timestamp in seconds
        now: Reference unix time, defaults to time.time()

    Raises:
        WebhookSignatureError: If the header is missing or malformed, no
            signature matches, or the timestamp is outside the tolerance
    """
    if not header:
        raise WebhookSignatureError("Missing webhook signature")

    timestamp, signatures = parse_signature_header(header)
    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed webhook signature header")

    expected = compute_signature(body, timestamp, secret)
    # Constant-time comparison against every candidate
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        logger.warning("Invalid webhook signature")
        raise WebhookSignatureError("Invalid webhook signature")

    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        logger.warning(f"Webhook signature timestamp {timestamp} outside tolerance")
        raise WebhookSignatureError("Webhook timestamp outside the tolerance zone")
