"""
TierSync - Webhook Signature Verification
Standard Webhooks scheme used by Dodo Payments:
base64(HMAC-SHA256(base64decode(secret), "{id}.{timestamp}.{body}")).
"""
import base64
import binascii
import hashlib
import hmac
import logging
from typing import Optional, Union

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"
SIGNATURE_SCHEME = "v1,"


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        secret = secret[len(SECRET_PREFIX):]
    return base64.b64decode(secret)


def _as_text(body: Union[bytes, str]) -> str:
    if isinstance(body, bytes):
        return body.decode("utf-8")
    return body


def compute_signature(secret: str, webhook_id: str, timestamp: str, body: Union[bytes, str]) -> str:
    """Return the base64 signature for a payload (without the scheme prefix)."""
    signed_message = f"{webhook_id}.{timestamp}.{_as_text(body)}"
    digest = hmac.new(_secret_bytes(secret), signed_message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_payload(secret: str, webhook_id: str, timestamp: str, body: Union[bytes, str]) -> str:
    """Build a full webhook-signature header value."""
    return SIGNATURE_SCHEME + compute_signature(secret, webhook_id, timestamp, body)


def verify_webhook_signature(
    body: Union[bytes, str],
    webhook_id: Optional[str],
    timestamp: Optional[str],
    signature_header: Optional[str],
    secret: Optional[str],
) -> bool:
    """
    Verify an inbound webhook.

    An unset secret accepts everything; missing headers reject. The header may
    carry several space-separated signatures, any of which may match.
    """
    if not secret:
        logger.warning("Webhook key not configured, skipping signature verification")
        return True

    if not webhook_id or not timestamp or not signature_header:
        logger.warning("Missing required webhook headers")
        return False

    try:
        expected = compute_signature(secret, webhook_id, timestamp, body)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.error(f"Signature verification error: {e}")
        return False

    for candidate in signature_header.split():
        if candidate.startswith(SIGNATURE_SCHEME):
            candidate = candidate[len(SIGNATURE_SCHEME):]
        if hmac.compare_digest(candidate, expected):
            logger.info(f"Webhook signature verified for {webhook_id}")
            return True

    logger.warning(f"Webhook signature mismatch for {webhook_id}")
    return False
