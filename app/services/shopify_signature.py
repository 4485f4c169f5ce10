"""
Shopify request signature checks.

Two schemes:
- install/OAuth callback: hex HMAC-SHA256 over the sorted query string (minus `hmac`)
- webhooks: base64 HMAC-SHA256 over the raw request body

Both return False instead of raising; callers decide how to reject.
"""
import base64
import hashlib
import hmac
import logging
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


def compute_query_hmac(params: Mapping[str, str], secret: str) -> str:
    message = "&".join(
        f"{key}={params[key]}" for key in sorted(params.keys()) if key != "hmac"
    )
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def compute_webhook_hmac(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_install_callback(query_params: Mapping[str, str], secret: str) -> bool:
    """Verify the `hmac` query parameter Shopify appends to install and OAuth callbacks."""
    received = (query_params or {}).get("hmac")
    if not received or not secret:
        logger.warning("Callback HMAC verification failed: missing hmac parameter or app secret")
        return False
    try:
        calculated = compute_query_hmac(query_params, secret)
        is_valid = hmac.compare_digest(calculated, str(received))
    except (TypeError, ValueError) as e:
        logger.warning("Callback HMAC verification error: %s", e)
        return False
    if not is_valid:
        logger.warning("Callback HMAC mismatch for shop %s", query_params.get("shop"))
    return is_valid


def verify_webhook(raw_body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """Verify X-Shopify-Hmac-Sha256 against the raw body. Must run before any JSON parsing."""
    if not signature_header or not secret:
        logger.warning("Webhook HMAC verification failed: missing header or app secret")
        return False
    try:
        calculated = compute_webhook_hmac(raw_body or b"", secret)
        return hmac.compare_digest(calculated.encode("utf-8"), signature_header.strip().encode("utf-8"))
    except (TypeError, ValueError, UnicodeEncodeError) as e:
        logger.warning("Webhook HMAC verification error: %s", e)
        return False
