"""
Pipedrive webhook signature verification.

The deauthorization callback carries X-Pipedrive-Signature: the hex
HMAC-SHA256 of the raw request body keyed with the OAuth client secret.
"""

import hashlib
import hmac
import logging
from typing import Optional

from ledgerbridge.config.settings import get_client_secret
from ledgerbridge.models.tenant_credential import CredentialProvider

logger = logging.getLogger(__name__)


def compute_webhook_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str] = None,
) -> bool:
    """
    Verify a Pipedrive webhook signature.

    Args:
        payload: Raw request body bytes
        signature: X-Pipedrive-Signature header value
        secret: Client secret (PIPEDRIVE_CLIENT_SECRET if not provided)

    Returns:
        True if signature is valid
    """
    secret = secret or get_client_secret(CredentialProvider.CRM)
    if not secret:
        logger.error("PIPEDRIVE_CLIENT_SECRET not configured for webhook verification")
        return False
    if not signature:
        return False

    expected = compute_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
