"""
Token encryption at rest.

Envelope format: "<iv>:<authTag>:<ciphertext>", each part hex encoded,
AES-256-GCM with a 16-byte IV and 16-byte tag. Rows written by earlier
deployments use the same format, so the layout must not change.

SECURITY REQUIREMENTS:
- Key is the SHA-256 digest of ENCRYPTION_KEY (or SESSION_SECRET)
- Secret must be at least 16 characters; anything shorter is fatal at startup
- Plaintext and ciphertext values are never logged

Legacy rows may still hold plaintext tokens. decrypt() hands malformed
input back unchanged (and logs a decryption_fallback event) so those rows
keep working until encrypt_legacy_tokens_job has rewritten them.

Usage:
    from ledgerbridge.credentials.encryption import encrypt, decrypt

    envelope = encrypt(access_token)
    access_token = decrypt(envelope)
"""

import logging
import os
import re
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ledgerbridge.credentials.redaction import AuditEventType

logger = logging.getLogger(__name__)

IV_SIZE = 16
TAG_SIZE = 16
MIN_SECRET_LENGTH = 16
ENVELOPE_SEPARATOR = ":"

# Checked in order
ENCRYPTION_SECRET_ENV_VARS = ("ENCRYPTION_KEY", "SESSION_SECRET")

_HEX_32 = re.compile(r"^[0-9a-fA-F]{32}$")


class EncryptionKeyError(Exception):
    """Raised when no usable encryption secret is configured."""
    pass


def _get_encryption_secret() -> str:
    for name in ENCRYPTION_SECRET_ENV_VARS:
        value = os.getenv(name)
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise EncryptionKeyError(
                    f"{name} must be at least {MIN_SECRET_LENGTH} characters long."
                )
            return value
    raise EncryptionKeyError(
        "ENCRYPTION_KEY (or SESSION_SECRET) environment variable is required for credential storage."
    )


def get_encryption_key() -> bytes:
    """Derive the 32-byte AES key from the configured secret."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(_get_encryption_secret().encode("utf-8"))
    return digest.finalize()


def validate_encryption_ready() -> bool:
    """
    Validate that encryption is properly configured.

    Call this during application startup to fail fast.

    Raises:
        EncryptionKeyError: If the secret is missing or too short
    """
    get_encryption_key()
    logger.info("Credential encryption validated successfully")
    return True


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """
    Encrypt a token for storage.

    Returns None for None or empty input. A fresh random IV is used for
    every call, so the same plaintext never produces the same envelope.

    Raises:
        EncryptionKeyError: If encryption is not configured
    """
    if not plaintext:
        return None

    aesgcm = AESGCM(get_encryption_key())
    iv = secrets.token_bytes(IV_SIZE)
    sealed = aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
    # cryptography appends the tag to the ciphertext
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return ENVELOPE_SEPARATOR.join((iv.hex(), tag.hex(), ciphertext.hex()))


def decrypt(envelope: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored envelope.

    Returns None for None or empty input. Input that is not a valid
    envelope for the current key is returned unchanged.

    SECURITY: The returned value must NEVER be logged.

    Raises:
        EncryptionKeyError: If encryption is not configured
    """
    if not envelope:
        return None

    key = get_encryption_key()

    parts = envelope.split(ENVELOPE_SEPARATOR)
    if len(parts) != 3 or not all(parts):
        _log_fallback("segment_count")
        return envelope

    try:
        iv = bytes.fromhex(parts[0])
        tag = bytes.fromhex(parts[1])
        ciphertext = bytes.fromhex(parts[2])
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        return plaintext.decode("utf-8")
    except InvalidTag:
        _log_fallback("auth_tag_mismatch")
    except (ValueError, UnicodeDecodeError) as e:
        _log_fallback("malformed_envelope", error_type=type(e).__name__)
    return envelope


def is_encrypted(value: Optional[str]) -> bool:
    """True if value has the envelope shape (32-hex IV and tag, non-empty body)."""
    if not value:
        return False
    parts = value.split(ENVELOPE_SEPARATOR)
    return (
        len(parts) == 3
        and bool(_HEX_32.match(parts[0]))
        and bool(_HEX_32.match(parts[1]))
        and len(parts[2]) > 0
    )


def _log_fallback(reason: str, error_type: Optional[str] = None) -> None:
    extra = {"event": AuditEventType.CREDENTIAL_DECRYPTION_FALLBACK.value, "reason": reason}
    if error_type:
        extra["error_type"] = error_type
    logger.warning("Decryption fallback: returning stored value unchanged", extra=extra)
