"""
Keeping OAuth secrets out of logs, plus the credential audit trail.

Two layers:
- redact_credential_value / redact_credential_data scrub values before a
  caller puts them on a log record (provider error bodies, audit metadata)
- CredentialLoggingFilter scrubs whatever still reaches a credential
  logger: message, args and every extra attribute

tenant_key, provider and realm_id are identifiers, not secrets, and stay
readable.

The audit trail is a dedicated logger (ledgerbridge.credentials.audit)
with one INFO record per lifecycle event:
- credential.stored
- credential.refreshed
- credential.refresh_rejected
- credential.disconnected
- credential.deleted
- credential.merge_rejected
- credential.decryption_fallback

Usage:
    CredentialAuditLogger(tenant_key).log(
        AuditEventType.CREDENTIAL_REFRESHED,
        provider="accounting",
        metadata={"new_expires_at": expires_at.isoformat()},
    )
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"

AUDIT_LOGGER_NAME = "ledgerbridge.credentials.audit"

MAX_REDACTION_DEPTH = 10


class AuditEventType(str, Enum):
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_REFRESH_REJECTED = "credential.refresh_rejected"
    CREDENTIAL_DISCONNECTED = "credential.disconnected"
    CREDENTIAL_DELETED = "credential.deleted"
    CREDENTIAL_MERGE_REJECTED = "credential.merge_rejected"
    CREDENTIAL_DECRYPTION_FALLBACK = "credential.decryption_fallback"


# A key containing any of these names a secret, whatever its value looks like
SECRET_KEY_FRAGMENTS = (
    "token", "secret", "credential", "bearer", "oauth",
    "api_key", "apikey", "password", "authorization", "signature",
)

CREDENTIAL_SECRET_PATTERNS = (
    r"Bearer\s+[A-Za-z0-9\-._~+/]+=*",
    r"Basic\s+[A-Za-z0-9+/]+=*",
    r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+",  # JWT
    r"AB11[0-9A-Za-z]{20,}",  # Intuit refresh token
    r"\b[0-9a-fA-F]{32}:[0-9a-fA-F]{32}:[0-9a-fA-F]+\b",  # stored envelope
    r"(?:access|refresh)_token=[^&\s]+",
)

_SECRET_VALUE_RE = re.compile("|".join(f"(?:{p})" for p in CREDENTIAL_SECRET_PATTERNS), re.IGNORECASE)


def is_credential_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in SECRET_KEY_FRAGMENTS)


def redact_credential_value(value: Any) -> Any:
    """Replace secret-shaped substrings of a string; other types pass through."""
    if isinstance(value, str):
        return _SECRET_VALUE_RE.sub(REDACTED_VALUE, value)
    return value


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Copy of data with secrets replaced.

    Dict entries whose key names a secret are replaced wholesale; strings
    anywhere else are scrubbed by pattern. Nesting deeper than
    MAX_REDACTION_DEPTH is returned as-is.
    """
    if _depth > MAX_REDACTION_DEPTH:
        return data
    if isinstance(data, dict):
        return {
            key: REDACTED_VALUE
            if isinstance(key, str) and is_credential_secret_key(key)
            else redact_credential_data(value, _depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(redact_credential_data(item, _depth + 1) for item in data)
    return redact_credential_value(data)


class CredentialAuditLogger:
    """
    Emits audit records for one tenant (None for the shipping singleton).

    Metadata is redacted before it is attached.
    """

    def __init__(self, tenant_key: Optional[str]):
        self.tenant_key = tenant_key
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log(
        self,
        event_type: AuditEventType,
        provider: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        record = redact_credential_data(dict(metadata or {}))
        record.update(
            event_type=event_type.value,
            tenant_key=self.tenant_key,
            provider=provider,
            occurred_at=datetime.now(timezone.utc).isoformat(),
        )
        self.logger.info("Credential audit: %s", event_type.value, extra=record)


class CredentialLoggingFilter(logging.Filter):
    """Scrubs secrets from every part of a record before handlers format it."""

    # Attributes every LogRecord has; none of them carry caller data
    _RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_credential_value(record.msg)
        record.args = self._redact_args(record.args)

        for key, value in list(vars(record).items()):
            if key in self._RESERVED:
                continue
            if is_credential_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            else:
                setattr(record, key, redact_credential_value(value))
        return True

    @staticmethod
    def _redact_args(args):
        if isinstance(args, dict):
            return redact_credential_data(args)
        if isinstance(args, tuple):
            return tuple(redact_credential_value(arg) for arg in args)
        return args


CREDENTIAL_LOGGERS = (
    AUDIT_LOGGER_NAME,
    "ledgerbridge.credentials.encryption",
    "ledgerbridge.credentials.store",
    "ledgerbridge.credentials.resolver",
    "ledgerbridge.credentials.refresh",
    "ledgerbridge.credentials.providers",
    "ledgerbridge.credentials.client",
    "ledgerbridge.credentials.locks",
    "ledgerbridge.services.connection_service",
    "ledgerbridge.integrations.crm.client",
    "ledgerbridge.integrations.accounting.client",
)


def setup_credential_logging() -> None:
    """
    Attach CredentialLoggingFilter to each credential logger, once.

    Logger filters do not apply to child loggers, hence the explicit list.
    Called by create_app and the worker entry points.
    """
    credential_filter = CredentialLoggingFilter()
    for name in CREDENTIAL_LOGGERS:
        target = logging.getLogger(name)
        if not any(isinstance(f, CredentialLoggingFilter) for f in target.filters):
            target.addFilter(credential_filter)

    logger.info("Credential log redaction enabled", extra={"loggers": len(CREDENTIAL_LOGGERS)})
