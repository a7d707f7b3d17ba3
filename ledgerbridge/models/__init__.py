"""Database models for tenant and shipping credentials."""

from ledgerbridge.models.base import TimestampMixin, utcnow, ensure_utc
from ledgerbridge.models.tenant_credential import (
    TenantCredential,
    ShippingCredential,
    CredentialProvider,
    ConnectionStatus,
    PROVIDER_COLUMNS,
    SHIPPING_CREDENTIALS_ID,
)

__all__ = [
    "TimestampMixin",
    "utcnow",
    "ensure_utc",
    "TenantCredential",
    "ShippingCredential",
    "CredentialProvider",
    "ConnectionStatus",
    "PROVIDER_COLUMNS",
    "SHIPPING_CREDENTIALS_ID",
]
