"""
TenantCredential model - one row per installation, holding both OAuth pairs.

SECURITY REQUIREMENTS:
- *_encrypted columns hold AES-256-GCM envelopes, never plaintext
- Rows are only read through CredentialStore, which returns redacted snapshots
- tenant_key is unique and never rewritten once chosen

Lifecycle:
- Created on the first successful OAuth authorization for either provider
- Provider fields nulled on explicit disconnect (row retained)
- Hard-deleted only by a verified CRM deauthorization webhook
"""

import enum
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Enum, String, Text

from ledgerbridge.db_base import Base
from ledgerbridge.models.base import TimestampMixin


class CredentialProvider(str, enum.Enum):
    """Third-party APIs a tenant connects over OAuth."""
    CRM = "crm"
    ACCOUNTING = "accounting"

    @property
    def label(self) -> str:
        """Product name shown to users."""
        return _PROVIDER_LABELS[self]


_PROVIDER_LABELS = {
    CredentialProvider.CRM: "Pipedrive",
    CredentialProvider.ACCOUNTING: "QuickBooks",
}


class ConnectionStatus(str, enum.Enum):
    """Per-provider connection status."""
    CONNECTED = "connected"
    REAUTHORIZATION_REQUIRED = "reauthorization_required"  # Refresh token rejected
    DISCONNECTED = "disconnected"  # Cleared by the user


@dataclass(frozen=True)
class ProviderColumns:
    """Attribute names of one provider's columns on TenantCredential."""
    access_token: str
    refresh_token: str
    expires_at: str
    last_refreshed_at: str
    status: str
    last_error: str
    realm_id: Optional[str] = None


PROVIDER_COLUMNS = {
    CredentialProvider.CRM: ProviderColumns(
        access_token="crm_access_token_encrypted",
        refresh_token="crm_refresh_token_encrypted",
        expires_at="crm_token_expires_at",
        last_refreshed_at="crm_last_refreshed_at",
        status="crm_status",
        last_error="crm_last_error",
    ),
    CredentialProvider.ACCOUNTING: ProviderColumns(
        access_token="accounting_access_token_encrypted",
        refresh_token="accounting_refresh_token_encrypted",
        expires_at="accounting_token_expires_at",
        last_refreshed_at="accounting_last_refreshed_at",
        status="accounting_status",
        last_error="accounting_last_error",
        realm_id="accounting_realm_id",
    ),
}


class TenantCredential(Base, TimestampMixin):
    """
    Credential record for one CRM installation.

    SECURITY:
    - Token columns are encrypted at rest
    - Tokens are NEVER exposed in API responses or logs
    """

    __tablename__ = "tenant_credentials"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    # Identity
    tenant_key = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Canonical identifier: no protocol, no .pipedrive.com suffix"
    )
    alternate_numeric_id = Column(
        String(64),
        nullable=True,
        index=True,
        comment="Numeric CRM user id that also resolves to this tenant"
    )
    crm_api_domain = Column(
        String(255),
        nullable=True,
        comment="CRM API domain as returned by the provider"
    )
    crm_domain_key = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Normalized crm_api_domain, used for lookups and merge checks"
    )

    # CRM tokens - NEVER log these values
    crm_access_token_encrypted = Column(Text, nullable=True)
    crm_refresh_token_encrypted = Column(Text, nullable=True)
    crm_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    crm_last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    crm_status = Column(Enum(ConnectionStatus), nullable=True)
    crm_last_error = Column(Text, nullable=True)

    # Accounting tokens - NEVER log these values
    accounting_access_token_encrypted = Column(Text, nullable=True)
    accounting_refresh_token_encrypted = Column(Text, nullable=True)
    accounting_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    accounting_realm_id = Column(
        String(64),
        nullable=True,
        comment="Accounting company id the tokens are scoped to"
    )
    accounting_last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    accounting_status = Column(Enum(ConnectionStatus), nullable=True)
    accounting_last_error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<TenantCredential(tenant_key={self.tenant_key!r}, crm_status={self.crm_status}, accounting_status={self.accounting_status})>"


SHIPPING_CREDENTIALS_ID = "default"


class ShippingCredential(Base, TimestampMixin):
    """
    Singleton row holding the shipping API key pair.

    Shipping credentials are not OAuth and not per tenant; there is one
    row with the well-known id "default".
    """

    __tablename__ = "shipping_credentials"

    id = Column(String(32), primary_key=True, default=SHIPPING_CREDENTIALS_ID)
    api_key_encrypted = Column(Text, nullable=True)
    api_secret_encrypted = Column(Text, nullable=True)
    auto_create_orders = Column(Boolean, nullable=False, default=False)
    connected_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ShippingCredential(id={self.id!r}, auto_create_orders={self.auto_create_orders})>"
