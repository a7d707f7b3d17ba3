"""
Credential storage for tenant OAuth pairs and the shipping API key.

SECURITY REQUIREMENTS:
- Secret fields are encrypted individually immediately before each write
- Callers receive immutable snapshots; the ORM row never leaves this module
- Snapshot reprs never contain token values

Writes commit immediately so rotated tokens are visible to every other
worker before the refreshing call returns. A token-pair rotation is a
single commit: access token, refresh token and expiry land together or
not at all.

Usage:
    store = CredentialStore(db_session)

    # Upsert by canonical key
    store.set("acme.pipedrive.com", crm_access_token="...", crm_status=ConnectionStatus.CONNECTED)

    # Exact lookup (no fuzzy matching; see IdentifierResolver for that)
    credentials = store.get("https://acme.pipedrive.com")
    access_token = credentials.crm.access_token
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledgerbridge.credentials.encryption import encrypt, decrypt
from ledgerbridge.credentials.errors import CredentialNotFoundError
from ledgerbridge.credentials.identifiers import CRM_DOMAIN_SUFFIX, normalize_identifier
from ledgerbridge.credentials.providers import TokenGrant
from ledgerbridge.credentials.redaction import CredentialAuditLogger, AuditEventType
from ledgerbridge.models.base import ensure_utc, utcnow
from ledgerbridge.models.tenant_credential import (
    PROVIDER_COLUMNS,
    SHIPPING_CREDENTIALS_ID,
    ConnectionStatus,
    CredentialProvider,
    ShippingCredential,
    TenantCredential,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# set() field name -> encrypted column
SECRET_FIELDS = {
    "crm_access_token": "crm_access_token_encrypted",
    "crm_refresh_token": "crm_refresh_token_encrypted",
    "accounting_access_token": "accounting_access_token_encrypted",
    "accounting_refresh_token": "accounting_refresh_token_encrypted",
}

PLAIN_FIELDS = frozenset({
    "alternate_numeric_id",
    "crm_api_domain",
    "crm_token_expires_at",
    "crm_last_refreshed_at",
    "crm_status",
    "accounting_token_expires_at",
    "accounting_realm_id",
    "accounting_last_refreshed_at",
    "accounting_status",
})


@dataclass(frozen=True)
class ProviderCredentials:
    """
    One provider's decrypted credentials for a tenant.

    SECURITY: access_token and refresh_token are excluded from repr.
    """
    tenant_key: str
    provider: CredentialProvider
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    status: Optional[ConnectionStatus] = None
    realm_id: Optional[str] = None
    api_domain: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        """True if there is an access token (and a realm id, for accounting)."""
        if not self.access_token:
            return False
        if self.provider == CredentialProvider.ACCOUNTING and not self.realm_id:
            return False
        return True

    @property
    def needs_reauthorization(self) -> bool:
        return self.status == ConnectionStatus.REAUTHORIZATION_REQUIRED


@dataclass(frozen=True)
class TenantCredentials:
    """Immutable snapshot of a tenant record."""
    tenant_key: str
    crm: ProviderCredentials
    accounting: ProviderCredentials
    alternate_numeric_id: Optional[str] = None
    crm_api_domain: Optional[str] = None
    crm_domain_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def for_provider(self, provider: CredentialProvider) -> ProviderCredentials:
        if provider == CredentialProvider.CRM:
            return self.crm
        return self.accounting

    def has_provider(self, provider: Optional[CredentialProvider]) -> bool:
        """True if the record holds usable credentials for provider (None: any record)."""
        if provider is None:
            return True
        return self.for_provider(provider).is_complete

    @property
    def sort_key(self) -> datetime:
        return self.created_at or _EPOCH


@dataclass(frozen=True)
class ShippingCredentials:
    """
    Decrypted shipping API key pair.

    SECURITY: api_key and api_secret are excluded from repr.
    """
    api_key: Optional[str] = field(default=None, repr=False)
    api_secret: Optional[str] = field(default=None, repr=False)
    auto_create_orders: bool = False
    connected_at: Optional[datetime] = None

    @property
    def is_connected(self) -> bool:
        return bool(self.api_key and self.api_secret)


class CredentialStore:
    """
    Service for encrypted credential storage.

    Records are addressed by canonical tenant key. get() and set() accept
    any syntactic variant of an identifier and map it to the canonical
    key; loose matching lives in IdentifierResolver.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    # =========================================================================
    # Tenant records
    # =========================================================================

    def get(self, identifier: Optional[str]) -> Optional[TenantCredentials]:
        """
        Exact lookup: canonical key, canonical key + CRM suffix, then raw identifier.
        """
        record = self._find_record(identifier)
        return self._to_snapshot(record) if record else None

    def get_exact(self, tenant_key: str) -> Optional[TenantCredentials]:
        """Lookup by stored key with no normalization."""
        record = self._get_record(tenant_key)
        return self._to_snapshot(record) if record else None

    def set(self, identifier: str, **fields) -> TenantCredentials:
        """
        Upsert fields into the record for identifier.

        Only the fields passed are written; passing None clears a field.
        Secret fields (crm_access_token, accounting_refresh_token, ...) are
        encrypted before the write. crm_api_domain also updates the
        normalized domain index.

        Raises:
            ValueError: If identifier is empty or a field name is unknown
        """
        unknown = set(fields) - PLAIN_FIELDS - set(SECRET_FIELDS)
        if unknown:
            raise ValueError(f"Unknown credential fields: {sorted(unknown)}")

        # Encrypt up front so a key error leaves the row untouched
        encrypted = {
            SECRET_FIELDS[name]: encrypt(value)
            for name, value in fields.items()
            if name in SECRET_FIELDS
        }

        record = self._find_record(identifier)
        created = record is None
        now = utcnow()
        if created:
            tenant_key = normalize_identifier(identifier)
            if not tenant_key:
                raise ValueError("identifier is required")
            record = TenantCredential(tenant_key=tenant_key, created_at=now)
            self.db.add(record)

        for column, value in encrypted.items():
            setattr(record, column, value)
        for name, value in fields.items():
            if name in PLAIN_FIELDS:
                setattr(record, name, value)
        if "crm_api_domain" in fields:
            record.crm_domain_key = normalize_identifier(fields["crm_api_domain"])
        record.updated_at = now

        self._commit()

        CredentialAuditLogger(record.tenant_key).log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            metadata={"fields": sorted(fields), "record_created": created},
        )
        logger.info(
            "Credential record saved",
            extra={"tenant_key": record.tenant_key, "record_created": created}
        )
        return self._to_snapshot(record)

    def delete(self, identifier: str) -> bool:
        """Hard delete. Returns False if no record matched."""
        record = self._find_record(identifier)
        if record is None:
            return False
        tenant_key = record.tenant_key
        self.db.delete(record)
        self._commit()

        CredentialAuditLogger(tenant_key).log(event_type=AuditEventType.CREDENTIAL_DELETED)
        logger.info("Credential record deleted", extra={"tenant_key": tenant_key})
        return True

    def list_keys(self) -> list[str]:
        rows = self.db.query(TenantCredential.tenant_key).order_by(TenantCredential.tenant_key).all()
        return [row[0] for row in rows]

    def rotate_tokens(
        self,
        tenant_key: str,
        provider: CredentialProvider,
        grant: TokenGrant,
    ) -> ProviderCredentials:
        """
        Persist a refreshed token pair in one commit.

        Keeps the stored refresh token when the grant has none. Clears any
        reauthorization flag.

        Raises:
            CredentialNotFoundError: If the record no longer exists
        """
        record = self._require_record(tenant_key, provider)
        columns = PROVIDER_COLUMNS[provider]

        access_encrypted = encrypt(grant.access_token)
        refresh_encrypted = encrypt(grant.refresh_token) if grant.refresh_token else None

        setattr(record, columns.access_token, access_encrypted)
        if refresh_encrypted:
            setattr(record, columns.refresh_token, refresh_encrypted)
        setattr(record, columns.expires_at, grant.expires_at)
        setattr(record, columns.last_refreshed_at, grant.issued_at)
        setattr(record, columns.status, ConnectionStatus.CONNECTED)
        setattr(record, columns.last_error, None)
        record.updated_at = utcnow()

        self._commit()
        return self._provider_snapshot(record, provider)

    def clear_provider(self, tenant_key: str, provider: CredentialProvider) -> TenantCredentials:
        """
        Disconnect one provider: null its tokens, keep the record and the other provider.

        Raises:
            CredentialNotFoundError: If no record exists for tenant_key
        """
        record = self._require_record(tenant_key, provider)
        columns = PROVIDER_COLUMNS[provider]

        setattr(record, columns.access_token, None)
        setattr(record, columns.refresh_token, None)
        setattr(record, columns.expires_at, None)
        setattr(record, columns.last_refreshed_at, None)
        setattr(record, columns.last_error, None)
        setattr(record, columns.status, ConnectionStatus.DISCONNECTED)
        if columns.realm_id:
            setattr(record, columns.realm_id, None)
        record.updated_at = utcnow()

        self._commit()

        CredentialAuditLogger(tenant_key).log(
            event_type=AuditEventType.CREDENTIAL_DISCONNECTED,
            provider=provider.value,
        )
        return self._to_snapshot(record)

    def mark_reauthorization_required(
        self,
        tenant_key: str,
        provider: CredentialProvider,
        reason: Optional[str] = None,
    ) -> None:
        """Flag a provider as needing the user to reconnect. Tokens are kept for inspection."""
        record = self._require_record(tenant_key, provider)
        columns = PROVIDER_COLUMNS[provider]
        setattr(record, columns.status, ConnectionStatus.REAUTHORIZATION_REQUIRED)
        setattr(record, columns.last_error, (reason or "")[:500] or None)
        record.updated_at = utcnow()
        self._commit()

    def move_provider_credentials(
        self,
        source_key: str,
        target_key: str,
        provider: CredentialProvider,
    ) -> TenantCredentials:
        """
        Move one provider's encrypted columns from source to target in one commit.

        The ciphertext is moved as-is; the source provider is left disconnected
        so a single-use refresh token is held by exactly one record.
        """
        source = self._require_record(source_key, provider)
        target = self._require_record(target_key, provider)
        columns = PROVIDER_COLUMNS[provider]

        names = [
            columns.access_token,
            columns.refresh_token,
            columns.expires_at,
            columns.last_refreshed_at,
            columns.status,
            columns.last_error,
        ]
        if columns.realm_id:
            names.append(columns.realm_id)
        for name in names:
            setattr(target, name, getattr(source, name))
            setattr(source, name, None)
        setattr(source, columns.status, ConnectionStatus.DISCONNECTED)

        now = utcnow()
        source.updated_at = now
        target.updated_at = now
        self._commit()
        return self._to_snapshot(target)

    # =========================================================================
    # Lookups used by IdentifierResolver and workers
    # =========================================================================

    def find_by_alternate_id(self, alternate_id: str) -> list[TenantCredentials]:
        records = self.db.query(TenantCredential).filter(
            TenantCredential.alternate_numeric_id == str(alternate_id)
        ).order_by(TenantCredential.created_at.desc()).all()
        return [self._to_snapshot(r) for r in records]

    def find_by_domain_key(self, domain_key: str) -> list[TenantCredentials]:
        records = self.db.query(TenantCredential).filter(
            TenantCredential.crm_domain_key == domain_key
        ).order_by(TenantCredential.created_at.desc()).all()
        return [self._to_snapshot(r) for r in records]

    def iter_records(self) -> Iterator[TenantCredentials]:
        """Every record, newest first. Last-resort scan; avoid on hot paths."""
        query = self.db.query(TenantCredential).order_by(TenantCredential.created_at.desc())
        for record in query.yield_per(100):
            yield self._to_snapshot(record)

    def find_expiring(
        self,
        provider: CredentialProvider,
        threshold: datetime,
    ) -> list[str]:
        """
        Tenant keys whose provider token expires before threshold (or has no
        known expiry) and can be refreshed.
        """
        columns = PROVIDER_COLUMNS[provider]
        expires_at = getattr(TenantCredential, columns.expires_at)
        refresh_token = getattr(TenantCredential, columns.refresh_token)
        status = getattr(TenantCredential, columns.status)

        rows = self.db.query(TenantCredential.tenant_key).filter(
            refresh_token.isnot(None),
            or_(status.is_(None), status == ConnectionStatus.CONNECTED),
            or_(expires_at.is_(None), expires_at <= threshold),
        ).order_by(TenantCredential.tenant_key).all()
        return [row[0] for row in rows]

    # =========================================================================
    # Shipping singleton
    # =========================================================================

    def get_shipping_credentials(self) -> Optional[ShippingCredentials]:
        record = self.db.query(ShippingCredential).filter(
            ShippingCredential.id == SHIPPING_CREDENTIALS_ID
        ).first()
        if record is None or not record.api_key_encrypted:
            return None
        return ShippingCredentials(
            api_key=decrypt(record.api_key_encrypted),
            api_secret=decrypt(record.api_secret_encrypted),
            auto_create_orders=bool(record.auto_create_orders),
            connected_at=ensure_utc(record.connected_at),
        )

    def set_shipping_credentials(
        self,
        api_key: str,
        api_secret: str,
        auto_create_orders: bool = False,
    ) -> ShippingCredentials:
        if not api_key or not api_secret:
            raise ValueError("api_key and api_secret are required")

        key_encrypted = encrypt(api_key)
        secret_encrypted = encrypt(api_secret)

        record = self.db.query(ShippingCredential).filter(
            ShippingCredential.id == SHIPPING_CREDENTIALS_ID
        ).first()
        if record is None:
            record = ShippingCredential(id=SHIPPING_CREDENTIALS_ID)
            self.db.add(record)

        now = utcnow()
        record.api_key_encrypted = key_encrypted
        record.api_secret_encrypted = secret_encrypted
        record.auto_create_orders = auto_create_orders
        record.connected_at = now
        record.updated_at = now
        self._commit()

        CredentialAuditLogger(None).log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            provider="shipping",
        )
        return ShippingCredentials(
            api_key=api_key,
            api_secret=api_secret,
            auto_create_orders=auto_create_orders,
            connected_at=now,
        )

    def clear_shipping_credentials(self) -> bool:
        record = self.db.query(ShippingCredential).filter(
            ShippingCredential.id == SHIPPING_CREDENTIALS_ID
        ).first()
        if record is None:
            return False
        self.db.delete(record)
        self._commit()

        CredentialAuditLogger(None).log(
            event_type=AuditEventType.CREDENTIAL_DISCONNECTED,
            provider="shipping",
        )
        return True

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_record(self, tenant_key: str) -> Optional[TenantCredential]:
        return self.db.query(TenantCredential).filter(
            TenantCredential.tenant_key == tenant_key
        ).first()

    def _find_record(self, identifier: Optional[str]) -> Optional[TenantCredential]:
        if identifier is None:
            return None
        raw = str(identifier).strip()
        normalized = normalize_identifier(raw)
        candidates = []
        if normalized:
            candidates.extend([normalized, f"{normalized}{CRM_DOMAIN_SUFFIX}"])
        candidates.append(raw)

        seen = set()
        for key in candidates:
            if not key or key in seen:
                continue
            seen.add(key)
            record = self._get_record(key)
            if record is not None:
                return record
        return None

    def _require_record(self, tenant_key: str, provider: CredentialProvider) -> TenantCredential:
        record = self._get_record(tenant_key)
        if record is None:
            raise CredentialNotFoundError(tenant_key, provider)
        return record

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Credential write failed; rolled back", exc_info=True)
            raise

    def _provider_snapshot(
        self,
        record: TenantCredential,
        provider: CredentialProvider,
    ) -> ProviderCredentials:
        columns = PROVIDER_COLUMNS[provider]
        return ProviderCredentials(
            tenant_key=record.tenant_key,
            provider=provider,
            access_token=decrypt(getattr(record, columns.access_token)),
            refresh_token=decrypt(getattr(record, columns.refresh_token)),
            expires_at=ensure_utc(getattr(record, columns.expires_at)),
            last_refreshed_at=ensure_utc(getattr(record, columns.last_refreshed_at)),
            status=getattr(record, columns.status),
            realm_id=getattr(record, columns.realm_id) if columns.realm_id else None,
            api_domain=record.crm_api_domain if provider == CredentialProvider.CRM else None,
        )

    def _to_snapshot(self, record: TenantCredential) -> TenantCredentials:
        return TenantCredentials(
            tenant_key=record.tenant_key,
            crm=self._provider_snapshot(record, CredentialProvider.CRM),
            accounting=self._provider_snapshot(record, CredentialProvider.ACCOUNTING),
            alternate_numeric_id=record.alternate_numeric_id,
            crm_api_domain=record.crm_api_domain,
            crm_domain_key=record.crm_domain_key,
            created_at=ensure_utc(record.created_at),
            updated_at=ensure_utc(record.updated_at),
        )
