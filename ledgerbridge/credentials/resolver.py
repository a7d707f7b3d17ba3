"""
Identifier resolution: map whatever identifier a caller has to the one
stored tenant record it refers to.

Resolution order:
1. Exact store lookup on every syntactic variant of the identifier
2. Indexed lookups: alternate numeric id, normalized CRM domain key
3. Full scan with the loose match predicate (last resort, logged)

Among several matches the most recently created record wins. The resolver
never creates records.

Usage:
    resolver = IdentifierResolver(store)
    credentials = resolver.resolve("https://acme.pipedrive.com", CredentialProvider.ACCOUNTING)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from ledgerbridge.credentials.errors import CredentialNotFoundError, CrossTenantMergeError
from ledgerbridge.credentials.identifiers import (
    identifier_matches,
    identifier_variants,
    normalize_identifier,
)
from ledgerbridge.credentials.redaction import CredentialAuditLogger, AuditEventType
from ledgerbridge.credentials.store import CredentialStore, TenantCredentials
from ledgerbridge.models.tenant_credential import CredentialProvider

logger = logging.getLogger(__name__)


class MatchSource(str, Enum):
    """How a record was found."""
    EXACT = "exact"
    INDEX = "index"
    SCAN = "scan"


@dataclass(frozen=True)
class Resolution:
    credentials: TenantCredentials
    matched_by: MatchSource


def _freshest(candidates: Iterable[TenantCredentials]) -> Optional[TenantCredentials]:
    return max(candidates, key=lambda c: c.sort_key, default=None)


class IdentifierResolver:
    """Resolves loosely formatted tenant identifiers against a CredentialStore."""

    def __init__(self, store: CredentialStore):
        self.store = store

    def find(
        self,
        identifier: Optional[str],
        required_provider: Optional[CredentialProvider] = None,
        allow_scan: bool = True,
    ) -> Optional[Resolution]:
        """
        Find the record for identifier that holds credentials for required_provider.

        With required_provider=None any matching record is accepted.
        allow_scan=False stops after the exact and index lookups; callers that
        delete a record or attach new tokens to one pass it.
        Returns None when nothing matches.
        """
        normalized = normalize_identifier(identifier)
        if not normalized:
            return None

        for variant in identifier_variants(identifier):
            credentials = self.store.get_exact(variant)
            if credentials is not None and credentials.has_provider(required_provider):
                return Resolution(credentials, MatchSource.EXACT)

        indexed = {}
        for credentials in self.store.find_by_alternate_id(normalized):
            indexed[credentials.tenant_key] = credentials
        for credentials in self.store.find_by_domain_key(normalized):
            indexed[credentials.tenant_key] = credentials
        best = _freshest(c for c in indexed.values() if c.has_provider(required_provider))
        if best is not None:
            return Resolution(best, MatchSource.INDEX)

        if not allow_scan:
            return None

        scanned = _freshest(
            c for c in self.store.iter_records()
            if c.has_provider(required_provider)
            and identifier_matches(normalized, c.tenant_key, c.crm_domain_key, c.alternate_numeric_id)
        )
        if scanned is not None:
            logger.warning(
                "Identifier resolved by full scan",
                extra={
                    "identifier": normalized,
                    "tenant_key": scanned.tenant_key,
                    "required_provider": required_provider.value if required_provider else None,
                }
            )
            return Resolution(scanned, MatchSource.SCAN)

        return None

    def resolve(
        self,
        identifier: Optional[str],
        required_provider: Optional[CredentialProvider] = None,
    ) -> TenantCredentials:
        """
        Like find(), but raises when nothing matches.

        Raises:
            CredentialNotFoundError: Not connected for this identifier
        """
        resolution = self.find(identifier, required_provider)
        if resolution is None:
            logger.info(
                "No credentials for identifier",
                extra={
                    "identifier": normalize_identifier(identifier),
                    "required_provider": required_provider.value if required_provider else None,
                }
            )
            raise CredentialNotFoundError(normalize_identifier(identifier), required_provider)
        return resolution.credentials

    def link_accounting_credentials(
        self,
        target_identifier: str,
        source_identifier: Optional[str] = None,
    ) -> TenantCredentials:
        """
        Attach accounting credentials found by loose matching to the target record.

        Only records that belong to the same CRM domain may share credentials.
        The credentials are moved, not copied, so the single-use refresh
        token lives on one record.

        Raises:
            CredentialNotFoundError: Target record or a source with accounting credentials is missing
            CrossTenantMergeError: Source and target CRM domains differ
        """
        target = self.store.get(target_identifier)
        if target is None:
            raise CredentialNotFoundError(normalize_identifier(target_identifier))
        if target.has_provider(CredentialProvider.ACCOUNTING):
            return target

        source = self.resolve(source_identifier or target_identifier, CredentialProvider.ACCOUNTING)
        if source.tenant_key == target.tenant_key:
            return target

        if not target.crm_domain_key or target.crm_domain_key != source.crm_domain_key:
            CredentialAuditLogger(target.tenant_key).log(
                event_type=AuditEventType.CREDENTIAL_MERGE_REJECTED,
                provider=CredentialProvider.ACCOUNTING.value,
                metadata={
                    "source_tenant_key": source.tenant_key,
                    "target_domain_key": target.crm_domain_key,
                    "source_domain_key": source.crm_domain_key,
                },
            )
            raise CrossTenantMergeError(
                "Accounting credentials belong to a different CRM account and were not linked.",
                tenant_key=target.tenant_key,
                provider=CredentialProvider.ACCOUNTING,
            )

        logger.info(
            "Linking accounting credentials",
            extra={"tenant_key": target.tenant_key, "source_tenant_key": source.tenant_key}
        )
        return self.store.move_provider_credentials(
            source.tenant_key, target.tenant_key, CredentialProvider.ACCOUNTING
        )
