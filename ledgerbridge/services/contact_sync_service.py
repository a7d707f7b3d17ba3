"""
Contact sync: CRM person -> accounting customer.

The customer is matched by DisplayName. An existing customer gets a sparse
update of the contact fields; otherwise a new customer is created. Both
provider calls go through ApiCallWrapper, so either token may be refreshed
mid-sync without the caller noticing.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from ledgerbridge.credentials.errors import CredentialNotFoundError
from ledgerbridge.integrations.accounting.client import AccountingApiClient
from ledgerbridge.integrations.crm.client import CrmApiClient, CrmPerson
from ledgerbridge.models.tenant_credential import CredentialProvider
from ledgerbridge.platform.errors import ValidationError
from ledgerbridge.services.connection_service import ConnectionService

logger = logging.getLogger(__name__)


class SyncAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"


@dataclass(frozen=True)
class ContactSyncResult:
    tenant_key: str
    person_id: int
    customer_id: Optional[str]
    display_name: str
    action: SyncAction

    def to_dict(self) -> dict:
        return {
            "tenant_key": self.tenant_key,
            "person_id": self.person_id,
            "customer_id": self.customer_id,
            "display_name": self.display_name,
            "action": self.action.value,
        }


def build_customer_fields(person: CrmPerson) -> dict:
    """Accounting customer fields for a CRM person."""
    fields = {"DisplayName": person.name}
    if person.primary_email:
        fields["PrimaryEmailAddr"] = {"Address": person.primary_email}
    if person.primary_phone:
        fields["PrimaryPhone"] = {"FreeFormNumber": person.primary_phone}
    if person.organization_name:
        fields["CompanyName"] = person.organization_name
    return fields


class ContactSyncService:
    """Copies CRM persons into the accounting customer list."""

    def __init__(
        self,
        connections: ConnectionService,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.connections = connections
        self._transport = transport

    async def sync_contact(self, identifier: str, person_id: int) -> ContactSyncResult:
        """
        Raises:
            CredentialNotFoundError: Either provider is not connected
            ValidationError: The person has no name
            RefreshRejectedError: A provider connection must be renewed
        """
        credentials = self.connections.resolve_credential(identifier, CredentialProvider.ACCOUNTING)
        tenant_key = credentials.tenant_key
        if not credentials.has_provider(CredentialProvider.CRM):
            raise CredentialNotFoundError(tenant_key, CredentialProvider.CRM)

        crm = CrmApiClient(self.connections.api, tenant_key, transport=self._transport)
        accounting = AccountingApiClient(self.connections.api, tenant_key, transport=self._transport)

        person = await crm.get_person(person_id)
        if not person.name:
            raise ValidationError(
                "CRM person has no name to use as the customer display name",
                details={"person_id": person_id},
            )

        fields = build_customer_fields(person)
        existing = await accounting.find_customer_by_display_name(person.name)

        if existing:
            customer = await accounting.update_customer(existing["Id"], existing["SyncToken"], fields)
            action = SyncAction.UPDATED
        else:
            customer = await accounting.create_customer(fields)
            action = SyncAction.CREATED

        logger.info(
            "Contact synced",
            extra={
                "tenant_key": tenant_key,
                "person_id": person_id,
                "customer_id": customer.get("Id"),
                "action": action.value,
            }
        )
        return ContactSyncResult(
            tenant_key=tenant_key,
            person_id=person_id,
            customer_id=customer.get("Id"),
            display_name=person.name,
            action=action,
        )
