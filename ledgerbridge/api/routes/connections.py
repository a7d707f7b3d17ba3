"""
Connection status and disconnect routes.

Disconnect requires the caller's CRM API domain in X-CRM-Api-Domain; it
must match the domain stored on the record being changed.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from ledgerbridge.api.dependencies.request_db import get_connection_service
from ledgerbridge.api.schemas.connections import ConnectionStatusResponse, DisconnectResponse
from ledgerbridge.credentials.identifiers import normalize_identifier
from ledgerbridge.models.tenant_credential import CredentialProvider
from ledgerbridge.platform.errors import PermissionDeniedError
from ledgerbridge.services.connection_service import ConnectionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["connections"])


@router.get("/connection-status", response_model=ConnectionStatusResponse)
async def get_connection_status(
    identifier: str = Query(..., min_length=1),
    service: ConnectionService = Depends(get_connection_service),
):
    """Connected only when accounting tokens and a realm id exist and no reconnect is pending."""
    return service.connection_status(identifier)


@router.post("/disconnect/{provider}", response_model=DisconnectResponse)
async def disconnect_provider(
    provider: CredentialProvider,
    identifier: str = Query(..., min_length=1),
    x_crm_api_domain: Optional[str] = Header(None, alias="X-CRM-Api-Domain"),
    service: ConnectionService = Depends(get_connection_service),
):
    caller_domain = normalize_identifier(x_crm_api_domain)
    if not caller_domain:
        raise PermissionDeniedError("CRM API domain header is required")

    credentials = service.resolve_credential(identifier)
    if credentials.crm_domain_key != caller_domain:
        logger.warning(
            "Disconnect rejected: domain mismatch",
            extra={"tenant_key": credentials.tenant_key, "caller_domain": caller_domain}
        )
        raise PermissionDeniedError("This connection belongs to a different CRM account")

    service.disconnect(credentials.tenant_key, provider)
    return DisconnectResponse(provider=provider.value, tenant_key=credentials.tenant_key)
