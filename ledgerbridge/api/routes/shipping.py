"""
Shipping credential routes.

One shipping API key pair serves the whole installation. Any connected
tenant may manage it; the caller names itself with X-CRM-Api-Domain, which
must match a stored CRM domain exactly (no loose matching). Responses never
contain the key or secret.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from ledgerbridge.api.dependencies.request_db import get_connection_service
from ledgerbridge.api.schemas.connections import (
    ShippingConnectionResponse,
    ShippingCredentialsRequest,
)
from ledgerbridge.credentials.store import ShippingCredentials
from ledgerbridge.platform.errors import PermissionDeniedError
from ledgerbridge.services.connection_service import ConnectionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/shipping", tags=["shipping"])


def require_connected_tenant(
    x_crm_api_domain: Optional[str] = Header(None, alias="X-CRM-Api-Domain"),
    service: ConnectionService = Depends(get_connection_service),
) -> str:
    """Tenant key of the caller, or 403."""
    resolution = service.resolver.find(x_crm_api_domain, allow_scan=False) if x_crm_api_domain else None
    if resolution is None or not resolution.credentials.crm_domain_key:
        raise PermissionDeniedError("A connected CRM account is required to manage shipping credentials")
    return resolution.credentials.tenant_key


def _status(credentials: Optional[ShippingCredentials]) -> ShippingConnectionResponse:
    if credentials is None or not credentials.is_connected:
        return ShippingConnectionResponse(connected=False)
    return ShippingConnectionResponse(
        connected=True,
        auto_create_orders=credentials.auto_create_orders,
        connected_at=credentials.connected_at,
    )


@router.get("/connection", response_model=ShippingConnectionResponse)
async def get_shipping_connection(
    tenant_key: str = Depends(require_connected_tenant),
    service: ConnectionService = Depends(get_connection_service),
):
    return _status(service.shipping_credentials())


@router.put("/credentials", response_model=ShippingConnectionResponse)
async def save_shipping_credentials(
    body: ShippingCredentialsRequest,
    tenant_key: str = Depends(require_connected_tenant),
    service: ConnectionService = Depends(get_connection_service),
):
    credentials = service.save_shipping_credentials(
        body.api_key,
        body.api_secret,
        auto_create_orders=body.auto_create_orders,
    )
    logger.info("Shipping credentials updated", extra={"tenant_key": tenant_key})
    return _status(credentials)


@router.delete("/credentials", response_model=ShippingConnectionResponse)
async def disconnect_shipping(
    tenant_key: str = Depends(require_connected_tenant),
    service: ConnectionService = Depends(get_connection_service),
):
    removed = service.disconnect_shipping()
    logger.info("Shipping credentials removed", extra={"tenant_key": tenant_key, "removed": removed})
    return ShippingConnectionResponse(connected=False)
