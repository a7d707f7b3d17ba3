"""
OAuth authorization routes for both providers.

The accounting flow is started from inside the CRM (app extension or
settings page) and has to come back to the same tenant, so its OAuth
state carries the tenant identifier as base64 JSON. The CRM flow
identifies the tenant from the API domain in the token response.
"""

import base64
import binascii
import json
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from ledgerbridge.api.dependencies.request_db import get_connection_service
from ledgerbridge.api.schemas.connections import AuthorizationCompletedResponse
from ledgerbridge.models.tenant_credential import CredentialProvider
from ledgerbridge.platform.errors import ValidationError
from ledgerbridge.services.connection_service import ConnectionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def encode_state(identifier: str, extension: bool = False) -> str:
    raw = json.dumps({"identifier": identifier, "extension": extension}).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_state(state: Optional[str]) -> tuple[Optional[str], bool]:
    """
    Returns (identifier, extension). A state that is not base64 JSON is
    treated as a bare identifier.
    """
    if not state:
        return None, False
    try:
        payload = json.loads(base64.urlsafe_b64decode(state.encode("ascii")))
    except (binascii.Error, ValueError, UnicodeError):
        return state, False
    if not isinstance(payload, dict):
        return state, False
    return payload.get("identifier"), bool(payload.get("extension"))


def _reject_provider_error(provider: CredentialProvider, error: Optional[str]) -> None:
    if error:
        logger.info(
            "Authorization declined at provider",
            extra={"provider": provider.value, "error": error}
        )
        raise ValidationError(
            f"{provider.label} authorization was not completed.",
            details={"provider_error": error},
        )


@router.get("/crm")
async def start_crm_authorization(service: ConnectionService = Depends(get_connection_service)):
    """Redirect to the CRM consent screen."""
    url = service.oauth_client(CredentialProvider.CRM).build_authorization_url(
        state=secrets.token_urlsafe(16)
    )
    return RedirectResponse(url)


@router.get("/crm/callback", response_model=AuthorizationCompletedResponse)
async def complete_crm_authorization(
    code: Optional[str] = None,
    error: Optional[str] = None,
    service: ConnectionService = Depends(get_connection_service),
):
    _reject_provider_error(CredentialProvider.CRM, error)
    credentials = await service.complete_crm_authorization(code)
    return AuthorizationCompletedResponse(
        provider=CredentialProvider.CRM.value,
        tenant_key=credentials.tenant_key,
    )


@router.get("/accounting")
async def start_accounting_authorization(
    identifier: str = Query(..., min_length=1),
    extension: bool = False,
    service: ConnectionService = Depends(get_connection_service),
):
    """Redirect to the accounting consent screen; the tenant rides along in state."""
    url = service.oauth_client(CredentialProvider.ACCOUNTING).build_authorization_url(
        state=encode_state(identifier, extension)
    )
    return RedirectResponse(url)


@router.get("/accounting/callback", response_model=AuthorizationCompletedResponse)
async def complete_accounting_authorization(
    code: Optional[str] = None,
    state: Optional[str] = None,
    realm_id: Optional[str] = Query(None, alias="realmId"),
    error: Optional[str] = None,
    service: ConnectionService = Depends(get_connection_service),
):
    _reject_provider_error(CredentialProvider.ACCOUNTING, error)

    identifier, extension = decode_state(state)
    if not identifier:
        raise ValidationError("Authorization state does not name an account.")

    credentials = await service.complete_accounting_authorization(identifier, code, realm_id)
    return AuthorizationCompletedResponse(
        provider=CredentialProvider.ACCOUNTING.value,
        tenant_key=credentials.tenant_key,
        realm_id=credentials.accounting.realm_id,
        extension=extension,
    )
