"""Contact sync route."""

import logging

from fastapi import APIRouter, Depends

from ledgerbridge.api.dependencies.request_db import get_connection_service
from ledgerbridge.api.schemas.connections import SyncContactRequest, SyncContactResponse
from ledgerbridge.services.connection_service import ConnectionService
from ledgerbridge.services.contact_sync_service import ContactSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])


@router.post("/sync-contact", response_model=SyncContactResponse)
async def sync_contact(
    body: SyncContactRequest,
    service: ConnectionService = Depends(get_connection_service),
):
    result = await ContactSyncService(service).sync_contact(body.identifier, body.person_id)
    return result.to_dict()
