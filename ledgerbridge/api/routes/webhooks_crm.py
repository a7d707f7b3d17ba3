"""
CRM webhook handlers.

SECURITY:
- Every webhook MUST carry a valid X-Pipedrive-Signature
- No authentication middleware (webhooks come from Pipedrive, not users)
- A verified deauthorization hard-deletes the tenant record
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ledgerbridge.api.dependencies.request_db import get_connection_service
from ledgerbridge.integrations.crm.webhooks import verify_webhook_signature
from ledgerbridge.services.connection_service import ConnectionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/crm", tags=["webhooks"])


async def verify_webhook(request: Request, signature: Optional[str]) -> bytes:
    """
    Verify the webhook signature and return the raw body.

    Raises:
        HTTPException: If signature is missing or invalid
    """
    body = await request.body()

    if not verify_webhook_signature(body, signature):
        logger.warning("Invalid webhook signature", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    return body


@router.post("/deauthorize")
async def handle_deauthorization(
    request: Request,
    x_pipedrive_signature: Optional[str] = Header(None, alias="X-Pipedrive-Signature"),
    service: ConnectionService = Depends(get_connection_service),
):
    """
    Handle app uninstall.

    The tenant is named by user_id (numeric) or api_domain in the payload.
    """
    body = await verify_webhook(request, x_pipedrive_signature)

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        logger.error("Invalid webhook JSON payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    identifier = None
    if isinstance(payload, dict):
        identifier = payload.get("user_id") or payload.get("api_domain")
    if identifier is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payload names no user_id or api_domain"
        )

    try:
        deleted = service.deauthorize(str(identifier))
    except Exception as e:
        logger.error("Failed to process deauthorization webhook", extra={
            "error_type": type(e).__name__,
        }, exc_info=True)
        # Return 200 so Pipedrive does not retry; the failure is logged
        return {"status": "error"}

    logger.info("Deauthorization processed", extra={"deleted": deleted})
    return {"status": "processed", "deleted": deleted}
