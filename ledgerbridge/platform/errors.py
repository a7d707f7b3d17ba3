"""
Error types and the JSON error middleware for the LedgerBridge API.

Every error that reaches a client has the same shape:
    {"error": {"code": ..., "message": ..., "details": {...}}}

Subclasses declare error_code and http_status as class attributes; the
credential errors in ledgerbridge.credentials.errors follow the same
pattern. Stack traces stay in the server log.

Status codes in use:
- 400: request cannot be processed (bad input, provider declined consent)
- 401: provider connection must be renewed, bad webhook signature
- 403: caller does not own the connection
- 404: no connection for the identifier
- 409: credentials would cross tenants
- 502: a provider rejected or failed a call
- 503: provider not configured, refresh in progress or temporarily failing
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """Base for every error the API turns into a JSON error body."""

    error_code = "INTERNAL_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = self.error_code
        self.message = message
        self.status_code = self.http_status
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    error_code = "VALIDATION_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST


class PermissionDeniedError(AppError):
    error_code = "PERMISSION_DENIED"
    http_status = status.HTTP_403_FORBIDDEN


class UpstreamApiError(AppError):
    """
    A provider REST call failed for a reason other than authentication.

    provider_status is the HTTP status the provider answered with; the
    client always sees 502.
    """

    error_code = "UPSTREAM_API_ERROR"
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        provider_status: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        merged = {"provider_status": provider_status}
        merged.update(details or {})
        super().__init__(message, details=merged)
        self.provider_status = provider_status


def get_correlation_id(request: Request) -> str:
    """Caller-supplied X-Correlation-ID, or a new UUID."""
    return request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())


def _error_response(body: dict, status_code: int, correlation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={CORRELATION_ID_HEADER: correlation_id},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Turns AppError (credential errors included) into the JSON error shape
    and anything else into an opaque 500.

    Every response carries X-Correlation-ID.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
        except AppError as e:
            extra = {
                "correlation_id": correlation_id,
                "error_code": e.code,
                "status_code": e.status_code,
                "path": request.url.path,
                "tenant_key": getattr(e, "tenant_key", None),
            }
            if e.status_code >= 500:
                logger.error("Request failed", extra=extra)
            else:
                logger.warning("Request rejected", extra=extra)
            return _error_response(e.to_dict(), e.status_code, correlation_id)
        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                }
            )
            body = {
                "error": {
                    "code": AppError.error_code,
                    "message": "An unexpected error occurred",
                    "details": {"correlation_id": correlation_id},
                }
            }
            return _error_response(body, status.HTTP_500_INTERNAL_SERVER_ERROR, correlation_id)

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
