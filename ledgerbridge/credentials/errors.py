"""
Typed errors raised by the credential layer.

Each error carries a machine-readable code and the HTTP status the API
answers with, so route handlers can let them propagate to
ErrorHandlerMiddleware unchanged.

| Error                      | Code                        | HTTP |
|----------------------------|-----------------------------|------|
| CredentialNotFoundError    | NOT_CONNECTED               | 404  |
| RefreshTransientError      | REFRESH_TEMPORARILY_FAILED  | 503  |
| RefreshInProgressError     | REFRESH_IN_PROGRESS         | 503  |
| RefreshRejectedError       | RECONNECT_REQUIRED          | 401  |
| ProviderAuthError          | PROVIDER_AUTH_FAILED        | 502  |
| CrossTenantMergeError      | CROSS_TENANT_MERGE_REJECTED | 409  |
| ProviderNotConfiguredError | PROVIDER_NOT_CONFIGURED     | 503  |
| AuthorizationExchangeError | AUTHORIZATION_FAILED        | 502  |
"""

from typing import Any, Optional

from fastapi import status

from ledgerbridge.models.tenant_credential import CredentialProvider
from ledgerbridge.platform.errors import AppError


class CredentialError(AppError):
    """Base class for credential lifecycle errors."""

    error_code = "CREDENTIAL_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        tenant_key: Optional[str] = None,
        provider: Optional[CredentialProvider] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.tenant_key = tenant_key
        self.provider = provider
        merged = dict(details or {})
        if provider is not None:
            merged.setdefault("provider", provider.value)
        super().__init__(message, details=merged)


class CredentialNotFoundError(CredentialError):
    """No stored record (or no credentials for the provider) matches the identifier."""

    error_code = "NOT_CONNECTED"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(
        self,
        identifier: Optional[str] = None,
        provider: Optional[CredentialProvider] = None,
    ):
        if provider is not None:
            message = f"{provider.label} is not connected for this account. Authorize {provider.label} to continue."
        else:
            message = "No connection found for this account. Authorize the integration to continue."
        super().__init__(message, tenant_key=identifier, provider=provider)


class RefreshTransientError(CredentialError):
    """Refresh did not complete (timeout, network, 5xx). Stored tokens are untouched."""

    error_code = "REFRESH_TEMPORARILY_FAILED"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class RefreshInProgressError(CredentialError):
    """Another process holds the refresh lock for this tenant and provider."""

    error_code = "REFRESH_IN_PROGRESS"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, tenant_key: str, provider: CredentialProvider):
        super().__init__(
            f"{provider.label} credentials are being refreshed. Retry shortly.",
            tenant_key=tenant_key,
            provider=provider,
        )


class RefreshRejectedError(CredentialError):
    """The provider rejected the refresh token. Terminal until the user reconnects."""

    error_code = "RECONNECT_REQUIRED"
    http_status = status.HTTP_401_UNAUTHORIZED

    def __init__(
        self,
        provider: CredentialProvider,
        tenant_key: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        self.reason = reason
        super().__init__(
            f"The {provider.label} connection has expired or was revoked. "
            f"Reconnect {provider.label} to resume syncing.",
            tenant_key=tenant_key,
            provider=provider,
        )


class ProviderAuthError(CredentialError):
    """The provider still rejects the call after a refresh (or no refresh was possible)."""

    error_code = "PROVIDER_AUTH_FAILED"
    http_status = status.HTTP_502_BAD_GATEWAY


class CrossTenantMergeError(CredentialError):
    """Refused to copy credentials between records owned by different CRM domains."""

    error_code = "CROSS_TENANT_MERGE_REJECTED"
    http_status = status.HTTP_409_CONFLICT


class ProviderNotConfiguredError(CredentialError):
    """OAuth client id/secret for the provider are missing from the environment."""

    error_code = "PROVIDER_NOT_CONFIGURED"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, provider: CredentialProvider):
        super().__init__(
            f"{provider.label} integration is not configured on this server.",
            provider=provider,
        )


class AuthorizationExchangeError(CredentialError):
    """Exchanging an OAuth authorization code failed."""

    error_code = "AUTHORIZATION_FAILED"
    http_status = status.HTTP_502_BAD_GATEWAY
