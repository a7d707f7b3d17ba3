"""
Provider API calls with automatic token refresh and a single retry.

Flow for every call:
1. ensure_fresh() before the request (proactive refresh)
2. Send the request with the current snapshot
3. Auth failure status (401 unless configured otherwise):
   force a refresh and retry exactly once with the new snapshot
4. Still an auth failure, or no refresh was possible -> ProviderAuthError

RefreshRejectedError propagates immediately; the call is not retried.

If the proactive refresh fails transiently (or another process holds the
refresh lock) while the stored access token has not expired, the request
goes out with that token. Step 3 still covers a rejection.

Usage:
    async def list_customers(credentials):
        async with httpx.AsyncClient(timeout=get_http_timeout()) as client:
            return await client.get(url, headers={"Authorization": f"Bearer {credentials.access_token}"})

    response = await api.call(tenant_key, CredentialProvider.ACCOUNTING, list_customers)
"""

import logging
from typing import Awaitable, Callable

import httpx

from ledgerbridge.credentials.errors import (
    CredentialNotFoundError,
    ProviderAuthError,
    RefreshInProgressError,
    RefreshTransientError,
)
from ledgerbridge.credentials.refresh import RefreshOutcome, RefreshResult, TokenRefreshEngine
from ledgerbridge.credentials.store import ProviderCredentials
from ledgerbridge.models.base import utcnow
from ledgerbridge.models.tenant_credential import CredentialProvider

logger = logging.getLogger(__name__)

RequestBuilder = Callable[[ProviderCredentials], Awaitable[httpx.Response]]


class ApiCallWrapper:
    """Runs provider requests with fresh credentials."""

    def __init__(self, engine: TokenRefreshEngine):
        self.engine = engine

    async def call(
        self,
        tenant_key: str,
        provider: CredentialProvider,
        request_builder: RequestBuilder,
    ) -> httpx.Response:
        """
        Execute request_builder with fresh credentials.

        Raises:
            CredentialNotFoundError: No access token on file for the provider
            ProviderAuthError: Provider keeps rejecting the credentials
            RefreshRejectedError: Refresh token is dead; user must reconnect
            RefreshTransientError / RefreshInProgressError: Retry later (only
                raised here once the stored access token has expired)
        """
        auth_failures = self.engine.policy_for(provider).auth_failure_statuses

        result = await self._fresh_or_unexpired(tenant_key, provider)
        credentials = result.credentials
        if not credentials.access_token:
            raise CredentialNotFoundError(tenant_key, provider)

        response = await request_builder(credentials)
        if response.status_code not in auth_failures:
            return response

        if result.skipped:
            logger.warning(
                "Provider rejected token and no refresh token is available",
                extra={"tenant_key": tenant_key, "provider": provider.value, "status_code": response.status_code}
            )
            raise ProviderAuthError(
                f"{provider.label} rejected the stored credentials and they cannot be refreshed.",
                tenant_key=tenant_key,
                provider=provider,
                details={"status_code": response.status_code},
            )

        logger.info(
            "Provider rejected token; forcing refresh and retrying once",
            extra={"tenant_key": tenant_key, "provider": provider.value, "status_code": response.status_code}
        )
        retry = await self.engine.ensure_fresh(
            tenant_key,
            provider,
            force=True,
            rejected_access_token=credentials.access_token,
        )
        if retry.skipped:
            raise ProviderAuthError(
                f"{provider.label} rejected the stored credentials and they cannot be refreshed.",
                tenant_key=tenant_key,
                provider=provider,
                details={"status_code": response.status_code},
            )

        response = await request_builder(retry.credentials)
        if response.status_code in auth_failures:
            logger.error(
                "Provider rejected freshly refreshed token",
                extra={"tenant_key": tenant_key, "provider": provider.value, "status_code": response.status_code}
            )
            raise ProviderAuthError(
                f"{provider.label} rejected the request after a token refresh.",
                tenant_key=tenant_key,
                provider=provider,
                details={"status_code": response.status_code},
            )
        return response

    async def _fresh_or_unexpired(self, tenant_key: str, provider: CredentialProvider) -> RefreshResult:
        """Proactive refresh; falls back to the stored token while it is still unexpired."""
        try:
            return await self.engine.ensure_fresh(tenant_key, provider)
        except (RefreshTransientError, RefreshInProgressError) as e:
            record = self.engine.store.get_exact(tenant_key)
            current = record.for_provider(provider) if record else None
            if (
                current is None
                or not current.access_token
                or current.expires_at is None
                or current.expires_at <= utcnow()
            ):
                raise
            logger.warning(
                "Proactive refresh failed; sending request with unexpired token",
                extra={
                    "tenant_key": tenant_key,
                    "provider": provider.value,
                    "error_code": e.code,
                    "expires_at": current.expires_at.isoformat(),
                }
            )
            return RefreshResult(RefreshOutcome.DEFERRED, current)
