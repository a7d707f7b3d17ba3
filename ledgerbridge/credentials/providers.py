"""
OAuth token endpoints for the CRM and accounting providers.

Each client performs the two grants the bridge needs (authorization code
exchange and refresh) and returns a TokenGrant. Refresh failures are
classified here, because only the token endpoint's response can tell a
revoked refresh token apart from a network problem:

- 4xx with invalid_grant / revoked / expired / invalid token in the body
  -> RefreshRejectedError (terminal, user must reconnect)
- timeout, transport error, 5xx, any other unexpected response
  -> RefreshTransientError (stored tokens stay as they are)

SECURITY:
- Client secrets go out as HTTP Basic auth only
- Response bodies are redacted before they reach a log record
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from ledgerbridge.config.settings import ProviderConfig, get_http_timeout, require_provider_config
from ledgerbridge.credentials.errors import (
    AuthorizationExchangeError,
    RefreshRejectedError,
    RefreshTransientError,
)
from ledgerbridge.credentials.redaction import redact_credential_value
from ledgerbridge.models.base import utcnow
from ledgerbridge.models.tenant_credential import CredentialProvider

logger = logging.getLogger(__name__)

# Substrings in a token endpoint error body that mean the refresh token is dead
REVOCATION_SIGNATURES = (
    "invalid_grant",
    "invalid_token",
    "revoked",
    "expired",
    "invalid refresh token",
)


def is_revocation_response(status_code: int, body: str) -> bool:
    """True if a token endpoint response says the refresh token is no longer usable."""
    if not 400 <= status_code < 500:
        return False
    lowered = (body or "").lower()
    return any(signature in lowered for signature in REVOCATION_SIGNATURES)


@dataclass(frozen=True)
class TokenGrant:
    """
    Tokens returned by a provider's token endpoint.

    SECURITY: repr never includes token values.
    """
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_in: Optional[int] = None
    issued_at: datetime = field(default_factory=utcnow)
    api_domain: Optional[str] = None
    realm_id: Optional[str] = None

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return self.issued_at + timedelta(seconds=self.expires_in)


class OAuthProviderClient:
    """
    Token endpoint client for one provider.

    Subclasses set the endpoint URLs and scopes and may read extra fields
    from the token response.
    """

    provider: CredentialProvider
    authorize_url: str
    token_url: str
    scopes: tuple[str, ...] = ()

    def __init__(
        self,
        config: ProviderConfig,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.timeout = timeout if timeout is not None else get_http_timeout()
        self._transport = transport

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "state": state,
        }
        if self.scopes:
            params["scope"] = " ".join(self.scopes)
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, realm_id: Optional[str] = None) -> TokenGrant:
        """
        Exchange an authorization code for a token pair.

        Raises:
            AuthorizationExchangeError: If the provider does not issue tokens
        """
        if not code:
            raise AuthorizationExchangeError(
                f"{self.provider.label} did not return an authorization code.",
                provider=self.provider,
            )
        try:
            payload = await self._post_token_request({
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.config.redirect_uri,
            })
        except (RefreshRejectedError, RefreshTransientError) as e:
            raise AuthorizationExchangeError(
                f"{self.provider.label} authorization failed. Try connecting again.",
                provider=self.provider,
            ) from e
        return self._parse_grant(payload, realm_id=realm_id)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new pair.

        Raises:
            RefreshRejectedError: Provider refused the refresh token
            RefreshTransientError: Request did not complete cleanly
        """
        payload = await self._post_token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return self._parse_grant(payload)

    async def _post_token_request(self, form: dict) -> dict:
        grant_type = form["grant_type"]
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.token_url,
                    data=form,
                    auth=(self.config.client_id, self.config.client_secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            logger.warning(
                "Token request timed out",
                extra={"provider": self.provider.value, "grant_type": grant_type}
            )
            raise RefreshTransientError(
                f"{self.provider.label} token request timed out.",
                provider=self.provider,
            ) from e
        except httpx.HTTPError as e:
            logger.warning(
                "Token request failed",
                extra={
                    "provider": self.provider.value,
                    "grant_type": grant_type,
                    "error_type": type(e).__name__,
                }
            )
            raise RefreshTransientError(
                f"{self.provider.label} token request failed.",
                provider=self.provider,
            ) from e

        if response.status_code != 200:
            body = response.text
            logger.warning(
                "Token endpoint returned an error",
                extra={
                    "provider": self.provider.value,
                    "grant_type": grant_type,
                    "status_code": response.status_code,
                    "body": redact_credential_value(body[:500]),
                }
            )
            if is_revocation_response(response.status_code, body):
                raise RefreshRejectedError(self.provider, reason=f"HTTP {response.status_code}")
            raise RefreshTransientError(
                f"{self.provider.label} token endpoint returned HTTP {response.status_code}.",
                provider=self.provider,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise RefreshTransientError(
                f"{self.provider.label} token endpoint returned an unreadable response.",
                provider=self.provider,
            ) from e

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise RefreshTransientError(
                f"{self.provider.label} token endpoint response had no access token.",
                provider=self.provider,
            )
        return payload

    def _parse_grant(self, payload: dict, realm_id: Optional[str] = None) -> TokenGrant:
        expires_in = payload.get("expires_in")
        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            realm_id=realm_id,
        )


class CrmOAuthClient(OAuthProviderClient):
    """Pipedrive OAuth. The token response names the company's API domain."""

    provider = CredentialProvider.CRM
    authorize_url = "https://oauth.pipedrive.com/oauth/authorize"
    token_url = "https://oauth.pipedrive.com/oauth/token"

    def _parse_grant(self, payload: dict, realm_id: Optional[str] = None) -> TokenGrant:
        grant = super()._parse_grant(payload, realm_id=realm_id)
        return TokenGrant(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_in=grant.expires_in,
            issued_at=grant.issued_at,
            api_domain=payload.get("api_domain"),
        )


class AccountingOAuthClient(OAuthProviderClient):
    """QuickBooks Online (Intuit) OAuth. The realm id arrives on the callback, not in the token response."""

    provider = CredentialProvider.ACCOUNTING
    authorize_url = "https://appcenter.intuit.com/connect/oauth2"
    token_url = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    scopes = ("com.intuit.quickbooks.accounting",)


OAUTH_CLIENTS = {
    CredentialProvider.CRM: CrmOAuthClient,
    CredentialProvider.ACCOUNTING: AccountingOAuthClient,
}


def get_oauth_client(
    provider: CredentialProvider,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> OAuthProviderClient:
    """
    Build the OAuth client for a provider from environment configuration.

    Raises:
        ProviderNotConfiguredError: If client id or secret is missing
    """
    return OAUTH_CLIENTS[provider](require_provider_config(provider), transport=transport)


async def refresh_with_provider(provider: CredentialProvider, refresh_token: str) -> TokenGrant:
    """Default refresh callback used by TokenRefreshEngine."""
    return await get_oauth_client(provider).refresh(refresh_token)
