"""
Connection service - the entry point collaborators use for credentials.

Wires CredentialStore, IdentifierResolver, TokenRefreshEngine and
ApiCallWrapper together for one database session, and owns the OAuth
authorization and deauthorization flows.

Usage:
    service = ConnectionService(db_session)

    credentials = service.resolve_credential("https://acme.pipedrive.com", CredentialProvider.ACCOUNTING)
    response = await service.with_fresh_token(credentials.tenant_key, CredentialProvider.ACCOUNTING, send)
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from ledgerbridge.credentials.client import ApiCallWrapper, RequestBuilder
from ledgerbridge.credentials.errors import (
    AuthorizationExchangeError,
    CredentialNotFoundError,
)
from ledgerbridge.credentials.identifiers import normalize_identifier
from ledgerbridge.credentials.locks import RefreshLockRegistry
from ledgerbridge.credentials.providers import OAuthProviderClient, get_oauth_client
from ledgerbridge.credentials.refresh import TokenRefreshEngine, TokenState
from ledgerbridge.credentials.resolver import IdentifierResolver
from ledgerbridge.credentials.store import CredentialStore, ShippingCredentials, TenantCredentials
from ledgerbridge.integrations.crm.client import CrmApiClient, CrmApiError
from ledgerbridge.models.tenant_credential import ConnectionStatus, CredentialProvider
from ledgerbridge.platform.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderStatus:
    """Connection state of one provider, safe for API responses."""
    provider: str
    connected: bool
    reconnect_required: bool
    token_state: Optional[str]

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "connected": self.connected,
            "reconnect_required": self.reconnect_required,
            "token_state": self.token_state,
        }


class ConnectionService:
    """Credential operations for one request or job."""

    def __init__(
        self,
        db_session: Session,
        engine: Optional[TokenRefreshEngine] = None,
        oauth_clients: Optional[dict[CredentialProvider, OAuthProviderClient]] = None,
        lock_registry: Optional[RefreshLockRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            db_session: Database session
            engine: Refresh engine (built on this session's store by default)
            oauth_clients: Pre-built OAuth clients per provider (tests, custom config)
            lock_registry: Refresh locks (process-wide registry by default)
            transport: httpx transport for provider REST calls
        """
        self.store = engine.store if engine else CredentialStore(db_session)
        self.resolver = IdentifierResolver(self.store)
        self.engine = engine or TokenRefreshEngine(self.store, lock_registry=lock_registry)
        self.api = ApiCallWrapper(self.engine)
        self._oauth_clients = dict(oauth_clients or {})
        self._transport = transport

    def oauth_client(self, provider: CredentialProvider) -> OAuthProviderClient:
        """
        Raises:
            ProviderNotConfiguredError: If client id or secret is missing
        """
        if provider not in self._oauth_clients:
            self._oauth_clients[provider] = get_oauth_client(provider)
        return self._oauth_clients[provider]

    # =========================================================================
    # Collaborator interface
    # =========================================================================

    def resolve_credential(
        self,
        identifier: str,
        required_provider: Optional[CredentialProvider] = None,
    ) -> TenantCredentials:
        """
        Raises:
            CredentialNotFoundError: Not connected for this identifier
        """
        return self.resolver.resolve(identifier, required_provider)

    async def with_fresh_token(
        self,
        tenant_key: str,
        provider: CredentialProvider,
        api_call: RequestBuilder,
    ) -> httpx.Response:
        """Run api_call with fresh credentials, refreshing and retrying once on 401."""
        return await self.api.call(tenant_key, provider, api_call)

    def disconnect(self, tenant_key: str, provider: CredentialProvider) -> None:
        """Clear one provider's credentials; the record and the other provider stay."""
        self.store.clear_provider(tenant_key, provider)
        logger.info(
            "Provider disconnected",
            extra={"tenant_key": tenant_key, "provider": provider.value}
        )

    def connection_status(self, identifier: str) -> dict:
        """
        Per-provider status for an identifier.

        Raises:
            CredentialNotFoundError: No record for the identifier
        """
        credentials = self.resolver.resolve(identifier)
        statuses = {
            provider.value: self._provider_status(credentials, provider).to_dict()
            for provider in CredentialProvider
        }
        return {
            "tenant_key": credentials.tenant_key,
            "connected": statuses[CredentialProvider.ACCOUNTING.value]["connected"],
            "providers": statuses,
        }

    def _provider_status(
        self,
        credentials: TenantCredentials,
        provider: CredentialProvider,
    ) -> ProviderStatus:
        snapshot = credentials.for_provider(provider)
        reconnect = snapshot.needs_reauthorization
        return ProviderStatus(
            provider=provider.value,
            connected=snapshot.is_complete and not reconnect,
            reconnect_required=reconnect,
            token_state=self.engine.token_state(snapshot).value if snapshot.access_token else None,
        )

    # =========================================================================
    # OAuth flows
    # =========================================================================

    async def complete_crm_authorization(self, code: str) -> TenantCredentials:
        """
        Exchange a CRM authorization code and create or update the tenant record.

        The record is keyed by the API domain the provider returns. The numeric
        CRM user id is stored as the alternate identifier when it can be read.

        Raises:
            AuthorizationExchangeError: Code exchange failed or returned no API domain
        """
        grant = await self.oauth_client(CredentialProvider.CRM).exchange_code(code)
        tenant_key = normalize_identifier(grant.api_domain)
        if not tenant_key:
            raise AuthorizationExchangeError(
                "Pipedrive did not return an API domain for this installation.",
                provider=CredentialProvider.CRM,
            )

        self.store.set(
            tenant_key,
            crm_api_domain=grant.api_domain,
            crm_access_token=grant.access_token,
            crm_refresh_token=grant.refresh_token,
            crm_token_expires_at=grant.expires_at,
            crm_last_refreshed_at=grant.issued_at,
            crm_status=ConnectionStatus.CONNECTED,
        )

        try:
            user = await CrmApiClient(self.api, tenant_key, transport=self._transport).get_current_user()
        except (CrmApiError, httpx.HTTPError) as e:
            # Alternate id only widens lookups; the connection itself is complete
            logger.warning(
                "Could not read CRM user after authorization",
                extra={"tenant_key": tenant_key, "error_type": type(e).__name__}
            )
        else:
            self.store.set(tenant_key, alternate_numeric_id=str(user.id))

        logger.info("CRM authorization completed", extra={"tenant_key": tenant_key})
        return self.store.get_exact(tenant_key)

    async def complete_accounting_authorization(
        self,
        identifier: str,
        code: str,
        realm_id: str,
    ) -> TenantCredentials:
        """
        Exchange an accounting authorization code and attach the tokens to the
        tenant named by identifier (from the OAuth state).

        Only an exact or indexed match receives the tokens; a record is created
        under the normalized identifier otherwise. The loose scan is never used
        here, so one tenant's accounting access cannot land on another's record.

        Raises:
            AuthorizationExchangeError: Missing realm id or code exchange failed
        """
        if not realm_id:
            raise AuthorizationExchangeError(
                "QuickBooks did not return a company id.",
                provider=CredentialProvider.ACCOUNTING,
            )

        resolution = self.resolver.find(identifier, allow_scan=False)
        tenant_key = resolution.credentials.tenant_key if resolution else normalize_identifier(identifier)
        if not tenant_key:
            raise CredentialNotFoundError(identifier, CredentialProvider.ACCOUNTING)

        grant = await self.oauth_client(CredentialProvider.ACCOUNTING).exchange_code(code, realm_id=realm_id)

        credentials = self.store.set(
            tenant_key,
            accounting_access_token=grant.access_token,
            accounting_refresh_token=grant.refresh_token,
            accounting_token_expires_at=grant.expires_at,
            accounting_last_refreshed_at=grant.issued_at,
            accounting_realm_id=realm_id,
            accounting_status=ConnectionStatus.CONNECTED,
        )
        logger.info(
            "Accounting authorization completed",
            extra={"tenant_key": tenant_key, "realm_id": realm_id, "existing_record": resolution is not None}
        )
        return credentials

    def link_accounting_credentials(
        self,
        target_identifier: str,
        source_identifier: Optional[str] = None,
    ) -> TenantCredentials:
        """
        Raises:
            CrossTenantMergeError: Records belong to different CRM domains
        """
        return self.resolver.link_accounting_credentials(target_identifier, source_identifier)

    def deauthorize(self, identifier: str) -> bool:
        """
        Hard-delete the record for identifier (CRM app uninstalled).

        Only an exact or indexed match is deleted; a record that merely
        resembles the identifier is left alone. Returns False when nothing
        matched.
        """
        resolution = self.resolver.find(identifier, allow_scan=False)
        if resolution is None:
            logger.info(
                "Deauthorization for unknown identifier",
                extra={"identifier": normalize_identifier(identifier)}
            )
            return False
        return self.store.delete(resolution.credentials.tenant_key)

    def token_state(self, tenant_key: str, provider: CredentialProvider) -> TokenState:
        credentials = self.store.get_exact(tenant_key)
        if credentials is None:
            raise CredentialNotFoundError(tenant_key, provider)
        return self.engine.token_state(credentials.for_provider(provider))

    # =========================================================================
    # Shipping credentials (one pair for the whole installation)
    # =========================================================================

    def shipping_credentials(self) -> Optional[ShippingCredentials]:
        """Decrypted shipping key pair for the order poller; None until saved."""
        return self.store.get_shipping_credentials()

    def save_shipping_credentials(
        self,
        api_key: str,
        api_secret: str,
        auto_create_orders: bool = False,
    ) -> ShippingCredentials:
        """
        Raises:
            ValidationError: Key or secret is blank
        """
        if not (api_key or "").strip() or not (api_secret or "").strip():
            raise ValidationError("Shipping API key and secret are both required.")
        credentials = self.store.set_shipping_credentials(
            api_key.strip(),
            api_secret.strip(),
            auto_create_orders=auto_create_orders,
        )
        logger.info("Shipping credentials saved", extra={"auto_create_orders": auto_create_orders})
        return credentials

    def disconnect_shipping(self) -> bool:
        return self.store.clear_shipping_credentials()
