"""
Token refresh engine for the CRM and accounting OAuth pairs.

Implements BOTH refresh strategies:
1. Proactive: refresh before a call when the token is inside the
   provider's lookahead window (or its expiry is unknown)
2. Reactive: forced refresh after the provider answers a call with an
   auth failure (see ApiCallWrapper)

Refresh is serialized per (tenant, provider). After taking the lock the
engine re-reads the record: if another caller already rotated the pair,
its tokens are reused and the provider is not contacted again.

Token states:
- VALID: usable, outside the lookahead window
- EXPIRING_SOON: inside the window, or expiry unknown with a refresh token on file
- REFRESHING: a refresh for the pair is in flight in this process
- EXPIRED_UNRECOVERABLE: provider rejected the refresh token; user must reconnect

SECURITY REQUIREMENTS:
- Tokens are encrypted before storage (CredentialStore.rotate_tokens)
- No plaintext tokens in logs
- Audit events for refreshes and rejections

Usage:
    engine = TokenRefreshEngine(store)
    result = await engine.ensure_fresh(tenant_key, CredentialProvider.ACCOUNTING)
    access_token = result.credentials.access_token
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from ledgerbridge.config.settings import RefreshPolicy, get_refresh_policies
from ledgerbridge.credentials.errors import (
    CredentialError,
    CredentialNotFoundError,
    RefreshRejectedError,
    RefreshTransientError,
)
from ledgerbridge.credentials.locks import RefreshLockRegistry, get_refresh_lock_registry
from ledgerbridge.credentials.providers import TokenGrant, refresh_with_provider
from ledgerbridge.credentials.redaction import CredentialAuditLogger, AuditEventType
from ledgerbridge.credentials.store import CredentialStore, ProviderCredentials
from ledgerbridge.models.base import utcnow
from ledgerbridge.models.tenant_credential import CredentialProvider

logger = logging.getLogger(__name__)


class TokenState(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    REFRESHING = "refreshing"
    EXPIRED_UNRECOVERABLE = "expired_unrecoverable"


class RefreshOutcome(str, Enum):
    """What ensure_fresh did."""
    NOT_NEEDED = "not_needed"
    REFRESHED = "refreshed"
    REUSED = "reused"  # Another caller rotated the pair while we waited
    SKIPPED = "skipped"  # No refresh token; existing access token returned as-is
    DEFERRED = "deferred"  # Refresh failed transiently; unexpired token used as-is


@dataclass(frozen=True)
class RefreshResult:
    """
    Result of ensure_fresh.

    SECURITY: credentials is a redacting snapshot; its repr has no tokens.
    """
    outcome: RefreshOutcome
    credentials: ProviderCredentials

    @property
    def skipped(self) -> bool:
        return self.outcome == RefreshOutcome.SKIPPED


# Signature: async (provider, refresh_token) -> TokenGrant
TokenRefreshCallback = Callable[[CredentialProvider, str], Awaitable[TokenGrant]]


def evaluate_token_state(
    credentials: ProviderCredentials,
    policy: RefreshPolicy,
    now: Optional[datetime] = None,
) -> TokenState:
    """Classify a snapshot. Never returns REFRESHING; that depends on lock state."""
    if credentials.needs_reauthorization:
        return TokenState.EXPIRED_UNRECOVERABLE
    if credentials.expires_at is None:
        return TokenState.EXPIRING_SOON if credentials.refresh_token else TokenState.VALID
    now = now or utcnow()
    if now >= credentials.expires_at - policy.lookahead:
        return TokenState.EXPIRING_SOON
    return TokenState.VALID


class TokenRefreshEngine:
    """Keeps a tenant's provider tokens fresh, one refresh per pair at a time."""

    def __init__(
        self,
        store: CredentialStore,
        refresh_callbacks: Optional[dict[CredentialProvider, TokenRefreshCallback]] = None,
        lock_registry: Optional[RefreshLockRegistry] = None,
        policies: Optional[dict[CredentialProvider, RefreshPolicy]] = None,
    ):
        """
        Args:
            store: Credential store
            refresh_callbacks: Provider-specific refresh functions; providers
                without one use their OAuth token endpoint
            lock_registry: Refresh locks (process-wide registry by default)
            policies: Lookahead and auth-failure statuses per provider
        """
        self.store = store
        self.refresh_callbacks = dict(refresh_callbacks or {})
        self.locks = lock_registry or get_refresh_lock_registry()
        self.policies = policies or get_refresh_policies()

    def policy_for(self, provider: CredentialProvider) -> RefreshPolicy:
        return self.policies.get(provider) or RefreshPolicy()

    def token_state(self, credentials: ProviderCredentials) -> TokenState:
        if self.locks.is_locked(credentials.tenant_key, credentials.provider):
            return TokenState.REFRESHING
        return evaluate_token_state(credentials, self.policy_for(credentials.provider))

    async def ensure_fresh(
        self,
        tenant_key: str,
        provider: CredentialProvider,
        force: bool = False,
        rejected_access_token: Optional[str] = None,
    ) -> RefreshResult:
        """
        Return credentials that are safe to use, refreshing if needed.

        Args:
            tenant_key: Canonical tenant key
            provider: Which pair to refresh
            force: Refresh even if the token looks valid (after a 401)
            rejected_access_token: The token the provider just refused; if the
                stored token differs, someone already refreshed and it is reused

        Raises:
            CredentialNotFoundError: No record for tenant_key
            RefreshRejectedError: Refresh token is dead; user must reconnect
            RefreshTransientError: Refresh did not complete; retry later
            RefreshInProgressError: Another process is refreshing this pair
        """
        credentials = self._load(tenant_key, provider)
        state = evaluate_token_state(credentials, self.policy_for(provider))

        if state == TokenState.EXPIRED_UNRECOVERABLE:
            raise RefreshRejectedError(provider, tenant_key=tenant_key, reason="reauthorization_required")

        if not force and state == TokenState.VALID:
            return RefreshResult(RefreshOutcome.NOT_NEEDED, credentials)

        if not credentials.refresh_token:
            logger.info(
                "Refresh skipped: no refresh token",
                extra={"tenant_key": tenant_key, "provider": provider.value}
            )
            return RefreshResult(RefreshOutcome.SKIPPED, credentials)

        baseline = rejected_access_token or credentials.access_token

        async with self.locks.hold(tenant_key, provider):
            current = self._load(tenant_key, provider)

            if current.needs_reauthorization:
                raise RefreshRejectedError(provider, tenant_key=tenant_key, reason="reauthorization_required")

            if current.access_token and current.access_token != baseline:
                logger.info(
                    "Reusing tokens rotated by a concurrent refresh",
                    extra={"tenant_key": tenant_key, "provider": provider.value}
                )
                return RefreshResult(RefreshOutcome.REUSED, current)

            if not current.refresh_token:
                return RefreshResult(RefreshOutcome.SKIPPED, current)

            return await self._do_refresh(current)

    def _load(self, tenant_key: str, provider: CredentialProvider) -> ProviderCredentials:
        credentials = self.store.get_exact(tenant_key)
        if credentials is None:
            raise CredentialNotFoundError(tenant_key, provider)
        return credentials.for_provider(provider)

    async def _do_refresh(self, credentials: ProviderCredentials) -> RefreshResult:
        """
        Call the provider and persist the new pair before returning.

        SECURITY:
        - Tokens are decrypted only in memory
        - New tokens are encrypted before storage
        """
        tenant_key = credentials.tenant_key
        provider = credentials.provider
        callback = self.refresh_callbacks.get(provider, refresh_with_provider)
        audit = CredentialAuditLogger(tenant_key)

        try:
            grant = await callback(provider, credentials.refresh_token)
        except RefreshRejectedError as e:
            self.store.mark_reauthorization_required(tenant_key, provider, reason=e.reason)
            audit.log(
                event_type=AuditEventType.CREDENTIAL_REFRESH_REJECTED,
                provider=provider.value,
                metadata={"reason": e.reason},
            )
            logger.error(
                "Refresh token rejected; reauthorization required",
                extra={"tenant_key": tenant_key, "provider": provider.value}
            )
            raise RefreshRejectedError(provider, tenant_key=tenant_key, reason=e.reason) from e
        except RefreshTransientError as e:
            logger.warning(
                "Token refresh failed transiently",
                extra={"tenant_key": tenant_key, "provider": provider.value, "error": e.message}
            )
            raise RefreshTransientError(e.message, tenant_key=tenant_key, provider=provider) from e
        except CredentialError:
            raise
        except Exception as e:
            logger.exception(
                "Token refresh callback raised",
                extra={"tenant_key": tenant_key, "provider": provider.value}
            )
            raise RefreshTransientError(
                f"{provider.label} token refresh failed.",
                tenant_key=tenant_key,
                provider=provider,
            ) from e

        updated = self.store.rotate_tokens(tenant_key, provider, grant)

        audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            provider=provider.value,
            metadata={
                "new_expires_at": updated.expires_at.isoformat() if updated.expires_at else None,
                "refresh_rotated": bool(grant.refresh_token),
            },
        )
        logger.info(
            "Credential refreshed successfully",
            extra={
                "tenant_key": tenant_key,
                "provider": provider.value,
                "new_expires_at": updated.expires_at.isoformat() if updated.expires_at else None,
            }
        )
        return RefreshResult(RefreshOutcome.REFRESHED, updated)
