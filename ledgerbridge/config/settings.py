"""
Environment-driven settings.

Values are read from the environment at call time so tests can
monkeypatch them. A .env file is loaded by the application entry points
(main.create_app and the workers) with python-dotenv.

Provider OAuth settings:
- PIPEDRIVE_CLIENT_ID / PIPEDRIVE_CLIENT_SECRET
- QB_CLIENT_ID / QB_CLIENT_SECRET
- APP_URL (callback URLs are derived from it)
- QB_ENVIRONMENT: "sandbox" (default) or "production"

Refresh tuning:
- CRM_REFRESH_LOOKAHEAD_MINUTES / ACCOUNTING_REFRESH_LOOKAHEAD_MINUTES (default 10)
- CRM_AUTH_FAILURE_STATUSES / ACCOUNTING_AUTH_FAILURE_STATUSES (default "401")
- HTTP_TIMEOUT_SECONDS (default 15)
- REFRESH_LOCK_TIMEOUT_SECONDS (default 30)
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ledgerbridge.credentials.errors import ProviderNotConfiguredError
from ledgerbridge.models.tenant_credential import CredentialProvider

logger = logging.getLogger(__name__)

DEFAULT_APP_URL = "http://localhost:8000"
DEFAULT_REFRESH_LOOKAHEAD_MINUTES = 10
DEFAULT_AUTH_FAILURE_STATUSES = (401,)
DEFAULT_HTTP_TIMEOUT_SECONDS = 15.0
DEFAULT_REFRESH_LOCK_TIMEOUT_SECONDS = 30.0

ACCOUNTING_API_BASE_URLS = {
    "sandbox": "https://sandbox-quickbooks.api.intuit.com",
    "production": "https://quickbooks.api.intuit.com",
}

_ENV_PREFIX = {
    CredentialProvider.CRM: "CRM",
    CredentialProvider.ACCOUNTING: "ACCOUNTING",
}

_CLIENT_ENV_VARS = {
    CredentialProvider.CRM: ("PIPEDRIVE_CLIENT_ID", "PIPEDRIVE_CLIENT_SECRET"),
    CredentialProvider.ACCOUNTING: ("QB_CLIENT_ID", "QB_CLIENT_SECRET"),
}

CALLBACK_PATHS = {
    CredentialProvider.CRM: "/auth/crm/callback",
    CredentialProvider.ACCOUNTING: "/auth/accounting/callback",
}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(
            "Ignoring non-numeric setting",
            extra={"setting": name, "default": default}
        )
        return default


def get_app_url() -> str:
    return os.getenv("APP_URL", DEFAULT_APP_URL).rstrip("/")


@dataclass(frozen=True)
class ProviderConfig:
    """OAuth client configuration for one provider."""
    provider: CredentialProvider
    client_id: str
    client_secret: str
    redirect_uri: str

    @classmethod
    def from_env(cls, provider: CredentialProvider) -> Optional["ProviderConfig"]:
        """Load configuration from environment variables."""
        id_var, secret_var = _CLIENT_ENV_VARS[provider]
        client_id = os.getenv(id_var)
        client_secret = os.getenv(secret_var)

        if not client_id or not client_secret:
            logger.warning(
                "OAuth client not fully configured",
                extra={
                    "provider": provider.value,
                    "has_client_id": bool(client_id),
                    "has_client_secret": bool(client_secret),
                }
            )
            return None

        return cls(
            provider=provider,
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=f"{get_app_url()}{CALLBACK_PATHS[provider]}",
        )

    def __repr__(self) -> str:
        return f"ProviderConfig(provider={self.provider.value!r}, client_id={self.client_id!r}, redirect_uri={self.redirect_uri!r})"


def require_provider_config(provider: CredentialProvider) -> ProviderConfig:
    """
    Get provider configuration or fail.

    Raises:
        ProviderNotConfiguredError: If client id or secret is missing
    """
    config = ProviderConfig.from_env(provider)
    if config is None:
        raise ProviderNotConfiguredError(provider)
    return config


def get_client_secret(provider: CredentialProvider) -> Optional[str]:
    """Client secret only, for webhook signature checks."""
    return os.getenv(_CLIENT_ENV_VARS[provider][1])


@dataclass(frozen=True)
class RefreshPolicy:
    """
    When a provider's access token counts as expiring, and which response
    statuses mean "token rejected".
    """
    lookahead: timedelta = timedelta(minutes=DEFAULT_REFRESH_LOOKAHEAD_MINUTES)
    auth_failure_statuses: tuple[int, ...] = DEFAULT_AUTH_FAILURE_STATUSES

    @classmethod
    def from_env(cls, provider: CredentialProvider) -> "RefreshPolicy":
        prefix = _ENV_PREFIX[provider]
        minutes = _float_env(
            f"{prefix}_REFRESH_LOOKAHEAD_MINUTES",
            DEFAULT_REFRESH_LOOKAHEAD_MINUTES,
        )
        statuses = DEFAULT_AUTH_FAILURE_STATUSES
        raw_statuses = os.getenv(f"{prefix}_AUTH_FAILURE_STATUSES")
        if raw_statuses:
            try:
                statuses = tuple(int(s) for s in raw_statuses.split(",") if s.strip())
            except ValueError:
                logger.warning(
                    "Ignoring invalid auth failure statuses",
                    extra={"provider": provider.value, "value": raw_statuses}
                )
        return cls(lookahead=timedelta(minutes=minutes), auth_failure_statuses=statuses)


def get_refresh_policies() -> dict[CredentialProvider, RefreshPolicy]:
    return {provider: RefreshPolicy.from_env(provider) for provider in CredentialProvider}


def get_http_timeout() -> float:
    """Timeout applied to every outbound provider call, in seconds."""
    return _float_env("HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS)


def get_refresh_lock_timeout() -> float:
    return _float_env("REFRESH_LOCK_TIMEOUT_SECONDS", DEFAULT_REFRESH_LOCK_TIMEOUT_SECONDS)


def get_redis_url() -> Optional[str]:
    return os.getenv("REDIS_URL") or None


def get_accounting_environment() -> str:
    environment = os.getenv("QB_ENVIRONMENT", "sandbox").lower()
    if environment not in ACCOUNTING_API_BASE_URLS:
        logger.warning(
            "Unknown QB_ENVIRONMENT, using sandbox",
            extra={"value": environment}
        )
        return "sandbox"
    return environment


def get_accounting_api_base_url() -> str:
    """Accounting REST base URL for the configured environment."""
    return ACCOUNTING_API_BASE_URLS[get_accounting_environment()]
