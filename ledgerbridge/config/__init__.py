"""Configuration modules."""

from ledgerbridge.config.settings import (
    ProviderConfig,
    RefreshPolicy,
    require_provider_config,
    get_refresh_policies,
    get_http_timeout,
    get_refresh_lock_timeout,
    get_accounting_api_base_url,
)

__all__ = [
    "ProviderConfig",
    "RefreshPolicy",
    "require_provider_config",
    "get_refresh_policies",
    "get_http_timeout",
    "get_refresh_lock_timeout",
    "get_accounting_api_base_url",
]
