"""
Per (tenant, provider) refresh locks.

Refresh tokens are single use: two concurrent refreshes of the same pair
leave one caller holding a token the provider has already invalidated.
Every refresh therefore runs under a lock keyed by tenant and provider.

- In process: one asyncio.Lock per pair
- Across processes: a Redis lock when REDIS_URL is set

If Redis is unreachable the registry degrades to the in-process lock and
logs a warning (the same fail-open stance as the rest of the stack). If
Redis is reachable but another process holds the lock past the timeout,
RefreshInProgressError is raised so the caller can retry shortly.

Key schema:
- ledgerbridge:refresh-lock:{provider}:{tenant_key}
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis
import redis.asyncio as aioredis

from ledgerbridge.config.settings import get_redis_url, get_refresh_lock_timeout
from ledgerbridge.credentials.errors import RefreshInProgressError
from ledgerbridge.models.tenant_credential import CredentialProvider

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "ledgerbridge:refresh-lock"


class RefreshLockRegistry:
    """Hands out the refresh lock for a (tenant_key, provider) pair."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        lock_timeout: Optional[float] = None,
    ):
        self._redis = redis_client
        self.lock_timeout = lock_timeout if lock_timeout is not None else get_refresh_lock_timeout()
        self._locks: dict[tuple[str, CredentialProvider], asyncio.Lock] = {}

    def _local_lock(self, tenant_key: str, provider: CredentialProvider) -> asyncio.Lock:
        key = (tenant_key, provider)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def is_locked(self, tenant_key: str, provider: CredentialProvider) -> bool:
        """True while a refresh for the pair is in flight in this process."""
        lock = self._locks.get((tenant_key, provider))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, tenant_key: str, provider: CredentialProvider) -> AsyncIterator[None]:
        """
        Hold the refresh lock for the pair.

        Raises:
            RefreshInProgressError: Another process kept the distributed lock past the timeout
        """
        async with self._local_lock(tenant_key, provider):
            distributed = await self._acquire_distributed(tenant_key, provider)
            try:
                yield
            finally:
                if distributed is not None:
                    await self._release_distributed(distributed, tenant_key, provider)

    async def _acquire_distributed(self, tenant_key: str, provider: CredentialProvider):
        if self._redis is None:
            return None

        lock = self._redis.lock(
            f"{LOCK_KEY_PREFIX}:{provider.value}:{tenant_key}",
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_timeout,
        )
        try:
            acquired = await lock.acquire()
        except redis.RedisError as exc:
            logger.warning(
                "Redis unavailable for refresh lock - using in-process lock only",
                extra={
                    "error_type": type(exc).__name__,
                    "tenant_key": tenant_key,
                    "provider": provider.value,
                },
            )
            return None

        if not acquired:
            logger.info(
                "Refresh lock held by another process",
                extra={"tenant_key": tenant_key, "provider": provider.value}
            )
            raise RefreshInProgressError(tenant_key, provider)
        return lock

    async def _release_distributed(self, lock, tenant_key: str, provider: CredentialProvider) -> None:
        try:
            await lock.release()
        except redis.RedisError as exc:
            # Lock expired or Redis went away; the TTL cleans up either way
            logger.warning(
                "Failed to release refresh lock",
                extra={
                    "error_type": type(exc).__name__,
                    "tenant_key": tenant_key,
                    "provider": provider.value,
                },
            )


_registry: Optional[RefreshLockRegistry] = None


def get_refresh_lock_registry() -> RefreshLockRegistry:
    """Process-wide registry, backed by Redis when REDIS_URL is set."""
    global _registry
    if _registry is None:
        redis_url = get_redis_url()
        client = None
        if redis_url:
            client = aioredis.from_url(
                redis_url,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        _registry = RefreshLockRegistry(redis_client=client)
    return _registry
