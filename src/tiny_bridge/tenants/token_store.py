"""Per-tenant access token cache with forced refresh."""

import asyncio

import structlog

from tiny_bridge.errors import TokenFetchError
from tiny_bridge.tenants.registry import Tenant, TenantRegistry
from tiny_bridge.tenants.token_provider import TokenProvider

logger = structlog.get_logger()

_UNSET: object = object()


class TokenStore:
    """Holds the current token per tenant and mediates refresh.

    Tokens live on the registry's Tenant objects, so every holder of
    the registry sees the same value. One store per process; tests
    build their own.

    Concurrency:
        With ``single_flight=True`` refreshes are serialized per tenant.
        A caller that queued behind an in-flight refresh and passes the
        ``stale_token`` it was rejected with gets the already refreshed
        token instead of hitting the provider again.

        With ``single_flight=False`` nothing is synchronized: concurrent
        refreshes all call the provider and the last writer wins. The
        stored value is always one of the fetched tokens, never a mix.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        provider: TokenProvider,
        *,
        single_flight: bool = True,
    ) -> None:
        self._registry = registry
        self._provider = provider
        self._single_flight = single_flight
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def single_flight(self) -> bool:
        return self._single_flight

    def get(self, tenant_id: str) -> str | None:
        """Return the cached token, or None. Never fetches."""
        return self._registry.get(tenant_id).live_token

    def invalidate(self, tenant_id: str) -> None:
        """Drop the cached token so the next request refetches."""
        self._registry.get(tenant_id).live_token = None

    async def force_refresh(
        self,
        tenant_id: str,
        *,
        stale_token: str | None | object = _UNSET,
    ) -> str:
        """Fetch a new token from the provider and cache it.

        Args:
            tenant_id: Registry id of the tenant.
            stale_token: The token the caller saw rejected (None if it
                had none). Only used for single-flight deduplication;
                omit it to always hit the provider.

        Returns:
            The new token.

        Raises:
            UnknownTenantError: if the id is not registered.
            TokenFetchError: if the provider returned an empty token.
            Exception: provider errors propagate unchanged.
        """
        tenant = self._registry.get(tenant_id)

        if not self._single_flight:
            return await self._refresh(tenant)

        lock = self._locks.setdefault(tenant.id, asyncio.Lock())
        async with lock:
            current = tenant.live_token
            already_refreshed = current is not None and current != stale_token
            if stale_token is not _UNSET and already_refreshed:
                logger.debug("token_refresh_joined", tenant_id=tenant.id)
                return current
            return await self._refresh(tenant)

    async def _refresh(self, tenant: Tenant) -> str:
        log = logger.bind(tenant_id=tenant.id)
        log.info("token_refresh_start")
        try:
            token = await self._provider.fetch(tenant.token_query)
            if not token:
                raise TokenFetchError(tenant.id)
        except Exception as exc:
            # Never leave a known-bad token behind.
            tenant.live_token = None
            log.error("token_refresh_failed", error=str(exc))
            raise

        tenant.live_token = token
        log.info("token_refresh_done")
        return token
