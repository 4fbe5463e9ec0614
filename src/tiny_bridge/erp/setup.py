"""One-stop factory for assembling the full ERP client stack.

Usage::

    from tiny_bridge.config import get_settings
    from tiny_bridge.erp import create_tiny_client

    async with create_tiny_client(get_settings()) as client:
        stock = await client.get_stock("JP")
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tiny_bridge.config import Settings
from tiny_bridge.erp.client import TinyClient
from tiny_bridge.erp.executor import EventCallback, RequestExecutor
from tiny_bridge.storage.database import create_session_factory
from tiny_bridge.tenants.registry import TenantRegistry, load_tenant_registry
from tiny_bridge.tenants.token_provider import SqlTokenProvider, TokenProvider
from tiny_bridge.tenants.token_store import TokenStore

logger = structlog.get_logger()


@asynccontextmanager
async def create_tiny_client(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    registry: TenantRegistry | None = None,
    token_provider: TokenProvider | None = None,
    event_callback: EventCallback | None = None,
) -> AsyncIterator[TinyClient]:
    """Assemble TinyClient with registry, token store and HTTP client.

    Args:
        settings: Application settings (base URL, retry policy, paths).
        session_factory: Session factory for the credential database.
            Created from settings when omitted.
        registry: Pre-built tenant registry. Loaded from
            ``settings.tenant_registry_path`` when omitted.
        token_provider: Token source. SqlTokenProvider when omitted.
        event_callback: Receives executor progress events.

    Yields:
        Configured TinyClient; the HTTP client is closed on exit.
    """
    if registry is None:
        registry = load_tenant_registry(
            settings.tenant_registry_path,
            allow_name_substring=settings.tiny_tenant_lookup_by_name,
        )
    if token_provider is None:
        token_provider = SqlTokenProvider(
            session_factory or create_session_factory(settings)
        )

    token_store = TokenStore(
        registry,
        token_provider,
        single_flight=settings.tiny_token_single_flight,
    )

    async with httpx.AsyncClient(
        base_url=settings.tiny_api_base_url,
        timeout=settings.tiny_http_timeout,
    ) as http_client:
        executor = RequestExecutor(
            registry,
            token_store,
            http_client,
            retry_policy=settings.tiny_retry_delays,
            auth_retry_budget=settings.tiny_auth_retry_budget,
            default_timeout=settings.tiny_request_deadline,
            event_callback=event_callback,
        )
        logger.info(
            "tiny_client_created",
            tenants=registry.ids(),
            retry_policy=list(executor.retry_policy),
            auth_retry_budget=executor.auth_retry_budget,
            single_flight=token_store.single_flight,
        )
        yield TinyClient(executor, timezone=settings.tiny_stock_timezone)
