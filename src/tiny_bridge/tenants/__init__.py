"""Tenant registry and per-tenant access token lifecycle."""

from tiny_bridge.tenants.registry import Tenant, TenantRegistry, load_tenant_registry
from tiny_bridge.tenants.token_provider import SqlTokenProvider, TokenProvider
from tiny_bridge.tenants.token_store import TokenStore

__all__ = [
    "SqlTokenProvider",
    "Tenant",
    "TenantRegistry",
    "TokenProvider",
    "TokenStore",
    "load_tenant_registry",
]
