"""Tenant registry: one entry per independently credentialed company.

Loaded from config/tenants.yaml at startup, validated by Pydantic.
Adding a company = YAML edit, no code changes.

The registry owns each tenant's ``live_token``. TokenStore writes it,
RequestExecutor reads it; both resolve tenants through ``resolve()``.
"""

from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, Field, model_validator

from tiny_bridge.errors import UnknownTenantError

logger = structlog.get_logger()


class Tenant(BaseModel):
    """Single company configuration plus its mutable access token.

    ``live_token`` is shared by reference: every concurrent request
    for this tenant sees the latest value written by a refresh.
    """

    id: str = Field(min_length=1)
    name: str
    token_query: str = Field(min_length=1)
    live_token: str | None = Field(default=None, repr=False)


class TenantRegistry(BaseModel):
    """Ordered tenant list with id / display-name lookup.

    Validates that:
    - At least one tenant is configured
    - Tenant ids are unique
    """

    tenants: list[Tenant]
    allow_name_substring: bool = True

    @model_validator(mode="after")
    def validate_tenants(self) -> "TenantRegistry":
        """Reject empty registries and duplicate ids."""
        errors: list[str] = []

        if not self.tenants:
            errors.append("Registry must contain at least one tenant")

        seen: set[str] = set()
        for tenant in self.tenants:
            if tenant.id in seen:
                errors.append(f"Duplicate tenant id: '{tenant.id}'")
            seen.add(tenant.id)

        if errors:
            raise ValueError(
                "Tenant registry validation failed:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )
        return self

    def resolve(self, key: str) -> Tenant:
        """Find a tenant by exact id, then by display-name substring.

        The substring fallback is order-dependent: the first tenant in
        file order whose name contains ``key`` wins. It can be switched
        off with ``allow_name_substring=False``.

        Raises:
            UnknownTenantError: if nothing matches.
        """
        for tenant in self.tenants:
            if tenant.id == key:
                return tenant

        if self.allow_name_substring and key:
            matches = [t for t in self.tenants if key in t.name]
            if len(matches) > 1:
                logger.warning(
                    "tenant_lookup_ambiguous",
                    key=key,
                    candidates=[t.id for t in matches],
                    chosen=matches[0].id,
                )
            if matches:
                return matches[0]

        raise UnknownTenantError(key)

    def get(self, tenant_id: str) -> Tenant:
        """Find a tenant by exact id only.

        Raises:
            UnknownTenantError: if the id is not registered.
        """
        for tenant in self.tenants:
            if tenant.id == tenant_id:
                return tenant
        raise UnknownTenantError(tenant_id)

    def ids(self) -> list[str]:
        """Tenant ids in registry order."""
        return [t.id for t in self.tenants]


def load_tenant_registry(
    config_path: Path,
    *,
    allow_name_substring: bool = True,
) -> TenantRegistry:
    """Load and validate the tenant registry from YAML.

    Args:
        config_path: Path to tenants.yaml. Typically comes from
            Settings.tenant_registry_path.
        allow_name_substring: Enable display-name substring lookup
            after exact id lookup fails.

    Raises:
        FileNotFoundError: if YAML file doesn't exist.
        ValueError: if YAML parsing or validation fails.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Tenant registry not found: {config_path}")

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse tenant registry '{config_path}': {e}") from e

    if not isinstance(raw, dict):
        raise ValueError(f"Tenant registry '{config_path}' must be a mapping")

    return TenantRegistry.model_validate(
        {**raw, "allow_name_substring": allow_name_substring}
    )
