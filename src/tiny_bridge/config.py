"""Centralized application configuration via environment variables."""

from enum import StrEnum
from functools import lru_cache
from pathlib import Path

from pydantic import SecretStr, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Secrets (database password, CRM token, ERP login) use SecretStr
    to prevent accidental logging. Database URL is assembled from
    individual components to match the official PostgreSQL Docker
    image environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # --- App ---
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "DEBUG"

    # --- PostgreSQL (credential / reporting database) ---
    postgres_user: str = "tiny_bridge"
    postgres_password: SecretStr = SecretStr("secret")
    postgres_db: str = "tiny_bridge"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    @computed_field  # type: ignore[prop-decorator]
    @property
    def database_url(self) -> str:
        """Assemble database URL from components.

        Uses psycopg v3 driver which supports both sync (create_engine)
        and async (create_async_engine) modes natively.
        """
        password = self.postgres_password.get_secret_value()
        return (
            f"postgresql+psycopg://{self.postgres_user}:{password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # --- Tiny ERP API ---
    tiny_api_base_url: str = "https://api.tiny.com.br/public-api/v3"
    # One entry per rate-limited send; the list length is the 429 budget.
    tiny_retry_delays: list[float] = [10, 20, 40, 60, 120]
    tiny_auth_retry_budget: int = 3
    tiny_http_timeout: float = 30.0
    # Overall deadline per logical operation (seconds). None = no deadline.
    tiny_request_deadline: float | None = None
    tiny_token_single_flight: bool = True
    tiny_tenant_lookup_by_name: bool = True
    tiny_stock_timezone: str = "America/Sao_Paulo"

    # --- Tenant registry ---
    tenant_registry_path: Path = Path("config/tenants.yaml")

    # --- Chatwoot CRM ---
    chatwoot_url_base: str = "http://localhost:3000"
    chatwoot_api_token: SecretStr | None = None
    chatwoot_account_id: str = "1"
    chatwoot_http_debug: bool = False

    # --- Tiny web login (inventory report download) ---
    tiny_login_user: str | None = None
    tiny_login_password: SecretStr | None = None
    browser_executable_path: Path | None = None

    @field_validator("tiny_retry_delays")
    @classmethod
    def _validate_retry_delays(cls, value: list[float]) -> list[float]:
        if not value:
            raise ValueError("tiny_retry_delays must contain at least one delay")
        if any(delay < 0 for delay in value):
            raise ValueError("tiny_retry_delays must not contain negative delays")
        return value

    @field_validator("tiny_auth_retry_budget")
    @classmethod
    def _validate_auth_budget(cls, value: int) -> int:
        if value < 0:
            raise ValueError("tiny_auth_retry_budget must be >= 0")
        return value

    @field_validator("chatwoot_url_base")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings singleton.

    Usage::

        from tiny_bridge.config import get_settings
        settings = get_settings()
    """
    return Settings()
