"""Async access to the PostgreSQL credential / reporting database.

Raw SQL passthrough: callers bring their own queries and get plain
row dicts back. Used by SqlTokenProvider and the CLI.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tiny_bridge.config import Settings

logger = structlog.get_logger()

LIST_SCHEMAS_SQL = """
SELECT n.nspname AS schema,
       pg_get_userbyid(n.nspowner) AS owner
FROM pg_namespace n
ORDER BY 1
"""

LIST_TABLES_SQL = """
SELECT tablename
FROM pg_catalog.pg_tables
WHERE schemaname = :schema
ORDER BY tablename
"""

SYSTEM_SCHEMAS: frozenset[str] = frozenset(
    {"information_schema", "pg_catalog", "pg_toast"}
)


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine (psycopg v3) from settings."""
    return create_async_engine(
        settings.database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def create_session_factory(
    settings: Settings,
    engine: AsyncEngine | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine`` (created from settings if omitted)."""
    return async_sessionmaker(
        engine or create_engine(settings),
        class_=AsyncSession,
        expire_on_commit=False,
    )


class Database:
    """Thin query runner over an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def check_connection(self) -> bool:
        """Return True if a trivial query succeeds. Never raises."""
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            logger.error("db_connection_failed", error=str(exc))
            return False
        return True

    async def execute_query(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Execute one SQL statement and return its rows.

        Args:
            sql: SQL text. Use ``:name`` placeholders for parameters.
            params: Values for the placeholders.

        Returns:
            Rows as dicts; empty list for statements without a result set.
            The transaction is committed after the statement.
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(text(sql), dict(params or {}))
                rows = (
                    [dict(row) for row in result.mappings()]
                    if result.returns_rows
                    else []
                )
                await session.commit()
        except Exception as exc:
            logger.error("db_query_failed", error=str(exc))
            raise

        logger.debug("db_query_done", row_count=len(rows))
        return rows

    async def list_schemas(
        self, *, include_system: bool = True
    ) -> list[dict[str, Any]]:
        """List schemas with their owners."""
        rows = await self.execute_query(LIST_SCHEMAS_SQL)
        if include_system:
            return rows
        return [r for r in rows if r["schema"] not in SYSTEM_SCHEMAS]

    async def list_tables(self, schema: str) -> list[dict[str, Any]]:
        """List table names of ``schema``."""
        return await self.execute_query(LIST_TABLES_SQL, {"schema": schema})
