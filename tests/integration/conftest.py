"""Shared fixtures for integration tests requiring live infrastructure."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tiny_bridge.config import get_settings
from tiny_bridge.storage.database import create_engine, create_session_factory

# ── Engine ─────────────────────────────────────────────────────────


@pytest.fixture()
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """Engine from settings (POSTGRES_* env), disposed after the test."""
    engine = create_engine(get_settings())
    yield engine
    await engine.dispose()


# ── Session factory ────────────────────────────────────────────────


@pytest.fixture()
def session_factory(
    async_engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(get_settings(), async_engine)
