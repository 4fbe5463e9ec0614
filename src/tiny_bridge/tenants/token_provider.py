"""Access token sources.

A provider turns a tenant's opaque ``token_query`` into a fresh token.
It never decides *when* to refresh (that is TokenStore's job) and
never retries: storage errors propagate unchanged.
"""

import abc
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tiny_bridge.errors import TokenSourceEmptyError

logger = structlog.get_logger()


class TokenProvider(abc.ABC):
    """Base class for access token sources."""

    @abc.abstractmethod
    async def fetch(self, token_query: str) -> str | None:
        """Resolve ``token_query`` into an access token.

        Returns None when the source has a row but no token in it;
        TokenStore turns that into TokenFetchError.

        Raises:
            TokenSourceEmptyError: if the source has nothing for the query.
        """
        ...


class SqlTokenProvider(TokenProvider):
    """Reads the token from the first row of a SQL query.

    The query is the tenant's ``token_query`` verbatim, typically a
    stored-procedure call or a SELECT over the tokens schema.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        token_column: str = "access_token",
    ) -> None:
        self._session_factory = session_factory
        self._token_column = token_column

    async def fetch(self, token_query: str) -> str | None:
        async with self._session_factory() as session:
            result = await session.execute(text(token_query))
            row: Any = result.mappings().first()
            # token_query may call a procedure that rotates and stores the token
            await session.commit()

        if row is None:
            logger.warning("token_source_empty")
            raise TokenSourceEmptyError(token_query)

        token = row.get(self._token_column)
        logger.debug("token_source_row_found", has_token=bool(token))
        return str(token) if token else None
