"""Domain-specific exceptions for tiny-bridge."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tiny_bridge.erp.schemas import Outcome


class TinyBridgeError(Exception):
    """Base class for all tiny-bridge errors."""


class UnknownTenantError(TinyBridgeError):
    """No tenant matches the given id or display name."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Tenant '{key}' not found in registry")


# -- token lifecycle ------------------------------------------------------


class TokenError(TinyBridgeError):
    """Base class for access token lookup failures."""


class TokenSourceEmptyError(TokenError):
    """The credential query returned no rows."""

    def __init__(self, query: str) -> None:
        self.query = query
        super().__init__("Token query returned no rows")


class TokenFetchError(TokenError):
    """A forced refresh produced no usable token."""

    def __init__(self, tenant_id: str, reason: str = "empty token") -> None:
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(f"Token refresh failed for tenant '{tenant_id}': {reason}")


# -- ERP request outcomes -------------------------------------------------


class ErpRequestError(TinyBridgeError):
    """A request to the ERP API ended without success.

    Attributes:
        outcome: The terminal execution outcome, with attempt counters.
    """

    def __init__(self, message: str, outcome: Outcome | None = None) -> None:
        self.outcome = outcome
        super().__init__(message)


class AuthRetryExhaustedError(ErpRequestError):
    """The API kept rejecting freshly refreshed credentials."""


class RateLimitExhaustedError(ErpRequestError):
    """The API kept answering 429 after the whole backoff schedule."""

    def __init__(self, attempts: int, outcome: Outcome | None = None) -> None:
        self.attempts = attempts
        super().__init__(
            f"API rate limited: gave up after {attempts} attempts", outcome
        )


class ErpNetworkError(ErpRequestError):
    """No HTTP response was received (connection, DNS, read timeout...)."""

    def __init__(self, cause: BaseException, outcome: Outcome | None = None) -> None:
        self.cause = cause
        super().__init__(f"Network error: {cause}", outcome)
        self.__cause__ = cause


class FatalApiError(ErpRequestError):
    """Non-retryable HTTP status from the API (404, 500, ...)."""

    def __init__(
        self, status_code: int, body: Any, outcome: Outcome | None = None
    ) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"API error {status_code}: {body!r}", outcome)


class RequestTimeoutError(ErpRequestError):
    """The overall deadline expired or the call was cancelled."""


# -- glue layers ----------------------------------------------------------


class SheetFilterError(TinyBridgeError):
    """Spreadsheet could not be filtered (missing sheet/column, bad file)."""


class CrmError(TinyBridgeError):
    """Chatwoot API call failed.

    Attributes:
        status_code: HTTP status, or None when no response was received.
        body: Decoded response body, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class BrowserAutomationError(TinyBridgeError):
    """Browser-driven report download failed."""
