"""Request, outcome and progress-event schemas for ERP API calls."""

import copy
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tiny_bridge.errors import (
    AuthRetryExhaustedError,
    ErpNetworkError,
    FatalApiError,
    RateLimitExhaustedError,
    RequestTimeoutError,
)


class ErpRequest(BaseModel):
    """One logical API operation, replayed verbatim on every retry.

    Only the Authorization header changes between attempts; it is
    attached by RequestExecutor and never stored here.

    params and form_body are read-only copies, json_body a deep copy,
    so callers mutating their own dicts cannot alter a queued request.
    """

    model_config = ConfigDict(frozen=True)

    method: str = "GET"
    path: str  # already interpolated: /estoque/123
    params: Mapping[str, Any] | None = None
    json_body: Any = None
    form_body: Mapping[str, Any] | None = None
    action: str = ""  # get_product, edit_stock, ... (logging only)

    @field_validator("params", "form_body")
    @classmethod
    def _freeze_mapping(cls, v: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
        if v is None:
            return None
        return MappingProxyType(copy.deepcopy(dict(v)))

    @field_validator("json_body")
    @classmethod
    def _copy_json(cls, v: Any) -> Any:
        return copy.deepcopy(v)


class OutcomeKind(StrEnum):
    SUCCESS = "success"
    AUTH_RETRY_EXHAUSTED = "auth_retry_exhausted"
    RATE_LIMIT_EXHAUSTED = "rate_limit_exhausted"
    NETWORK_ERROR = "network_error"
    FATAL_API_ERROR = "fatal_api_error"
    CANCELLED_OR_TIMED_OUT = "cancelled_or_timed_out"


@dataclass(frozen=True)
class Outcome:
    """Terminal result of one ``RequestExecutor.execute`` call.

    Attributes:
        kind: Which terminal state the call ended in.
        body: Decoded response body (success or fatal API error).
        status_code: Last HTTP status seen, if any.
        cause: Underlying exception for network errors / timeouts.
        sends: Number of HTTP requests actually sent.
        refreshes: Number of forced token refreshes performed.
        sleeps: Backoff delays slept, in order.
    """

    kind: OutcomeKind
    body: Any = None
    status_code: int | None = None
    cause: BaseException | None = None
    sends: int = 0
    refreshes: int = 0
    sleeps: tuple[float, ...] = ()

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    def unwrap(self) -> Any:
        """Return the body on success, raise the matching error otherwise.

        Raises:
            AuthRetryExhaustedError, RateLimitExhaustedError,
            ErpNetworkError, FatalApiError, RequestTimeoutError.
        """
        if self.kind == OutcomeKind.SUCCESS:
            return self.body
        if self.kind == OutcomeKind.RATE_LIMIT_EXHAUSTED:
            raise RateLimitExhaustedError(self.sends, outcome=self)
        if self.kind == OutcomeKind.AUTH_RETRY_EXHAUSTED:
            raise AuthRetryExhaustedError(
                f"Credentials rejected after {self.refreshes} token refreshes",
                outcome=self,
            )
        if self.kind == OutcomeKind.NETWORK_ERROR:
            cause = self.cause or ConnectionError("no response")
            raise ErpNetworkError(cause, outcome=self)
        if self.kind == OutcomeKind.FATAL_API_ERROR:
            raise FatalApiError(self.status_code or 0, self.body, outcome=self)
        raise RequestTimeoutError("Request deadline expired", outcome=self)


class EventKind(StrEnum):
    ATTEMPT = "attempt"
    TOKEN_MISSING = "token_missing"
    AUTH_REJECTED = "auth_rejected"
    TOKEN_REFRESHED = "token_refreshed"
    RATE_LIMITED = "rate_limited"
    BACKOFF = "backoff"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExecutionEvent(BaseModel):
    """Progress event emitted while a request is being executed.

    Intermediate retries and refreshes are only visible to callers
    through these events, never through partial results.
    """

    kind: EventKind
    tenant_id: str
    method: str
    path: str
    attempt: int = 0
    status_code: int | None = None
    delay: float | None = None
    outcome: OutcomeKind | None = None
    error: str | None = None
    emitted_at: datetime = Field(default_factory=datetime.now)
