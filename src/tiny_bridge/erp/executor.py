"""RequestExecutor -- single entry point for every ERP API call.

Two independent recovery paths:
1. Auth: 401/403 (or no cached token) -> force token refresh -> replay
2. Rate limit: 429 -> sleep retry_policy[n] -> replay

Everything else is terminal on first sight: 2xx is success, network
failures and any other HTTP status are returned as-is, never retried.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from tiny_bridge.erp.schemas import (
    ErpRequest,
    EventKind,
    ExecutionEvent,
    Outcome,
    OutcomeKind,
)
from tiny_bridge.tenants.registry import Tenant, TenantRegistry
from tiny_bridge.tenants.token_store import TokenStore

logger = structlog.get_logger()

EventCallback = Callable[[ExecutionEvent], Awaitable[None]]
SleepFunc = Callable[[float], Awaitable[None]]

DEFAULT_RETRY_POLICY: tuple[float, ...] = (10, 20, 40, 60, 120)
DEFAULT_AUTH_RETRY_BUDGET = 3

AUTH_STATUSES: frozenset[int] = frozenset({401, 403})
RATE_LIMIT_STATUS = 429

_USE_DEFAULT: Any = object()


@dataclass
class _RunState:
    """Mutable counters for one execute() call."""

    tenant_id: str
    request: ErpRequest
    sends: int = 0
    refreshes: int = 0
    auth_failures: int = 0
    rate_limit_attempt: int = 0
    sleeps: list[float] = field(default_factory=list)
    last_status: int | None = None
    last_body: Any = None

    def finish(
        self,
        kind: OutcomeKind,
        *,
        body: Any = None,
        cause: BaseException | None = None,
    ) -> Outcome:
        return Outcome(
            kind=kind,
            body=body,
            status_code=self.last_status,
            cause=cause,
            sends=self.sends,
            refreshes=self.refreshes,
            sleeps=tuple(self.sleeps),
        )

    def event(self, kind: EventKind, **kwargs: Any) -> ExecutionEvent:
        return ExecutionEvent(
            kind=kind,
            tenant_id=self.tenant_id,
            method=self.request.method,
            path=self.request.path,
            attempt=self.sends,
            **kwargs,
        )


class RequestExecutor:
    """Executes ERP requests with token refresh and rate-limit backoff.

    The auth path and the rate-limit path keep separate counters: an
    expired token never consumes a backoff slot.

    Attempts inside one call are strictly sequential. Concurrent calls
    for the same tenant share its token through the TokenStore.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        token_store: TokenStore,
        http_client: httpx.AsyncClient,
        *,
        retry_policy: Sequence[float] = DEFAULT_RETRY_POLICY,
        auth_retry_budget: int = DEFAULT_AUTH_RETRY_BUDGET,
        default_timeout: float | None = None,
        sleep: SleepFunc = asyncio.sleep,
        event_callback: EventCallback | None = None,
    ) -> None:
        if not retry_policy:
            raise ValueError("retry_policy must contain at least one delay")
        if any(delay < 0 for delay in retry_policy):
            raise ValueError("retry_policy delays must be >= 0")
        if auth_retry_budget < 0:
            raise ValueError("auth_retry_budget must be >= 0")

        self._registry = registry
        self._token_store = token_store
        self._http = http_client
        self._retry_policy = tuple(retry_policy)
        self._auth_retry_budget = auth_retry_budget
        self._default_timeout = default_timeout
        self._sleep = sleep
        self._event_callback = event_callback

    @property
    def retry_policy(self) -> tuple[float, ...]:
        return self._retry_policy

    @property
    def auth_retry_budget(self) -> int:
        return self._auth_retry_budget

    async def execute(
        self,
        tenant_key: str,
        request: ErpRequest,
        *,
        timeout: float | None = _USE_DEFAULT,
    ) -> Outcome:
        """Run one API operation to a single terminal outcome.

        Args:
            tenant_key: Tenant id, or a display-name fragment when the
                registry allows substring lookup.
            request: Immutable request descriptor.
            timeout: Overall deadline in seconds for the whole call,
                backoff sleeps included. None disables the deadline;
                omitted uses the executor default.

        Returns:
            Outcome with kind SUCCESS, AUTH_RETRY_EXHAUSTED,
            RATE_LIMIT_EXHAUSTED, NETWORK_ERROR, FATAL_API_ERROR or
            CANCELLED_OR_TIMED_OUT.

        Raises:
            UnknownTenantError: if no tenant matches ``tenant_key``.
            TokenError: if a token refresh fails (propagated as-is).
            Exception: any token provider error, unchanged.
        """
        tenant = self._registry.resolve(tenant_key)
        state = _RunState(tenant_id=tenant.id, request=request)
        deadline = self._default_timeout if timeout is _USE_DEFAULT else timeout

        log = logger.bind(
            tenant_id=tenant.id,
            method=request.method,
            path=request.path,
            action=request.action,
        )

        timer = asyncio.timeout(deadline)
        try:
            async with timer:
                outcome = await self._run(tenant, request, state, log)
        except TimeoutError as exc:
            if not timer.expired():
                raise
            log.warning(
                "erp_request_timed_out",
                deadline=deadline,
                sends=state.sends,
                sleeps=state.sleeps,
            )
            outcome = state.finish(OutcomeKind.CANCELLED_OR_TIMED_OUT, cause=exc)

        await self._emit(
            state.event(
                EventKind.SUCCEEDED if outcome.ok else EventKind.FAILED,
                status_code=outcome.status_code,
                outcome=outcome.kind,
                error=str(outcome.cause) if outcome.cause else None,
            )
        )
        log.info(
            "erp_request_completed",
            outcome=str(outcome.kind),
            status_code=outcome.status_code,
            sends=outcome.sends,
            refreshes=outcome.refreshes,
            slept_seconds=sum(outcome.sleeps),
        )
        return outcome

    # -- internal: attempt loop -----------------------------------------

    async def _run(
        self,
        tenant: Tenant,
        request: ErpRequest,
        state: _RunState,
        log: structlog.stdlib.BoundLogger,
    ) -> Outcome:
        """Drive the Sending / AwaitingTokenRefresh / Backoff states."""
        max_iterations = len(self._retry_policy) + self._auth_retry_budget + 1

        for _ in range(max_iterations):
            token = self._token_store.get(tenant.id)
            if token is None:
                log.info("erp_token_missing")
                await self._emit(state.event(EventKind.TOKEN_MISSING))
                exhausted = await self._recover_auth(tenant, state, None, log)
                if exhausted is not None:
                    return exhausted
                continue

            try:
                response = await self._send(request, token, state, log)
            except httpx.TransportError as exc:
                log.error(
                    "erp_network_error",
                    attempt=state.sends,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return state.finish(OutcomeKind.NETWORK_ERROR, cause=exc)

            status = response.status_code
            body = self._decode_body(response)
            state.last_status = status
            state.last_body = body

            if response.is_success:
                return state.finish(OutcomeKind.SUCCESS, body=body)

            if status in AUTH_STATUSES:
                log.warning("erp_auth_rejected", status_code=status)
                await self._emit(
                    state.event(EventKind.AUTH_REJECTED, status_code=status)
                )
                exhausted = await self._recover_auth(tenant, state, token, log)
                if exhausted is not None:
                    return exhausted
                continue

            if status == RATE_LIMIT_STATUS:
                await self._emit(
                    state.event(EventKind.RATE_LIMITED, status_code=status)
                )
                if state.rate_limit_attempt < len(self._retry_policy) - 1:
                    await self._backoff(state, log)
                    continue
                log.error(
                    "erp_rate_limit_exhausted",
                    attempts=state.sends,
                    slept=state.sleeps,
                )
                return state.finish(OutcomeKind.RATE_LIMIT_EXHAUSTED, body=body)

            log.error("erp_fatal_api_error", status_code=status, body=body)
            return state.finish(OutcomeKind.FATAL_API_ERROR, body=body)

        # Only reachable if both budgets interleave to the very end.
        return state.finish(OutcomeKind.AUTH_RETRY_EXHAUSTED, body=state.last_body)

    async def _send(
        self,
        request: ErpRequest,
        token: str,
        state: _RunState,
        log: structlog.stdlib.BoundLogger,
    ) -> httpx.Response:
        state.sends += 1
        log.debug("erp_request_attempt", attempt=state.sends)
        await self._emit(state.event(EventKind.ATTEMPT))
        return await self._http.request(
            request.method,
            request.path,
            params=request.params,
            json=request.json_body,
            data=request.form_body,
            headers={"Authorization": f"Bearer {token}"},
        )

    async def _recover_auth(
        self,
        tenant: Tenant,
        state: _RunState,
        rejected_token: str | None,
        log: structlog.stdlib.BoundLogger,
    ) -> Outcome | None:
        """Refresh the tenant token, or return a terminal outcome.

        Returns None when the request should be replayed.
        """
        if state.auth_failures >= self._auth_retry_budget:
            log.error(
                "erp_auth_retry_exhausted",
                refreshes=state.refreshes,
                budget=self._auth_retry_budget,
            )
            return state.finish(
                OutcomeKind.AUTH_RETRY_EXHAUSTED, body=state.last_body
            )

        state.auth_failures += 1
        try:
            await self._token_store.force_refresh(
                tenant.id, stale_token=rejected_token
            )
        except Exception as exc:
            log.error("erp_token_refresh_failed", error=str(exc))
            await self._emit(
                state.event(EventKind.FAILED, error=f"token refresh failed: {exc}")
            )
            raise

        state.refreshes += 1
        log.info("erp_token_refreshed", refreshes=state.refreshes)
        await self._emit(state.event(EventKind.TOKEN_REFRESHED))
        return None

    async def _backoff(
        self,
        state: _RunState,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        delay = self._retry_policy[state.rate_limit_attempt]
        log.warning(
            "erp_rate_limited",
            attempt=state.rate_limit_attempt + 1,
            max_attempts=len(self._retry_policy),
            delay_seconds=delay,
        )
        await self._emit(state.event(EventKind.BACKOFF, delay=delay))
        await self._sleep(delay)
        state.sleeps.append(delay)
        state.rate_limit_attempt += 1

    # -- helpers --------------------------------------------------------

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        """JSON when possible, raw text otherwise, None when empty."""
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _emit(self, event: ExecutionEvent) -> None:
        """Deliver a progress event; callback errors never break the call."""
        if self._event_callback is None:
            return
        try:
            await self._event_callback(event)
        except Exception:
            logger.error(
                "erp_event_callback_failed",
                kind=str(event.kind),
                tenant_id=event.tenant_id,
                exc_info=True,
            )
