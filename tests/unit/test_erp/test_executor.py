"""Tests for RequestExecutor -- auth refresh, backoff, terminal outcomes."""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from tiny_bridge.erp.executor import DEFAULT_RETRY_POLICY, RequestExecutor
from tiny_bridge.erp.schemas import (
    ErpRequest,
    EventKind,
    ExecutionEvent,
    OutcomeKind,
)
from tiny_bridge.errors import (
    FatalApiError,
    RateLimitExhaustedError,
    RequestTimeoutError,
    TokenFetchError,
    TokenSourceEmptyError,
    UnknownTenantError,
)
from tiny_bridge.tenants.registry import TenantRegistry
from tiny_bridge.tenants.token_provider import TokenProvider
from tiny_bridge.tenants.token_store import TokenStore

Handler = Callable[[httpx.Request], httpx.Response]

# -- test helpers -------------------------------------------------------


class _FakeProvider(TokenProvider):
    """Returns queued tokens (or tok-1, tok-2, ...) and counts calls."""

    def __init__(
        self,
        tokens: list[str | None] | None = None,
        *,
        delay: float = 0,
        error: Exception | None = None,
    ) -> None:
        self.tokens = list(tokens or [])
        self.delay = delay
        self.error = error
        self.calls = 0

    async def fetch(self, token_query: str) -> str | None:
        self.calls += 1
        call_number = self.calls
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.tokens:
            return self.tokens.pop(0)
        return f"tok-{call_number}"


class _SleepRecorder:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _registry(*, token: str | None = "tok-A") -> TenantRegistry:
    registry = TenantRegistry.model_validate(
        {
            "tenants": [
                {"id": "JP", "name": "Jau Pesca", "token_query": "q-jp"},
                {"id": "LT", "name": "L T Comercio", "token_query": "q-lt"},
            ]
        }
    )
    registry.get("JP").live_token = token
    return registry


def _sequence(*items: httpx.Response | Exception) -> tuple[Handler, list[str]]:
    """Handler replaying ``items`` in order; records the bearer of each send."""
    queue = list(items)
    bearers: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bearers.append(request.headers.get("Authorization", ""))
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        # fresh copy: the same template may be queued several times
        return httpx.Response(
            item.status_code, headers=item.headers, content=item.content
        )

    return handler, bearers


def _executor(
    handler: Handler,
    *,
    registry: TenantRegistry | None = None,
    provider: TokenProvider | None = None,
    retry_policy: tuple[float, ...] = DEFAULT_RETRY_POLICY,
    auth_retry_budget: int = 3,
    single_flight: bool = True,
    sleep: Any = None,
    events: list[ExecutionEvent] | None = None,
    default_timeout: float | None = None,
) -> tuple[RequestExecutor, TokenStore]:
    if registry is None:
        registry = _registry()
    store = TokenStore(
        registry, provider or _FakeProvider(), single_flight=single_flight
    )

    async def collect(event: ExecutionEvent) -> None:
        assert events is not None
        events.append(event)

    executor = RequestExecutor(
        registry,
        store,
        httpx.AsyncClient(
            base_url="https://erp.test/v3", transport=httpx.MockTransport(handler)
        ),
        retry_policy=retry_policy,
        auth_retry_budget=auth_retry_budget,
        default_timeout=default_timeout,
        sleep=sleep or _SleepRecorder(),
        event_callback=collect if events is not None else None,
    )
    return executor, store


_GET = ErpRequest(method="GET", path="/produtos", params={"codigo": "X1"})


def _ok(body: Any = None) -> httpx.Response:
    return httpx.Response(200, json=body if body is not None else {"ok": True})


def _status(code: int, body: Any = None) -> httpx.Response:
    return httpx.Response(code, json=body or {"error": code})


# -- tests --------------------------------------------------------------


class TestConstruction:
    def test_empty_retry_policy_rejected(self) -> None:
        with pytest.raises(ValueError, match="at least one delay"):
            _executor(_sequence()[0], retry_policy=())

    def test_negative_delay_rejected(self) -> None:
        with pytest.raises(ValueError):
            _executor(_sequence()[0], retry_policy=(1, -1))

    def test_negative_auth_budget_rejected(self) -> None:
        with pytest.raises(ValueError):
            _executor(_sequence()[0], auth_retry_budget=-1)


class TestSuccess:
    async def test_first_attempt(self) -> None:
        handler, bearers = _sequence(_ok({"itens": [{"id": 1}]}))
        executor, _ = _executor(handler)

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.ok is True
        assert outcome.body == {"itens": [{"id": 1}]}
        assert outcome.status_code == 200
        assert outcome.sends == 1
        assert outcome.refreshes == 0
        assert outcome.sleeps == ()
        assert bearers == ["Bearer tok-A"]

    async def test_request_shape(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _ok()

        executor, _ = _executor(handler)
        request = ErpRequest(
            method="POST", path="/estoque/7", json_body={"tipo": "E"}
        )
        await executor.execute("JP", request)

        sent = seen[0]
        assert sent.method == "POST"
        assert sent.url.path == "/v3/estoque/7"
        assert json.loads(sent.content) == {"tipo": "E"}
        assert sent.headers["Authorization"] == "Bearer tok-A"

    async def test_query_params_sent(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _ok()

        executor, _ = _executor(handler)
        await executor.execute("JP", _GET)
        assert seen[0].url.params["codigo"] == "X1"

    async def test_text_body(self) -> None:
        handler, _ = _sequence(httpx.Response(200, text="plain"))
        executor, _ = _executor(handler)
        assert (await executor.execute("JP", _GET)).body == "plain"

    async def test_empty_body(self) -> None:
        handler, _ = _sequence(httpx.Response(204))
        executor, _ = _executor(handler)
        outcome = await executor.execute("JP", _GET)
        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.body is None

    async def test_tenant_resolved_by_name(self) -> None:
        handler, bearers = _sequence(_ok())
        executor, _ = _executor(handler)
        await executor.execute("Pesca", _GET)
        assert bearers == ["Bearer tok-A"]


class TestUnknownTenant:
    async def test_raises_without_sending(self) -> None:
        handler, bearers = _sequence()
        executor, _ = _executor(handler)
        with pytest.raises(UnknownTenantError):
            await executor.execute("XX", _GET)
        assert bearers == []


class TestAuthRecovery:
    async def test_jp_scenario_single_refresh(self) -> None:
        """tok-A rejected, refreshed to tok-B, second send succeeds."""
        handler, bearers = _sequence(_status(401), _ok({"id": 42}))
        provider = _FakeProvider(["tok-B"])
        executor, store = _executor(handler, provider=provider)

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.body == {"id": 42}
        assert outcome.sends == 2
        assert outcome.refreshes == 1
        assert bearers == ["Bearer tok-A", "Bearer tok-B"]
        assert store.get("JP") == "tok-B"
        assert provider.calls == 1

    @pytest.mark.parametrize("failures", [1, 2, 3])
    async def test_one_refresh_per_auth_failure(self, failures: int) -> None:
        responses = [_status(401)] * (failures - 1) + [_status(403), _ok()]
        handler, _ = _sequence(*responses)
        provider = _FakeProvider()
        executor, _ = _executor(handler, provider=provider)

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.refreshes == failures
        assert outcome.sends == failures + 1
        assert provider.calls == failures

    async def test_auth_retry_exhausted(self) -> None:
        handler, _ = _sequence(*[_status(401)] * 4)
        executor, _ = _executor(handler, auth_retry_budget=3)

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.AUTH_RETRY_EXHAUSTED
        assert outcome.sends == 4
        assert outcome.refreshes == 3
        assert outcome.status_code == 401

    async def test_zero_budget_fails_on_first_rejection(self) -> None:
        handler, _ = _sequence(_status(403))
        provider = _FakeProvider()
        executor, _ = _executor(handler, provider=provider, auth_retry_budget=0)

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.AUTH_RETRY_EXHAUSTED
        assert outcome.sends == 1
        assert provider.calls == 0

    async def test_missing_token_fetched_before_first_send(self) -> None:
        handler, bearers = _sequence(_ok())
        provider = _FakeProvider(["tok-new"])
        executor, store = _executor(
            handler, registry=_registry(token=None), provider=provider
        )

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.sends == 1
        assert outcome.refreshes == 1
        assert bearers == ["Bearer tok-new"]
        assert store.get("JP") == "tok-new"

    async def test_refresh_failure_propagates(self) -> None:
        handler, _ = _sequence(_status(401))
        provider = _FakeProvider(error=TokenSourceEmptyError("q-jp"))
        executor, store = _executor(handler, provider=provider)

        with pytest.raises(TokenSourceEmptyError):
            await executor.execute("JP", _GET)
        assert store.get("JP") is None

    async def test_empty_refreshed_token_propagates(self) -> None:
        handler, _ = _sequence(_status(401))
        executor, _ = _executor(handler, provider=_FakeProvider([""]))
        with pytest.raises(TokenFetchError):
            await executor.execute("JP", _GET)

    async def test_auth_retries_do_not_consume_backoff(self) -> None:
        """429 budget stays whole after several auth failures."""
        sleep = _SleepRecorder()
        handler, _ = _sequence(
            _status(401), _status(401), _status(429), _status(429), _ok()
        )
        executor, _ = _executor(
            handler, retry_policy=(1, 2, 3), auth_retry_budget=2, sleep=sleep
        )

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert sleep.delays == [1, 2]
        assert outcome.refreshes == 2


class TestRateLimit:
    @pytest.mark.parametrize("k", [1, 2, 4])
    async def test_k_rate_limits_then_success(self, k: int) -> None:
        sleep = _SleepRecorder()
        handler, _ = _sequence(*[_status(429)] * k, _ok())
        executor, _ = _executor(handler, sleep=sleep)

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert sleep.delays == list(DEFAULT_RETRY_POLICY[:k])
        assert outcome.sleeps == DEFAULT_RETRY_POLICY[:k]
        assert outcome.sends == k + 1

    async def test_always_429_stops_after_policy_length(self) -> None:
        sleep = _SleepRecorder()
        handler, bearers = _sequence(*[_status(429)] * 10)
        executor, _ = _executor(handler, sleep=sleep)

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.RATE_LIMIT_EXHAUSTED
        assert outcome.sends == len(DEFAULT_RETRY_POLICY)
        assert len(bearers) == len(DEFAULT_RETRY_POLICY)
        assert sleep.delays == [10, 20, 40, 60]

    async def test_two_step_policy(self) -> None:
        """Policy [1, 1]: two sends, one sleep, then give up."""
        sleep = _SleepRecorder()
        handler, _ = _sequence(*[_status(429)] * 5)
        executor, _ = _executor(handler, retry_policy=(1, 1), sleep=sleep)

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.RATE_LIMIT_EXHAUSTED
        assert outcome.sends == 2
        assert sleep.delays == [1]

    async def test_rate_limit_does_not_refresh(self) -> None:
        provider = _FakeProvider()
        handler, _ = _sequence(_status(429), _ok())
        executor, _ = _executor(handler, provider=provider)
        await executor.execute("JP", _GET)
        assert provider.calls == 0

    async def test_unwrap_raises_rate_limit_error(self) -> None:
        handler, _ = _sequence(*[_status(429)] * 2)
        executor, _ = _executor(handler, retry_policy=(0, 0))
        outcome = await executor.execute("JP", _GET)
        with pytest.raises(RateLimitExhaustedError) as exc_info:
            outcome.unwrap()
        assert exc_info.value.attempts == 2
        assert exc_info.value.outcome is outcome


class TestTerminalErrors:
    async def test_network_error_not_retried(self) -> None:
        handler, bearers = _sequence(httpx.ConnectError("connection refused"))
        executor, _ = _executor(handler)

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.NETWORK_ERROR
        assert outcome.sends == 1
        assert isinstance(outcome.cause, httpx.ConnectError)
        assert len(bearers) == 1

    async def test_read_timeout_is_network_error(self) -> None:
        handler, _ = _sequence(httpx.ReadTimeout("slow"))
        executor, _ = _executor(handler)
        outcome = await executor.execute("JP", _GET)
        assert outcome.kind == OutcomeKind.NETWORK_ERROR

    @pytest.mark.parametrize("status", [400, 404, 422, 500, 503])
    async def test_other_status_is_fatal(self, status: int) -> None:
        handler, _ = _sequence(_status(status, {"detail": "nope"}))
        executor, _ = _executor(handler)

        outcome = await executor.execute("JP", _GET)

        assert outcome.kind == OutcomeKind.FATAL_API_ERROR
        assert outcome.status_code == status
        assert outcome.body == {"detail": "nope"}
        assert outcome.sends == 1

    async def test_fatal_after_refresh(self) -> None:
        handler, _ = _sequence(_status(401), _status(500))
        executor, _ = _executor(handler)
        outcome = await executor.execute("JP", _GET)
        assert outcome.kind == OutcomeKind.FATAL_API_ERROR
        assert outcome.refreshes == 1

    async def test_unwrap_fatal(self) -> None:
        handler, _ = _sequence(_status(404, {"detail": "missing"}))
        executor, _ = _executor(handler)
        outcome = await executor.execute("JP", _GET)
        with pytest.raises(FatalApiError) as exc_info:
            outcome.unwrap()
        assert exc_info.value.status_code == 404
        assert exc_info.value.body == {"detail": "missing"}


class TestDeadline:
    async def test_timeout_during_backoff(self) -> None:
        """Expiry mid-sleep ends the call without finishing the sleep."""
        handler, _ = _sequence(*[_status(429)] * 3)
        executor, _ = _executor(
            handler, retry_policy=(30, 30, 30), sleep=asyncio.sleep
        )

        loop = asyncio.get_running_loop()
        started = loop.time()
        outcome = await executor.execute("JP", _GET, timeout=0.05)
        elapsed = loop.time() - started

        assert outcome.kind == OutcomeKind.CANCELLED_OR_TIMED_OUT
        assert outcome.sends == 1
        assert outcome.sleeps == ()
        assert elapsed < 5
        with pytest.raises(RequestTimeoutError):
            outcome.unwrap()

    async def test_default_timeout_used(self) -> None:
        handler, _ = _sequence(*[_status(429)] * 3)
        executor, _ = _executor(
            handler,
            retry_policy=(30, 30, 30),
            sleep=asyncio.sleep,
            default_timeout=0.05,
        )
        outcome = await executor.execute("JP", _GET)
        assert outcome.kind == OutcomeKind.CANCELLED_OR_TIMED_OUT

    async def test_explicit_none_disables_default(self) -> None:
        handler, _ = _sequence(_status(429), _ok())
        executor, _ = _executor(handler, default_timeout=0.0001)
        outcome = await executor.execute("JP", _GET, timeout=None)
        assert outcome.kind == OutcomeKind.SUCCESS

    async def test_external_cancellation_propagates(self) -> None:
        handler, _ = _sequence(*[_status(429)] * 3)
        executor, _ = _executor(
            handler, retry_policy=(30, 30, 30), sleep=asyncio.sleep
        )

        task = asyncio.create_task(executor.execute("JP", _GET))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestConcurrency:
    @pytest.mark.parametrize("single_flight", [True, False])
    async def test_two_calls_with_expired_token(self, single_flight: bool) -> None:
        """Both calls succeed; the stored token is one of the fetched ones."""
        registry = _registry(token="tok-expired")
        provider = _FakeProvider(delay=0.01)

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0)
            if request.headers["Authorization"] == "Bearer tok-expired":
                return _status(401)
            return _ok({"token": request.headers["Authorization"]})

        store = TokenStore(registry, provider, single_flight=single_flight)
        executor = RequestExecutor(
            registry,
            store,
            httpx.AsyncClient(
                base_url="https://erp.test", transport=httpx.MockTransport(handler)
            ),
            sleep=_SleepRecorder(),
        )

        first, second = await asyncio.gather(
            executor.execute("JP", _GET), executor.execute("JP", _GET)
        )

        assert first.kind == OutcomeKind.SUCCESS
        assert second.kind == OutcomeKind.SUCCESS
        fetched = {f"tok-{n}" for n in range(1, provider.calls + 1)}
        assert store.get("JP") in fetched
        if single_flight:
            assert provider.calls == 1

    async def test_tenants_are_independent(self) -> None:
        registry = _registry()
        registry.get("LT").live_token = "tok-lt"

        def handler(request: httpx.Request) -> httpx.Response:
            if request.headers["Authorization"] == "Bearer tok-lt":
                return _status(429)
            return _ok()

        executor, _ = _executor(handler, registry=registry, retry_policy=(0, 0))
        jp, lt = await asyncio.gather(
            executor.execute("JP", _GET), executor.execute("LT", _GET)
        )
        assert jp.kind == OutcomeKind.SUCCESS
        assert lt.kind == OutcomeKind.RATE_LIMIT_EXHAUSTED


class TestEvents:
    async def test_event_sequence(self) -> None:
        events: list[ExecutionEvent] = []
        handler, _ = _sequence(_status(401), _status(429), _ok())
        executor, _ = _executor(handler, events=events)

        await executor.execute("JP", _GET)

        assert [e.kind for e in events] == [
            EventKind.ATTEMPT,
            EventKind.AUTH_REJECTED,
            EventKind.TOKEN_REFRESHED,
            EventKind.ATTEMPT,
            EventKind.RATE_LIMITED,
            EventKind.BACKOFF,
            EventKind.ATTEMPT,
            EventKind.SUCCEEDED,
        ]
        backoff = events[5]
        assert backoff.delay == 10
        assert backoff.tenant_id == "JP"
        assert backoff.path == "/produtos"
        assert events[-1].outcome == OutcomeKind.SUCCESS

    async def test_failed_event_on_terminal_error(self) -> None:
        events: list[ExecutionEvent] = []
        handler, _ = _sequence(_status(500))
        executor, _ = _executor(handler, events=events)

        await executor.execute("JP", _GET)

        assert events[-1].kind == EventKind.FAILED
        assert events[-1].outcome == OutcomeKind.FATAL_API_ERROR
        assert events[-1].status_code == 500

    async def test_token_missing_event(self) -> None:
        events: list[ExecutionEvent] = []
        handler, _ = _sequence(_ok())
        executor, _ = _executor(
            handler, registry=_registry(token=None), events=events
        )
        await executor.execute("JP", _GET)
        assert events[0].kind == EventKind.TOKEN_MISSING

    async def test_callback_errors_are_swallowed(self) -> None:
        handler, _ = _sequence(_ok())
        registry = _registry()

        async def broken(_event: ExecutionEvent) -> None:
            raise RuntimeError("callback bug")

        executor = RequestExecutor(
            registry,
            TokenStore(registry, _FakeProvider()),
            httpx.AsyncClient(
                base_url="https://erp.test", transport=httpx.MockTransport(handler)
            ),
            event_callback=broken,
        )
        outcome = await executor.execute("JP", _GET)
        assert outcome.kind == OutcomeKind.SUCCESS
