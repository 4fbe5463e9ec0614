"""Async HTTP client for the Chatwoot Application API."""

from __future__ import annotations

import json
from types import TracebackType
from typing import Any

import httpx
import structlog

from tiny_bridge.config import Settings
from tiny_bridge.errors import CrmError

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 15.0


class ChatwootClient:
    """Thin wrapper over httpx.AsyncClient with Chatwoot auth and errors.

    Non-2xx responses and transport failures raise CrmError with a
    message of the form ``HTTP <status> <METHOD> <url> - <body>``.

    Usage::

        async with ChatwootClient(base_url, token, account_id="1") as crm:
            contacts = await crm.get(crm.account_path("contacts/"))
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        account_id: str = "1",
        *,
        timeout: float = DEFAULT_TIMEOUT,
        debug: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("Chatwoot base URL is required")
        if not api_token:
            raise ValueError("Chatwoot API token is required")
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._timeout = timeout
        self._transport = transport
        self._debug = debug
        self.account_id = str(account_id)
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ChatwootClient:
        """Build a client from CHATWOOT_* settings."""
        if settings.chatwoot_api_token is None:
            raise CrmError("CHATWOOT_API_TOKEN is not configured")
        return cls(
            settings.chatwoot_url_base,
            settings.chatwoot_api_token.get_secret_value(),
            settings.chatwoot_account_id,
            debug=settings.chatwoot_http_debug,
            transport=transport,
        )

    async def open(self) -> None:
        """Create the underlying httpx client (idempotent)."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={"api_access_token": self._api_token},
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> ChatwootClient:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def account_path(self, suffix: str = "") -> str:
        """Path under the configured account: ``/api/v1/accounts/<id>/<suffix>``."""
        return f"/api/v1/accounts/{self.account_id}/{suffix.lstrip('/')}"

    async def request_raw(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        """Send a request and return the response if its status is 2xx.

        ``json_body`` is sent as JSON (with a JSON content type) only
        when it is not None.

        Raises:
            CrmError: on non-2xx status or when no response was received.
        """
        if self._client is None:
            msg = "ChatwootClient not initialized. Use 'async with ChatwootClient()'"
            raise RuntimeError(msg)

        method = method.upper()
        if self._debug:
            logger.debug(
                "crm_http_request",
                method=method,
                url=url,
                params=params,
                has_body=json_body is not None,
            )

        kwargs: dict[str, Any] = {"params": params}
        if json_body is not None:
            kwargs["json"] = json_body

        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            message = f"HTTP ERR {method} {url} - {exc}"
            if self._debug:
                logger.error("crm_http_error", message=message)
            raise CrmError(message) from exc

        if not response.is_success:
            body = decode_body(response)
            body_text = (
                json.dumps(body, ensure_ascii=False)
                if isinstance(body, dict | list)
                else str(body or "")
            )
            message = f"HTTP {response.status_code} {method} {url} - {body_text}"
            if self._debug:
                logger.error("crm_http_error", message=message)
            raise CrmError(message, status_code=response.status_code, body=body)

        return response

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> Any:
        """Like ``request_raw`` but returns the decoded body."""
        response = await self.request_raw(
            method, url, params=params, json_body=json_body
        )
        return decode_body(response)

    async def get(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", url, params=params)

    async def post(self, url: str, json_body: Any = None) -> Any:
        return await self.request("POST", url, json_body=json_body)

    async def put(self, url: str, json_body: Any = None) -> Any:
        return await self.request("PUT", url, json_body=json_body)

    async def patch(self, url: str, json_body: Any = None) -> Any:
        return await self.request("PATCH", url, json_body=json_body)

    async def delete(self, url: str) -> Any:
        return await self.request("DELETE", url)


def decode_body(response: httpx.Response) -> Any:
    """JSON body if parseable, else text; None for an empty body."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
