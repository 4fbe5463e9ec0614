"""Tiny ERP operations built on RequestExecutor.

Each method only shapes its request; retry, backoff and token refresh
live in the executor and are shared by all of them.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import structlog

from tiny_bridge.erp.executor import RequestExecutor
from tiny_bridge.erp.schemas import ErpRequest
from tiny_bridge.errors import ErpRequestError

logger = structlog.get_logger()

# Stock movement type -> arrow used in the movement note.
MOVEMENT_ARROWS: dict[str, str] = {
    "E": "<-",  # entrada
    "S": "->",  # saida
    "B": "-",  # balanco
}


class TinyClient:
    """Product and stock operations for one ERP account per tenant."""

    def __init__(
        self,
        executor: RequestExecutor,
        *,
        timezone: str = "America/Sao_Paulo",
        note_suffix: str = "tiny-bridge",
        clock: Callable[[ZoneInfo], datetime] | None = None,
    ) -> None:
        self._executor = executor
        self._tz = ZoneInfo(timezone)
        self._note_suffix = note_suffix
        self._clock = clock or (lambda tz: datetime.now(tz))

    @property
    def executor(self) -> RequestExecutor:
        return self._executor

    async def get_product(
        self,
        tenant: str,
        filter_field: str,
        value: str | int,
    ) -> dict[str, Any]:
        """Search products, e.g. ``get_product("JP", "codigo", "JP0001")``.

        Args:
            tenant: Tenant id or display-name fragment.
            filter_field: Query filter understood by the API
                (codigo, nome, id, limit, ...).
            value: Filter value.

        Returns:
            Decoded API response (``{"itens": [...], ...}``).
        """
        request = ErpRequest(
            method="GET",
            path="/produtos",
            params={filter_field: value},
            action="get_product",
        )
        outcome = await self._executor.execute(tenant, request)
        return outcome.unwrap()  # type: ignore[no-any-return]

    async def edit_stock(
        self,
        from_tenant: str,
        product_id: str | int,
        movement_type: str,
        quantity: int | str,
        deposit_id: str | int,
        to_tenant: str,
        unit_price: float = 0,
    ) -> dict[str, Any]:
        """Post a stock movement for one product.

        Args:
            from_tenant: Tenant whose credentials are used.
            product_id: Product id on the ERP.
            movement_type: E (entry), S (exit) or B (balance),
                case-insensitive.
            quantity: Units moved, integer.
            deposit_id: Warehouse id.
            to_tenant: Counterpart tenant, only used in the movement note.
            unit_price: Unit cost recorded with the movement.

        Returns:
            Decoded API response, e.g. ``{"idLancamento": 901853015}``.

        Raises:
            ValueError: on an unknown movement type.
        """
        kind = movement_type.strip().upper()
        if kind not in MOVEMENT_ARROWS:
            raise ValueError(
                f"movement_type must be one of E, S, B; got {movement_type!r}"
            )

        body = {
            "deposito": {"id": int(deposit_id)},
            "tipo": kind,
            "data": self._clock(self._tz).strftime("%Y-%m-%d %H:%M:%S"),
            "quantidade": int(quantity),
            "precoUnitario": float(unit_price),
            "observacoes": (
                f"Transferência entre empresas | {from_tenant} "
                f"{MOVEMENT_ARROWS[kind]} {to_tenant} | {self._note_suffix}"
            ),
        }
        request = ErpRequest(
            method="POST",
            path=f"/estoque/{product_id}",
            json_body=body,
            action="edit_stock",
        )
        logger.info(
            "stock_movement_requested",
            tenant=from_tenant,
            product_id=str(product_id),
            movement_type=kind,
            quantity=body["quantidade"],
        )
        outcome = await self._executor.execute(from_tenant, request)
        return outcome.unwrap()  # type: ignore[no-any-return]

    async def get_stock(self, tenant: str) -> dict[str, Any]:
        """List the tenant's warehouses with balances.

        The stock endpoint is product-scoped, so the first product of
        the account is used to reach the deposit listing.

        Raises:
            ErpRequestError: if the account has no products.
        """
        products = await self.get_product(tenant, "limit", 1)
        items = (products or {}).get("itens") or []
        if not items:
            raise ErpRequestError(f"No products found for tenant '{tenant}'")

        request = ErpRequest(
            method="GET",
            path=f"/estoque/{items[0]['id']}",
            action="get_stock",
        )
        outcome = await self._executor.execute(tenant, request)
        return outcome.unwrap()  # type: ignore[no-any-return]
