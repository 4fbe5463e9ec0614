"""ERP API access: request executor, outcomes, Tiny operations.

Quick start::

    from tiny_bridge.config import get_settings
    from tiny_bridge.erp import create_tiny_client

    async with create_tiny_client(get_settings()) as client:
        product = await client.get_product("JP", "codigo", "JP0001")
"""

from tiny_bridge.erp.client import TinyClient
from tiny_bridge.erp.executor import RequestExecutor
from tiny_bridge.erp.schemas import (
    ErpRequest,
    EventKind,
    ExecutionEvent,
    Outcome,
    OutcomeKind,
)
from tiny_bridge.erp.setup import create_tiny_client

__all__ = [
    "ErpRequest",
    "EventKind",
    "ExecutionEvent",
    "Outcome",
    "OutcomeKind",
    "RequestExecutor",
    "TinyClient",
    "create_tiny_client",
]
