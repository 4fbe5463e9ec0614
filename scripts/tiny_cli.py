"""Command-line access to the Tiny ERP bridge.

Usage::

    python -m scripts.tiny_cli <command> [options]

Commands:
    list-tenants        List tenants from the registry file
    get-product         Search products of a tenant
    get-stock           Show a tenant's deposits and balances
    edit-stock          Post a stock movement
    filter-sheet        Filter rows of an .xlsx export
    check-db            Test the credential database connection
    download-inventory  Download a deposit inventory report
    search-contacts     Search CRM contacts
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Callable
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from tiny_bridge.browser import download_deposit_inventory
from tiny_bridge.config import get_settings
from tiny_bridge.crm import ChatwootClient, ContactService
from tiny_bridge.erp import create_tiny_client
from tiny_bridge.errors import TinyBridgeError, UnknownTenantError
from tiny_bridge.logging_config import configure_logging
from tiny_bridge.sheets import filter_sheet
from tiny_bridge.storage.database import Database, create_session_factory
from tiny_bridge.tenants import load_tenant_registry


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def list_tenants(_args: argparse.Namespace) -> None:
    """List tenants from the registry file."""
    settings = get_settings()
    registry = load_tenant_registry(settings.tenant_registry_path)

    print("Tenants:")
    for i, tenant in enumerate(registry.tenants, 1):
        print(f"  {i}. {tenant.id} ({tenant.name})")


def get_product(args: argparse.Namespace) -> None:
    """Search products of a tenant."""

    async def run() -> Any:
        async with create_tiny_client(get_settings()) as client:
            return await client.get_product(args.tenant, args.field, args.value)

    print_json(asyncio.run(run()))


def get_stock(args: argparse.Namespace) -> None:
    """Show deposits and balances of a tenant."""

    async def run() -> Any:
        async with create_tiny_client(get_settings()) as client:
            return await client.get_stock(args.tenant)

    print_json(asyncio.run(run()))


def edit_stock(args: argparse.Namespace) -> None:
    """Post a stock movement."""

    async def run() -> Any:
        async with create_tiny_client(get_settings()) as client:
            return await client.edit_stock(
                args.tenant,
                args.product_id,
                args.type,
                args.quantity,
                args.deposit_id,
                args.to_tenant,
                unit_price=args.unit_price,
            )

    print_json(asyncio.run(run()))


def filter_rows(args: argparse.Namespace) -> None:
    """Filter rows of an .xlsx export."""
    rows = filter_sheet(args.file, args.column, args.expression, sheet=args.sheet)
    print_json(rows)
    print(f"{len(rows)} row{'s' if len(rows) != 1 else ''} matched", file=sys.stderr)


def check_db(_args: argparse.Namespace) -> None:
    """Test the credential database connection."""
    database = Database(create_session_factory(get_settings()))
    if not asyncio.run(database.check_connection()):
        print("Database connection failed", file=sys.stderr)
        sys.exit(1)
    print("Database connection OK")


def download_inventory(args: argparse.Namespace) -> None:
    """Download a deposit inventory report."""
    settings = get_settings()
    if not settings.tiny_login_user or settings.tiny_login_password is None:
        print("TINY_LOGIN_USER / TINY_LOGIN_PASSWORD not set", file=sys.stderr)
        sys.exit(1)

    path = asyncio.run(
        download_deposit_inventory(
            settings.tiny_login_user,
            settings.tiny_login_password.get_secret_value(),
            args.deposit_id,
            args.output,
            executable_path=settings.browser_executable_path,
            headless=not args.show_browser,
        )
    )
    print(f"Inventory saved to {path}")


def search_contacts(args: argparse.Namespace) -> None:
    """Search CRM contacts."""

    async def run() -> Any:
        async with ChatwootClient.from_settings(get_settings()) as client:
            return await ContactService(client).search_contacts(args.query)

    print_json(asyncio.run(run()))


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and dispatch to command handler."""
    parser = argparse.ArgumentParser(description="Tiny ERP bridge CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    # list-tenants
    sub.add_parser("list-tenants", help="List tenants from the registry")

    # get-product
    p = sub.add_parser("get-product", help="Search products of a tenant")
    p.add_argument("--tenant", required=True, help="Tenant id or name")
    p.add_argument("--field", default="codigo", help="Filter field (codigo, nome)")
    p.add_argument("--value", required=True, help="Filter value")

    # get-stock
    p = sub.add_parser("get-stock", help="Show deposits and balances")
    p.add_argument("--tenant", required=True, help="Tenant id or name")

    # edit-stock
    p = sub.add_parser("edit-stock", help="Post a stock movement")
    p.add_argument("--tenant", required=True, help="Tenant whose stock moves")
    p.add_argument("--product-id", required=True, help="Product id")
    p.add_argument("--type", required=True, help="E (entry), S (exit), B (balance)")
    p.add_argument("--quantity", type=int, required=True, help="Units moved")
    p.add_argument("--deposit-id", required=True, help="Deposit id")
    p.add_argument("--to-tenant", required=True, help="Counterpart tenant (note)")
    p.add_argument("--unit-price", type=float, default=0.0, help="Unit cost")

    # filter-sheet
    p = sub.add_parser("filter-sheet", help="Filter rows of an .xlsx file")
    p.add_argument("--file", required=True, help="Path to the workbook")
    p.add_argument("--column", required=True, help="Header name or letter")
    p.add_argument("--expression", default="", help="e.g. '>0 && <100'")
    p.add_argument("--sheet", default=None, help="Sheet name (default: first)")

    # check-db
    sub.add_parser("check-db", help="Test the database connection")

    # download-inventory
    p = sub.add_parser("download-inventory", help="Download inventory report")
    p.add_argument("--deposit-id", required=True, help="Deposit id")
    p.add_argument("--output", required=True, help="Destination file")
    p.add_argument("--show-browser", action="store_true", help="Not headless")

    # search-contacts
    p = sub.add_parser("search-contacts", help="Search CRM contacts")
    p.add_argument("--query", required=True, help="Name, phone or email")

    args = parser.parse_args(argv)
    commands: dict[str, Callable[[argparse.Namespace], None]] = {
        "list-tenants": list_tenants,
        "get-product": get_product,
        "get-stock": get_stock,
        "edit-stock": edit_stock,
        "filter-sheet": filter_rows,
        "check-db": check_db,
        "download-inventory": download_inventory,
        "search-contacts": search_contacts,
    }

    settings = get_settings()
    configure_logging(
        settings.environment, settings.log_level, colors=sys.stdout.isatty()
    )

    try:
        commands[args.command](args)
    except UnknownTenantError as exc:
        print(f"Tenant not found: {exc.key}", file=sys.stderr)
        sys.exit(1)
    except (TinyBridgeError, OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except SQLAlchemyError as exc:
        print(f"Database error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
