"""Inventory report download through the Tiny web UI.

The deposit inventory report is not exposed by the public API. A
headless browser logs in, and the session cookies are then reused by
httpx to download the spreadsheet directly.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from tiny_bridge.errors import BrowserAutomationError

logger = structlog.get_logger()

LOGIN_URL = "https://erp.tiny.com.br/login"
INVENTORY_REPORT_URL = (
    "https://erp.tiny.com.br/relatorios/relatorio.estoque.inventario.download.xls"
)
DOWNLOAD_TIMEOUT = 600.0
TYPING_DELAY_MS = 100
BROWSER_CANDIDATES = (
    "/usr/bin/google-chrome",
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/snap/bin/chromium",
)
SUBMIT_BUTTON = "form button[type=submit], form button"
SESSION_MODAL_BUTTON = "#bs-modal-ui-popup .modal-footer button.btn-primary"
BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--window-size=1366,768",
]


def build_inventory_url(deposit_id: str | int) -> str:
    """Report URL for one deposit (active products, xls layout)."""
    query = {
        "produto": "",
        "idDeposito": str(deposit_id),
        "idCategoria": "0",
        "descricaoCategoria": "",
        "exibirSaldo": "",
        "idCategoriaFiltro": "0",
        "layoutExportacao": "R",
        "formatoPlanilha": "xls",
        "exibirEstoqueDisponivel": "N",
        "produtoSituacao": "A",
        "idFornecedor": "0",
        "valorBaseado": "0",
    }
    return f"{INVENTORY_REPORT_URL}?{urlencode(query)}"


def resolve_browser_path(explicit: str | Path | None = None) -> Path | None:
    """Chrome/Chromium executable to drive.

    Returns ``explicit`` when given, else the first installed candidate,
    else None (playwright then uses its bundled Chromium).
    """
    if explicit:
        return Path(explicit)
    for candidate in BROWSER_CANDIDATES:
        path = Path(candidate)
        if path.exists():
            return path
    return None


def remove_files_by_extension(
    directory: str | Path,
    extensions: Iterable[str],
) -> list[Path]:
    """Delete regular files in ``directory`` whose suffix is listed.

    Extensions are compared case-insensitively and include the dot
    (".xls"). A missing directory is logged and ignored. Returns the
    removed paths.
    """
    folder = Path(directory)
    if not folder.is_dir():
        logger.warning("cleanup_directory_missing", directory=str(folder))
        return []

    wanted = {ext.lower() for ext in extensions}
    removed: list[Path] = []
    for path in folder.iterdir():
        if path.is_symlink() or not path.is_file():
            continue
        if path.suffix.lower() not in wanted:
            continue
        try:
            path.unlink()
        except OSError as exc:
            logger.error("cleanup_file_failed", file=path.name, error=str(exc))
            continue
        removed.append(path)
        logger.info("cleanup_file_removed", file=path.name)
    return removed


def cookie_header(cookies: Iterable[dict[str, Any]]) -> str:
    return "; ".join(f"{c['name']}={c['value']}" for c in cookies)


async def login_session_cookies(
    user: str,
    password: str,
    *,
    executable_path: Path | None = None,
    headless: bool = True,
) -> list[dict[str, Any]]:
    """Log in to the Tiny web UI and return the session cookies.

    If Tiny reports another active session, the "enter anyway" modal
    is confirmed.

    Raises:
        BrowserAutomationError: if playwright is missing or login fails.
    """
    try:
        from playwright.async_api import Error as PlaywrightError
        from playwright.async_api import async_playwright
    except ImportError:
        raise BrowserAutomationError(
            "playwright is not installed. Install with: "
            "pip install playwright && playwright install chromium"
        ) from None

    log = logger.bind(user=user)
    log.info("tiny_login_start")

    try:
        async with async_playwright() as pw:
            browser = await pw.chromium.launch(
                headless=headless,
                executable_path=str(executable_path) if executable_path else None,
                args=BROWSER_ARGS,
            )
            try:
                context = await browser.new_context(
                    viewport={"width": 1366, "height": 768}
                )
                page = await context.new_page()
                await page.goto(LOGIN_URL, wait_until="networkidle")

                await page.wait_for_selector("#username")
                await page.type("#username", user, delay=TYPING_DELAY_MS)
                await page.get_by_role("button", name="Avançar").click()

                await page.wait_for_selector("#password", timeout=10_000)
                await page.type("#password", password, delay=TYPING_DELAY_MS)
                await page.locator(SUBMIT_BUTTON).first.click()
                await page.wait_for_load_state("networkidle")

                modal_button = await page.query_selector(SESSION_MODAL_BUTTON)
                if modal_button is not None:
                    log.info("tiny_login_previous_session")
                    await modal_button.click()
                    await asyncio.sleep(2)

                cookies = await context.cookies()
            finally:
                await browser.close()
    except PlaywrightError as exc:
        log.error("tiny_login_failed", error=str(exc))
        raise BrowserAutomationError(f"Tiny login failed: {exc}") from exc

    if not cookies:
        raise BrowserAutomationError("Tiny login returned no session cookies")
    log.info("tiny_login_done", cookie_count=len(cookies))
    return [dict(cookie) for cookie in cookies]


async def download_with_cookies(
    url: str,
    cookies: Iterable[dict[str, Any]],
    output_path: str | Path,
    *,
    timeout: float = DOWNLOAD_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Path:
    """Stream ``url`` to ``output_path`` authenticated by ``cookies``.

    Raises:
        BrowserAutomationError: on a non-200 status or a network error.
    """
    target = Path(output_path).resolve()
    target.parent.mkdir(parents=True, exist_ok=True)
    headers = {"Cookie": cookie_header(cookies), "User-Agent": "Mozilla/5.0"}

    try:
        async with (
            httpx.AsyncClient(timeout=timeout, transport=transport) as client,
            client.stream("GET", url, headers=headers) as response,
        ):
            if response.status_code != 200:
                raise BrowserAutomationError(
                    f"Download failed with status {response.status_code}"
                )
            with target.open("wb") as fh:
                async for chunk in response.aiter_bytes():
                    fh.write(chunk)
    except httpx.TimeoutException as exc:
        raise BrowserAutomationError(
            f"Download timed out after {timeout:.0f}s"
        ) from exc
    except httpx.HTTPError as exc:
        raise BrowserAutomationError(f"Download request failed: {exc}") from exc

    logger.info("inventory_downloaded", path=str(target), size=target.stat().st_size)
    return target


async def download_deposit_inventory(
    user: str,
    password: str,
    deposit_id: str | int,
    output_path: str | Path,
    *,
    executable_path: str | Path | None = None,
    headless: bool = True,
) -> Path:
    """Download the inventory spreadsheet of one deposit.

    Args:
        user: Tiny web login.
        password: Tiny web password.
        deposit_id: Deposit whose stock is reported.
        output_path: Destination file; parent directories are created.
        executable_path: Browser binary; auto-detected when omitted.
        headless: Run the browser without a window.

    Returns:
        Absolute path of the downloaded file.
    """
    cookies = await login_session_cookies(
        user,
        password,
        executable_path=resolve_browser_path(executable_path),
        headless=headless,
    )
    logger.info("inventory_download_start", deposit_id=str(deposit_id))
    return await download_with_cookies(
        build_inventory_url(deposit_id), cookies, output_path
    )
