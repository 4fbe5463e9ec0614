"""Row filter for .xlsx inventory exports.

Filter expressions combine simple comparisons::

    "=10"            equal to 10
    ">0 && <100"     between, exclusive
    ">= 5 || = 'X'"  AND binds tighter than OR, no parentheses
    "Wow"            bare value means equality

Values are compared as numbers when both sides parse as numbers
(``1.234,56`` Brazilian format included), otherwise as strings.
"""

from __future__ import annotations

import re
import unicodedata
import zipfile
from collections.abc import Callable
from datetime import date, datetime
from pathlib import Path
from typing import Any

import structlog
from openpyxl import load_workbook
from openpyxl.utils import column_index_from_string
from openpyxl.utils.exceptions import InvalidFileException

from tiny_bridge.errors import SheetFilterError

logger = structlog.get_logger()

Predicate = Callable[[Any], bool]

_CONDITION_RE = re.compile(r"^(==|!=|>=|<=|=|>|<)\s*(.*)$")
_COLUMN_LETTER_RE = re.compile(r"^[A-Z]{1,3}$")
_NUMBER_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")


def filter_sheet(
    file_path: str | Path,
    column: str,
    expression: str,
    *,
    sheet: str | None = None,
) -> list[dict[str, Any]]:
    """Return the rows whose ``column`` value satisfies ``expression``.

    Args:
        file_path: Path to an .xlsx workbook.
        column: Header text (matched after normalization, so
            "Estoque Atual" and "estoque_atual" are the same) or a
            column letter such as "D" or "AA".
        expression: Filter expression, see module docstring. Empty
            matches every row.
        sheet: Worksheet name. Defaults to the first sheet.

    Returns:
        Matching rows as dicts keyed by normalized header. Columns with
        an empty header are dropped; missing cells become "".

    Raises:
        SheetFilterError: if the file, sheet or column cannot be found.
    """
    path = Path(file_path).resolve()
    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except (FileNotFoundError, InvalidFileException, zipfile.BadZipFile) as exc:
        raise SheetFilterError(f"Cannot open workbook {path}: {exc}") from exc

    try:
        sheet_name = sheet or workbook.sheetnames[0]
        if sheet_name not in workbook.sheetnames:
            raise SheetFilterError(f"Sheet not found: {sheet_name}")
        raw_rows = list(workbook[sheet_name].iter_rows(values_only=True))
    finally:
        workbook.close()

    if not raw_rows:
        return []

    headers = [normalize_header(h) for h in raw_rows[0]]
    records = [_row_to_record(headers, row) for row in raw_rows[1:]]

    key = _resolve_column(column, headers)
    predicate = build_filter(expression)
    matched = [record for record in records if predicate(record.get(key, ""))]

    logger.info(
        "sheet_filtered",
        file=path.name,
        sheet=sheet_name,
        column=key,
        rows_total=len(records),
        rows_matched=len(matched),
    )
    return matched


def build_filter(expression: str | None) -> Predicate:
    """Compile a filter expression into a predicate over one cell value."""
    if not expression or not expression.strip():
        return lambda _value: True

    groups: list[list[Predicate]] = []
    for or_part in _split(expression, "||"):
        conditions = [_parse_condition(c) for c in _split(or_part, "&&")]
        if conditions:
            groups.append(conditions)

    def _predicate(value: Any) -> bool:
        return any(all(cond(value) for cond in group) for group in groups)

    return _predicate


def normalize_header(value: Any) -> str:
    """Header text to object key: "Código (SKU)" -> "codigo_sku"."""
    if value is None or value == "":
        return ""
    decomposed = unicodedata.normalize("NFD", str(value))
    ascii_only = "".join(c for c in decomposed if not unicodedata.combining(c))
    cleaned = re.sub(r"[^a-z0-9_]", " ", ascii_only.lower()).strip()
    return re.sub(r"\s+", "_", cleaned)


def to_number(value: Any) -> float | None:
    """Parse numbers from cells and filter literals, None if not numeric.

    Strings with a comma use Brazilian notation (dot thousands
    separator, comma decimal): "1.234,5" -> 1234.5. Without a comma
    the dot is the decimal point: "10.5" -> 10.5.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    text = str(value if value is not None else "").strip()
    if not text:
        return None
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    return float(text) if _NUMBER_RE.match(text) else None


def compare(left: Any, right: Any, op: str) -> bool:
    """Compare numerically when possible, else as strings."""
    left_num, right_num = to_number(left), to_number(right)
    if left_num is not None and right_num is not None:
        a: Any = left_num
        b: Any = right_num
    else:
        a, b = _as_text(left), _as_text(right)

    if op == "==":
        return bool(a == b)
    if op == "!=":
        return bool(a != b)
    if op == ">":
        return bool(a > b)
    if op == ">=":
        return bool(a >= b)
    if op == "<":
        return bool(a < b)
    if op == "<=":
        return bool(a <= b)
    return False


# -- internal -------------------------------------------------------------


def _row_to_record(headers: list[str], row: tuple[Any, ...]) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for index, header in enumerate(headers):
        if not header:
            continue
        value = row[index] if index < len(row) else None
        record[header] = "" if value is None else value
    return record


def _resolve_column(column: str, headers: list[str]) -> str:
    """Header name first; a bare letter only if no header matches."""
    normalized = normalize_header(column)
    if normalized and normalized in headers:
        return normalized

    letter = str(column).strip().upper()
    if _COLUMN_LETTER_RE.match(letter):
        index = column_index_from_string(letter) - 1
        if index < len(headers) and headers[index]:
            return headers[index]

    raise SheetFilterError(f'Column "{column}" not found or has an empty header')


def _split(expression: str, separator: str) -> list[str]:
    return [part.strip() for part in expression.split(separator) if part.strip()]


def _parse_condition(raw: str) -> Predicate:
    match = _CONDITION_RE.match(raw.strip())
    if match is None:
        literal = _strip_quotes(raw.strip())
        return lambda value: compare(value, literal, "==")

    op = "==" if match.group(1) == "=" else match.group(1)
    literal = _strip_quotes(match.group(2).strip())
    return lambda value: compare(value, literal, op)


def _strip_quotes(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        return text[1:-1]
    return text


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime | date):
        return value.isoformat()
    return str(value)
