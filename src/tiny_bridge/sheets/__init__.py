"""Spreadsheet filtering for inventory exports."""

from tiny_bridge.sheets.filter import build_filter, filter_sheet, normalize_header

__all__ = ["build_filter", "filter_sheet", "normalize_header"]
