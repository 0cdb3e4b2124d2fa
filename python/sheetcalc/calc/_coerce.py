"""Coercion of stored or displayed cell values into numbers."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from sheetcalc._cell import FORMULA_MARKER, Cell, CellKind
from sheetcalc.calc._errors import ExcelError

_DECIMAL_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")


def _parse_decimal(text: str) -> float | None:
    text = text.strip()
    if not _DECIMAL_RE.match(text):
        return None
    return float(text)


def try_coerce_number(stored: Any) -> float | int | None:
    """Convert a cell representation to a number, or None if it has none.

    - numbers pass through, bools become 1/0
    - ``"5%"`` -> 0.05, ``"$1,000.00"`` -> 1000.0, ``"1,000"`` -> 1000.0
    - plain numeric strings are parsed
    - blank or unparsable text, unresolved formulas and error values -> None
    """
    if isinstance(stored, Cell):
        if stored.kind is CellKind.FORMULA:
            return None
        return try_coerce_number(stored.value)
    if isinstance(stored, Mapping):
        return try_coerce_number(Cell.from_raw(stored))
    if isinstance(stored, bool):
        return int(stored)
    if isinstance(stored, (int, float)):
        return stored
    if isinstance(stored, ExcelError) or not isinstance(stored, str):
        return None

    text = stored.strip()
    if not text or text.startswith(FORMULA_MARKER):
        return None
    if "%" in text:
        num = _parse_decimal(text.replace("%", ""))
        return None if num is None else num / 100
    if "$" in text or "," in text:
        return _parse_decimal(text.replace("$", "").replace(",", ""))
    return _parse_decimal(text)


def coerce_to_number(stored: Any) -> float | int:
    """Like :func:`try_coerce_number` but unparsable values become 0."""
    num = try_coerce_number(stored)
    return 0 if num is None else num
