"""Number formatting for display values.

Supports a small closed set of format codes:

- Currency: ``$#,##0.00``, ``$0``
- Percentage: ``0.00%``, ``0%``
- Grouped: ``#,##0``, ``#,##0.0``
- Fixed decimals: ``0.000``

Any other code (``General``, date codes, ``@``) renders as if no code was set.
"""

from __future__ import annotations

import math
import re
from typing import Any

from sheetcalc.calc._errors import ExcelError

_DECIMALS_RE = re.compile(r"\.(0+)")
_KNOWN_FORMAT_RE = re.compile(r"^[0#,.$%\s]*[0#][0#,.$%\s]*$")


def count_decimals(format_code: str) -> int:
    """Longest run of ``0`` immediately after a ``.`` (0 if there is none)."""
    runs = _DECIMALS_RE.findall(format_code)
    return max((len(r) for r in runs), default=0)


def plain_text(value: Any) -> str:
    """Render a raw result with no format code."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer() and abs(value) < 1e15:
            return str(int(value))
        return f"{value:.15g}"
    if isinstance(value, ExcelError):
        return value.code
    return str(value)


def format_value(value: Any, format_code: str | None = None) -> str:
    """Render *value* under *format_code*. Never raises."""
    if (
        not format_code
        or isinstance(value, bool)
        or not isinstance(value, (int, float))
        or not math.isfinite(value)
        or not _KNOWN_FORMAT_RE.match(format_code)
    ):
        return plain_text(value)

    decimals = count_decimals(format_code)
    grouped = "," in format_code

    if "$" in format_code:
        spec = f",.{decimals}f" if grouped else f".{decimals}f"
        text = "$" + format(abs(value), spec)
        return "-" + text if value < 0 else text

    if "%" in format_code:
        return f"{value * 100:.{decimals}f}%"

    if grouped:
        text = format(abs(value), f",.{decimals}f")
        return "-" + text if value < 0 else text

    return f"{value:.{decimals}f}"
