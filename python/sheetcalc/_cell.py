"""Cell: the stored (source) form of one grid entry."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

FORMULA_MARKER = "="


class CellKind(enum.Enum):
    EMPTY = "empty"
    NUMBER = "number"
    TEXT = "text"
    FORMULA = "formula"


@dataclass(frozen=True)
class Cell:
    """A source cell. ``value`` is never rewritten by evaluation.

    ``format`` is a number format code; for formulas it applies to the
    computed result, not to the formula text.
    """

    kind: CellKind
    value: Any = None
    format: str | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> Cell:
        """Build a Cell from any supported stored shape.

        Accepts None, a number, a bool, a string, a ``{value, format}``
        mapping (``{v, f}`` also accepted) or an existing Cell.
        """
        if isinstance(raw, Cell):
            return raw
        fmt: str | None = None
        if isinstance(raw, Mapping):
            value = raw.get("value", raw.get("v"))
            fmt = raw.get("format", raw.get("f")) or None
        else:
            value = raw

        if value is None:
            return cls(CellKind.EMPTY, None, fmt)
        if isinstance(value, (bool, int, float)):
            return cls(CellKind.NUMBER, value, fmt)
        if isinstance(value, str):
            if value.startswith(FORMULA_MARKER):
                return cls(CellKind.FORMULA, value, fmt)
            if value == "":
                return cls(CellKind.EMPTY, None, fmt)
            return cls(CellKind.TEXT, value, fmt)
        raise TypeError(f"Unsupported cell value type: {type(value).__name__}")

    @property
    def is_formula(self) -> bool:
        return self.kind is CellKind.FORMULA

    @property
    def is_empty(self) -> bool:
        return self.kind is CellKind.EMPTY

    @property
    def formula_body(self) -> str:
        """Formula text without the leading marker ("" for non-formulas)."""
        if self.kind is not CellKind.FORMULA:
            return ""
        return self.value[len(FORMULA_MARKER):]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"value": self.value}
        if self.format:
            out["format"] = self.format
        return out


EMPTY_CELL = Cell(CellKind.EMPTY)
