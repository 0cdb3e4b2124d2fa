"""Error values that flow through formulas, and the exceptions behind them."""

from __future__ import annotations

import re
from typing import Any


# ---------------------------------------------------------------------------
# ExcelError: typed error values that propagate through formula chains
# ---------------------------------------------------------------------------


class ExcelError:
    """Error value cached as a cell's raw result.

    Use ``ExcelError.of(code)`` to get a cached singleton for each error code.
    Errors compare equal to their string code (``ExcelError.DIV0 == "#DIV/0!"``).
    """

    __slots__ = ("code",)
    _cache: dict[str, ExcelError] = {}

    CIRCULAR: ExcelError
    NA: ExcelError
    VALUE: ExcelError
    REF: ExcelError
    DIV0: ExcelError
    NUM: ExcelError
    NAME: ExcelError

    def __init__(self, code: str) -> None:
        self.code = code

    @classmethod
    def of(cls, code: str) -> ExcelError:
        canon = code.upper()
        if canon not in cls._cache:
            cls._cache[canon] = cls(canon)
        return cls._cache[canon]

    def __repr__(self) -> str:
        return self.code

    def __str__(self) -> str:
        return self.code

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ExcelError):
            return self.code == other.code
        if isinstance(other, str):
            return self.code == other.upper()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.code)


# Singletons
ExcelError.CIRCULAR = ExcelError.of("#CIRCULAR!")
ExcelError.NA = ExcelError.of("#N/A")
ExcelError.VALUE = ExcelError.of("#VALUE!")
ExcelError.REF = ExcelError.of("#REF!")
ExcelError.DIV0 = ExcelError.of("#DIV/0!")
ExcelError.NUM = ExcelError.of("#NUM!")
ExcelError.NAME = ExcelError.of("#NAME?")

# Error codes as they appear spliced into formula text.
ERROR_TOKEN_RE = re.compile(r"#(?:N/A|[A-Z0-9/]+[!?])")


def first_error(*values: Any) -> ExcelError | None:
    """Return the first ExcelError found in *values*, or None."""
    for v in values:
        if isinstance(v, ExcelError):
            return v
    return None


# ---------------------------------------------------------------------------
# Exceptions: internal control flow, always caught at the cell boundary
# ---------------------------------------------------------------------------


class FormulaError(Exception):
    """Base for formula evaluation failures. ``kind`` names the category."""

    kind = "error"


class FormulaSyntaxError(FormulaError):
    """Expression text that cannot be reduced to whitelisted arithmetic."""

    kind = "syntax"


class UnknownFunctionError(FormulaError):
    """No handler is registered for a called function name."""

    kind = "unknown_function"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown function: {name}")
        self.name = name


class FunctionCallError(FormulaError):
    """A registered handler raised while evaluating a call."""

    kind = "function"

    def __init__(self, name: str, cause: Exception) -> None:
        super().__init__(f"Error evaluating {name}: {cause}")
        self.name = name
        self.cause = cause


class CircularReferenceError(FormulaError):
    """A range touched a cell that is still being evaluated."""

    kind = "circular"


class PropagatedError(FormulaError):
    """Raised by function handlers to return an error value as the result."""

    kind = "error_value"

    def __init__(self, error: ExcelError) -> None:
        super().__init__(str(error))
        self.error = error
