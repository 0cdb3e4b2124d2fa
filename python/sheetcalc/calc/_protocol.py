"""CalcEngine protocol, engine options and result dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sheetcalc._utils import parse_cell_ref

if TYPE_CHECKING:
    from sheetcalc._workbook import Workbook


@dataclass(frozen=True)
class EngineOptions:
    """Evaluation settings, fixed for the lifetime of an evaluator."""

    enable_cross_sheet_refs: bool = True
    # Call reduction gives up after factor * len(expression) passes.
    reduction_pass_factor: int = 4
    # Raise instead of leaving a broken formula's text in place.
    strict_mode: bool = False

    def __post_init__(self) -> None:
        if self.reduction_pass_factor < 1:
            raise ValueError("reduction_pass_factor must be at least 1")


@dataclass(frozen=True)
class FormulaInfo:
    """One formula cell and what it evaluated to."""

    ref: str  # "B5" (local to its sheet)
    formula: str  # stored text, including the leading "="
    dependencies: tuple[str, ...]  # canonical "SheetName!A1", ranges expanded
    result: Any


@dataclass(frozen=True)
class CalculationError:
    """A formula cell that could not be evaluated normally."""

    ref: str
    formula: str
    message: str
    kind: str  # circular | syntax | unknown_function | function | depth | div_zero | error_value


@dataclass
class CalculatedSheet:
    """Evaluated sheet: raw results and display strings, congruent with input rows."""

    name: str
    values: list[list[Any]] = field(default_factory=list)
    display: list[list[str]] = field(default_factory=list)
    formulas: list[FormulaInfo] = field(default_factory=list)
    errors: list[CalculationError] = field(default_factory=list)

    def value(self, ref: str) -> Any:
        """Raw result at an A1 reference (None outside the grid)."""
        row, col = self._locate(ref)
        try:
            return self.values[row][col]
        except IndexError:
            return None

    def text(self, ref: str) -> str:
        """Display string at an A1 reference ("" outside the grid)."""
        row, col = self._locate(ref)
        try:
            return self.display[row][col]
        except IndexError:
            return ""

    def _locate(self, ref: str) -> tuple[int, int]:
        parsed = parse_cell_ref(ref)
        if parsed is None:
            raise ValueError(f"Invalid cell reference: {ref!r}")
        if parsed.sheet is not None and parsed.sheet != self.name:
            raise ValueError(f"{ref!r} does not refer to sheet {self.name!r}")
        return parsed.row, parsed.col


@runtime_checkable
class CalcEngine(Protocol):
    """Protocol for formula evaluation engines."""

    def load(self, workbook: Workbook) -> None:
        """Take a snapshot of a workbook's sheets for evaluation."""
        ...

    def calculate(self) -> list[CalculatedSheet]:
        """Evaluate every cell of every sheet.

        Returns one CalculatedSheet per input sheet, in workbook order.
        """
        ...

    def calculate_cells(self, refs: list[str]) -> dict[str, Any]:
        """Evaluate only the named cells, in the given order.

        Returns a dict of ref -> raw result.
        """
        ...
