"""WorkbookEvaluator: on-demand, memoized evaluation of every cell.

A formula cell is evaluated on demand the first time anything asks for it,
whether that is the row-major sweep or another formula referencing it, so
forward references resolve in a single pass. Each ``calculate()`` call owns
a fresh cache and in-flight set; a request for a cell that is still being
evaluated is a circular reference and yields ``#CIRCULAR!``.

Before a formula is evaluated, the formula cells it refers to are evaluated
deepest first from an explicit worklist, so long forward chains do not grow
the Python stack.

Display strings are produced after the sweep from each cell's raw result and
its own format code, independent of the order in which cells were reached.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sheetcalc._cell import FORMULA_MARKER, Cell, EMPTY_CELL
from sheetcalc._utils import expand_range, parse_cell_ref, parse_range_ref, rowcol_to_a1
from sheetcalc._workbook import Workbook
from sheetcalc._worksheet import Worksheet
from sheetcalc.calc._coerce import try_coerce_number
from sheetcalc.calc._errors import (
    CircularReferenceError,
    ExcelError,
    FormulaError,
    FunctionCallError,
    PropagatedError,
    UnknownFunctionError,
)
from sheetcalc.calc._format import format_value
from sheetcalc.calc._functions import FunctionRegistry
from sheetcalc.calc._parser import all_references, evaluate_expression, split_arguments
from sheetcalc.calc._protocol import (
    CalculatedSheet,
    CalculationError,
    EngineOptions,
    FormulaInfo,
)

logger = logging.getLogger(__name__)

_Key = tuple[str, int, int]


class _EvaluationPass:
    """Cache, in-flight set and error log for one evaluation request.

    Also serves as the :class:`EvalContext` handed to function handlers.
    """

    def __init__(
        self,
        sheets: Mapping[str, list[list[Cell]]],
        functions: FunctionRegistry,
        options: EngineOptions,
    ) -> None:
        self._sheets = sheets
        self._functions = functions
        self._options = options
        self._cache: dict[_Key, Any] = {}
        self._in_flight: set[_Key] = set()
        self._sheet_stack: list[str] = []
        self._errors: dict[_Key, CalculationError] = {}
        self._dependencies: dict[_Key, tuple[_Key, ...]] = {}

    # ------------------------------------------------------------------
    # Cell evaluation
    # ------------------------------------------------------------------

    def source(self, sheet: str, row: int, col: int) -> Cell:
        rows = self._sheets.get(sheet)
        if rows is None or row >= len(rows) or col >= len(rows[row]):
            return EMPTY_CELL
        return rows[row][col]

    def evaluate_cell(self, sheet: str, row: int, col: int) -> Any:
        """Raw result of one cell, evaluating (and caching) it on first use."""
        key = (sheet, row, col)
        if key in self._cache:
            return self._cache[key]
        if key in self._in_flight:
            logger.debug("Cycle reached %s!%s", sheet, rowcol_to_a1(row, col))
            return ExcelError.CIRCULAR

        cell = self.source(sheet, row, col)
        if not cell.is_formula:
            raw = 0 if cell.is_empty else cell.value
            self._cache[key] = raw
            return raw

        self._in_flight.add(key)
        self._sheet_stack.append(sheet)
        try:
            self._resolve_dependencies(key)
            raw = self._evaluate_formula_cell(key, cell)
        finally:
            self._sheet_stack.pop()
            self._in_flight.discard(key)
        self._cache[key] = raw
        return raw

    def _resolve_dependencies(self, key: _Key) -> None:
        """Evaluate the formula cells *key* refers to, deepest first.

        Uses an explicit worklist so the Python stack stays flat however long
        a reference chain is: each cell is evaluated only after everything it
        refers to is cached. A dependency that is already on the current path
        closes a cycle and is left to normal evaluation, which reports it.
        """
        stack: list[tuple[_Key, bool]] = [(key, False)]
        path: set[_Key] = set()
        while stack:
            current, expanded = stack.pop()
            if expanded:
                path.discard(current)
                if current != key:
                    self.evaluate_cell(*current)
                continue
            if current in path or current in self._cache:
                continue
            path.add(current)
            stack.append((current, True))
            for dep in reversed(self._formula_dependencies(current)):
                if dep not in path and dep not in self._cache and dep not in self._in_flight:
                    stack.append((dep, False))

    def _formula_dependencies(self, key: _Key) -> tuple[_Key, ...]:
        """Formula cells referenced by the formula at *key* (empty otherwise)."""
        if key in self._dependencies:
            return self._dependencies[key]
        sheet = key[0]
        cell = self.source(*key)
        deps: list[_Key] = []
        if cell.is_formula:
            # An empty default sheet leaves unqualified references as "!A1".
            for ref in all_references(cell.value, ""):
                ref_sheet, local = ref.rsplit("!", 1)
                target = self._target_sheet(ref_sheet or None, sheet)
                parsed = parse_cell_ref(local)
                if target is None or parsed is None:
                    continue
                dep = (target, parsed.row, parsed.col)
                if self.source(*dep).is_formula:
                    deps.append(dep)
        self._dependencies[key] = tuple(deps)
        return self._dependencies[key]

    def _evaluate_formula_cell(self, key: _Key, cell: Cell) -> Any:
        sheet, row, col = key
        where = f"{sheet}!{rowcol_to_a1(row, col)}"
        try:
            return self.evaluate_formula(cell.formula_body)
        except CircularReferenceError as exc:
            logger.warning("Circular reference in %s: %s", where, exc)
            self._record(key, cell, str(exc), exc.kind)
            return ExcelError.CIRCULAR
        except UnknownFunctionError as exc:
            logger.debug("Unsupported function %s in %s", exc.name, where)
            self._record(key, cell, str(exc), exc.kind)
            if self._options.strict_mode:
                raise
            return cell.value
        except FormulaError as exc:
            logger.warning("Cannot evaluate formula %r in %s: %s", cell.value, where, exc)
            self._record(key, cell, str(exc), exc.kind)
            if self._options.strict_mode:
                raise
            return cell.value
        except RecursionError:
            # Dependents must see an error, not text that coerces to 0.
            logger.warning("Expression too deeply nested at %s", where)
            self._record(key, cell, "Expression too deeply nested", "depth")
            if self._options.strict_mode:
                raise
            return ExcelError.NUM

    def _record(self, key: _Key, cell: Cell, message: str, kind: str) -> None:
        _, row, col = key
        self._errors[key] = CalculationError(
            ref=rowcol_to_a1(row, col), formula=cell.value, message=message, kind=kind,
        )

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    @property
    def current_sheet(self) -> str | None:
        return self._sheet_stack[-1] if self._sheet_stack else None

    def _target_sheet(self, sheet: str | None, default: str | None) -> str | None:
        if sheet is None:
            return default if default in self._sheets else None
        if not self._options.enable_cross_sheet_refs:
            return None
        return sheet if sheet in self._sheets else None

    def locate(self, ref: str, default_sheet: str | None = None) -> _Key | None:
        """Cache key for a cell reference, or None when it cannot resolve."""
        parsed = parse_cell_ref(ref)
        if parsed is None:
            return None
        sheet = self._target_sheet(parsed.sheet, default_sheet or self.current_sheet)
        if sheet is None:
            return None
        return (sheet, parsed.row, parsed.col)

    # ------------------------------------------------------------------
    # EvalContext
    # ------------------------------------------------------------------

    def get_cell_value(self, ref: str) -> Any:
        key = self.locate(ref)
        if key is None:
            return 0
        return self.evaluate_cell(*key)

    def get_range_values(self, range_ref: str) -> list[float]:
        rng = parse_range_ref(range_ref)
        if rng is None:
            return []
        sheet = self._target_sheet(rng.sheet, self.current_sheet)
        if sheet is None:
            return []

        values: list[float] = []
        for cell in expand_range(rng):
            key = (sheet, cell.row, cell.col)
            if key in self._in_flight:
                raise CircularReferenceError(
                    f"{range_ref} includes {sheet}!{rowcol_to_a1(cell.row, cell.col)}"
                )
            if self.source(*key).is_empty:
                continue
            raw = self.evaluate_cell(*key)
            if raw is ExcelError.CIRCULAR:
                raise CircularReferenceError(
                    f"{range_ref} includes circular cell {rowcol_to_a1(cell.row, cell.col)}"
                )
            num = try_coerce_number(raw)
            if num is not None:
                values.append(float(num))
        return values

    def evaluate_formula(self, text: str) -> Any:
        text = text.strip()
        if text.startswith(FORMULA_MARKER):
            text = text[1:]
        return evaluate_expression(
            text,
            call=self._call,
            resolve=self.get_cell_value,
            max_passes=self._options.reduction_pass_factor * max(len(text), 1),
        )

    def _call(self, name: str, args_text: str) -> Any:
        func = self._functions.get(name)
        if func is None:
            raise UnknownFunctionError(name.upper())
        raw_args = split_arguments(args_text)
        try:
            return func(raw_args, self)
        except PropagatedError as exc:
            return exc.error
        except (FormulaError, RecursionError):
            raise
        except Exception as exc:
            raise FunctionCallError(name.upper(), exc) from exc

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def sweep(self, sheet: str) -> None:
        """Evaluate every cell of *sheet* in row-major order."""
        for r, row in enumerate(self._sheets[sheet]):
            for c in range(len(row)):
                self.evaluate_cell(sheet, r, c)

    def build_sheet(self, sheet: str) -> CalculatedSheet:
        """Assemble raw, display, formula and error planes for *sheet*."""
        result = CalculatedSheet(name=sheet)
        for r, row in enumerate(self._sheets[sheet]):
            raw_row: list[Any] = []
            text_row: list[str] = []
            for c, cell in enumerate(row):
                key = (sheet, r, c)
                raw = self.evaluate_cell(*key)
                raw_row.append(raw)
                text_row.append("" if cell.is_empty else format_value(raw, cell.format))
                if not cell.is_formula:
                    continue
                ref = rowcol_to_a1(r, c)
                result.formulas.append(FormulaInfo(
                    ref=ref,
                    formula=cell.value,
                    dependencies=tuple(all_references(cell.value, sheet)),
                    result=raw,
                ))
                error = self._errors.get(key) or _error_for_value(ref, cell, raw)
                if error is not None:
                    result.errors.append(error)
            result.values.append(raw_row)
            result.display.append(text_row)
        return result

    @property
    def cached_count(self) -> int:
        return len(self._cache)


def _error_for_value(ref: str, cell: Cell, raw: Any) -> CalculationError | None:
    if not isinstance(raw, ExcelError):
        return None
    if raw is ExcelError.CIRCULAR:
        kind = "circular"
    elif raw is ExcelError.DIV0:
        kind = "div_zero"
    else:
        kind = "error_value"
    return CalculationError(ref=ref, formula=cell.value, message=raw.code, kind=kind)


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class WorkbookEvaluator:
    """Evaluates the formulas of a sheetcalc Workbook.

    Usage::

        evaluator = WorkbookEvaluator()
        evaluator.load(workbook)
        sheets = evaluator.calculate()
        sheets[0].text("B5")          # "$11,681.22"
    """

    def __init__(
        self,
        registry: FunctionRegistry | None = None,
        options: EngineOptions | None = None,
    ) -> None:
        self._functions = registry if registry is not None else FunctionRegistry.with_builtins()
        self._options = options if options is not None else EngineOptions()
        self._sheets: dict[str, list[list[Cell]]] = {}
        self._loaded = False

    @property
    def registry(self) -> FunctionRegistry:
        return self._functions

    @property
    def options(self) -> EngineOptions:
        return self._options

    def load(self, workbook: Workbook) -> None:
        """Snapshot the workbook's sheets; later edits need another load()."""
        self._sheets = {
            name: [list(row) for row in workbook[name].iter_rows()]
            for name in workbook.sheetnames
        }
        self._loaded = True

    def _new_pass(self) -> _EvaluationPass:
        if not self._loaded:
            raise RuntimeError("Call load() before calculate()")
        return _EvaluationPass(self._sheets, self._functions, self._options)

    def calculate(self) -> list[CalculatedSheet]:
        """Evaluate every cell of every sheet.

        Returns one CalculatedSheet per sheet, in workbook order.
        """
        evaluation = self._new_pass()
        for name in self._sheets:
            evaluation.sweep(name)
        results = [evaluation.build_sheet(name) for name in self._sheets]
        logger.debug(
            "Calculated %d sheet(s), %d cell(s), %d error(s)",
            len(results),
            evaluation.cached_count,
            sum(len(s.errors) for s in results),
        )
        return results

    def calculate_cells(self, refs: Iterable[str]) -> dict[str, Any]:
        """Evaluate only the named cells, in the given order, in one pass.

        Unqualified references address the first sheet. Unresolvable
        references map to 0.
        """
        evaluation = self._new_pass()
        default_sheet = next(iter(self._sheets), None)
        results: dict[str, Any] = {}
        for ref in refs:
            key = evaluation.locate(ref, default_sheet)
            results[ref] = evaluation.evaluate_cell(*key) if key is not None else 0
        return results


# ---------------------------------------------------------------------------
# Convenience entry points
# ---------------------------------------------------------------------------


def calculate_workbook(
    workbook: Workbook | Iterable[Mapping[str, Any]],
    registry: FunctionRegistry | None = None,
    options: EngineOptions | None = None,
) -> list[CalculatedSheet]:
    """Evaluate a Workbook or a ``[{"name", "data"}, ...]`` sheet list."""
    if not isinstance(workbook, Workbook):
        workbook = Workbook.from_sheets(workbook)
    evaluator = WorkbookEvaluator(registry, options)
    evaluator.load(workbook)
    return evaluator.calculate()


def calculate_sheet(
    sheet: Worksheet | Mapping[str, Any] | Iterable[Iterable[Any]],
    registry: FunctionRegistry | None = None,
    options: EngineOptions | None = None,
) -> CalculatedSheet:
    """Evaluate a single sheet on its own (references to other sheets give 0)."""
    if isinstance(sheet, Worksheet):
        wb = Workbook.from_sheets([(sheet.title, sheet.rows)])
    elif isinstance(sheet, Mapping):
        wb = Workbook.from_sheets([sheet])
    else:
        wb = Workbook.from_sheets([("Sheet1", sheet)])
    return calculate_workbook(wb, registry, options)[0]
