"""sheetcalc.calc - Formula evaluation engine for sheetcalc workbooks."""

from sheetcalc.calc._coerce import coerce_to_number, try_coerce_number
from sheetcalc.calc._errors import (
    CircularReferenceError,
    ExcelError,
    FormulaError,
    FormulaSyntaxError,
    FunctionCallError,
    PropagatedError,
    UnknownFunctionError,
    first_error,
)
from sheetcalc.calc._evaluator import WorkbookEvaluator, calculate_sheet, calculate_workbook
from sheetcalc.calc._format import count_decimals, format_value
from sheetcalc.calc._functions import EvalContext, FunctionRegistry, default_registry
from sheetcalc.calc._parser import (
    all_references,
    evaluate_arithmetic,
    evaluate_expression,
    split_arguments,
)
from sheetcalc.calc._protocol import (
    CalcEngine,
    CalculatedSheet,
    CalculationError,
    EngineOptions,
    FormulaInfo,
)

__all__ = [
    "CalcEngine",
    "CalculatedSheet",
    "CalculationError",
    "CircularReferenceError",
    "EngineOptions",
    "EvalContext",
    "ExcelError",
    "FormulaError",
    "FormulaInfo",
    "FormulaSyntaxError",
    "FunctionCallError",
    "FunctionRegistry",
    "PropagatedError",
    "UnknownFunctionError",
    "WorkbookEvaluator",
    "all_references",
    "calculate_sheet",
    "calculate_workbook",
    "coerce_to_number",
    "count_decimals",
    "default_registry",
    "evaluate_arithmetic",
    "evaluate_expression",
    "first_error",
    "format_value",
    "split_arguments",
    "try_coerce_number",
]
