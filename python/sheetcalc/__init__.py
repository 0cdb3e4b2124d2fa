"""sheetcalc - spreadsheet formula evaluation over plain Python workbooks.

Usage::

    from sheetcalc import Workbook, calculate_workbook

    wb = Workbook()
    ws = wb.active
    ws["A1"] = 1000
    ws.set("A2", "=A1*1.05", number_format="$#,##0.00")

    sheet = calculate_workbook(wb)[0]
    print(sheet.value("A2"), sheet.text("A2"))   # 1050.0 $1,050.00
"""

from sheetcalc._cell import Cell, CellKind
from sheetcalc._utils import (
    CellRef,
    RangeRef,
    column_to_index,
    expand_range,
    index_to_column,
    parse_cell_ref,
    parse_range_ref,
)
from sheetcalc._workbook import Workbook, load_workbook
from sheetcalc._worksheet import Worksheet
from sheetcalc.calc import (
    CalculatedSheet,
    EngineOptions,
    ExcelError,
    FunctionRegistry,
    WorkbookEvaluator,
    calculate_sheet,
    calculate_workbook,
    format_value,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "CalculatedSheet",
    "Cell",
    "CellKind",
    "CellRef",
    "EngineOptions",
    "ExcelError",
    "FunctionRegistry",
    "RangeRef",
    "Workbook",
    "WorkbookEvaluator",
    "Worksheet",
    "calculate_sheet",
    "calculate_workbook",
    "column_to_index",
    "expand_range",
    "format_value",
    "index_to_column",
    "load_workbook",
    "parse_cell_ref",
    "parse_range_ref",
]
