"""Tests for sheetcalc.calc.WorkbookEvaluator."""

from __future__ import annotations

from typing import Any

import pytest

from sheetcalc import Workbook
from sheetcalc.calc import (
    CalcEngine,
    EngineOptions,
    ExcelError,
    FunctionRegistry,
    UnknownFunctionError,
    WorkbookEvaluator,
    calculate_sheet,
    calculate_workbook,
)


def _loan_rows() -> list[list[Any]]:
    """Present value of twelve monthly payments, totalled above its inputs."""
    rows: list[list[Any]] = [
        ["Loan schedule"],
        ["Payment", {"v": 1000, "f": "$#,##0.00"}],
        ["Annual rate", {"v": 0.05, "f": "0.00%"}],
        ["Monthly rate", {"v": "=B3/12", "f": "0.00%"}],
        ["Present value", {"v": "=SUM(C9:C20)", "f": "$#,##0.00"}],
        [],
        [],
        ["Month", "Payment", "Discounted"],
    ]
    for n in range(9, 21):
        rows.append([
            n - 8,
            {"v": "=$B$2", "f": "$#,##0.00"},
            {"v": f"=B{n}/(1+$B$4)^A{n}", "f": "$#,##0.00"},
        ])
    return rows


def _loan_expected() -> float:
    r = 0.05 / 12
    return 1000 * (1 - (1 + r) ** -12) / r


def _evaluator(rows: list[list[Any]], **options: Any) -> WorkbookEvaluator:
    ev = WorkbookEvaluator(options=EngineOptions(**options))
    ev.load(Workbook.from_sheets([("Sheet1", rows)]))
    return ev


def _sheet(rows: list[list[Any]], **options: Any):
    return _evaluator(rows, **options).calculate()[0]


# ======================================================================
# Basic evaluation
# ======================================================================


class TestBasics:
    def test_protocol(self) -> None:
        assert isinstance(WorkbookEvaluator(), CalcEngine)

    def test_chain(self) -> None:
        sheet = _sheet([[10, "=A1*2", "=B1+A1", "=SUM(A1:C1)"]])
        assert sheet.values[0] == [10, 20.0, 30.0, 60.0]

    def test_literal_cells_pass_through(self) -> None:
        sheet = _sheet([["label", 5, "5%"]])
        assert sheet.values[0] == ["label", 5, "5%"]
        assert sheet.display[0] == ["label", "5", "5%"]

    def test_empty_cells(self) -> None:
        sheet = _sheet([[None, "=A1+1"]])
        assert sheet.value("A1") == 0
        assert sheet.text("A1") == ""
        assert sheet.value("B1") == 1.0

    def test_text_through_reference(self) -> None:
        sheet = _sheet([["hello", "=A1", '="quoted"']])
        assert sheet.value("B1") == "hello"
        assert sheet.value("C1") == "quoted"

    def test_formatted_text_coerces(self) -> None:
        sheet = _sheet([["$1,000", "50%", "=A1*B1"]])
        assert sheet.value("C1") == 500.0

    def test_results_congruent_with_input(self) -> None:
        sheet = _sheet([[1], [], [1, 2, "=A1+B3"]])
        assert [len(r) for r in sheet.values] == [1, 0, 3]
        assert [len(r) for r in sheet.display] == [1, 0, 3]

    def test_outside_grid(self) -> None:
        sheet = _sheet([[1]])
        assert sheet.value("Z50") is None
        assert sheet.text("Z50") == ""
        with pytest.raises(ValueError):
            sheet.value("not a ref")

    def test_sheet_qualified_lookup(self) -> None:
        sheet = _sheet([[7]])
        assert sheet.value("Sheet1!A1") == 7
        assert sheet.text("'Sheet1'!A1") == "7"
        with pytest.raises(ValueError):
            sheet.value("Other!A1")
        with pytest.raises(ValueError):
            sheet.text("Other!A1")

    def test_case_insensitive_functions(self) -> None:
        sheet = _sheet([[1, 2, "=sum(A1:B1)", "=Sum(A1:B1)", "=SUM(A1:B1)"]])
        assert sheet.values[0][2:] == [3.0, 3.0, 3.0]

    def test_negated_call(self) -> None:
        sheet = _sheet([["=-PMT(0.005,360,250000)"]])
        assert sheet.value("A1") == pytest.approx(1498.876, abs=1e-3)

    def test_negated_reference_squared(self) -> None:
        sheet = _sheet([[3, "=-A1^2", "=-(A1^2)"]])
        assert sheet.values[0][1:] == [9.0, -9.0]

    def test_nested_calls(self) -> None:
        sheet = _sheet([[4, 9, "=ROUND(SQRT(A1)+SQRT(B1)*2,0)/2"]])
        assert sheet.value("C1") == 4.0

    def test_requires_load(self) -> None:
        with pytest.raises(RuntimeError):
            WorkbookEvaluator().calculate()

    def test_source_not_mutated(self) -> None:
        wb = Workbook()
        ws = wb.active
        ws["A1"] = 2
        ws["B1"] = "=A1*2"
        calculate_workbook(wb)
        assert ws["B1"].value == "=A1*2"


# ======================================================================
# Forward references and formatting
# ======================================================================


class TestForwardReferences:
    def test_total_above_its_inputs(self) -> None:
        sheet = _sheet(_loan_rows())
        value = sheet.value("B5")
        assert value == pytest.approx(_loan_expected())
        assert 11678 < value < 11682

    def test_display_uses_own_format(self) -> None:
        sheet = _sheet(_loan_rows())
        assert sheet.text("B5") == f"${sheet.value('B5'):,.2f}"
        assert sheet.text("B5").startswith("$11,68")
        assert sheet.text("B4") == "0.42%"
        assert sheet.text("B3") == "5.00%"
        assert sheet.text("B2") == "$1,000.00"
        assert sheet.text("B9") == "$1,000.00"

    def test_simple_forward_reference(self) -> None:
        sheet = _sheet([["=B1*2", "=C1+1", 4]])
        assert sheet.values[0] == [10.0, 5.0, 4]

    def test_pull_order_independent(self) -> None:
        ev = _evaluator(_loan_rows())
        forward = ev.calculate_cells(["B5", "B4", "C20", "C9"])
        backward = ev.calculate_cells(["C9", "C20", "B4", "B5"])
        assert forward == backward
        assert forward["B5"] == pytest.approx(_loan_expected())

    def test_calculate_is_idempotent(self) -> None:
        ev = _evaluator(_loan_rows())
        assert ev.calculate() == ev.calculate()

    def test_long_forward_chain(self) -> None:
        rows = [[f"=A{n + 1}+1"] for n in range(1, 600)] + [[1]]
        sheet = _sheet(rows)
        assert sheet.value("A1") == 600.0
        assert sheet.value("A599") == 2.0
        assert sheet.errors == []

    def test_long_chain_pull_order_independent(self) -> None:
        ev = _evaluator([[f"=A{n + 1}+1"] for n in range(1, 500)] + [[1]])
        refs = [f"A{n}" for n in range(1, 501)]
        top_down = ev.calculate_cells(refs)
        bottom_up = ev.calculate_cells(list(reversed(refs)))
        assert top_down == bottom_up
        assert top_down["A1"] == 500.0

    def test_long_range_chain(self) -> None:
        rows = [[f"=SUM(A{n + 1}:B{n + 1})", 1] for n in range(1, 500)] + [[0, 1]]
        sheet = _sheet(rows)
        assert sheet.value("A1") == 499.0
        assert sheet.errors == []

    def test_long_chain_across_sheets(self) -> None:
        back = [[f"=A{n + 1}+1"] for n in range(1, 500)] + [[1]]
        sheets = calculate_workbook([
            {"name": "Front", "data": [["=Back!A1+1"]]},
            {"name": "Back", "data": back},
        ])
        assert sheets[0].value("A1") == 501.0
        assert sheets[0].errors == []
        assert sheets[1].errors == []

    def test_long_chain_closing_a_cycle(self) -> None:
        rows = [[f"=A{n + 1}+1"] for n in range(1, 500)] + [["=A1"]]
        sheet = _sheet(rows)
        assert sheet.value("A1") is ExcelError.CIRCULAR
        assert sheet.value("A500") is ExcelError.CIRCULAR

    def test_calculate_cells_unresolvable(self) -> None:
        ev = _evaluator([[1]])
        assert ev.calculate_cells(["A1", "junk", "Nope!A1"]) == {
            "A1": 1,
            "junk": 0,
            "Nope!A1": 0,
        }


# ======================================================================
# Circular references
# ======================================================================


class TestCircular:
    def test_mutual_reference(self) -> None:
        sheet = _sheet([["=B1", "=A1"]])
        assert sheet.value("A1") is ExcelError.CIRCULAR
        assert sheet.value("B1") is ExcelError.CIRCULAR
        assert sheet.text("A1") == "#CIRCULAR!"
        assert sorted(e.ref for e in sheet.errors) == ["A1", "B1"]
        assert all(e.kind == "circular" for e in sheet.errors)

    def test_mutual_reference_any_pull_order(self) -> None:
        ev = _evaluator([["=B1", "=A1"]])
        for order in (["A1", "B1"], ["B1", "A1"]):
            result = ev.calculate_cells(order)
            assert result["A1"] is ExcelError.CIRCULAR
            assert result["B1"] is ExcelError.CIRCULAR

    def test_self_reference(self) -> None:
        sheet = _sheet([["=A1+1"]])
        assert sheet.value("A1") is ExcelError.CIRCULAR

    def test_range_including_itself(self) -> None:
        sheet = _sheet([["=SUM(A1:A3)"], [1], [2]])
        assert sheet.value("A1") is ExcelError.CIRCULAR
        assert sheet.errors[0].kind == "circular"
        assert sheet.value("A2") == 1

    def test_range_over_circular_cells(self) -> None:
        sheet = _sheet([["=B1", "=A1", "=SUM(A1:B1)"]])
        assert sheet.value("C1") is ExcelError.CIRCULAR

    def test_unrelated_cells_unaffected(self) -> None:
        sheet = _sheet([["=B1", "=A1", 5, "=C1*2"]])
        assert sheet.value("D1") == 10.0


# ======================================================================
# Degraded cells
# ======================================================================


class TestDegraded:
    def test_unknown_function_keeps_text(self) -> None:
        sheet = _sheet([["=XLOOKUP(1,A2:A3,B2:B3)"]])
        assert sheet.value("A1") == "=XLOOKUP(1,A2:A3,B2:B3)"
        assert sheet.text("A1") == "=XLOOKUP(1,A2:A3,B2:B3)"
        (error,) = sheet.errors
        assert error.kind == "unknown_function"
        assert "XLOOKUP" in error.message

    @pytest.mark.parametrize("formula", ["=1+*2", "=SUM(1", '="a"&"b"', "=C1 D1"])
    def test_malformed_keeps_text(self, formula: str) -> None:
        sheet = _sheet([[formula]])
        assert sheet.value("A1") == formula
        assert sheet.errors[0].kind == "syntax"

    def test_bad_arguments(self) -> None:
        sheet = _sheet([["=PMT(0.05)"]])
        assert sheet.value("A1") == "=PMT(0.05)"
        assert sheet.errors[0].kind == "function"

    def test_referencing_degraded_cell(self) -> None:
        sheet = _sheet([["=FOO()", "=A1", "=A1+1"]])
        assert sheet.value("B1") == "=FOO()"
        assert sheet.value("C1") == 1.0

    def test_division_by_zero(self) -> None:
        sheet = _sheet([[0, "=1/A1", "=B1+1"]])
        assert sheet.value("B1") is ExcelError.DIV0
        assert sheet.value("C1") is ExcelError.DIV0
        assert sheet.text("B1") == "#DIV/0!"
        assert [e.kind for e in sheet.errors] == ["div_zero", "div_zero"]

    def test_other_error_values(self) -> None:
        sheet = _sheet([["=SQRT(-1)"]])
        assert sheet.errors[0].kind == "error_value"
        assert sheet.errors[0].message == "#NUM!"

    def test_too_deep_is_num_error(self) -> None:
        def bottomless(args: list[str], ctx: Any) -> Any:
            raise RecursionError("maximum recursion depth exceeded")

        registry = FunctionRegistry.with_builtins()
        registry.register("BOTTOMLESS", bottomless)
        sheet = calculate_sheet([["=BOTTOMLESS()", "=A1+1", "=A1"]], registry=registry)
        assert sheet.values[0] == [ExcelError.NUM, ExcelError.NUM, ExcelError.NUM]
        assert sheet.text("A1") == "#NUM!"
        assert [e.kind for e in sheet.errors] == ["depth", "error_value", "error_value"]

    def test_too_deep_strict_mode_raises(self) -> None:
        def bottomless(args: list[str], ctx: Any) -> Any:
            raise RecursionError("maximum recursion depth exceeded")

        registry = FunctionRegistry.with_builtins()
        registry.register("BOTTOMLESS", bottomless)
        with pytest.raises(RecursionError):
            calculate_sheet(
                [["=BOTTOMLESS()"]], registry=registry, options=EngineOptions(strict_mode=True),
            )

    def test_strict_mode_raises(self) -> None:
        with pytest.raises(UnknownFunctionError):
            _sheet([["=FOO(1)"]], strict_mode=True)

    def test_strict_mode_keeps_error_values(self) -> None:
        sheet = _sheet([["=1/0"]], strict_mode=True)
        assert sheet.value("A1") is ExcelError.DIV0

    def test_pass_factor_validated(self) -> None:
        with pytest.raises(ValueError):
            EngineOptions(reduction_pass_factor=0)


# ======================================================================
# Cross-sheet references
# ======================================================================


class TestCrossSheet:
    def _book(self) -> list[dict[str, Any]]:
        return [
            {"name": "Inputs", "data": [[10, 20]]},
            {"name": "My Inputs", "data": [[3]]},
            {"name": "Calc", "data": [[
                "=Inputs!A1*2",
                "='My Inputs'!A1+1",
                "=SUM(Inputs!A1:B1)",
                "=Nope!A1+1",
            ]]},
        ]

    def test_references(self) -> None:
        calc = calculate_workbook(self._book())[2]
        assert calc.name == "Calc"
        assert calc.values[0] == [20.0, 4.0, 30.0, 1.0]

    def test_forward_sheet_reference(self) -> None:
        sheets = calculate_workbook([
            {"name": "Summary", "data": [["=Detail!A1*10"]]},
            {"name": "Detail", "data": [["=A2+1"], [4]]},
        ])
        assert sheets[0].value("A1") == 50.0

    def test_disabled(self) -> None:
        options = EngineOptions(enable_cross_sheet_refs=False)
        calc = calculate_workbook(self._book(), options=options)[2]
        assert calc.values[0] == [0.0, 1.0, 0.0, 1.0]

    def test_disabled_own_sheet_qualifier_is_not_a_cycle(self) -> None:
        sheet = _sheet([["=Sheet1!B1", "=A1+1"]], enable_cross_sheet_refs=False)
        assert sheet.values[0] == [0, 1.0]
        assert sheet.errors == []

    def test_calculate_cells_qualified(self) -> None:
        ev = WorkbookEvaluator()
        ev.load(Workbook.from_sheets(self._book()))
        assert ev.calculate_cells(["Calc!A1", "'My Inputs'!A1"]) == {
            "Calc!A1": 20.0,
            "'My Inputs'!A1": 3,
        }


# ======================================================================
# Results and entry points
# ======================================================================


class TestResults:
    def test_formula_info(self) -> None:
        sheet = _sheet([[1, 2, "=A1+SUM(B1:B2)"]])
        (info,) = sheet.formulas
        assert info.ref == "C1"
        assert info.formula == "=A1+SUM(B1:B2)"
        assert info.dependencies == ("Sheet1!A1", "Sheet1!B1", "Sheet1!B2")
        assert info.result == 3.0

    def test_calculate_sheet_mapping(self) -> None:
        sheet = calculate_sheet({
            "name": "PV",
            "data": [[{"v": 1000, "f": "$#,##0.00"}, {"v": "=A1*1.05", "f": "$#,##0.00"}]],
        })
        assert sheet.name == "PV"
        assert sheet.display[0] == ["$1,000.00", "$1,050.00"]

    def test_calculate_sheet_rows(self) -> None:
        sheet = calculate_sheet([[1, "=A1+1"]])
        assert sheet.name == "Sheet1"
        assert sheet.value("B1") == 2.0

    def test_calculate_sheet_worksheet(self) -> None:
        wb = Workbook()
        ws = wb.active
        ws.append([3, "=A1^2"])
        assert calculate_sheet(ws).value("B1") == 9.0

    def test_custom_registry(self) -> None:
        registry = FunctionRegistry()
        registry.register("TWICE", lambda args, ctx: ctx.evaluate_formula(args[0]) * 2)
        sheet = calculate_sheet([[4, "=TWICE(A1)", "=SUM(A1)"]], registry=registry)
        assert sheet.value("B1") == 8
        assert sheet.errors[0].kind == "unknown_function"
