"""Tests for sheetcalc.calc number formatting."""

from __future__ import annotations

import pytest

from sheetcalc.calc._errors import ExcelError
from sheetcalc.calc._format import count_decimals, format_value


class TestCountDecimals:
    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            ("$#,##0.00", 2),
            ("0%", 0),
            ("0.000", 3),
            ("#,##0.0", 1),
            ("0.00%", 2),
            ("General", 0),
        ],
    )
    def test_decimals(self, code: str, expected: int) -> None:
        assert count_decimals(code) == expected

    def test_longest_run_wins(self) -> None:
        assert count_decimals("0.0 0.000") == 3


class TestCurrency:
    def test_grouped(self) -> None:
        assert format_value(1000, "$#,##0.00") == "$1,000.00"

    def test_negative_sign_outside_symbol(self) -> None:
        assert format_value(-1234.5, "$#,##0.00") == "-$1,234.50"

    def test_ungrouped(self) -> None:
        assert format_value(1234.4, "$0") == "$1234"
        assert format_value(0.456, "$0.00") == "$0.46"


class TestPercent:
    def test_two_decimals(self) -> None:
        assert format_value(0.05, "0.00%") == "5.00%"

    def test_monthly_rate(self) -> None:
        assert format_value(0.05 / 12, "0.00%") == "0.42%"

    def test_no_decimals(self) -> None:
        assert format_value(0.5, "0%") == "50%"

    def test_negative(self) -> None:
        assert format_value(-0.125, "0.0%") == "-12.5%"


class TestGroupedAndFixed:
    def test_grouped_integer(self) -> None:
        assert format_value(1234567.891, "#,##0") == "1,234,568"

    def test_grouped_negative(self) -> None:
        assert format_value(-9876.5, "#,##0.0") == "-9,876.5"

    def test_fixed(self) -> None:
        assert format_value(3.14159, "0.000") == "3.142"
        assert format_value(2, "0.00") == "2.00"


class TestFallbacks:
    def test_text_ignores_format(self) -> None:
        assert format_value("hello", "$#,##0.00") == "hello"

    def test_unknown_codes(self) -> None:
        assert format_value(1234.5, "General") == "1234.5"
        assert format_value(45000, "yyyy-mm-dd") == "45000"
        assert format_value(12, "@") == "12"

    def test_no_format(self) -> None:
        assert format_value(42) == "42"
        assert format_value(42.0) == "42"
        assert format_value(0.1 + 0.2) == "0.3"
        assert format_value(None) == ""

    def test_bools(self) -> None:
        assert format_value(True, "0.00") == "TRUE"
        assert format_value(False) == "FALSE"

    def test_errors_render_as_code(self) -> None:
        assert format_value(ExcelError.DIV0, "$#,##0.00") == "#DIV/0!"
        assert format_value(ExcelError.CIRCULAR) == "#CIRCULAR!"

    def test_non_finite_never_raises(self) -> None:
        assert isinstance(format_value(float("nan"), "0.00"), str)
        assert isinstance(format_value(float("inf"), "$#,##0"), str)
