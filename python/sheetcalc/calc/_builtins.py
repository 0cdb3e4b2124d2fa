"""Standard function library, registered through the public registry API.

Every handler has the registry signature ``handler(raw_args, ctx)``. Most
builtins are written against resolved argument values and wrapped with
:func:`_resolved`; the logical functions take the raw argument strings so
they can evaluate conditions and branches themselves.
"""

from __future__ import annotations

import fnmatch
import functools
import math
import re
import statistics
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal, localcontext
from typing import TYPE_CHECKING, Any, Callable

from sheetcalc._utils import cell_ref_to_a1, expand_range, parse_range_ref
from sheetcalc.calc._coerce import try_coerce_number
from sheetcalc.calc._errors import ExcelError, first_error
from sheetcalc.calc._parser import iter_unquoted

if TYPE_CHECKING:
    from sheetcalc.calc._functions import EvalContext, FunctionHandler, FunctionRegistry


# ---------------------------------------------------------------------------
# Argument resolution
# ---------------------------------------------------------------------------


def _is_range(arg: str) -> bool:
    return parse_range_ref(arg) is not None


def _resolve_args(raw_args: list[str], ctx: EvalContext) -> list[Any]:
    """Range arguments become lists of numbers; the rest are evaluated."""
    resolved: list[Any] = []
    for arg in raw_args:
        if not arg:
            resolved.append(None)
        elif _is_range(arg):
            resolved.append(ctx.get_range_values(arg))
        else:
            resolved.append(ctx.evaluate_formula(arg))
    return resolved


def _resolved(func: Callable[[list[Any]], Any]) -> FunctionHandler:
    """Adapt a builtin over resolved values to the raw-argument signature.

    A scalar argument that evaluated to an error value is returned as the
    result without calling *func*.
    """

    @functools.wraps(func)
    def handler(raw_args: list[str], ctx: EvalContext) -> Any:
        args = _resolve_args(raw_args, ctx)
        err = first_error(*args)
        if err is not None:
            return err
        return func(args)

    return handler


def _coerce_numeric(values: list[Any]) -> list[float]:
    """Flatten and coerce values to floats, skipping anything non-numeric."""
    result: list[float] = []
    for v in values:
        if isinstance(v, (list, tuple)):
            result.extend(_coerce_numeric(list(v)))
            continue
        num = try_coerce_number(v)
        if num is not None:
            result.append(float(num))
    return result


def _number(args: list[Any], index: int, name: str) -> float:
    nums = _coerce_numeric([args[index]])
    if not nums:
        raise ValueError(f"{name}: non-numeric argument")
    return nums[0]


def _optional(args: list[Any], index: int, default: float = 0.0) -> float:
    if len(args) <= index or args[index] is None:
        return default
    nums = _coerce_numeric([args[index]])
    return nums[0] if nums else default


def _coerce_string(val: Any) -> str:
    if val is None:
        return ""
    if isinstance(val, bool):
        return "TRUE" if val else "FALSE"
    if isinstance(val, float) and val.is_integer():
        return str(int(val))
    return str(val)


# ---------------------------------------------------------------------------
# Statistical builtins
# ---------------------------------------------------------------------------


def _builtin_sum(args: list[Any]) -> float:
    return sum(_coerce_numeric(args))


def _builtin_average(args: list[Any]) -> float | ExcelError:
    nums = _coerce_numeric(args)
    if not nums:
        return ExcelError.DIV0
    return sum(nums) / len(nums)


def _builtin_max(args: list[Any]) -> float:
    if not args:
        raise ValueError("MAX requires at least 1 argument")
    nums = _coerce_numeric(args)
    return max(nums) if nums else 0.0


def _builtin_min(args: list[Any]) -> float:
    if not args:
        raise ValueError("MIN requires at least 1 argument")
    nums = _coerce_numeric(args)
    return min(nums) if nums else 0.0


def _builtin_count(args: list[Any]) -> float:
    """COUNT - counts numeric values only."""
    return float(len(_coerce_numeric(args)))


def _builtin_median(args: list[Any]) -> float | ExcelError:
    nums = _coerce_numeric(args)
    if not nums:
        return ExcelError.NUM
    return statistics.median(nums)


def _builtin_stdev(args: list[Any]) -> float | ExcelError:
    """STDEV - sample standard deviation."""
    nums = _coerce_numeric(args)
    if len(nums) < 2:
        return ExcelError.DIV0
    return statistics.stdev(nums)


def _builtin_var(args: list[Any]) -> float | ExcelError:
    """VAR - sample variance."""
    nums = _coerce_numeric(args)
    if len(nums) < 2:
        return ExcelError.DIV0
    return statistics.variance(nums)


_CRITERIA_OP_RE = re.compile(r"^(>=|<=|<>|>|<|=)(.*)$")


def _parse_criteria(criteria: Any) -> Callable[[Any], bool]:
    """Parse a criteria value into a predicate.

    Supports:
    - Numeric exact match: ``100`` matches cells equal to 100
    - String exact match (case-insensitive): ``"Sales"``
    - Operator prefix: ``">100"``, ``"<=50"``, ``"<>0"``
    - Wildcards: ``"apple*"``, ``"?pple"`` (via fnmatch)
    """
    if isinstance(criteria, (int, float)) and not isinstance(criteria, bool):
        target = float(criteria)
        return lambda v: try_coerce_number(v) == target

    crit_str = _coerce_string(criteria)

    m = _CRITERIA_OP_RE.match(crit_str)
    if m:
        op, val_str = m.group(1), m.group(2).strip()
        threshold = try_coerce_number(val_str)
        if threshold is None:
            val_lower = val_str.lower()
            return lambda v: _compare_values(_coerce_string(v).lower(), val_lower, op)
        return lambda v, t=threshold: _numeric_match(v, t, op)

    if "*" in crit_str or "?" in crit_str:
        pattern = crit_str.lower()
        return lambda v, p=pattern: fnmatch.fnmatch(_coerce_string(v).lower(), p)

    target_num = try_coerce_number(crit_str)
    if target_num is not None:
        return lambda v, t=target_num: try_coerce_number(v) == t
    lower = crit_str.lower()
    return lambda v, l=lower: _coerce_string(v).lower() == l


def _numeric_match(value: Any, threshold: float, op: str) -> bool:
    num = None if isinstance(value, str) else try_coerce_number(value)
    if num is None:
        return op == "<>"
    return _compare_values(num, threshold, op)


def _builtin_countif(raw_args: list[str], ctx: EvalContext) -> float | ExcelError:
    """COUNTIF(range, criteria). Matches against each cell's raw result."""
    if len(raw_args) != 2:
        raise ValueError("COUNTIF requires exactly 2 arguments")
    criteria = ctx.evaluate_formula(raw_args[1])
    if isinstance(criteria, ExcelError):
        return criteria
    predicate = _parse_criteria(criteria)
    values = [ctx.get_cell_value(cell_ref_to_a1(c)) for c in expand_range(raw_args[0])]
    return float(sum(1 for v in values if predicate(v)))


# ---------------------------------------------------------------------------
# Math builtins
# ---------------------------------------------------------------------------


def _quantize(value: float, digits: int, rounding: str) -> float:
    exponent = Decimal(1).scaleb(-digits)
    with localcontext() as dec:
        dec.prec = 60
        return float(Decimal(repr(value)).quantize(exponent, rounding=rounding))


def _rounding_builtin(name: str, rounding: str) -> Callable[[list[Any]], float]:
    def builtin(args: list[Any]) -> float:
        if len(args) < 1 or len(args) > 2:
            raise ValueError(f"{name} requires 1 or 2 arguments")
        value = _number(args, 0, name)
        digits = int(_optional(args, 1))
        return _quantize(value, digits, rounding)

    builtin.__name__ = f"_builtin_{name.lower()}"
    return builtin


# Half-way cases round away from zero, not to even.
_builtin_round = _rounding_builtin("ROUND", ROUND_HALF_UP)
_builtin_roundup = _rounding_builtin("ROUNDUP", ROUND_UP)
_builtin_rounddown = _rounding_builtin("ROUNDDOWN", ROUND_DOWN)


def _builtin_abs(args: list[Any]) -> float:
    if len(args) != 1:
        raise ValueError("ABS requires exactly 1 argument")
    return abs(_number(args, 0, "ABS"))


def _builtin_int(args: list[Any]) -> float:
    if len(args) != 1:
        raise ValueError("INT requires exactly 1 argument")
    return float(math.floor(_number(args, 0, "INT")))


def _builtin_trunc(args: list[Any]) -> float:
    if len(args) < 1 or len(args) > 2:
        raise ValueError("TRUNC requires 1 or 2 arguments")
    value = _number(args, 0, "TRUNC")
    digits = int(_optional(args, 1))
    if digits == 0:
        return float(math.trunc(value))
    return _quantize(value, digits, ROUND_DOWN)


def _builtin_mod(args: list[Any]) -> float | ExcelError:
    if len(args) != 2:
        raise ValueError("MOD requires exactly 2 arguments")
    number = _number(args, 0, "MOD")
    divisor = _number(args, 1, "MOD")
    if divisor == 0:
        return ExcelError.DIV0
    # Result has the sign of the divisor
    return number - divisor * math.floor(number / divisor)


def _builtin_power(args: list[Any]) -> float | ExcelError:
    if len(args) != 2:
        raise ValueError("POWER requires exactly 2 arguments")
    base = _number(args, 0, "POWER")
    exponent = _number(args, 1, "POWER")
    if base < 0 and not exponent.is_integer():
        return ExcelError.NUM
    if base == 0 and exponent < 0:
        return ExcelError.DIV0
    try:
        return base**exponent
    except OverflowError:
        return ExcelError.NUM


def _builtin_sqrt(args: list[Any]) -> float | ExcelError:
    if len(args) != 1:
        raise ValueError("SQRT requires exactly 1 argument")
    value = _number(args, 0, "SQRT")
    if value < 0:
        return ExcelError.NUM
    return math.sqrt(value)


def _builtin_sign(args: list[Any]) -> float:
    if len(args) != 1:
        raise ValueError("SIGN requires exactly 1 argument")
    value = _number(args, 0, "SIGN")
    if value > 0:
        return 1.0
    if value < 0:
        return -1.0
    return 0.0


def _builtin_pi(args: list[Any]) -> float:
    if args:
        raise ValueError("PI takes no arguments")
    return math.pi


def _builtin_exp(args: list[Any]) -> float | ExcelError:
    if len(args) != 1:
        raise ValueError("EXP requires exactly 1 argument")
    try:
        return math.exp(_number(args, 0, "EXP"))
    except OverflowError:
        return ExcelError.NUM


def _builtin_ln(args: list[Any]) -> float | ExcelError:
    if len(args) != 1:
        raise ValueError("LN requires exactly 1 argument")
    value = _number(args, 0, "LN")
    if value <= 0:
        return ExcelError.NUM
    return math.log(value)


def _builtin_log10(args: list[Any]) -> float | ExcelError:
    if len(args) != 1:
        raise ValueError("LOG10 requires exactly 1 argument")
    value = _number(args, 0, "LOG10")
    if value <= 0:
        return ExcelError.NUM
    return math.log10(value)


# ---------------------------------------------------------------------------
# Financial builtins (PV, FV, PMT, NPER, NPV)
# ---------------------------------------------------------------------------


def _builtin_pv(args: list[Any]) -> float:
    """PV(rate, nper, pmt, [fv], [type]).

    Present value of an investment: the total amount that a series of future
    payments is worth right now.
    """
    if len(args) < 3 or len(args) > 5:
        raise ValueError("PV requires 3 to 5 arguments")
    rate = _number(args, 0, "PV")
    nper = _number(args, 1, "PV")
    pmt = _number(args, 2, "PV")
    fv = _optional(args, 3)
    pmt_type = int(_optional(args, 4))

    if rate == 0:
        return -(fv + pmt * nper)
    pv_annuity = pmt * (1 + rate * pmt_type) * (1 - (1 + rate) ** (-nper)) / rate
    pv_fv = fv / (1 + rate) ** nper
    return -(pv_annuity + pv_fv)


def _builtin_fv(args: list[Any]) -> float:
    """FV(rate, nper, pmt, [pv], [type]).

    Future value of an investment based on periodic, constant payments
    and a constant interest rate.
    """
    if len(args) < 3 or len(args) > 5:
        raise ValueError("FV requires 3 to 5 arguments")
    rate = _number(args, 0, "FV")
    nper = _number(args, 1, "FV")
    pmt = _number(args, 2, "FV")
    pv = _optional(args, 3)
    pmt_type = int(_optional(args, 4))

    if rate == 0:
        return -(pv + pmt * nper)
    fv_pv = pv * (1 + rate) ** nper
    fv_annuity = pmt * (1 + rate * pmt_type) * ((1 + rate) ** nper - 1) / rate
    return -(fv_pv + fv_annuity)


def _builtin_pmt(args: list[Any]) -> float | ExcelError:
    """PMT(rate, nper, pv, [fv], [type]).

    Payment for a loan based on constant payments and constant interest rate.
    """
    if len(args) < 3 or len(args) > 5:
        raise ValueError("PMT requires 3 to 5 arguments")
    rate = _number(args, 0, "PMT")
    nper = _number(args, 1, "PMT")
    pv = _number(args, 2, "PMT")
    fv = _optional(args, 3)
    pmt_type = int(_optional(args, 4))

    if nper == 0:
        return ExcelError.NUM
    if rate == 0:
        return -(pv + fv) / nper
    pvif = (1 + rate) ** nper
    return -(rate * (pv * pvif + fv)) / (pvif - 1) / (1 + rate * pmt_type)


def _builtin_nper(args: list[Any]) -> float | ExcelError:
    """NPER(rate, pmt, pv, [fv], [type]).

    Number of periods for an investment with constant payments.
    """
    if len(args) < 3 or len(args) > 5:
        raise ValueError("NPER requires 3 to 5 arguments")
    rate = _number(args, 0, "NPER")
    pmt = _number(args, 1, "NPER")
    pv = _number(args, 2, "NPER")
    fv = _optional(args, 3)
    pmt_type = int(_optional(args, 4))

    if rate == 0:
        if pmt == 0:
            return ExcelError.NUM
        return -(pv + fv) / pmt
    adjusted = pmt * (1 + rate * pmt_type)
    numerator = adjusted - fv * rate
    denominator = adjusted + pv * rate
    if denominator == 0 or numerator / denominator <= 0:
        return ExcelError.NUM
    return math.log(numerator / denominator) / math.log(1 + rate)


def _builtin_npv(args: list[Any]) -> float:
    """NPV(rate, value1, [value2], ...).

    Net present value of a series of cash flows. The first value is
    discounted one full period.
    """
    if len(args) < 2:
        raise ValueError("NPV requires at least 2 arguments (rate + values)")
    rate = _number(args, 0, "NPV")
    values = _coerce_numeric(args[1:])
    return sum(v / (1 + rate) ** (i + 1) for i, v in enumerate(values))


# ---------------------------------------------------------------------------
# Logical builtins (raw arguments)
# ---------------------------------------------------------------------------


def _compare_values(left: Any, right: Any, op: str) -> bool:
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    if op == "<=":
        return left <= right
    if op == "=":
        return left == right
    if op == "<>":
        return left != right
    return False


def _compare(left: Any, right: Any, op: str) -> bool | ExcelError:
    """Compare two resolved operands.

    Numeric when both sides coerce to numbers, otherwise a case-insensitive
    string comparison.
    """
    err = first_error(left, right)
    if err is not None:
        return err
    lf, rf = try_coerce_number(left), try_coerce_number(right)
    if lf is not None and rf is not None:
        return _compare_values(lf, rf, op)
    return _compare_values(_coerce_string(left).lower(), _coerce_string(right).lower(), op)


def _split_comparison(text: str) -> tuple[str, str, str] | None:
    """Split on the first top-level comparison operator, if any."""
    depth = 0
    for i, ch in iter_unquoted(text):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif depth == 0 and ch in "<>=":
            pair = text[i : i + 2]
            op = pair if pair in (">=", "<=", "<>") else ch
            left, right = text[:i].strip(), text[i + len(op) :].strip()
            if not left or not right:
                raise ValueError(f"Incomplete comparison: {text!r}")
            return left, op, right
    return None


def _evaluate_condition(text: str, ctx: EvalContext) -> Any:
    split = _split_comparison(text)
    if split is None:
        return ctx.evaluate_formula(text)
    left, op, right = split
    return _compare(ctx.evaluate_formula(left), ctx.evaluate_formula(right), op)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        num = try_coerce_number(value)
        if num is not None:
            return num != 0
        return value.strip().upper() not in ("", "FALSE")
    return bool(value)


def _builtin_if(raw_args: list[str], ctx: EvalContext) -> Any:
    """IF(condition, value_if_true, [value_if_false]).

    Only the chosen branch is evaluated.
    """
    if len(raw_args) < 2 or len(raw_args) > 3:
        raise ValueError("IF requires 2 or 3 arguments")
    condition = _evaluate_condition(raw_args[0], ctx)
    if isinstance(condition, ExcelError):
        return condition
    if _truthy(condition):
        branch = raw_args[1]
    elif len(raw_args) > 2:
        branch = raw_args[2]
    else:
        return False
    if not branch:
        return 0.0
    return ctx.evaluate_formula(branch)


def _builtin_and(raw_args: list[str], ctx: EvalContext) -> bool | ExcelError:
    if not raw_args:
        raise ValueError("AND requires at least 1 argument")
    result = True
    for arg in raw_args:
        value = _evaluate_condition(arg, ctx)
        if isinstance(value, ExcelError):
            return value
        result = result and _truthy(value)
    return result


def _builtin_or(raw_args: list[str], ctx: EvalContext) -> bool | ExcelError:
    if not raw_args:
        raise ValueError("OR requires at least 1 argument")
    result = False
    for arg in raw_args:
        value = _evaluate_condition(arg, ctx)
        if isinstance(value, ExcelError):
            return value
        result = result or _truthy(value)
    return result


def _builtin_not(raw_args: list[str], ctx: EvalContext) -> bool | ExcelError:
    if len(raw_args) != 1:
        raise ValueError("NOT requires exactly 1 argument")
    value = _evaluate_condition(raw_args[0], ctx)
    if isinstance(value, ExcelError):
        return value
    return not _truthy(value)


def _builtin_iferror(raw_args: list[str], ctx: EvalContext) -> Any:
    """IFERROR(value, value_if_error).

    Circular-reference errors are not replaced so that a cycle stays visible.
    """
    if len(raw_args) != 2:
        raise ValueError("IFERROR requires exactly 2 arguments")
    value = ctx.evaluate_formula(raw_args[0])
    if isinstance(value, ExcelError) and value is not ExcelError.CIRCULAR:
        return ctx.evaluate_formula(raw_args[1])
    return value


def _builtin_true(args: list[Any]) -> bool:
    if args:
        raise ValueError("TRUE takes no arguments")
    return True


def _builtin_false(args: list[Any]) -> bool:
    if args:
        raise ValueError("FALSE takes no arguments")
    return False


# ---------------------------------------------------------------------------
# Text builtins
# ---------------------------------------------------------------------------


def _builtin_concatenate(args: list[Any]) -> str:
    if not args:
        raise ValueError("CONCATENATE requires at least 1 argument")
    parts: list[str] = []
    for a in args:
        if isinstance(a, list):
            parts.extend(_coerce_string(v) for v in a)
        else:
            parts.append(_coerce_string(a))
    return "".join(parts)


def _builtin_len(args: list[Any]) -> float:
    if len(args) != 1:
        raise ValueError("LEN requires exactly 1 argument")
    return float(len(_coerce_string(args[0])))


def _builtin_upper(args: list[Any]) -> str:
    if len(args) != 1:
        raise ValueError("UPPER requires exactly 1 argument")
    return _coerce_string(args[0]).upper()


def _builtin_lower(args: list[Any]) -> str:
    if len(args) != 1:
        raise ValueError("LOWER requires exactly 1 argument")
    return _coerce_string(args[0]).lower()


def _builtin_trim(args: list[Any]) -> str:
    """TRIM: remove leading/trailing spaces and collapse internal spaces."""
    if len(args) != 1:
        raise ValueError("TRIM requires exactly 1 argument")
    return " ".join(_coerce_string(args[0]).split())


def _builtin_left(args: list[Any]) -> str | ExcelError:
    if len(args) < 1 or len(args) > 2:
        raise ValueError("LEFT requires 1 or 2 arguments")
    text = _coerce_string(args[0])
    num_chars = int(_optional(args, 1, 1.0))
    if num_chars < 0:
        return ExcelError.VALUE
    return text[:num_chars]


def _builtin_right(args: list[Any]) -> str | ExcelError:
    if len(args) < 1 or len(args) > 2:
        raise ValueError("RIGHT requires 1 or 2 arguments")
    text = _coerce_string(args[0])
    num_chars = int(_optional(args, 1, 1.0))
    if num_chars < 0:
        return ExcelError.VALUE
    return text[-num_chars:] if num_chars > 0 else ""


def _builtin_mid(args: list[Any]) -> str | ExcelError:
    if len(args) != 3:
        raise ValueError("MID requires exactly 3 arguments")
    text = _coerce_string(args[0])
    start = int(_number(args, 1, "MID"))
    num_chars = int(_number(args, 2, "MID"))
    if start < 1 or num_chars < 0:
        return ExcelError.VALUE
    # 1-indexed
    return text[start - 1 : start - 1 + num_chars]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

_BUILTINS: dict[str, FunctionHandler] = {
    # Statistical
    "SUM": _resolved(_builtin_sum),
    "AVERAGE": _resolved(_builtin_average),
    "AVG": _resolved(_builtin_average),
    "MAX": _resolved(_builtin_max),
    "MIN": _resolved(_builtin_min),
    "COUNT": _resolved(_builtin_count),
    "MEDIAN": _resolved(_builtin_median),
    "STDEV": _resolved(_builtin_stdev),
    "VAR": _resolved(_builtin_var),
    "COUNTIF": _builtin_countif,
    # Math
    "ABS": _resolved(_builtin_abs),
    "ROUND": _resolved(_builtin_round),
    "ROUNDUP": _resolved(_builtin_roundup),
    "ROUNDDOWN": _resolved(_builtin_rounddown),
    "INT": _resolved(_builtin_int),
    "TRUNC": _resolved(_builtin_trunc),
    "MOD": _resolved(_builtin_mod),
    "POWER": _resolved(_builtin_power),
    "SQRT": _resolved(_builtin_sqrt),
    "SIGN": _resolved(_builtin_sign),
    "PI": _resolved(_builtin_pi),
    "EXP": _resolved(_builtin_exp),
    "LN": _resolved(_builtin_ln),
    "LOG10": _resolved(_builtin_log10),
    # Financial
    "PV": _resolved(_builtin_pv),
    "FV": _resolved(_builtin_fv),
    "PMT": _resolved(_builtin_pmt),
    "NPER": _resolved(_builtin_nper),
    "NPV": _resolved(_builtin_npv),
    # Logical
    "IF": _builtin_if,
    "AND": _builtin_and,
    "OR": _builtin_or,
    "NOT": _builtin_not,
    "IFERROR": _builtin_iferror,
    "TRUE": _resolved(_builtin_true),
    "FALSE": _resolved(_builtin_false),
    # Text
    "CONCATENATE": _resolved(_builtin_concatenate),
    "CONCAT": _resolved(_builtin_concatenate),
    "LEN": _resolved(_builtin_len),
    "UPPER": _resolved(_builtin_upper),
    "LOWER": _resolved(_builtin_lower),
    "TRIM": _resolved(_builtin_trim),
    "LEFT": _resolved(_builtin_left),
    "RIGHT": _resolved(_builtin_right),
    "MID": _resolved(_builtin_mid),
}


def register_builtins(registry: FunctionRegistry) -> None:
    """Register the standard library into *registry* (overwrites same names)."""
    for name, handler in _BUILTINS.items():
        registry.register(name, handler)
