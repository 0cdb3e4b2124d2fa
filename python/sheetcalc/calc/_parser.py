"""Formula text processing: argument splitting, call reduction, references.

Formulas are evaluated by text substitution rather than through a syntax
tree: the innermost function call is evaluated and its result spliced back
as a literal until no call remains, cell references are then replaced by
their values, and whatever is left must be plain arithmetic.

Arithmetic follows spreadsheet precedence where it differs from Python's:
a leading sign binds tighter than ``^`` (``-2^2`` is 4). ``^`` itself stays
right-associative.
"""

from __future__ import annotations

import ast
import math
import operator
import re
from decimal import Decimal
from typing import Any, Callable, Iterator

from sheetcalc._utils import expand_range, parse_cell_ref, rowcol_to_a1
from sheetcalc.calc._coerce import coerce_to_number
from sheetcalc.calc._errors import ERROR_TOKEN_RE, ExcelError, FormulaSyntaxError

# Call reduction gives up after this many passes per character of formula.
REDUCTION_PASS_FACTOR = 4

# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------

# Single cell ref: A1, $A$1, $A1, A$1 (with optional sheet prefix)
_SHEET_PREFIX = r"(?:'([^']+)'!|([A-Za-z0-9_.]+)!)"
_CELL_REF = r"\$?([A-Z]{1,3})\$?(\d+)"
_SINGLE_REF_RE = re.compile(
    rf"(?<![\w.$'!])(?:{_SHEET_PREFIX})?{_CELL_REF}(?![\w(])",
    re.IGNORECASE,
)

# Range: A1:B5 (with optional sheet prefix, applied to start only)
_RANGE_REF_RE = re.compile(
    rf"(?:{_SHEET_PREFIX})?{_CELL_REF}\s*:\s*{_CELL_REF}",
    re.IGNORECASE,
)

# Function call start: SUM(, LOG10(, but not the "UM(" inside "SUM("
_FUNC_RE = re.compile(r"(?<![\w.$!])([A-Za-z_][\w.]*)\s*\(")

# Strings in formulas (to skip refs inside string literals)
_STRING_RE = re.compile(r'"(?:[^"\\]|\\.|"")*"')

_NUMBER_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)$")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_ARITHMETIC_RE = re.compile(r"^[\d+\-*/().\s]+$")

_NO_LITERAL = object()


# ---------------------------------------------------------------------------
# Quote-aware scanning
# ---------------------------------------------------------------------------


def iter_unquoted(text: str, start: int = 0) -> Iterator[tuple[int, str]]:
    """Yield ``(index, char)`` for every character outside quoted strings.

    Both quote styles are recognised; inside a string a backslash escapes
    the next character and a doubled quote stands for itself.
    """
    quote: str | None = None
    i, n = start, len(text)
    while i < n:
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                if i + 1 < n and text[i + 1] == quote:
                    i += 2
                    continue
                quote = None
        elif ch in ('"', "'"):
            quote = ch
        else:
            yield i, ch
        i += 1


def _find_matching_paren(expr: str, start: int) -> int:
    """Index of the ``')'`` matching the ``'('`` at *expr[start]*, or -1."""
    depth = 0
    for i, ch in iter_unquoted(expr, start):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _call_starts(expr: str) -> Iterator[re.Match[str]]:
    """Function-call matches that are not inside a quoted string."""
    unquoted = {i for i, _ in iter_unquoted(expr)}
    for m in _FUNC_RE.finditer(expr):
        if m.start() in unquoted:
            yield m


def _string_literal_end(text: str) -> int:
    """End index (exclusive) of the double-quoted string opening *text*."""
    i, n = 1, len(text)
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            if i + 1 < n and text[i + 1] == '"':
                i += 2
                continue
            return i + 1
        i += 1
    return -1


def _unquote(text: str) -> str:
    body = text[1:-1]
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            out.append(body[i + 1])
            i += 2
            continue
        if ch == '"' and i + 1 < len(body) and body[i + 1] == '"':
            out.append('"')
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


# ---------------------------------------------------------------------------
# Arguments and calls
# ---------------------------------------------------------------------------


def split_arguments(args_text: str) -> list[str]:
    """Split a call's argument text on top-level commas.

    ``"MAX(1,2),3"`` -> ``["MAX(1,2)", "3"]``. Commas inside nested
    parentheses or quoted strings do not split. Arguments are stripped.
    """
    if not args_text.strip():
        return []
    args: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None
    i, n = 0, len(args_text)
    while i < n:
        ch = args_text[i]
        if quote:
            current.append(ch)
            if ch == "\\" and i + 1 < n:
                current.append(args_text[i + 1])
                i += 2
                continue
            if ch == quote:
                if i + 1 < n and args_text[i + 1] == quote:
                    current.append(quote)
                    i += 2
                    continue
                quote = None
        elif ch in ('"', "'"):
            quote = ch
            current.append(ch)
        elif ch == "(":
            depth += 1
            current.append(ch)
        elif ch == ")":
            depth -= 1
            current.append(ch)
        elif ch == "," and depth == 0:
            args.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    args.append("".join(current).strip())
    return args


def match_function_call(expr: str) -> tuple[str, str] | None:
    """If *expr* is exactly ``FUNC(balanced_args)``, return ``(name, args_str)``.

    ``SUM(A1:A5)*2`` is NOT matched (there's trailing content after the
    close-paren).
    """
    stripped = expr.strip()
    m = _FUNC_RE.match(stripped)
    if not m:
        return None
    open_idx = m.end() - 1
    close_idx = _find_matching_paren(stripped, open_idx)
    if close_idx >= 0 and close_idx == len(stripped) - 1:
        return (m.group(1), stripped[open_idx + 1 : close_idx])
    return None


def find_innermost_call(expr: str) -> tuple[int, int, str, str] | None:
    """Locate the first call whose arguments contain no other call.

    Returns ``(start, end, name, args_text)`` with *end* exclusive, or None
    when *expr* contains no call.
    """
    for m in _call_starts(expr):
        open_idx = m.end() - 1
        close_idx = _find_matching_paren(expr, open_idx)
        if close_idx < 0:
            raise FormulaSyntaxError(f"Unbalanced parentheses in {expr!r}")
        args_text = expr[open_idx + 1 : close_idx]
        if next(_call_starts(args_text), None) is not None:
            continue
        return m.start(), close_idx + 1, m.group(1), args_text
    return None


def _number_text(value: float | int) -> str:
    if isinstance(value, int):
        return str(value)
    # repr() is the shortest round-tripping form; Decimal drops the exponent.
    return format(Decimal(repr(value)), "f")


def format_literal(value: Any) -> str:
    """Render a value so it can be spliced back into formula text.

    Numbers are parenthesised so ``-PMT(...)`` stays a negation of the
    result, strings are double-quoted, errors become their code.
    """
    if isinstance(value, ExcelError):
        return value.code
    if value is None:
        return "(0)"
    if isinstance(value, bool):
        return "(1)" if value else "(0)"
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return ExcelError.NUM.code
        return f"({_number_text(value)})"
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def reduce_embedded_calls(
    expr: str,
    call: Callable[[str, str], Any],
    max_passes: int | None = None,
) -> str:
    """Evaluate function calls innermost-first until none remain.

    *call* receives ``(name, args_text)`` and returns the call's value, which
    is spliced back via :func:`format_literal`. An expression without calls
    is returned unchanged.
    """
    limit = max_passes if max_passes is not None else REDUCTION_PASS_FACTOR * max(len(expr), 1)
    passes = 0
    while True:
        found = find_innermost_call(expr)
        if found is None:
            return expr
        passes += 1
        if passes > limit:
            raise FormulaSyntaxError(f"Call reduction did not settle for {expr!r}")
        start, end, name, args_text = found
        expr = expr[:start] + format_literal(call(name, args_text)) + expr[end:]


# ---------------------------------------------------------------------------
# Literals, references and arithmetic
# ---------------------------------------------------------------------------


def parse_literal(text: str) -> Any:
    """Value of a number, string, boolean or error literal; ``_NO_LITERAL`` otherwise."""
    text = text.strip()
    if _NUMBER_RE.match(text):
        return int(text) if _INTEGER_RE.match(text) else float(text)
    if text.startswith('"') and _string_literal_end(text) == len(text):
        return _unquote(text)
    upper = text.upper()
    if upper == "TRUE":
        return True
    if upper == "FALSE":
        return False
    if ERROR_TOKEN_RE.fullmatch(upper):
        return ExcelError.of(upper)
    return _NO_LITERAL


def substitute_references(expr: str, resolve: Callable[[str], Any]) -> str:
    """Replace each cell reference with its coerced value (or error code)."""

    def _replace(m: re.Match[str]) -> str:
        value = resolve(m.group(0))
        if isinstance(value, ExcelError):
            return value.code
        return format_literal(coerce_to_number(value))

    return _SINGLE_REF_RE.sub(_replace, expr)


_BIN_OPS: dict[type[ast.operator], Callable[[float, float], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type[ast.unaryop], Callable[[float], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _eval_node(node: ast.AST, text: str) -> Any:
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        return float(node.value)
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        return _BIN_OPS[type(node.op)](_eval_node(node.left, text), _eval_node(node.right, text))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _eval_unary(node, text)
    raise FormulaSyntaxError(f"Unsupported syntax: {type(node).__name__}")


def _eval_unary(node: ast.UnaryOp, text: str) -> Any:
    """Apply leading signs, binding them tighter than ``^``.

    Python reads ``-2**2`` as ``-(2**2)``; a spreadsheet reads ``-2^2`` as
    ``(-2)^2``. The signs move onto the base unless the source text puts the
    power inside parentheses.
    """
    signs: list[Callable[[float], Any]] = []
    operand: ast.AST = node
    while isinstance(operand, ast.UnaryOp) and type(operand.op) in _UNARY_OPS:
        signs.append(_UNARY_OPS[type(operand.op)])
        start, operand = operand.col_offset, operand.operand
        if "(" in text[start:operand.col_offset]:
            break
    else:
        if isinstance(operand, ast.BinOp) and isinstance(operand.op, ast.Pow):
            base = _eval_node(operand.left, text)
            for sign in reversed(signs):
                base = sign(base)
            return base ** _eval_node(operand.right, text)
    value = _eval_node(operand, text)
    for sign in reversed(signs):
        value = sign(value)
    return value


def evaluate_arithmetic(expr: str) -> float | ExcelError:
    """Evaluate plain arithmetic: numbers, ``+ - * / ^`` and parentheses.

    Anything outside that character set is rejected before parsing, so
    formula text can never reach arbitrary code.
    """
    text = expr.replace("^", "**").strip()
    if not _ARITHMETIC_RE.match(text):
        raise FormulaSyntaxError(f"Not plain arithmetic: {expr!r}")
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as exc:
        raise FormulaSyntaxError(f"Malformed expression: {expr!r}") from exc
    try:
        result = _eval_node(tree.body, text)
    except ZeroDivisionError:
        return ExcelError.DIV0
    except OverflowError:
        return ExcelError.NUM
    if isinstance(result, complex) or not math.isfinite(result):
        return ExcelError.NUM
    return result


def evaluate_expression(
    expr: str,
    *,
    call: Callable[[str, str], Any],
    resolve: Callable[[str], Any],
    max_passes: int | None = None,
) -> Any:
    """Evaluate formula text (no leading ``=``).

    *call* evaluates ``(name, args_text)``; *resolve* returns the raw value of
    a cell reference. A lone call, literal or reference returns its value
    unchanged (strings included); anything else must reduce to arithmetic.
    """
    text = expr.strip()
    if not text:
        raise FormulaSyntaxError("Empty expression")

    whole = match_function_call(text)
    if whole is not None:
        return call(*whole)

    literal = parse_literal(text)
    if literal is not _NO_LITERAL:
        return literal

    if parse_cell_ref(text) is not None:
        return resolve(text)

    reduced = reduce_embedded_calls(text, call, max_passes).strip()
    literal = parse_literal(reduced)
    if literal is not _NO_LITERAL:
        return literal
    if '"' in reduced:
        raise FormulaSyntaxError(f"Text cannot be used in arithmetic: {expr!r}")

    substituted = substitute_references(reduced, resolve)
    err = ERROR_TOKEN_RE.search(substituted)
    if err:
        return ExcelError.of(err.group(0))
    return evaluate_arithmetic(substituted)


# ---------------------------------------------------------------------------
# Reference extraction
# ---------------------------------------------------------------------------


def _strip_strings(formula: str) -> str:
    """Remove string literals so refs inside quotes aren't matched."""
    return _STRING_RE.sub("", formula)


def parse_references(formula: str, current_sheet: str = "Sheet1") -> list[str]:
    """Extract all single cell references from a formula.

    Returns canonical "SheetName!A1" strings (no dollar signs, unquoted).
    Does NOT include range references - use parse_range_references for those.
    """
    clean = _strip_strings(formula)
    refs: list[str] = []
    seen: set[str] = set()

    # First extract ranges so we can skip their individual refs
    range_spans = [(m.start(), m.end()) for m in _RANGE_REF_RE.finditer(clean)]

    for m in _SINGLE_REF_RE.finditer(clean):
        pos = m.start()
        if any(s <= pos < e for s, e in range_spans):
            continue
        sheet = m.group(1) or m.group(2) or current_sheet
        canonical = f"{sheet}!{m.group(3).upper()}{m.group(4)}"
        if canonical not in seen:
            refs.append(canonical)
            seen.add(canonical)

    return refs


def parse_range_references(formula: str, current_sheet: str = "Sheet1") -> list[str]:
    """Extract all range references from a formula.

    Returns canonical "SheetName!A1:B5" strings.
    """
    clean = _strip_strings(formula)
    ranges: list[str] = []
    seen: set[str] = set()

    for m in _RANGE_REF_RE.finditer(clean):
        sheet = m.group(1) or m.group(2) or current_sheet
        canonical = (
            f"{sheet}!{m.group(3).upper()}{m.group(4)}:{m.group(5).upper()}{m.group(6)}"
        )
        if canonical not in seen:
            ranges.append(canonical)
            seen.add(canonical)

    return ranges


def all_references(formula: str, current_sheet: str = "Sheet1") -> list[str]:
    """Extract all cell references (single + range-expanded) from a formula.

    Returns canonical "SheetName!A1" strings with ranges fully expanded.
    """
    refs: list[str] = []
    seen: set[str] = set()

    for ref in parse_references(formula, current_sheet):
        if ref not in seen:
            refs.append(ref)
            seen.add(ref)

    for rng in parse_range_references(formula, current_sheet):
        sheet = rng.rsplit("!", 1)[0]
        for cell in expand_range(rng.rsplit("!", 1)[1]):
            ref = f"{sheet}!{rowcol_to_a1(cell.row, cell.col)}"
            if ref not in seen:
                refs.append(ref)
                seen.add(ref)

    return refs
