"""A1-notation helpers: column letters, cell references and ranges."""

from __future__ import annotations

import re
from dataclasses import dataclass

# Optional sheet prefix: 'My Sheet'!A1 or Sheet1!A1
_SHEET_PREFIX = r"(?:'(?P<quoted>[^']+)'|(?P<bare>[A-Za-z0-9_.]+))!"
_CELL_RE = re.compile(
    rf"^(?:{_SHEET_PREFIX})?(?P<col_abs>\$?)(?P<col>[A-Za-z]{{1,3}})"
    rf"(?P<row_abs>\$?)(?P<row>\d+)$"
)


@dataclass(frozen=True)
class CellRef:
    """A parsed cell reference with a 0-based row and column."""

    row: int
    col: int
    sheet: str | None = None
    absolute_row: bool = False
    absolute_col: bool = False


@dataclass(frozen=True)
class RangeRef:
    """A rectangular range; corners are normalised so start <= end."""

    start_row: int
    start_col: int
    end_row: int
    end_col: int
    sheet: str | None = None

    @property
    def n_rows(self) -> int:
        return self.end_row - self.start_row + 1

    @property
    def n_cols(self) -> int:
        return self.end_col - self.start_col + 1


def column_to_index(letters: str) -> int:
    """Convert column letters to a 0-based index: ``A`` -> 0, ``AA`` -> 26.

    Columns are bijective base-26 (no zero digit), so each letter contributes
    ``1..26`` and the final sum is shifted down by one.
    """
    if not letters or not letters.isascii() or not letters.isalpha():
        raise ValueError(f"Invalid column letters: {letters!r}")
    n = 0
    for ch in letters.upper():
        n = n * 26 + (ord(ch) - ord("A") + 1)
    return n - 1


def index_to_column(index: int) -> str:
    """Convert a 0-based column index to letters: 0 -> ``A``, 26 -> ``AA``."""
    if index < 0:
        raise ValueError(f"Column index must be non-negative, got {index}")
    letters = ""
    n = index + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def rowcol_to_a1(row: int, col: int) -> str:
    """0-based (row, col) -> ``"B3"``."""
    return f"{index_to_column(col)}{row + 1}"


def split_sheet(ref: str) -> tuple[str | None, str]:
    """Split ``'My Sheet'!A1`` into ``("My Sheet", "A1")``."""
    if "!" not in ref:
        return None, ref
    sheet, local = ref.rsplit("!", 1)
    sheet = sheet.strip()
    if len(sheet) >= 2 and sheet[0] == sheet[-1] == "'":
        sheet = sheet[1:-1]
    return sheet or None, local


def parse_cell_ref(ref: str) -> CellRef | None:
    """Parse ``A1``, ``$A$1``, ``Sheet1!A1`` or ``'My Sheet'!A1``.

    Returns None for anything unparseable; callers resolve that to 0.
    """
    m = _CELL_RE.match(ref.strip())
    if not m:
        return None
    row = int(m.group("row")) - 1
    if row < 0:
        return None
    return CellRef(
        row=row,
        col=column_to_index(m.group("col")),
        sheet=m.group("quoted") or m.group("bare"),
        absolute_row=bool(m.group("row_abs")),
        absolute_col=bool(m.group("col_abs")),
    )


def parse_range_ref(text: str) -> RangeRef | None:
    """Parse ``A1:B10`` (sheet prefix allowed on the start corner).

    A sheet prefix on the end corner must agree with the start. Returns None
    for malformed ranges.
    """
    if ":" not in text:
        return None
    start_text, end_text = text.strip().rsplit(":", 1)
    start = parse_cell_ref(start_text)
    end = parse_cell_ref(end_text)
    if start is None or end is None:
        return None
    if end.sheet is not None and end.sheet != start.sheet:
        return None
    return RangeRef(
        start_row=min(start.row, end.row),
        start_col=min(start.col, end.col),
        end_row=max(start.row, end.row),
        end_col=max(start.col, end.col),
        sheet=start.sheet,
    )


def expand_range(range_ref: str | RangeRef) -> list[CellRef]:
    """Expand a range into row-major cell coordinates (``[]`` if malformed)."""
    rng = parse_range_ref(range_ref) if isinstance(range_ref, str) else range_ref
    if rng is None:
        return []
    return [
        CellRef(row=r, col=c, sheet=rng.sheet)
        for r in range(rng.start_row, rng.end_row + 1)
        for c in range(rng.start_col, rng.end_col + 1)
    ]


def cell_ref_to_a1(ref: CellRef) -> str:
    """Render a CellRef back to A1 text, keeping ``$`` markers and sheet."""
    text = (
        ("$" if ref.absolute_col else "")
        + index_to_column(ref.col)
        + ("$" if ref.absolute_row else "")
        + str(ref.row + 1)
    )
    if ref.sheet:
        if " " in ref.sheet:
            return f"'{ref.sheet}'!{text}"
        return f"{ref.sheet}!{text}"
    return text
