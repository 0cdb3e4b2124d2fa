"""Worksheet: a named, ragged grid of source cells with ``ws['A1']`` access."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any

from sheetcalc._cell import EMPTY_CELL, Cell
from sheetcalc._utils import parse_cell_ref

if TYPE_CHECKING:
    from sheetcalc._workbook import Workbook


def _local_coords(key: str) -> tuple[int, int]:
    ref = parse_cell_ref(key)
    if ref is None or ref.sheet is not None:
        raise KeyError(f"Invalid cell reference: {key!r}")
    return ref.row, ref.col


class Worksheet:
    """A single sheet. Rows need not be the same length."""

    __slots__ = ("_workbook", "_title", "_rows")

    def __init__(
        self,
        workbook: Workbook | None,
        title: str,
        rows: Iterable[Iterable[Any]] | None = None,
    ) -> None:
        self._workbook = workbook
        self._title = title
        self._rows: list[list[Cell]] = [
            [Cell.from_raw(raw) for raw in row] for row in (rows or [])
        ]

    @property
    def title(self) -> str:
        return self._title

    @title.setter
    def title(self, value: str) -> None:
        """Rename this worksheet, keeping the workbook's index in sync."""
        old = self._title
        if old == value:
            return
        wb = self._workbook
        if wb is not None:
            wb._rename_sheet(old, value)  # noqa: SLF001
        self._title = value

    # ------------------------------------------------------------------
    # Cell access
    # ------------------------------------------------------------------

    def __getitem__(self, key: str) -> Cell:
        """``ws['A1']`` -> Cell (an empty cell outside the grid)."""
        row, col = _local_coords(key)
        return self.cell_at(row, col)

    def __setitem__(self, key: str, value: Any) -> None:
        """``ws['A1'] = 42`` or ``ws['A1'] = {"value": 42, "format": "0.00"}``."""
        row, col = _local_coords(key)
        self._put(row, col, Cell.from_raw(value))

    def set(self, key: str, value: Any, number_format: str | None = None) -> Cell:
        """Set a cell's value together with its number format code."""
        row, col = _local_coords(key)
        cell = Cell.from_raw({"value": value, "format": number_format})
        self._put(row, col, cell)
        return cell

    def cell_at(self, row: int, col: int) -> Cell:
        """Cell at 0-based (row, col); EMPTY when outside the grid."""
        if 0 <= row < len(self._rows) and 0 <= col < len(self._rows[row]):
            return self._rows[row][col]
        return EMPTY_CELL

    def _put(self, row: int, col: int, cell: Cell) -> None:
        while len(self._rows) <= row:
            self._rows.append([])
        target = self._rows[row]
        while len(target) <= col:
            target.append(EMPTY_CELL)
        target[col] = cell

    def append(self, iterable: Iterable[Any]) -> None:
        """Append a row of raw values below the last row."""
        self._rows.append([Cell.from_raw(raw) for raw in iterable])

    # ------------------------------------------------------------------
    # Iteration / dimensions
    # ------------------------------------------------------------------

    def iter_rows(self) -> Iterator[list[Cell]]:
        """Yield each row (a list of Cells) in order."""
        for row in self._rows:
            yield list(row)

    @property
    def rows(self) -> list[list[Cell]]:
        return [list(row) for row in self._rows]

    @property
    def max_row(self) -> int:
        return len(self._rows)

    @property
    def max_column(self) -> int:
        return max((len(r) for r in self._rows), default=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self._title,
            "data": [[cell.to_dict() for cell in row] for row in self._rows],
        }

    def __repr__(self) -> str:
        return f"<Worksheet {self._title!r} {self.max_row}x{self.max_column}>"
