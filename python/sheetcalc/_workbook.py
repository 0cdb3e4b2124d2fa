"""Workbook: an ordered collection of worksheets, the engine's input."""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from sheetcalc._worksheet import Worksheet


class Workbook:
    """Ordered sheets addressed by name.

    ``Workbook()`` starts with one empty ``Sheet1``; ``Workbook.from_sheets``
    builds one from ``[{"name": ..., "data": rows}, ...]``.
    """

    def __init__(self, title: str | None = "Sheet1") -> None:
        self._sheet_names: list[str] = []
        self._sheets: dict[str, Worksheet] = {}
        if title is not None:
            self.create_sheet(title)

    @classmethod
    def from_sheets(
        cls, sheets: Iterable[Mapping[str, Any] | tuple[str, Iterable[Any]]]
    ) -> Workbook:
        """Build a workbook from sheet mappings or ``(name, rows)`` pairs."""
        wb = cls(title=None)
        for sheet in sheets:
            if isinstance(sheet, Mapping):
                name, rows = sheet["name"], sheet.get("data") or []
            else:
                name, rows = sheet
            wb.create_sheet(name, rows)
        return wb

    @classmethod
    def from_json(cls, text: str) -> Workbook:
        """Parse the JSON sheet-list form (a single sheet object is accepted)."""
        data = json.loads(text)
        if isinstance(data, Mapping):
            data = [data]
        if not isinstance(data, list):
            raise ValueError("Workbook JSON must be a list of sheets")
        return cls.from_sheets(data)

    # ------------------------------------------------------------------
    # Sheet access
    # ------------------------------------------------------------------

    @property
    def sheetnames(self) -> list[str]:
        return list(self._sheet_names)

    @property
    def active(self) -> Worksheet | None:
        """Return the first sheet, or None if no sheets exist."""
        if self._sheet_names:
            return self._sheets[self._sheet_names[0]]
        return None

    def __getitem__(self, name: str) -> Worksheet:
        if name not in self._sheets:
            raise KeyError(f"Worksheet '{name}' does not exist")
        return self._sheets[name]

    def get(self, name: str) -> Worksheet | None:
        return self._sheets.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._sheets

    def __iter__(self) -> Iterator[str]:
        return iter(self._sheet_names)

    def __len__(self) -> int:
        return len(self._sheet_names)

    def create_sheet(
        self, title: str, rows: Iterable[Iterable[Any]] | None = None
    ) -> Worksheet:
        """Add a new sheet at the end."""
        if title in self._sheets:
            raise ValueError(f"Sheet '{title}' already exists")
        ws = Worksheet(self, title, rows)
        self._sheet_names.append(title)
        self._sheets[title] = ws
        return ws

    def _rename_sheet(self, old: str, new: str) -> None:
        if new in self._sheets:
            raise ValueError(f"Sheet '{new}' already exists")
        idx = self._sheet_names.index(old)
        self._sheet_names[idx] = new
        self._sheets[new] = self._sheets.pop(old)

    def to_sheets(self) -> list[dict[str, Any]]:
        return [self._sheets[name].to_dict() for name in self._sheet_names]

    def __repr__(self) -> str:
        return f"<Workbook sheets={self._sheet_names}>"


def load_workbook(filename: str | os.PathLike[str]) -> Workbook:
    """Read a workbook from a JSON file of ``[{"name", "data"}, ...]``."""
    with open(filename, encoding="utf-8") as fh:
        return Workbook.from_json(fh.read())
