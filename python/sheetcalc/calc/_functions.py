"""Function registry: case-insensitive name -> handler lookup.

A handler receives the raw argument strings of a call plus an
:class:`EvalContext`, and returns a number, string, bool or ExcelError::

    def double(raw_args, ctx):
        return 2 * coerce_to_number(ctx.evaluate_formula(raw_args[0]))

    registry.register("double", double)   # callable as =DOUBLE(A1)
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

from sheetcalc.calc._errors import ExcelError

CellResult = float | int | str | bool | ExcelError


@runtime_checkable
class EvalContext(Protocol):
    """What a function handler may ask of the evaluator."""

    def get_cell_value(self, ref: str) -> Any:
        """Raw result of a single cell reference (0 if unparseable)."""
        ...

    def get_range_values(self, range_ref: str) -> list[float]:
        """Numeric results of a range in row-major order.

        Cells whose value cannot be coerced to a number are skipped; a
        malformed range yields ``[]``.
        """
        ...

    def evaluate_formula(self, text: str) -> Any:
        """Evaluate an expression (a function argument) in the caller's sheet."""
        ...


FunctionHandler = Callable[[list[str], EvalContext], Any]


class FunctionRegistry:
    """Registry of callable function implementations.

    Starts empty; ``FunctionRegistry.with_builtins()`` returns one populated
    with the standard library from :mod:`sheetcalc.calc._builtins`.
    """

    def __init__(self) -> None:
        self._functions: dict[str, FunctionHandler] = {}

    @classmethod
    def with_builtins(cls) -> FunctionRegistry:
        from sheetcalc.calc._builtins import register_builtins

        registry = cls()
        register_builtins(registry)
        return registry

    def register(self, name: str, handler: FunctionHandler) -> None:
        if not name or not name.strip():
            raise ValueError("Function name must be non-empty")
        if not callable(handler):
            raise TypeError(f"Handler for {name!r} is not callable")
        self._functions[name.strip().upper()] = handler

    def unregister(self, name: str) -> None:
        self._functions.pop(name.upper(), None)

    def get(self, name: str) -> FunctionHandler | None:
        return self._functions.get(name.upper())

    def has(self, name: str) -> bool:
        return name.upper() in self._functions

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def __len__(self) -> int:
        return len(self._functions)

    @property
    def names(self) -> frozenset[str]:
        return frozenset(self._functions.keys())


def default_registry() -> FunctionRegistry:
    """A fresh registry holding the standard function library."""
    return FunctionRegistry.with_builtins()
