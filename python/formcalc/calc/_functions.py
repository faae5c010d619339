"""Numeric coercion and the closed set of aggregate functions."""

from __future__ import annotations

import math
import re
from typing import Any, Callable

# ---------------------------------------------------------------------------
# Coercion: any stored answer -> the number used in arithmetic
# ---------------------------------------------------------------------------

# Leading numeric prefix, like a lenient parseFloat ("12px" -> 12)
_NUMERIC_PREFIX_RE = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def coerce_number(value: Any) -> float:
    """Map a raw field value to a finite float.

    None / "" / non-numeric strings / objects (file answers, lists, dicts) -> 0.
    Booleans -> 1 / 0.  NaN and infinities -> 0.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        try:
            num = float(value)
        except OverflowError:
            return 0.0
    elif isinstance(value, str):
        m = _NUMERIC_PREFIX_RE.match(value)
        if not m:
            return 0.0
        try:
            num = float(m.group(0))
        except ValueError:
            return 0.0
    else:
        return 0.0
    return num if math.isfinite(num) else 0.0


# ---------------------------------------------------------------------------
# Aggregates.  Each takes a list of already-evaluated float arguments.
# ---------------------------------------------------------------------------


def _builtin_sum(args: list[float]) -> float:
    return math.fsum(args)


def _builtin_avg(args: list[float]) -> float:
    return math.fsum(args) / len(args)


def _builtin_max(args: list[float]) -> float:
    return max(args)


def _builtin_min(args: list[float]) -> float:
    return min(args)


AGGREGATE_FUNCTIONS: dict[str, Callable[[list[float]], float]] = {
    "SUM": _builtin_sum,
    "AVG": _builtin_avg,
    "MAX": _builtin_max,
    "MIN": _builtin_min,
}


def is_supported(func_name: str) -> bool:
    """Check if a name is one of the recognised aggregate functions."""
    return func_name.upper() in AGGREGATE_FUNCTIONS


class FunctionRegistry:
    """Registry of aggregate implementations, keyed by upper-case name.

    Starts with the builtins.  Registered functions must be pure reducers over
    a non-empty list of floats; anything else would widen the formula grammar.
    """

    def __init__(self) -> None:
        self._functions: dict[str, Callable[[list[float]], float]] = dict(AGGREGATE_FUNCTIONS)

    def register(self, name: str, func: Callable[[list[float]], float]) -> None:
        if not re.fullmatch(r"[A-Za-z][A-Za-z0-9_]*", name):
            raise ValueError(f"Invalid function name: {name!r}")
        self._functions[name.upper()] = func

    def get(self, name: str) -> Callable[[list[float]], float] | None:
        return self._functions.get(name.upper())

    def has(self, name: str) -> bool:
        return name.upper() in self._functions

    @property
    def supported_functions(self) -> frozenset[str]:
        return frozenset(self._functions.keys())
