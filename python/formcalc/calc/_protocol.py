"""Typed failures, result dataclasses and the evaluator protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from formcalc._fields import FieldDescriptor


# ---------------------------------------------------------------------------
# FormulaError: typed failure values carried inside results
# ---------------------------------------------------------------------------


class FormulaError:
    """Failure kind of a formula evaluation.

    Use ``FormulaError.of(code)`` to get a cached singleton per code.  Errors
    compare equal to their string code (``FormulaError.UNSAFE_TOKEN == "UnsafeToken"``).
    """

    __slots__ = ("code",)
    _cache: dict[str, FormulaError] = {}

    MALFORMED: FormulaError
    INVALID_REFERENCE: FormulaError
    UNSAFE_TOKEN: FormulaError
    NUMERIC_FAULT: FormulaError

    def __init__(self, code: str) -> None:
        self.code = code

    @classmethod
    def of(cls, code: str) -> FormulaError:
        if code not in cls._cache:
            cls._cache[code] = cls(code)
        return cls._cache[code]

    def __repr__(self) -> str:
        return self.code

    def __str__(self) -> str:
        return self.code

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FormulaError):
            return self.code == other.code
        if isinstance(other, str):
            return self.code == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.code)


# Singletons
FormulaError.MALFORMED = FormulaError.of("MalformedExpression")
FormulaError.INVALID_REFERENCE = FormulaError.of("InvalidReference")
FormulaError.UNSAFE_TOKEN = FormulaError.of("UnsafeToken")
FormulaError.NUMERIC_FAULT = FormulaError.of("NumericFault")


class FormulaEvalError(ValueError):
    """Raised while parsing or reducing a formula; never escapes ``FormulaEngine``."""

    def __init__(self, error: FormulaError, message: str, position: int | None = None) -> None:
        self.error = error
        self.position = position
        if position is not None:
            message = f"{message} at position {position}"
        super().__init__(message)


class CircularReferenceError(ValueError):
    """Raised by strict topological ordering when calculated fields form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular reference detected: {' -> '.join(cycle)}")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of one formula evaluation.  ``value`` is always a finite float."""

    value: float = 0.0
    error: FormulaError | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: FormulaError, detail: str | None = None) -> EvaluationResult:
        return cls(value=0.0, error=error, detail=detail)


@dataclass(frozen=True)
class ValidationResult:
    """Authoring-time verdict on a formula."""

    valid: bool
    reason: str | None = None
    error: FormulaError | None = None
    unresolved: tuple[str, ...] = ()
    references: tuple[str, ...] = ()


@dataclass(frozen=True)
class FieldDelta:
    """A single calculated field's value change from recalculation."""

    field_id: str
    old_value: Any
    new_value: float
    formula: str | None = None


@dataclass(frozen=True)
class RecalcResult:
    """Result of an incremental or full recalculation."""

    changes: dict[str, Any]  # field_id -> value written by the caller
    deltas: tuple[FieldDelta, ...]
    evaluations: dict[str, EvaluationResult] = field(default_factory=dict)
    total_calculated_fields: int = 0
    passes: int = 0
    converged: bool = True
    cycle_fields: tuple[str, ...] = ()
    max_chain_depth: int = 0

    @property
    def evaluated_fields(self) -> int:
        return len(self.evaluations)

    @property
    def failed_fields(self) -> dict[str, EvaluationResult]:
        return {fid: r for fid, r in self.evaluations.items() if not r.ok}


@runtime_checkable
class FormulaEvaluator(Protocol):
    """Protocol for anything the orchestrator can delegate evaluation to."""

    def evaluate(
        self,
        formula: str,
        values: dict[str, Any],
        fields: list[FieldDescriptor],
    ) -> EvaluationResult:
        """Evaluate *formula* against *values*; never raises."""
        ...

    def calculate_field(
        self,
        field: FieldDescriptor,
        values: dict[str, Any],
        fields: list[FieldDescriptor],
    ) -> EvaluationResult:
        """Compute one calculated field's value; never raises."""
        ...
