"""RecalculationOrchestrator: keeps calculated fields consistent with their inputs."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from formcalc._fields import FieldDescriptor, ValueTable
from formcalc.calc._evaluator import FormulaEngine
from formcalc.calc._graph import DependencyGraph
from formcalc.calc._protocol import EvaluationResult, FieldDelta, FormulaEvaluator, RecalcResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_PASSES = 100
DEFAULT_TOLERANCE = 1e-10


def _values_differ(a: Any, b: Any, tolerance: float) -> bool:
    """Check if two values differ beyond tolerance."""
    if a is None and b is None:
        return False
    if a is None or b is None:
        return True
    if isinstance(a, bool) or isinstance(b, bool):
        return a != b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return abs(float(a) - float(b)) > tolerance
    return a != b


class RecalculationOrchestrator:
    """Propagates field edits through the calculated fields of one form.

    The orchestrator holds the schema and its dependency graph; the value
    table is passed in on every call and mutated in place, so one instance
    can serve many sessions of the same form.

    Usage::

        orch = RecalculationOrchestrator(fields)
        orch.recalculate_all(table)             # on form load
        orch.on_field_changed("qty", 3, table)  # on every edit
    """

    def __init__(
        self,
        fields: Iterable[FieldDescriptor],
        engine: FormulaEvaluator | None = None,
        max_passes: int = DEFAULT_MAX_PASSES,
        tolerance: float = DEFAULT_TOLERANCE,
    ) -> None:
        if max_passes < 1:
            raise ValueError("max_passes must be at least 1")
        self._engine: FormulaEvaluator = engine or FormulaEngine()
        self._max_passes = max_passes
        self._tolerance = tolerance
        self._fields: list[FieldDescriptor] = []
        self._by_id: dict[str, FieldDescriptor] = {}
        self._graph = DependencyGraph()
        self._on_cycle: frozenset[str] = frozenset()
        self._load(fields)

    def _load(self, fields: Iterable[FieldDescriptor]) -> None:
        self._fields = list(fields)
        self._by_id = {f.id: f for f in self._fields}
        self._graph = DependencyGraph.from_fields(self._fields)
        self._on_cycle = frozenset(self._graph.cyclic_fields())
        cycle = self._graph.find_cycle()
        if cycle:
            logger.warning(
                "Calculated fields form a cycle (%s); values will be iterated up to %d passes",
                " -> ".join(cycle), self._max_passes,
            )

    @property
    def fields(self) -> list[FieldDescriptor]:
        return list(self._fields)

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    def update_fields(self, fields: Iterable[FieldDescriptor], table: ValueTable) -> RecalcResult:
        """Swap in a new schema and run a full pass over *table*."""
        self._load(fields)
        return self.recalculate_all(table)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def on_field_changed(self, field_id: str, new_value: Any, table: ValueTable) -> ValueTable:
        """Write one edit and settle every calculated field that depends on it."""
        self.recalculate({field_id: new_value}, table)
        return table

    def recalculate(self, changes: dict[str, Any], table: ValueTable) -> RecalcResult:
        """Apply edits and recompute the affected calculated fields."""
        old_values = {fid: table.get(fid) for fid in self._graph.formulas}

        for field_id, value in changes.items():
            if field_id in self._graph.formulas:
                logger.debug("Direct write to calculated field %r", field_id)
            table[field_id] = value

        affected = self._graph.affected_fields(changes.keys())
        return self._settle(
            affected, table, old_values, dict(changes),
            max_depth=self._graph.max_depth(changes.keys()),
        )

    def recalculate_all(self, table: ValueTable) -> RecalcResult:
        """Evaluate every calculated field once, dependencies first.

        Fields on a cycle are evaluated last with whatever values are
        currently in the table, then iterated like any other cycle.
        """
        old_values = {fid: table.get(fid) for fid in self._graph.formulas}
        order = self._graph.evaluation_order()
        inputs = {f.id for f in self._fields if not f.is_calculated}
        return self._settle(order, table, old_values, {}, max_depth=self._graph.max_depth(inputs))

    # ------------------------------------------------------------------
    # Fixed-point propagation
    # ------------------------------------------------------------------

    def _settle(
        self,
        order: list[str],
        table: ValueTable,
        old_values: dict[str, Any],
        changes: dict[str, Any],
        max_depth: int,
    ) -> RecalcResult:
        """Evaluate *order*, re-queueing only what a cycle made stale.

        Each result is written back immediately, so later fields in the pass
        read fresh values.  A field whose value changed after one of its
        dependents already ran in the same pass (only possible on a cycle)
        seeds the next pass.
        """
        evaluations: dict[str, EvaluationResult] = {}
        evaluated_order: list[str] = []
        work = order
        passes = 0
        converged = True

        while work:
            if passes >= self._max_passes:
                converged = False
                logger.warning(
                    "Recalculation did not settle after %d passes; still changing: %s",
                    passes, ", ".join(work),
                )
                break
            passes += 1
            position = {fid: i for i, fid in enumerate(work)}
            stale: set[str] = set()

            for fid in work:
                result = self._engine.calculate_field(self._by_id[fid], table, self._fields)
                if not result.ok:
                    logger.debug("Field %r: %s (%s)", fid, result.error, result.detail)
                if fid not in evaluations:
                    evaluated_order.append(fid)
                evaluations[fid] = result
                previous = table.get(fid)
                table[fid] = result.value
                if not _values_differ(previous, result.value, self._tolerance):
                    continue
                for dep in self._graph.dependents.get(fid, ()):
                    if dep in position and position[dep] <= position[fid]:
                        stale.add(fid)
                        break

            work = self._graph.affected_fields(stale) if stale else []

        deltas: list[FieldDelta] = []
        for fid in evaluated_order:
            old_val = old_values.get(fid)
            new_val = table.get(fid)
            if _values_differ(old_val, new_val, self._tolerance):
                deltas.append(FieldDelta(
                    field_id=fid,
                    old_value=old_val,
                    new_value=new_val,
                    formula=self._by_id[fid].formula,
                ))

        return RecalcResult(
            changes=changes,
            deltas=tuple(deltas),
            evaluations=evaluations,
            total_calculated_fields=len(self._graph.formulas),
            passes=passes,
            converged=converged,
            cycle_fields=tuple(f for f in evaluated_order if f in self._on_cycle),
            max_chain_depth=max_depth,
        )


def on_field_changed(
    changed_field_id: str,
    new_value: Any,
    table: ValueTable,
    fields: Iterable[FieldDescriptor],
) -> ValueTable:
    """One-shot form of :meth:`RecalculationOrchestrator.on_field_changed`."""
    return RecalculationOrchestrator(fields).on_field_changed(changed_field_id, new_value, table)
