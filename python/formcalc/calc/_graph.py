"""Dependency graph for calculated fields with topological ordering."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from typing import TYPE_CHECKING

from formcalc.calc._parser import parse_references
from formcalc.calc._protocol import CircularReferenceError

if TYPE_CHECKING:
    from formcalc._fields import FieldDescriptor


class DependencyGraph:
    """Tracks calculated-field dependencies for evaluation ordering.

    Edges come from the formula tokens unioned with the declared
    ``depends_on`` list, so an author who forgets a ``depends_on`` entry
    still gets correct propagation.  Ordering ties are broken by declaration
    order, which makes every ordering deterministic.
    """

    __slots__ = ("dependencies", "dependents", "formulas", "_index")

    def __init__(self) -> None:
        # field -> set of fields it reads from
        self.dependencies: dict[str, set[str]] = {}
        # field -> set of calculated fields that read from it (reverse edges)
        self.dependents: dict[str, set[str]] = {}
        # calculated field -> formula string ("" when it has none)
        self.formulas: dict[str, str] = {}
        # calculated field -> declaration position
        self._index: dict[str, int] = {}

    def add_field(
        self,
        field_id: str,
        formula: str | None,
        depends_on: Iterable[str] = (),
        field_ids: Iterable[str] = (),
    ) -> None:
        """Register a calculated field and its dependencies."""
        if field_id in self.formulas:
            self.remove_field(field_id)
        self.formulas[field_id] = formula or ""
        self._index.setdefault(field_id, len(self._index))

        refs = set(parse_references(formula or "", field_ids))
        refs.update(depends_on)
        self.dependencies[field_id] = refs

        for ref in refs:
            self.dependents.setdefault(ref, set()).add(field_id)

    def remove_field(self, field_id: str) -> None:
        """Drop a calculated field's outgoing edges (its position is kept)."""
        for ref in self.dependencies.pop(field_id, set()):
            self.dependents.get(ref, set()).discard(field_id)
        self.formulas.pop(field_id, None)

    def _sorted(self, cells: Iterable[str]) -> list[str]:
        return sorted(cells, key=lambda c: self._index.get(c, len(self._index)))

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def _kahn(self, cells: set[str]) -> list[str]:
        """Kahn's algorithm restricted to *cells*; cyclic members are left out."""
        in_degree: dict[str, int] = {}
        for cell in cells:
            # Only count deps that are themselves in the working set
            in_degree[cell] = len(self.dependencies.get(cell, set()) & cells)

        queue: deque[str] = deque(c for c in self._sorted(cells) if in_degree[c] == 0)
        order: list[str] = []
        while queue:
            cell = queue.popleft()
            order.append(cell)
            for dep in self._sorted(self.dependents.get(cell, set())):
                if dep in cells:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)
        return order

    def topological_order(self) -> list[str]:
        """Return calculated fields in evaluation order.

        Raises CircularReferenceError if a cycle exists.
        """
        cells = set(self.formulas)
        order = self._kahn(cells)
        if len(order) != len(cells):
            cycle = self.find_cycle() or self._sorted(cells - set(order))
            raise CircularReferenceError(cycle)
        return order

    def evaluation_order(self, cells: Iterable[str] | None = None) -> list[str]:
        """Topological order that tolerates cycles.

        Fields that cannot be ordered (members of a cycle, or downstream of
        one) are appended last in declaration order.
        """
        working = set(self.formulas) if cells is None else set(cells) & set(self.formulas)
        order = self._kahn(working)
        placed = set(order)
        order.extend(c for c in self._sorted(working) if c not in placed)
        return order

    def cyclic_fields(self) -> list[str]:
        """Calculated fields that lie on a dependency cycle."""
        on_cycle: list[str] = []
        for cell in self._sorted(self.formulas):
            if cell in self._reachable(self.dependents, cell, include_start=False):
                on_cycle.append(cell)
        return on_cycle

    def find_cycle(self, start: str | None = None) -> list[str] | None:
        """Return one dependency cycle as a path ``[a, b, ..., a]``, or None.

        When *start* is given only cycles through *start* are reported.
        """
        if start is not None:
            return self._cycle_through(start)

        WHITE, GRAY, BLACK = 0, 1, 2
        color = {cell: WHITE for cell in self.formulas}
        stack: list[str] = []

        def dfs(cell: str) -> list[str] | None:
            color[cell] = GRAY
            stack.append(cell)
            for dep in self._sorted(self.dependencies.get(cell, set())):
                if dep not in color:
                    continue  # plain input, cannot close a cycle
                if color[dep] == GRAY:
                    return stack[stack.index(dep):] + [dep]
                if color[dep] == WHITE:
                    found = dfs(dep)
                    if found:
                        return found
            stack.pop()
            color[cell] = BLACK
            return None

        for cell in self._sorted(self.formulas):
            if color[cell] == WHITE:
                found = dfs(cell)
                if found:
                    return found
        return None

    def _cycle_through(self, start: str) -> list[str] | None:
        """Shortest path start -> ... -> start along dependency edges (BFS)."""
        if start not in self.formulas:
            return None
        parents: dict[str, str] = {}
        queue: deque[str] = deque([start])
        visited: set[str] = {start}
        while queue:
            cell = queue.popleft()
            for dep in self._sorted(self.dependencies.get(cell, set())):
                if dep == start:
                    path = [cell]
                    while path[-1] != start:
                        path.append(parents[path[-1]])
                    path.reverse()
                    path.append(start)
                    return path
                if dep in self.formulas and dep not in visited:
                    visited.add(dep)
                    parents[dep] = cell
                    queue.append(dep)
        return None

    # ------------------------------------------------------------------
    # Propagation
    # ------------------------------------------------------------------

    @staticmethod
    def _reachable(edges: dict[str, set[str]], start: str, include_start: bool = True) -> set[str]:
        seen: set[str] = set()
        queue: deque[str] = deque([start])
        while queue:
            cell = queue.popleft()
            for nxt in edges.get(cell, set()):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        if include_start:
            seen.add(start)
        return seen

    def affected_fields(self, changed: Iterable[str]) -> list[str]:
        """Find all calculated fields affected by changes, in evaluation order.

        Uses BFS on the dependents graph, then orders the result.  A changed
        field that is itself calculated is only included when something it
        depends on changed too (i.e. it sits on a cycle with the change).
        """
        changed = set(changed)
        affected: set[str] = set()
        queue: deque[str] = deque(changed)
        visited: set[str] = set()

        while queue:
            cell = queue.popleft()
            for dep in self.dependents.get(cell, set()):
                if dep not in visited:
                    visited.add(dep)
                    queue.append(dep)
                    if dep in self.formulas:
                        affected.add(dep)

        return self.evaluation_order(affected)

    def max_depth(self, roots: Iterable[str]) -> int:
        """Longest dependency chain from root fields through calculated fields.

        Chains through a cycle are cut at the number of calculated fields.
        """
        roots = set(roots)
        if not roots:
            return 0

        limit = len(self.formulas)
        depth: dict[str, int] = {r: 0 for r in roots}
        queue: deque[str] = deque(roots)
        max_d = 0

        while queue:
            cell = queue.popleft()
            current_depth = depth[cell]
            for dep in self.dependents.get(cell, set()):
                if dep in self.formulas:
                    new_depth = current_depth + 1
                    if new_depth > limit:
                        continue
                    if dep not in depth or new_depth > depth[dep]:
                        depth[dep] = new_depth
                        max_d = max(max_d, new_depth)
                        queue.append(dep)

        return max_d

    @classmethod
    def from_fields(cls, fields: Iterable[FieldDescriptor]) -> DependencyGraph:
        """Build a dependency graph from a form schema's calculated fields."""
        fields = list(fields)
        field_ids = [f.id for f in fields]
        graph = cls()
        for fd in fields:
            if fd.is_calculated:
                graph.add_field(fd.id, fd.formula, fd.depends_on, field_ids)
        return graph
