"""Dependency graph construction and topological ordering."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from bead_orchestrator.errors import CycleError
from bead_orchestrator.planning.models import Bead, Relation, RelationKind


@dataclass(slots=True)
class DependencyGraph:
    """Symmetric adjacency maps over a bounded bead set."""

    depends_on: dict[str, list[str]] = field(default_factory=dict)
    dependents: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, beads: Iterable[Bead], relations: Iterable[Relation]) -> DependencyGraph:
        """Build the graph from blocking relations whose endpoints are both in ``beads``."""

        graph = cls()
        for bead in beads:
            graph.depends_on.setdefault(bead.bead_id, [])
            graph.dependents.setdefault(bead.bead_id, [])

        for relation in relations:
            if relation.kind == RelationKind.BLOCKED_BY:
                graph.add_edge(dependent=relation.bead_id, dependency=relation.other_id)
            elif relation.kind == RelationKind.BLOCKS:
                graph.add_edge(dependent=relation.other_id, dependency=relation.bead_id)
        return graph

    def add_edge(self, *, dependent: str, dependency: str) -> bool:
        """Record ``dependent`` depends on ``dependency``; external endpoints are ignored."""

        if dependent not in self.depends_on or dependency not in self.depends_on:
            return False
        if dependent == dependency or dependency in self.depends_on[dependent]:
            return False
        self.depends_on[dependent].append(dependency)
        self.dependents[dependency].append(dependent)
        return True

    def __contains__(self, bead_id: object) -> bool:
        return bead_id in self.depends_on


def topological_sort(graph: DependencyGraph, bead_ids: Sequence[str]) -> list[str]:
    """Order ``bead_ids`` so every bead follows all of its dependencies (Kahn).

    Raises:
        CycleError: the relations contain a cycle; no partial order is returned.
    """

    in_degree = {bead_id: len(graph.depends_on.get(bead_id, ())) for bead_id in bead_ids}
    queue = deque(bead_id for bead_id in bead_ids if in_degree[bead_id] == 0)
    ordered: list[str] = []
    while queue:
        current = queue.popleft()
        ordered.append(current)
        for dependent in graph.dependents.get(current, ()):
            if dependent not in in_degree:
                continue
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(ordered) < len(bead_ids):
        raise CycleError(bead_id for bead_id, degree in in_degree.items() if degree > 0)
    return ordered


def dependency_depths(graph: DependencyGraph, order: Sequence[str]) -> dict[str, int]:
    """Longest dependency chain length below each bead; ``order`` must be topological."""

    depths: dict[str, int] = {}
    for bead_id in order:
        parents = graph.depends_on.get(bead_id, ())
        depths[bead_id] = 1 + max((depths[parent] for parent in parents), default=-1)
    return depths
