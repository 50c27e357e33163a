"""Domain models for beads, relations and planned batches."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class BeadStatus(str, Enum):
    """Issue tracker status of a bead."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    CLOSED = "closed"


class BeadType(str, Enum):
    TASK = "task"
    BUG = "bug"
    FEATURE = "feature"
    EPIC = "epic"


class RelationKind(str, Enum):
    """Relation kinds reported by the issue tracker."""

    BLOCKS = "blocks"
    BLOCKED_BY = "blocked_by"
    PARENT_CHILD = "parent-child"


@dataclass(slots=True, frozen=True)
class Bead:
    """Atomic unit of trackable work."""

    bead_id: str
    title: str
    description: str = ""
    status: BeadStatus = BeadStatus.OPEN
    priority: int = 2
    bead_type: BeadType = BeadType.TASK
    labels: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Relation:
    """Directed edge between two beads.

    ``Relation(a, b, BLOCKED_BY)`` reads "a is blocked by b"; ``BLOCKS`` reads
    "a blocks b".
    """

    bead_id: str
    other_id: str
    kind: RelationKind


@dataclass(slots=True, frozen=True)
class BeadEstimate:
    """Cost score and token estimate for one bead."""

    score: int
    tokens: int

    @property
    def pending(self) -> bool:
        return self.score == 0 and self.tokens == 0


PENDING_ESTIMATE = BeadEstimate(score=0, tokens=0)


@dataclass(slots=True)
class PlannedTask:
    """One budget-bounded batch produced by the planner."""

    index: int
    bead_ids: list[str] = field(default_factory=list)
    score_total: int = 0
    token_total: int = 0
    over_budget: bool = False


@dataclass(slots=True)
class Plan:
    """Planner output: ordered batches plus task-level dependency edges."""

    tasks: list[PlannedTask]
    task_dependencies: list[tuple[int, int]]
    token_budget: int

    def task_index_of(self, bead_id: str) -> int | None:
        for task in self.tasks:
            if bead_id in task.bead_ids:
                return task.index
        return None
