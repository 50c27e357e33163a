"""Domain models for works, tasks and their lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class WorkStatus(str, Enum):
    """Durable work lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    IDLE = "idle"
    COMPLETED = "completed"
    FAILED = "failed"
    MERGED = "merged"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BeadRunStatus(str, Enum):
    """Per-bead completion sub-status inside a task."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(str, Enum):
    IMPLEMENT = "implement"
    ESTIMATE = "estimate"


WORK_TRANSITIONS: dict[WorkStatus, frozenset[WorkStatus]] = {
    WorkStatus.PENDING: frozenset({WorkStatus.PROCESSING}),
    WorkStatus.PROCESSING: frozenset({WorkStatus.IDLE, WorkStatus.FAILED, WorkStatus.MERGED}),
    WorkStatus.IDLE: frozenset({WorkStatus.PROCESSING, WorkStatus.COMPLETED, WorkStatus.MERGED}),
    WorkStatus.FAILED: frozenset({WorkStatus.PROCESSING}),
    WorkStatus.COMPLETED: frozenset(),
    WorkStatus.MERGED: frozenset(),
}

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING},
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
}

TERMINAL_WORK_STATUSES = frozenset({WorkStatus.COMPLETED, WorkStatus.MERGED})


def work_sources_for(target: WorkStatus) -> tuple[WorkStatus, ...]:
    """Statuses from which ``target`` is reachable in one step."""

    return tuple(
        status for status, targets in WORK_TRANSITIONS.items() if target in targets
    )


@dataclass(slots=True)
class WorkCreate:
    """Input payload for creating a work."""

    name: str
    branch: str | None = None
    root_bead_id: str | None = None
    work_id: str | None = None


@dataclass(slots=True)
class WorkView:
    """Readable work view for CLI, services and the control plane."""

    work_id: str
    name: str
    branch: str
    root_bead_id: str | None
    workspace_path: str | None
    status: WorkStatus
    error_message: str | None
    restart_count: int
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_WORK_STATUSES


@dataclass(slots=True)
class TaskBeadView:
    bead_id: str
    position: int
    status: BeadRunStatus


@dataclass(slots=True)
class TaskView:
    """Readable task view including bead membership."""

    task_id: str
    work_id: str
    position: int
    task_type: TaskType
    status: TaskStatus
    score_total: int
    token_total: int
    over_budget: bool
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    beads: list[TaskBeadView] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)

    @property
    def bead_ids(self) -> list[str]:
        return [bead.bead_id for bead in self.beads]

    def incomplete_bead_ids(self) -> list[str]:
        return [bead.bead_id for bead in self.beads if bead.status != BeadRunStatus.COMPLETED]


@dataclass(slots=True)
class TaskCreate:
    """Input payload for attaching a task to a work."""

    work_id: str
    bead_ids: list[str]
    task_type: TaskType = TaskType.IMPLEMENT
    score_total: int = 0
    token_total: int = 0
    over_budget: bool = False
    depends_on_task_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkEventView:
    """Work event entry for the audit trail."""

    event_id: int
    work_id: str
    task_id: str | None
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any]


@dataclass(slots=True)
class WorkDetails:
    """Work with its tasks and audit events."""

    work: WorkView
    tasks: list[TaskView]
    events: list[WorkEventView]


@dataclass(slots=True)
class BeadCompletion:
    """Result of recording a bead outcome inside a task."""

    task: TaskView
    task_completed: bool
    task_failed: bool
