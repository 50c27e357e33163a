"""Domain models for the scheduled task queue and process heartbeats."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ScheduledTaskStatus(str, Enum):
    """Durable queue entry states."""

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class ScheduledTaskType(str, Enum):
    """Side-effecting operations executed by the control plane."""

    CREATE_WORKSPACE = "create_workspace"
    SPAWN_ORCHESTRATOR = "spawn_orchestrator"
    DESTROY_WORKSPACE = "destroy_workspace"
    SYNC_REMOTE = "sync_remote"
    POLL_FEEDBACK = "poll_feedback"


class ProcessType(str, Enum):
    CONTROL_PLANE = "control_plane"
    ORCHESTRATOR = "orchestrator"


@dataclass(slots=True)
class ScheduledTaskCreate:
    """Input payload for scheduling a side effect."""

    work_id: str
    task_type: ScheduledTaskType
    run_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
    max_attempts: int = 5


@dataclass(slots=True)
class ScheduledTaskView:
    """Readable queue entry for CLI and the control plane."""

    id: str
    work_id: str
    task_type: ScheduledTaskType
    status: ScheduledTaskStatus
    scheduled_at: datetime
    attempt_count: int
    max_attempts: int
    idempotency_key: str | None
    metadata: dict[str, Any]
    error_message: str | None
    started_at: datetime | None
    executed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def retries_left(self) -> bool:
        return self.attempt_count < self.max_attempts


@dataclass(slots=True)
class ProcessView:
    process_id: str
    process_type: ProcessType
    work_id: str | None
    pid: int
    hostname: str
    started_at: datetime
    heartbeat_at: datetime


@dataclass(slots=True)
class ControlPlaneRunSummary:
    """Aggregate control plane counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    recovered: int = 0
    respawned: int = 0
    cleaned: int = 0
    idle_polls: int = 0

    def add(self, other: ControlPlaneRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.failed += other.failed
        self.recovered += other.recovered
        self.respawned += other.respawned
        self.cleaned += other.cleaned
        self.idle_polls += other.idle_polls
