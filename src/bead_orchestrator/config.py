"""Runtime configuration for planning, lifecycle and control plane."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class PlannerSettings:
    """Batch planner settings."""

    token_budget: int = 120_000


@dataclass(slots=True)
class ControlPlaneSettings:
    """Scheduled task queue and control loop settings."""

    poll_interval_seconds: float = 30.0
    cleanup_interval_seconds: float = 60.0
    max_attempts: int = 5
    retry_base_seconds: int = 30
    retry_max_seconds: int = 600
    stale_executing_seconds: int = 1_800
    feedback_poll_interval_seconds: int = 300
    retention_hours: int = 168
    watch_database: bool = True


@dataclass(slots=True)
class ProcessSettings:
    """Heartbeat policy for long-running processes."""

    heartbeat_interval_seconds: float = 10.0
    staleness_seconds: int = 30


@dataclass(slots=True)
class WorkspaceSettings:
    """Where isolated workspaces live and what they branch from."""

    root: Path = Path(".bead-orch/workspaces")
    repo_path: Path = Path(".")
    base_branch: str = "main"


@dataclass(slots=True)
class CommandSettings:
    """Command templates for locally executed capabilities."""

    executor_command_template: str = ""
    estimator_command_template: str = ""
    session_command_template: str = "bead-orch work run --work-id {work_id}"
    executor_timeout_seconds: int = 3_600


@dataclass(slots=True)
class TrackerSettings:
    """Issue tracker source."""

    beads_file: Path = Path(".bead-orch/beads.json")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".bead-orch/orchestrator.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    planner: PlannerSettings = field(default_factory=PlannerSettings)
    control_plane: ControlPlaneSettings = field(default_factory=ControlPlaneSettings)
    processes: ProcessSettings = field(default_factory=ProcessSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    commands: CommandSettings = field(default_factory=CommandSettings)
    tracker: TrackerSettings = field(default_factory=TrackerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("BEAD_ORCH_DB_PATH", ".bead-orch/orchestrator.db")),
            sqlite_busy_timeout_ms=int(os.getenv("BEAD_ORCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("BEAD_ORCH_LOG_LEVEL", "INFO").strip().upper(),
            planner=PlannerSettings(
                token_budget=int(os.getenv("BEAD_ORCH_TOKEN_BUDGET", "120000")),
            ),
            control_plane=ControlPlaneSettings(
                poll_interval_seconds=float(
                    os.getenv("BEAD_ORCH_CONTROL_PLANE_POLL_INTERVAL_SECONDS", "30"),
                ),
                cleanup_interval_seconds=float(
                    os.getenv("BEAD_ORCH_CONTROL_PLANE_CLEANUP_INTERVAL_SECONDS", "60"),
                ),
                max_attempts=int(os.getenv("BEAD_ORCH_SCHEDULER_MAX_ATTEMPTS", "5")),
                retry_base_seconds=int(os.getenv("BEAD_ORCH_SCHEDULER_RETRY_BASE_SECONDS", "30")),
                retry_max_seconds=int(os.getenv("BEAD_ORCH_SCHEDULER_RETRY_MAX_SECONDS", "600")),
                stale_executing_seconds=int(
                    os.getenv("BEAD_ORCH_SCHEDULER_STALE_EXECUTING_SECONDS", "1800"),
                ),
                feedback_poll_interval_seconds=int(
                    os.getenv("BEAD_ORCH_FEEDBACK_POLL_INTERVAL_SECONDS", "300"),
                ),
                retention_hours=int(os.getenv("BEAD_ORCH_SCHEDULER_RETENTION_HOURS", "168")),
                watch_database=_env_bool("BEAD_ORCH_CONTROL_PLANE_WATCH_DB", default=True),
            ),
            processes=ProcessSettings(
                heartbeat_interval_seconds=float(
                    os.getenv("BEAD_ORCH_HEARTBEAT_INTERVAL_SECONDS", "10"),
                ),
                staleness_seconds=int(os.getenv("BEAD_ORCH_HEARTBEAT_STALENESS_SECONDS", "30")),
            ),
            workspace=WorkspaceSettings(
                root=Path(os.getenv("BEAD_ORCH_WORKSPACE_ROOT", ".bead-orch/workspaces")),
                repo_path=Path(os.getenv("BEAD_ORCH_REPO_PATH", ".")),
                base_branch=os.getenv("BEAD_ORCH_BASE_BRANCH", "main"),
            ),
            commands=CommandSettings(
                executor_command_template=os.getenv("BEAD_ORCH_EXECUTOR_COMMAND", ""),
                estimator_command_template=os.getenv("BEAD_ORCH_ESTIMATOR_COMMAND", ""),
                session_command_template=os.getenv(
                    "BEAD_ORCH_SESSION_COMMAND",
                    "bead-orch work run --work-id {work_id}",
                ),
                executor_timeout_seconds=int(
                    os.getenv("BEAD_ORCH_EXECUTOR_TIMEOUT_SECONDS", "3600"),
                ),
            ),
            tracker=TrackerSettings(
                beads_file=Path(os.getenv("BEAD_ORCH_BEADS_FILE", ".bead-orch/beads.json")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.planner.token_budget <= 0:
            raise ValueError("BEAD_ORCH_TOKEN_BUDGET must be > 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("BEAD_ORCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.control_plane.poll_interval_seconds <= 0:
            raise ValueError("BEAD_ORCH_CONTROL_PLANE_POLL_INTERVAL_SECONDS must be > 0.")
        if self.control_plane.max_attempts < 1:
            raise ValueError("BEAD_ORCH_SCHEDULER_MAX_ATTEMPTS must be >= 1.")
        if self.control_plane.retry_base_seconds < 0:
            raise ValueError("BEAD_ORCH_SCHEDULER_RETRY_BASE_SECONDS must be >= 0.")
        if self.control_plane.retry_max_seconds < self.control_plane.retry_base_seconds:
            raise ValueError(
                "BEAD_ORCH_SCHEDULER_RETRY_MAX_SECONDS must be >= "
                "BEAD_ORCH_SCHEDULER_RETRY_BASE_SECONDS.",
            )
        if self.control_plane.retention_hours < 0:
            raise ValueError("BEAD_ORCH_SCHEDULER_RETENTION_HOURS must be >= 0.")
        if self.processes.heartbeat_interval_seconds <= 0:
            raise ValueError("BEAD_ORCH_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.processes.staleness_seconds <= self.processes.heartbeat_interval_seconds:
            raise ValueError(
                "BEAD_ORCH_HEARTBEAT_STALENESS_SECONDS must exceed "
                "BEAD_ORCH_HEARTBEAT_INTERVAL_SECONDS.",
            )
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"Invalid BEAD_ORCH_LOG_LEVEL: {self.log_level!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
