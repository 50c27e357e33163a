"""Capability interfaces for the external collaborators the engine drives."""

from __future__ import annotations

from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from bead_orchestrator.orchestrator.models import WorkView
from bead_orchestrator.planning.models import Bead, BeadStatus, Relation


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to run one task in an agent session."""

    task_id: str
    work_id: str
    beads: list[Bead]
    prompt: str
    workspace_path: Path
    shutdown_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Executor outcome; ``completed=False`` carries the failure message."""

    completed: bool
    message: str = ""
    timed_out: bool = False
    exit_code: int | None = None


@dataclass(slots=True)
class FeedbackResult:
    """Outcome of one feedback poll for a work's published change."""

    new_bead_ids: list[str] = field(default_factory=list)
    merged: bool = False


class Estimator(Protocol):
    """Produces score/token estimates asynchronously.

    ``request`` must return immediately; results arrive later through the
    estimate completion signal keyed by ``task_id``.
    """

    def request(self, *, task_id: str, beads: Sequence[Bead], workspace_path: Path | None) -> None:
        """Start an estimation run for ``beads``."""


class Executor(Protocol):
    """Drives an external agent session for one task."""

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        """Run the agent and report whether it finished successfully."""


class WorkspaceProvisioner(Protocol):
    """Creates and removes isolated workspaces plus branches."""

    def create(self, work: WorkView) -> Path:
        """Create the workspace for ``work`` and return its path."""

    def remove(self, work: WorkView) -> None:
        """Remove the workspace; must succeed when it is already gone."""


class SessionSupervisor(Protocol):
    """Starts and stops the long-running orchestration process of a work."""

    def start(self, *, work_id: str) -> None: ...

    def stop(self, *, work_id: str) -> None: ...

    def exists(self, *, work_id: str) -> bool: ...

    def is_alive(self, *, work_id: str) -> bool: ...


class IssueTracker(Protocol):
    """Source of beads and their relations."""

    def get_beads(self, bead_ids: Collection[str]) -> list[Bead]: ...

    def get_relations(self, bead_ids: Collection[str]) -> list[Relation]: ...

    def close_bead(self, bead_id: str) -> None: ...

    def update_bead_status(self, bead_id: str, status: BeadStatus) -> None: ...

    def list_beads(
        self,
        *,
        status: BeadStatus | None = None,
        label: str | None = None,
    ) -> list[Bead]: ...


class RemoteSync(Protocol):
    """Publishes a work's branch upstream."""

    def push(self, work: WorkView) -> None: ...


class FeedbackPoller(Protocol):
    """Checks a published change for review feedback or integration upstream."""

    def poll(self, work: WorkView) -> FeedbackResult: ...
