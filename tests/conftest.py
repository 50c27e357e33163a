"""Shared test fixtures and in-memory capability fakes."""

from __future__ import annotations

from collections.abc import Callable, Collection, Iterator, Sequence
from pathlib import Path

import pytest

from bead_orchestrator.control.repository import ScheduleRepository
from bead_orchestrator.orchestrator.capabilities import (
    ExecutionRequest,
    ExecutionResult,
    FeedbackResult,
)
from bead_orchestrator.orchestrator.models import WorkView
from bead_orchestrator.orchestrator.repository import OrchestratorRepository
from bead_orchestrator.planning.models import Bead, BeadStatus, Relation, RelationKind


class FakeTracker:
    """Issue tracker held in memory; preserves requested order like the JSON tracker."""

    def __init__(self) -> None:
        self.beads: dict[str, Bead] = {}
        self.relations: list[Relation] = []
        self.closed: list[str] = []

    def add(
        self,
        bead_id: str,
        *,
        title: str | None = None,
        description: str = "",
        status: BeadStatus = BeadStatus.OPEN,
    ) -> Bead:
        bead = Bead(
            bead_id=bead_id,
            title=title or f"Bead {bead_id}",
            description=description,
            status=status,
        )
        self.beads[bead_id] = bead
        return bead

    def block(self, dependent: str, *, on: str) -> None:
        self.relations.append(
            Relation(bead_id=dependent, other_id=on, kind=RelationKind.BLOCKED_BY),
        )

    def get_beads(self, bead_ids: Collection[str]) -> list[Bead]:
        return [self.beads[bead_id] for bead_id in bead_ids if bead_id in self.beads]

    def get_relations(self, bead_ids: Collection[str]) -> list[Relation]:
        wanted = set(bead_ids)
        return [
            relation
            for relation in self.relations
            if relation.bead_id in wanted or relation.other_id in wanted
        ]

    def close_bead(self, bead_id: str) -> None:
        self.closed.append(bead_id)
        self.update_bead_status(bead_id, BeadStatus.CLOSED)

    def update_bead_status(self, bead_id: str, status: BeadStatus) -> None:
        bead = self.beads[bead_id]
        self.beads[bead_id] = Bead(
            bead_id=bead.bead_id,
            title=bead.title,
            description=bead.description,
            status=status,
        )

    def list_beads(
        self,
        *,
        status: BeadStatus | None = None,
        label: str | None = None,
    ) -> list[Bead]:
        return [
            bead
            for bead in self.beads.values()
            if (status is None or bead.status == status) and (label is None or label in bead.labels)
        ]


class FakeEstimator:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.requests: list[tuple[str, list[str]]] = []
        self.error = error

    def request(self, *, task_id: str, beads: Sequence[Bead], workspace_path: Path | None) -> None:
        if self.error is not None:
            raise self.error
        self.requests.append((task_id, [bead.bead_id for bead in beads]))


class FakeSupervisor:
    def __init__(self) -> None:
        self.sessions: dict[str, bool] = {}
        self.started: list[str] = []
        self.stopped: list[str] = []

    def start(self, *, work_id: str) -> None:
        self.started.append(work_id)
        self.sessions[work_id] = True

    def stop(self, *, work_id: str) -> None:
        self.stopped.append(work_id)
        self.sessions.pop(work_id, None)

    def exists(self, *, work_id: str) -> bool:
        return work_id in self.sessions

    def is_alive(self, *, work_id: str) -> bool:
        return self.sessions.get(work_id, False)


class FakeProvisioner:
    def __init__(self, root: Path, *, failures: int = 0) -> None:
        self.root = root
        self.failures = failures
        self.created: list[str] = []
        self.removed: list[str] = []

    def create(self, work: WorkView) -> Path:
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("worktree add failed")
        path = self.root / work.work_id
        path.mkdir(parents=True, exist_ok=True)
        self.created.append(work.work_id)
        return path

    def remove(self, work: WorkView) -> None:
        self.removed.append(work.work_id)


class FakeRemote:
    def __init__(self) -> None:
        self.pushed: list[str] = []

    def push(self, work: WorkView) -> None:
        self.pushed.append(work.branch)


class FakeFeedback:
    def __init__(self, *results: FeedbackResult) -> None:
        self.results = list(results)
        self.polled: list[str] = []

    def poll(self, work: WorkView) -> FeedbackResult:
        self.polled.append(work.work_id)
        if self.results:
            return self.results.pop(0)
        return FeedbackResult()


class FakeExecutor:
    """Runs ``behavior(request)``; defaults to a successful run that closes nothing."""

    def __init__(self, behavior: Callable[[ExecutionRequest], ExecutionResult] | None = None) -> None:
        self.behavior = behavior
        self.requests: list[ExecutionRequest] = []

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        if self.behavior is None:
            return ExecutionResult(completed=True, exit_code=0)
        return self.behavior(request)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "orchestrator.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def schedule(db_path: Path, repository: OrchestratorRepository) -> Iterator[ScheduleRepository]:
    repo = ScheduleRepository(db_path, retry_base_seconds=30, retry_max_seconds=600)
    yield repo
    repo.close()


@pytest.fixture()
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture()
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()
