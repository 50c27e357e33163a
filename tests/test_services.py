from __future__ import annotations

import allure
import pytest

from bead_orchestrator.control.models import ScheduledTaskType
from bead_orchestrator.control.repository import ScheduleRepository
from bead_orchestrator.errors import EstimationPendingError, NotFoundError, PreconditionError
from bead_orchestrator.orchestrator.models import TaskStatus, WorkCreate, WorkStatus
from bead_orchestrator.orchestrator.repository import OrchestratorRepository
from bead_orchestrator.orchestrator.services import WorkService
from bead_orchestrator.planning.estimation import EstimationService, description_hash
from bead_orchestrator.planning.models import BeadEstimate, BeadStatus
from bead_orchestrator.planning.planner import BatchPlanner
from conftest import FakeEstimator, FakeTracker

pytestmark = [
    allure.epic("Work Lifecycle"),
    allure.feature("Work Service"),
]


def _service(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
    *,
    estimator: FakeEstimator | None = None,
) -> WorkService:
    estimation = EstimationService(repository=repository, estimator=estimator or FakeEstimator())
    return WorkService(
        repository=repository,
        schedule=schedule,
        tracker=tracker,
        planner=BatchPlanner(estimation=estimation),
        token_budget=10_000,
        max_attempts=3,
    )


def _estimate(repository: OrchestratorRepository, tracker: FakeTracker, **tokens: int) -> None:
    for bead_id, value in tokens.items():
        bead = tracker.beads.get(bead_id) or tracker.add(bead_id)
        repository.upsert_estimate(
            bead_id=bead_id,
            description_hash=description_hash(bead),
            estimate=BeadEstimate(score=1, tokens=value),
        )


def _keys(schedule: ScheduleRepository, work_id: str) -> list[str | None]:
    return [entry.idempotency_key for entry in schedule.list_tasks(work_id=work_id)]


def test_create_work_schedules_workspace(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    service = _service(repository, schedule, tracker)

    work = service.create_work(WorkCreate(name="search"))

    [entry] = schedule.list_tasks(work_id=work.work_id)
    assert entry.task_type == ScheduledTaskType.CREATE_WORKSPACE
    assert entry.idempotency_key == f"create-workspace-{work.work_id}"
    assert entry.max_attempts == 3


def test_plan_work_creates_tasks_with_dependencies(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    service = _service(repository, schedule, tracker)
    work = service.create_work(WorkCreate(name="search"))
    _estimate(repository, tracker, a=6_000, b=6_000, c=1_000)
    tracker.block("b", on="a")

    outcome = service.plan_work(work_id=work.work_id, bead_ids=["a", "b", "c"])

    assert [task.bead_ids for task in outcome.tasks] == [["a", "c"], ["b"]]
    assert outcome.tasks[1].depends_on == [outcome.tasks[0].task_id]
    assert outcome.tasks[0].token_total == 7_000
    assert all(task.status == TaskStatus.PENDING for task in outcome.tasks)
    # workspace not provisioned yet, so no session is scheduled
    assert _keys(schedule, work.work_id) == [f"create-workspace-{work.work_id}"]


def test_plan_work_reports_pending_estimates(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    estimator = FakeEstimator()
    service = _service(repository, schedule, tracker, estimator=estimator)
    work = service.create_work(WorkCreate(name="search"))
    tracker.add("a")

    with pytest.raises(EstimationPendingError):
        service.plan_work(work_id=work.work_id, bead_ids=["a"])

    assert len(estimator.requests) == 1
    assert repository.has_unfinished_tasks(work_id=work.work_id) is False


def test_replanning_waits_on_in_flight_estimates(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    estimator = FakeEstimator()
    service = _service(repository, schedule, tracker, estimator=estimator)
    work = service.create_work(WorkCreate(name="search"))
    tracker.add("a")
    tracker.add("b")

    with pytest.raises(EstimationPendingError) as first:
        service.plan_work(work_id=work.work_id, bead_ids=["a", "b"])
    with pytest.raises(EstimationPendingError) as second:
        service.plan_work(work_id=work.work_id, bead_ids=["b", "a"])

    assert second.value.task_id == first.value.task_id
    assert [bead_ids for _, bead_ids in estimator.requests] == [["a", "b"]]


def test_plan_work_validates_input(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    service = _service(repository, schedule, tracker)
    work = service.create_work(WorkCreate(name="search"))

    with pytest.raises(ValueError, match="At least one bead id"):
        service.plan_work(work_id=work.work_id, bead_ids=[])
    with pytest.raises(NotFoundError, match="bead not found: ghost"):
        service.plan_work(work_id=work.work_id, bead_ids=["ghost"])

    unplanned = WorkService(repository=repository, schedule=schedule)
    with pytest.raises(RuntimeError, match="requires an issue tracker"):
        unplanned.plan_work(work_id=work.work_id, bead_ids=["a"])
    with pytest.raises(RuntimeError, match="requires an issue tracker"):
        unplanned._load_beads(["a"])


def test_add_task_to_idle_work_reactivates_it(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    service = _service(repository, schedule, tracker)
    work = service.create_work(WorkCreate(name="search"))
    repository.transition_work(work_id=work.work_id, to=WorkStatus.PROCESSING)
    repository.transition_work(work_id=work.work_id, to=WorkStatus.IDLE)

    task = service.add_task(work_id=work.work_id, bead_ids=["review-1"])

    assert repository.require_work(work_id=work.work_id).status == WorkStatus.PROCESSING
    assert f"spawn-orchestrator-{work.work_id}-{task.task_id}" in _keys(schedule, work.work_id)


def test_add_task_to_provisioned_pending_work_spawns_initial_session(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    service = _service(repository, schedule, tracker)
    work = service.create_work(WorkCreate(name="search"))
    repository.set_workspace_path(work_id=work.work_id, workspace_path="/tmp/ws")

    service.add_task(work_id=work.work_id, bead_ids=["a"])
    service.add_task(work_id=work.work_id, bead_ids=["b"])

    keys = _keys(schedule, work.work_id)
    assert keys.count(f"spawn-orchestrator-{work.work_id}-initial") == 1
    assert repository.require_work(work_id=work.work_id).status == WorkStatus.PENDING


def test_restart_work_resets_failed_and_stuck_tasks(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    service = _service(repository, schedule, tracker)
    work = service.create_work(WorkCreate(name="search"))
    repository.transition_work(work_id=work.work_id, to=WorkStatus.PROCESSING)
    task = service.add_task(work_id=work.work_id, bead_ids=["a", "b"])
    repository.start_task(task_id=task.task_id)
    repository.complete_bead(task_id=task.task_id, bead_id="a")
    repository.fail_bead(task_id=task.task_id, bead_id="b", message="lint failed")

    restarted = service.restart_work(work_id=work.work_id)

    assert restarted.status == WorkStatus.PROCESSING
    assert restarted.restart_count == 1
    reset = repository.require_task(task_id=task.task_id)
    assert reset.status == TaskStatus.PENDING
    assert reset.incomplete_bead_ids() == ["b"]
    assert f"restart-orchestrator-{work.work_id}-1" in _keys(schedule, work.work_id)


def test_reset_stuck_uses_tracker_closed_beads(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    service = _service(repository, schedule, tracker)
    work = service.create_work(WorkCreate(name="search"))
    repository.transition_work(work_id=work.work_id, to=WorkStatus.PROCESSING)
    tracker.add("a", status=BeadStatus.CLOSED)
    tracker.add("b")
    task = service.add_task(work_id=work.work_id, bead_ids=["a", "b"])
    repository.start_task(task_id=task.task_id)

    assert service.reset_stuck(work_id=work.work_id) == [task.task_id]
    assert repository.require_task(task_id=task.task_id).incomplete_bead_ids() == ["b"]


def test_resume_complete_and_merge(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    service = _service(repository, schedule, tracker)
    work = service.create_work(WorkCreate(name="search"))

    with pytest.raises(PreconditionError):
        service.resume_work(work_id=work.work_id)

    repository.transition_work(work_id=work.work_id, to=WorkStatus.PROCESSING)
    repository.transition_work(work_id=work.work_id, to=WorkStatus.IDLE)
    resumed = service.resume_work(work_id=work.work_id)
    assert resumed.status == WorkStatus.PROCESSING
    assert any(
        key is not None and key.startswith(f"resume-orchestrator-{work.work_id}-")
        for key in _keys(schedule, work.work_id)
    )

    merged = service.mark_merged(work_id=work.work_id)
    assert merged.status == WorkStatus.MERGED
    with pytest.raises(PreconditionError, match="terminal state merged"):
        service.complete_work(work_id=work.work_id)


def test_destroy_work_schedules_teardown_once(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
    tracker: FakeTracker,
) -> None:
    service = _service(repository, schedule, tracker)
    work = service.create_work(WorkCreate(name="search"))

    service.destroy_work(work_id=work.work_id)
    service.destroy_work(work_id=work.work_id)

    assert _keys(schedule, work.work_id).count(f"destroy-workspace-{work.work_id}") == 1
    with pytest.raises(NotFoundError):
        service.destroy_work(work_id="w-missing")
