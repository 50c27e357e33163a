from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from bead_orchestrator.control.models import (
    ProcessType,
    ScheduledTaskCreate,
    ScheduledTaskStatus,
    ScheduledTaskType,
)
from bead_orchestrator.control.repository import ScheduleRepository, compute_retry_delay
from bead_orchestrator.errors import NotFoundError
from bead_orchestrator.orchestrator.models import WorkCreate
from bead_orchestrator.orchestrator.repository import OrchestratorRepository
from bead_orchestrator.storage.common import to_db_datetime, utc_now
from bead_orchestrator.storage.sqlmodel_models import ProcessRecord, ScheduledTask

pytestmark = [
    allure.epic("Control Plane"),
    allure.feature("Scheduled Task Queue"),
]


def _work_id(repository: OrchestratorRepository) -> str:
    return repository.create_work(WorkCreate(name="queue")).work_id


def _entry(
    work_id: str,
    *,
    key: str | None = None,
    task_type: ScheduledTaskType = ScheduledTaskType.CREATE_WORKSPACE,
    delay_seconds: int = 0,
    max_attempts: int = 3,
) -> ScheduledTaskCreate:
    return ScheduledTaskCreate(
        work_id=work_id,
        task_type=task_type,
        run_at=utc_now() + timedelta(seconds=delay_seconds) if delay_seconds else None,
        idempotency_key=key,
        max_attempts=max_attempts,
    )


def _age_entry(schedule: ScheduleRepository, entry_id: str, **values: object) -> None:
    with Session(schedule.engine) as session:
        session.exec(sa_update(ScheduledTask).where(col(ScheduledTask.id) == entry_id).values(**values))
        session.commit()


def test_compute_retry_delay_doubles_up_to_cap() -> None:
    delays = [compute_retry_delay(attempt, base_seconds=30, max_seconds=600) for attempt in range(7)]

    assert delays == [30, 30, 60, 120, 240, 480, 600]


def test_schedule_task_is_idempotent_per_work_and_key(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    work_id = _work_id(repository)
    other_id = _work_id(repository)

    first = schedule.schedule_task(_entry(work_id, key="create-workspace"))
    duplicate = schedule.schedule_task(_entry(work_id, key="create-workspace", delay_seconds=60))
    other = schedule.schedule_task(_entry(other_id, key="create-workspace"))
    unkeyed = schedule.schedule_task(_entry(work_id))

    assert duplicate.id == first.id
    assert duplicate.scheduled_at == first.scheduled_at
    assert other.id != first.id
    assert unkeyed.id != first.id
    assert len(schedule.list_tasks(work_id=work_id)) == 2


def test_schedule_task_validation(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    with pytest.raises(NotFoundError, match="work not found: w-missing"):
        schedule.schedule_task(_entry("w-missing"))
    with pytest.raises(ValueError, match="max_attempts"):
        schedule.schedule_task(_entry(_work_id(repository), max_attempts=0))


def test_claim_takes_due_entries_in_schedule_order(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    work_id = _work_id(repository)
    later = schedule.schedule_task(_entry(work_id, key="later", delay_seconds=3_600))
    first = schedule.schedule_task(_entry(work_id, key="first"))
    second = schedule.schedule_task(_entry(work_id, key="second"))

    claimed = schedule.claim_next_due_task()
    assert claimed is not None
    assert claimed.id == first.id
    assert claimed.status == ScheduledTaskStatus.EXECUTING
    assert claimed.attempt_count == 1
    assert claimed.started_at is not None

    claimed_second = schedule.claim_next_due_task()
    assert claimed_second is not None
    assert claimed_second.id == second.id
    assert schedule.claim_next_due_task() is None

    pending = schedule.get_task(task_id=later.id)
    assert pending is not None
    assert pending.status == ScheduledTaskStatus.PENDING


def test_failed_attempt_backs_off_then_fails_permanently(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    work_id = _work_id(repository)
    entry = schedule.schedule_task(_entry(work_id, key="flaky", max_attempts=2))

    claimed = schedule.claim_next_due_task()
    assert claimed is not None
    before = utc_now()
    run_at = schedule.reschedule_with_backoff(
        task_id=claimed.id,
        attempt_count=claimed.attempt_count,
        error_message="boom",
    )
    assert run_at is not None
    assert timedelta(seconds=29) <= run_at - before <= timedelta(seconds=31)

    retried = schedule.get_task(task_id=entry.id)
    assert retried is not None
    assert retried.status == ScheduledTaskStatus.PENDING
    assert retried.attempt_count == 1
    assert retried.error_message == "boom"
    assert schedule.claim_next_due_task() is None

    _age_entry(schedule, entry.id, scheduled_at=to_db_datetime(utc_now() - timedelta(seconds=1)))
    claimed = schedule.claim_next_due_task()
    assert claimed is not None
    assert claimed.attempt_count == 2
    assert not claimed.retries_left

    assert schedule.mark_failed(task_id=claimed.id, error_message="boom again")
    failed = schedule.get_task(task_id=entry.id)
    assert failed is not None
    assert failed.status == ScheduledTaskStatus.FAILED

    work = repository.require_work(work_id=work_id)
    assert work.error_message == "create_workspace failed after 2 attempt(s): boom again"
    assert repository.list_work_events(work_id=work_id)[-1].event_type == "scheduled_task_failed"


def test_mark_completed_requires_executing(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    entry = schedule.schedule_task(_entry(_work_id(repository), key="once"))

    assert not schedule.mark_completed(task_id=entry.id)
    claimed = schedule.claim_next_due_task()
    assert claimed is not None
    assert schedule.mark_completed(task_id=claimed.id)
    assert not schedule.mark_completed(task_id=claimed.id)

    completed = schedule.get_task(task_id=entry.id)
    assert completed is not None
    assert completed.status == ScheduledTaskStatus.COMPLETED
    assert completed.executed_at is not None


def test_schedule_or_update_rearms_finished_entries(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    work_id = _work_id(repository)
    poll = ScheduledTaskType.POLL_FEEDBACK

    created = schedule.schedule_or_update_task(_entry(work_id, key="poll", task_type=poll))
    claimed = schedule.claim_next_due_task()
    assert claimed is not None
    untouched = schedule.schedule_or_update_task(
        _entry(work_id, key="poll", task_type=poll, delay_seconds=60),
    )
    assert untouched.status == ScheduledTaskStatus.EXECUTING

    schedule.mark_completed(task_id=claimed.id)
    rearmed = schedule.schedule_or_update_task(
        _entry(work_id, key="poll", task_type=poll, delay_seconds=60),
    )
    assert rearmed.id == created.id
    assert rearmed.status == ScheduledTaskStatus.PENDING
    assert rearmed.attempt_count == 0
    assert rearmed.scheduled_at > utc_now()

    with pytest.raises(ValueError, match="requires an idempotency key"):
        schedule.schedule_or_update_task(_entry(work_id, task_type=poll))


def test_trigger_now_makes_pending_entries_due(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    work_id = _work_id(repository)
    schedule.schedule_task(
        _entry(work_id, key="sync", task_type=ScheduledTaskType.SYNC_REMOTE, delay_seconds=3_600),
    )
    assert schedule.claim_next_due_task() is None

    count = schedule.trigger_now(work_id=work_id, task_type=ScheduledTaskType.SYNC_REMOTE)

    assert count == 1
    claimed = schedule.claim_next_due_task()
    assert claimed is not None
    assert claimed.task_type == ScheduledTaskType.SYNC_REMOTE


def test_rearm_resets_attempt_budget(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    entry = schedule.schedule_task(
        _entry(_work_id(repository), key="poll", task_type=ScheduledTaskType.POLL_FEEDBACK),
    )
    claimed = schedule.claim_next_due_task()
    assert claimed is not None

    assert schedule.rearm(task_id=claimed.id, run_at=utc_now() + timedelta(minutes=5))

    rearmed = schedule.get_task(task_id=entry.id)
    assert rearmed is not None
    assert rearmed.status == ScheduledTaskStatus.PENDING
    assert rearmed.attempt_count == 0
    assert rearmed.executed_at is not None


def test_recover_stale_executing_reschedules_or_fails(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    work_id = _work_id(repository)
    retryable = schedule.schedule_task(_entry(work_id, key="retryable", max_attempts=3))
    exhausted = schedule.schedule_task(_entry(work_id, key="exhausted", max_attempts=1))
    assert schedule.claim_next_due_task() is not None
    assert schedule.claim_next_due_task() is not None
    stale_start = to_db_datetime(utc_now() - timedelta(hours=2))
    _age_entry(schedule, retryable.id, started_at=stale_start)
    _age_entry(schedule, exhausted.id, started_at=stale_start)

    rescheduled, failed = schedule.recover_stale_executing(stale_after=timedelta(hours=1))

    assert (rescheduled, failed) == (1, 1)
    retried = schedule.get_task(task_id=retryable.id)
    gave_up = schedule.get_task(task_id=exhausted.id)
    assert retried is not None
    assert gave_up is not None
    assert retried.status == ScheduledTaskStatus.PENDING
    assert gave_up.status == ScheduledTaskStatus.FAILED
    assert gave_up.error_message == "executing for longer than 3600s"


def test_cleanup_removes_only_old_finished_entries(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    work_id = _work_id(repository)
    old = schedule.schedule_task(_entry(work_id, key="old"))
    fresh = schedule.schedule_task(_entry(work_id, key="fresh"))
    pending = schedule.schedule_task(_entry(work_id, key="pending", delay_seconds=3_600))
    for _ in range(2):
        claimed = schedule.claim_next_due_task()
        assert claimed is not None
        schedule.mark_completed(task_id=claimed.id)
    long_ago = to_db_datetime(utc_now() - timedelta(days=30))
    _age_entry(schedule, old.id, updated_at=long_ago)
    _age_entry(schedule, pending.id, updated_at=long_ago)

    removed = schedule.cleanup_old_tasks(older_than=timedelta(days=7))

    assert removed == 1
    assert schedule.get_task(task_id=old.id) is None
    assert schedule.get_task(task_id=fresh.id) is not None
    assert schedule.get_task(task_id=pending.id) is not None


def test_deleting_work_drops_its_queue_entries(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    work_id = _work_id(repository)
    entry = schedule.schedule_task(_entry(work_id, key="destroy"))

    repository.delete_work(work_id=work_id)

    assert schedule.get_task(task_id=entry.id) is None


def test_process_registry_heartbeats_and_staleness(
    repository: OrchestratorRepository,
    schedule: ScheduleRepository,
) -> None:
    work_id = _work_id(repository)
    first = schedule.register_process(
        process_type=ProcessType.ORCHESTRATOR,
        pid=100,
        hostname="host",
        work_id=work_id,
    )
    second = schedule.register_process(
        process_type=ProcessType.ORCHESTRATOR,
        pid=200,
        hostname="host",
        work_id=work_id,
    )

    current = schedule.get_work_process(work_id=work_id)
    assert current is not None
    assert current.process_id == second.process_id
    assert not schedule.heartbeat(process_id=first.process_id)
    assert schedule.heartbeat(process_id=second.process_id)

    with Session(schedule.engine) as session:
        session.exec(
            sa_update(ProcessRecord)
            .where(col(ProcessRecord.process_id) == second.process_id)
            .values(heartbeat_at=to_db_datetime(utc_now() - timedelta(minutes=5))),
        )
        session.commit()

    stale = schedule.list_stale_processes(
        process_type=ProcessType.ORCHESTRATOR,
        stale_after=timedelta(seconds=30),
    )
    assert [process.process_id for process in stale] == [second.process_id]
    assert (
        schedule.list_live_processes(
            process_type=ProcessType.ORCHESTRATOR,
            stale_after=timedelta(seconds=30),
        )
        == []
    )
    assert schedule.delete_process(process_id=second.process_id)
    assert schedule.get_work_process(work_id=work_id) is None
