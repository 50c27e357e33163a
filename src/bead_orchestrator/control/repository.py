"""Persistent scheduled task queue and process heartbeat registry."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from bead_orchestrator.control.models import (
    ProcessType,
    ProcessView,
    ScheduledTaskCreate,
    ScheduledTaskStatus,
    ScheduledTaskType,
    ScheduledTaskView,
)
from bead_orchestrator.errors import NotFoundError
from bead_orchestrator.orchestrator.repository import add_work_event
from bead_orchestrator.storage.alembic_runner import upgrade_head
from bead_orchestrator.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from bead_orchestrator.storage.sqlmodel_models import ProcessRecord, ScheduledTask, Work

logger = logging.getLogger(__name__)


class ScheduleRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        retry_base_seconds: int = 30,
        retry_max_seconds: int = 600,
    ) -> None:
        self.db_path = db_path
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    # -- scheduling -----------------------------------------------------------

    def schedule_task(self, payload: ScheduledTaskCreate) -> ScheduledTaskView:
        """Create a pending entry; an existing idempotency key makes this a no-op.

        Returns the entry that represents the logical operation, which is the
        previously scheduled one when the key was already used for the work.
        """

        if payload.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if payload.idempotency_key is not None:
                existing = self._by_key(
                    session=session,
                    work_id=payload.work_id,
                    idempotency_key=payload.idempotency_key,
                )
                if existing is not None:
                    logger.debug(
                        "Skipping duplicate %s for work %s (key %s)",
                        payload.task_type.value,
                        payload.work_id,
                        payload.idempotency_key,
                    )
                    return _to_scheduled_view(existing)

            work = session.exec(select(Work).where(Work.work_id == payload.work_id)).one_or_none()
            if work is None:
                raise NotFoundError("work", payload.work_id)

            row = ScheduledTask(
                id=str(uuid4()),
                work_id=payload.work_id,
                task_type=payload.task_type.value,
                status=ScheduledTaskStatus.PENDING.value,
                scheduled_at=to_db_datetime(payload.run_at) if payload.run_at else now,
                attempt_count=0,
                max_attempts=payload.max_attempts,
                idempotency_key=payload.idempotency_key,
                metadata_json=dump_json(payload.metadata),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if payload.idempotency_key is None:
                    raise
                existing = self._by_key(
                    session=session,
                    work_id=payload.work_id,
                    idempotency_key=payload.idempotency_key,
                )
                if existing is None:
                    raise
                return _to_scheduled_view(existing)
            session.refresh(row)
            return _to_scheduled_view(row)

    def schedule_or_update_task(self, payload: ScheduledTaskCreate) -> ScheduledTaskView:
        """Arm the keyed entry to run at ``payload.run_at``, creating it if needed.

        A pending entry is moved to the new time; a finished one is re-armed with a
        fresh attempt budget. An executing entry is left alone.
        """

        if payload.idempotency_key is None:
            raise ValueError("schedule_or_update_task requires an idempotency key")
        now = to_db_datetime(utc_now())
        run_at = to_db_datetime(payload.run_at) if payload.run_at else now
        with Session(self.engine) as session:
            existing = self._by_key(
                session=session,
                work_id=payload.work_id,
                idempotency_key=payload.idempotency_key,
            )
            if existing is None:
                return self.schedule_task(payload)
            if existing.status == ScheduledTaskStatus.EXECUTING.value:
                return _to_scheduled_view(existing)

            session.exec(
                sa_update(ScheduledTask)
                .where(
                    col(ScheduledTask.id) == existing.id,
                    col(ScheduledTask.status) == existing.status,
                )
                .values(
                    status=ScheduledTaskStatus.PENDING.value,
                    scheduled_at=run_at,
                    attempt_count=(
                        existing.attempt_count
                        if existing.status == ScheduledTaskStatus.PENDING.value
                        else 0
                    ),
                    max_attempts=payload.max_attempts,
                    metadata_json=dump_json(payload.metadata) or existing.metadata_json,
                    error_message=None,
                    started_at=None,
                    executed_at=None,
                    updated_at=now,
                ),
            )
            session.commit()
            session.refresh(existing)
            return _to_scheduled_view(existing)

    def trigger_now(self, *, work_id: str, task_type: ScheduledTaskType) -> int:
        """Make pending entries of ``task_type`` for a work due immediately."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScheduledTask)
                .where(
                    col(ScheduledTask.work_id) == work_id,
                    col(ScheduledTask.task_type) == task_type.value,
                    col(ScheduledTask.status) == ScheduledTaskStatus.PENDING.value,
                )
                .values(scheduled_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount

    # -- execution ------------------------------------------------------------

    def claim_next_due_task(self) -> ScheduledTaskView | None:
        """Atomically claim one due pending entry."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(ScheduledTask)
                    .where(
                        ScheduledTask.status == ScheduledTaskStatus.PENDING.value,
                        ScheduledTask.scheduled_at <= now,
                    )
                    .order_by(
                        col(ScheduledTask.scheduled_at).asc(),
                        col(ScheduledTask.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(ScheduledTask)
                    .where(
                        col(ScheduledTask.id) == candidate.id,
                        col(ScheduledTask.status) == ScheduledTaskStatus.PENDING.value,
                    )
                    .values(
                        status=ScheduledTaskStatus.EXECUTING.value,
                        attempt_count=candidate.attempt_count + 1,
                        started_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                session.refresh(candidate)
                return _to_scheduled_view(candidate)

    def mark_completed(self, *, task_id: str) -> bool:
        """executing -> completed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScheduledTask)
                .where(
                    col(ScheduledTask.id) == task_id,
                    col(ScheduledTask.status) == ScheduledTaskStatus.EXECUTING.value,
                )
                .values(
                    status=ScheduledTaskStatus.COMPLETED.value,
                    executed_at=now,
                    error_message=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def reschedule_with_backoff(
        self,
        *,
        task_id: str,
        attempt_count: int,
        error_message: str,
    ) -> datetime | None:
        """executing -> pending after an exponential delay, keeping the attempt count.

        Returns the next run time, or ``None`` when the entry was no longer executing.
        """

        delay = compute_retry_delay(
            attempt_count,
            base_seconds=self.retry_base_seconds,
            max_seconds=self.retry_max_seconds,
        )
        run_at = utc_now() + timedelta(seconds=delay)
        if not self._return_to_pending(task_id=task_id, run_at=run_at, error_message=error_message):
            return None
        return run_at

    def recover_stale_executing(self, *, stale_after: timedelta) -> tuple[int, int]:
        """Treat entries executing longer than ``stale_after`` as timed-out attempts.

        Returns ``(rescheduled, failed)``.
        """

        rescheduled = 0
        failed = 0
        for entry in self.list_stale_executing(stale_after=stale_after):
            message = f"executing for longer than {int(stale_after.total_seconds())}s"
            if entry.retries_left:
                if self.reschedule_with_backoff(
                    task_id=entry.id,
                    attempt_count=entry.attempt_count,
                    error_message=message,
                ):
                    rescheduled += 1
            elif self.mark_failed(task_id=entry.id, error_message=message):
                failed += 1
        if rescheduled or failed:
            logger.warning(
                "Recovered stale executing entries: %d rescheduled, %d failed",
                rescheduled,
                failed,
            )
        return rescheduled, failed

    def _return_to_pending(self, *, task_id: str, run_at: datetime, error_message: str) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScheduledTask)
                .where(
                    col(ScheduledTask.id) == task_id,
                    col(ScheduledTask.status) == ScheduledTaskStatus.EXECUTING.value,
                )
                .values(
                    status=ScheduledTaskStatus.PENDING.value,
                    scheduled_at=to_db_datetime(run_at),
                    error_message=error_message,
                    started_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def rearm(self, *, task_id: str, run_at: datetime) -> bool:
        """executing -> pending with a fresh attempt budget; used by self-rescheduling pollers."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScheduledTask)
                .where(
                    col(ScheduledTask.id) == task_id,
                    col(ScheduledTask.status) == ScheduledTaskStatus.EXECUTING.value,
                )
                .values(
                    status=ScheduledTaskStatus.PENDING.value,
                    scheduled_at=to_db_datetime(run_at),
                    attempt_count=0,
                    error_message=None,
                    started_at=None,
                    executed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_failed(self, *, task_id: str, error_message: str) -> bool:
        """executing -> failed, surfacing the failure on the owning work."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(select(ScheduledTask).where(ScheduledTask.id == task_id)).one_or_none()
            if row is None:
                return False
            result = session.exec(
                sa_update(ScheduledTask)
                .where(
                    col(ScheduledTask.id) == task_id,
                    col(ScheduledTask.status) == ScheduledTaskStatus.EXECUTING.value,
                )
                .values(
                    status=ScheduledTaskStatus.FAILED.value,
                    error_message=error_message,
                    executed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.exec(
                sa_update(Work)
                .where(col(Work.work_id) == row.work_id)
                .values(
                    error_message=(
                        f"{row.task_type} failed after {row.attempt_count} attempt(s): "
                        f"{error_message}"
                    ),
                    updated_at=now,
                ),
            )
            add_work_event(
                session=session,
                work_id=row.work_id,
                event_type="scheduled_task_failed",
                status_from=None,
                status_to=None,
                details={
                    "scheduled_task_id": task_id,
                    "task_type": row.task_type,
                    "attempt_count": row.attempt_count,
                    "error": error_message,
                },
            )
            session.commit()
            return True

    def list_stale_executing(self, *, stale_after: timedelta) -> list[ScheduledTaskView]:
        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(ScheduledTask).where(
                    ScheduledTask.status == ScheduledTaskStatus.EXECUTING.value,
                    col(ScheduledTask.started_at) < cutoff,
                ),
            ).all()
        return [_to_scheduled_view(row) for row in rows]

    def get_task(self, *, task_id: str) -> ScheduledTaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(ScheduledTask).where(ScheduledTask.id == task_id)).one_or_none()
            return _to_scheduled_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        work_id: str | None = None,
        status: ScheduledTaskStatus | None = None,
        limit: int = 50,
    ) -> list[ScheduledTaskView]:
        """List queue entries, soonest first."""

        with Session(self.engine) as session:
            statement = (
                select(ScheduledTask)
                .order_by(col(ScheduledTask.scheduled_at).asc(), col(ScheduledTask.created_at).asc())
                .limit(limit)
            )
            if work_id is not None:
                statement = statement.where(ScheduledTask.work_id == work_id)
            if status is not None:
                statement = statement.where(ScheduledTask.status == status.value)
            rows = session.exec(statement).all()
        return [_to_scheduled_view(row) for row in rows]

    def cleanup_old_tasks(self, *, older_than: timedelta) -> int:
        """Delete finished entries last touched before ``now - older_than``."""

        cutoff = to_db_datetime(utc_now() - older_than)
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ScheduledTask).where(
                    col(ScheduledTask.status).in_(
                        [ScheduledTaskStatus.COMPLETED.value, ScheduledTaskStatus.FAILED.value],
                    ),
                    col(ScheduledTask.updated_at) < cutoff,
                ),
            )
            session.commit()
            return result.rowcount

    def _by_key(
        self,
        *,
        session: Session,
        work_id: str,
        idempotency_key: str,
    ) -> ScheduledTask | None:
        return session.exec(
            select(ScheduledTask).where(
                ScheduledTask.work_id == work_id,
                ScheduledTask.idempotency_key == idempotency_key,
            ),
        ).one_or_none()

    # -- processes ------------------------------------------------------------

    def register_process(
        self,
        *,
        process_type: ProcessType,
        pid: int,
        hostname: str,
        work_id: str | None = None,
    ) -> ProcessView:
        """Record a live process; an orchestrator replaces any older record for its work."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if process_type == ProcessType.ORCHESTRATOR and work_id is not None:
                session.exec(
                    sa_delete(ProcessRecord).where(
                        col(ProcessRecord.work_id) == work_id,
                        col(ProcessRecord.process_type) == ProcessType.ORCHESTRATOR.value,
                    ),
                )
            row = ProcessRecord(
                process_id=str(uuid4()),
                process_type=process_type.value,
                work_id=work_id,
                pid=pid,
                hostname=hostname,
                started_at=now,
                heartbeat_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_process_view(row)

    def heartbeat(self, *, process_id: str) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ProcessRecord)
                .where(col(ProcessRecord.process_id) == process_id)
                .values(heartbeat_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def delete_process(self, *, process_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ProcessRecord).where(col(ProcessRecord.process_id) == process_id),
            )
            session.commit()
            return result.rowcount == 1

    def get_work_process(self, *, work_id: str) -> ProcessView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProcessRecord).where(
                    ProcessRecord.work_id == work_id,
                    ProcessRecord.process_type == ProcessType.ORCHESTRATOR.value,
                ),
            ).one_or_none()
            return _to_process_view(row) if row is not None else None

    def list_stale_processes(
        self,
        *,
        process_type: ProcessType,
        stale_after: timedelta,
    ) -> list[ProcessView]:
        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(ProcessRecord).where(
                    ProcessRecord.process_type == process_type.value,
                    col(ProcessRecord.heartbeat_at) < cutoff,
                ),
            ).all()
        return [_to_process_view(row) for row in rows]

    def list_live_processes(
        self,
        *,
        process_type: ProcessType,
        stale_after: timedelta,
    ) -> list[ProcessView]:
        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(ProcessRecord).where(
                    ProcessRecord.process_type == process_type.value,
                    col(ProcessRecord.heartbeat_at) >= cutoff,
                ),
            ).all()
        return [_to_process_view(row) for row in rows]


def compute_retry_delay(attempt: int, *, base_seconds: int, max_seconds: int) -> int:
    """Deterministic exponential backoff: ``min(max, base * 2 ** (attempt - 1))``."""

    exponent = max(attempt - 1, 0)
    return min(max_seconds, base_seconds * (2**exponent))


def _to_scheduled_view(row: ScheduledTask) -> ScheduledTaskView:
    return ScheduledTaskView(
        id=row.id,
        work_id=row.work_id,
        task_type=ScheduledTaskType(row.task_type),
        status=ScheduledTaskStatus(row.status),
        scheduled_at=to_utc_aware_datetime(row.scheduled_at),
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        idempotency_key=row.idempotency_key,
        metadata=load_json(row.metadata_json),
        error_message=row.error_message,
        started_at=optional_utc(row.started_at),
        executed_at=optional_utc(row.executed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_process_view(row: ProcessRecord) -> ProcessView:
    return ProcessView(
        process_id=row.process_id,
        process_type=ProcessType(row.process_type),
        work_id=row.work_id,
        pid=row.pid,
        hostname=row.hostname,
        started_at=to_utc_aware_datetime(row.started_at),
        heartbeat_at=to_utc_aware_datetime(row.heartbeat_at),
    )
