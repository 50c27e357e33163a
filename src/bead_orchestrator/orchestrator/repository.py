"""Persistence for works, tasks, bead membership and the estimation cache."""

from __future__ import annotations

import logging
from collections.abc import Collection
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from bead_orchestrator.errors import NotFoundError, PreconditionError
from bead_orchestrator.orchestrator.models import (
    TERMINAL_WORK_STATUSES,
    BeadCompletion,
    BeadRunStatus,
    TaskBeadView,
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskView,
    WorkCreate,
    WorkDetails,
    WorkEventView,
    WorkStatus,
    WorkView,
    work_sources_for,
)
from bead_orchestrator.planning.models import BeadEstimate
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
from bead_orchestrator.storage.sqlmodel_models import (
    ComplexityEstimate,
    TaskBead,
    TaskDependency,
    Work,
    WorkEvent,
    WorkTask,
)

logger = logging.getLogger(__name__)

_FINISHED_WORK_STATUSES = frozenset(
    {WorkStatus.COMPLETED, WorkStatus.MERGED, WorkStatus.FAILED},
)


class OrchestratorRepository:
    """Work/task state machine persistence backed by SQLModel + SQLite.

    Every transition is a single ``UPDATE ... WHERE status = <expected>`` so that
    concurrent callers (CLI commands, the per-work runner and the control plane)
    cannot lose each other's updates.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- works ----------------------------------------------------------------

    def create_work(self, payload: WorkCreate) -> WorkView:
        """Create a pending work."""

        now = to_db_datetime(utc_now())
        work_id = payload.work_id or f"w-{uuid4().hex[:8]}"
        with Session(self.engine) as session:
            row = Work(
                work_id=work_id,
                name=payload.name,
                branch=payload.branch or f"bead-orch/{work_id}",
                root_bead_id=payload.root_bead_id,
                status=WorkStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            add_work_event(
                session=session,
                work_id=work_id,
                event_type="created",
                status_from=None,
                status_to=WorkStatus.PENDING.value,
                details={"branch": row.branch, "root_bead_id": payload.root_bead_id},
            )
            session.commit()
            session.refresh(row)
            return _to_work_view(row)

    def get_work(self, *, work_id: str) -> WorkView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Work).where(Work.work_id == work_id)).one_or_none()
            return _to_work_view(row) if row is not None else None

    def require_work(self, *, work_id: str) -> WorkView:
        work = self.get_work(work_id=work_id)
        if work is None:
            raise NotFoundError("work", work_id)
        return work

    def list_works(self, *, status: WorkStatus | None = None, limit: int = 50) -> list[WorkView]:
        """List recent works, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Work).order_by(col(Work.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Work.status == status.value)
            rows = session.exec(statement).all()
        return [_to_work_view(row) for row in rows]

    def transition_work(
        self,
        *,
        work_id: str,
        to: WorkStatus,
        expected: Collection[WorkStatus] | None = None,
        error_message: str | None = None,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
    ) -> WorkView:
        """Move a work to ``to`` if its current status allows it.

        ``expected`` narrows the legal source statuses further; it can never widen
        them beyond the transition table.

        Raises:
            NotFoundError: the work does not exist.
            PreconditionError: the current status does not allow the move.
        """

        legal_sources = set(work_sources_for(to))
        if to == WorkStatus.PROCESSING:
            # failed -> processing only through restart_work
            legal_sources.discard(WorkStatus.FAILED)
        if expected is not None:
            legal_sources &= set(expected)
        with Session(self.engine) as session:
            row = session.exec(select(Work).where(Work.work_id == work_id)).one_or_none()
            if row is None:
                raise NotFoundError("work", work_id)
            current = WorkStatus(row.status)
            if current not in legal_sources:
                raise PreconditionError(
                    kind="work",
                    identifier=work_id,
                    current=current.value,
                    expected=sorted(status.value for status in legal_sources),
                    action=f"move to {to.value}",
                    terminal=current in TERMINAL_WORK_STATUSES,
                )
            self._apply_work_transition(
                session=session,
                row=row,
                current=current,
                to=to,
                error_message=error_message,
                extra_values={},
                event_type=event_type or f"work_{to.value}",
                details=details or {},
            )
            session.commit()
            session.refresh(row)
            return _to_work_view(row)

    def restart_work(self, *, work_id: str) -> WorkView:
        """Explicit operator restart: failed -> processing."""

        with Session(self.engine) as session:
            row = session.exec(select(Work).where(Work.work_id == work_id)).one_or_none()
            if row is None:
                raise NotFoundError("work", work_id)
            current = WorkStatus(row.status)
            if current != WorkStatus.FAILED:
                raise PreconditionError(
                    kind="work",
                    identifier=work_id,
                    current=current.value,
                    expected=[WorkStatus.FAILED.value],
                    action="restart",
                    terminal=current in TERMINAL_WORK_STATUSES,
                )
            self._apply_work_transition(
                session=session,
                row=row,
                current=current,
                to=WorkStatus.PROCESSING,
                error_message=None,
                extra_values={"restart_count": row.restart_count + 1},
                event_type="work_restarted",
                details={"restart_count": row.restart_count + 1},
            )
            session.commit()
            session.refresh(row)
            return _to_work_view(row)

    def record_work_error(
        self,
        *,
        work_id: str,
        message: str,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Surface an error on a work without changing its status."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Work)
                .where(col(Work.work_id) == work_id)
                .values(error_message=message, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            add_work_event(
                session=session,
                work_id=work_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details={"error": message, **(details or {})},
            )
            session.commit()
            return True

    def set_workspace_path(self, *, work_id: str, workspace_path: str | None) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Work)
                .where(col(Work.work_id) == work_id)
                .values(workspace_path=workspace_path, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError("work", work_id)
            add_work_event(
                session=session,
                work_id=work_id,
                event_type="workspace_set",
                status_from=None,
                status_to=None,
                details={"workspace_path": workspace_path},
            )
            session.commit()

    def delete_work(self, *, work_id: str) -> bool:
        """Delete a work; tasks, queue entries and events cascade."""

        with Session(self.engine) as session:
            result = session.exec(sa_delete(Work).where(col(Work.work_id) == work_id))
            session.commit()
            return result.rowcount == 1

    def _apply_work_transition(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: Work,
        current: WorkStatus,
        to: WorkStatus,
        error_message: str | None,
        extra_values: dict[str, object],
        event_type: str,
        details: dict[str, object],
    ) -> None:
        now = to_db_datetime(utc_now())
        values: dict[str, object] = {"status": to.value, "updated_at": now, **extra_values}
        if to == WorkStatus.PROCESSING:
            values["error_message"] = None
            values["finished_at"] = None
            if row.started_at is None:
                values["started_at"] = now
        if to in _FINISHED_WORK_STATUSES:
            values["finished_at"] = now
        if error_message is not None:
            values["error_message"] = error_message

        result = session.exec(
            sa_update(Work)
            .where(col(Work.work_id) == row.work_id, col(Work.status) == current.value)
            .values(**values),
        )
        if result.rowcount != 1:
            session.rollback()
            raise PreconditionError(
                kind="work",
                identifier=row.work_id,
                current=current.value,
                expected=[current.value],
                action=f"move to {to.value} (status changed concurrently)",
            )
        add_work_event(
            session=session,
            work_id=row.work_id,
            event_type=event_type,
            status_from=current.value,
            status_to=to.value,
            details={**details, "error": error_message} if error_message else details,
        )

    # -- tasks ----------------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Attach a pending task with its beads to a work."""

        bead_ids = list(dict.fromkeys(payload.bead_ids))
        if not bead_ids:
            raise ValueError("A task needs at least one bead.")

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            work = session.exec(select(Work).where(Work.work_id == payload.work_id)).one_or_none()
            if work is None:
                raise NotFoundError("work", payload.work_id)
            if WorkStatus(work.status) in TERMINAL_WORK_STATUSES:
                raise PreconditionError(
                    kind="work",
                    identifier=payload.work_id,
                    current=work.status,
                    expected=[],
                    action="attach task to",
                    terminal=True,
                )

            session.exec(
                sa_update(Work)
                .where(col(Work.work_id) == payload.work_id)
                .values(task_counter=col(Work.task_counter) + 1, updated_at=now),
            )
            position = session.exec(
                select(Work.task_counter).where(Work.work_id == payload.work_id),
            ).one()
            task_id = f"{payload.work_id}.{position}"
            row = WorkTask(
                task_id=task_id,
                work_id=payload.work_id,
                position=position,
                task_type=payload.task_type.value,
                status=TaskStatus.PENDING.value,
                score_total=payload.score_total,
                token_total=payload.token_total,
                over_budget=payload.over_budget,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            for index, bead_id in enumerate(bead_ids):
                session.add(
                    TaskBead(
                        task_id=task_id,
                        bead_id=bead_id,
                        position=index,
                        status=BeadRunStatus.PENDING.value,
                        updated_at=now,
                    ),
                )
            for depends_on in dict.fromkeys(payload.depends_on_task_ids):
                session.add(TaskDependency(task_id=task_id, depends_on_task_id=depends_on))
            add_work_event(
                session=session,
                work_id=payload.work_id,
                task_id=task_id,
                event_type="task_created",
                status_from=None,
                status_to=TaskStatus.PENDING.value,
                details={
                    "task_type": payload.task_type.value,
                    "bead_ids": bead_ids,
                    "token_total": payload.token_total,
                    "over_budget": payload.over_budget,
                },
            )
            session.commit()
            session.refresh(row)
            return _load_task_view(session=session, row=row)

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(WorkTask).where(WorkTask.task_id == task_id)).one_or_none()
            if row is None:
                return None
            return _load_task_view(session=session, row=row)

    def require_task(self, *, task_id: str) -> TaskView:
        task = self.get_task(task_id=task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def list_tasks(
        self,
        *,
        work_id: str,
        task_type: TaskType | None = None,
        status: TaskStatus | None = None,
    ) -> list[TaskView]:
        """List a work's tasks in execution order."""

        with Session(self.engine) as session:
            statement = (
                select(WorkTask)
                .where(WorkTask.work_id == work_id)
                .order_by(col(WorkTask.position).asc())
            )
            if task_type is not None:
                statement = statement.where(WorkTask.task_type == task_type.value)
            if status is not None:
                statement = statement.where(WorkTask.status == status.value)
            rows = session.exec(statement).all()
            return [_load_task_view(session=session, row=row) for row in rows]

    def next_runnable_task(self, *, work_id: str) -> TaskView | None:
        """First pending implement task whose task dependencies have all completed."""

        tasks = self.list_tasks(work_id=work_id, task_type=TaskType.IMPLEMENT)
        completed = {task.task_id for task in tasks if task.status == TaskStatus.COMPLETED}
        for task in tasks:
            if task.status != TaskStatus.PENDING:
                continue
            if all(dependency in completed for dependency in task.depends_on):
                return task
        return None

    def task_beads(self, *, task_id: str) -> list[TaskBeadView]:
        return self.require_task(task_id=task_id).beads

    def add_task_dependency(self, *, task_id: str, depends_on_task_id: str) -> bool:
        """Record that ``task_id`` may only start once ``depends_on_task_id`` completed."""

        if task_id == depends_on_task_id:
            raise ValueError("A task cannot depend on itself.")
        with Session(self.engine) as session:
            row = self._task_row(session=session, task_id=task_id)
            dependency = self._task_row(session=session, task_id=depends_on_task_id)
            if dependency.work_id != row.work_id:
                raise ValueError(
                    f"Task {depends_on_task_id} belongs to another work than {task_id}.",
                )
            session.add(TaskDependency(task_id=task_id, depends_on_task_id=depends_on_task_id))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def has_unfinished_tasks(self, *, work_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkTask.task_id)
                .where(
                    WorkTask.work_id == work_id,
                    WorkTask.task_type == TaskType.IMPLEMENT.value,
                    col(WorkTask.status).in_(
                        [TaskStatus.PENDING.value, TaskStatus.PROCESSING.value],
                    ),
                )
                .limit(1),
            ).first()
            return row is not None

    def start_task(self, *, task_id: str) -> TaskView:
        """pending -> processing."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._task_row(session=session, task_id=task_id)
            self._require_task_status(row=row, allowed=(TaskStatus.PENDING,), action="start")
            result = session.exec(
                sa_update(WorkTask)
                .where(
                    col(WorkTask.task_id) == task_id,
                    col(WorkTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.PROCESSING.value,
                    started_at=now,
                    finished_at=None,
                    error_message=None,
                    updated_at=now,
                ),
            )
            self._check_task_update(session=session, result_rowcount=result.rowcount, row=row)
            add_work_event(
                session=session,
                work_id=row.work_id,
                task_id=task_id,
                event_type="task_started",
                status_from=TaskStatus.PENDING.value,
                status_to=TaskStatus.PROCESSING.value,
                details={},
            )
            session.commit()
            session.refresh(row)
            return _load_task_view(session=session, row=row)

    def complete_bead(self, *, task_id: str, bead_id: str) -> BeadCompletion:
        """Mark one bead completed; the task completes once every bead has."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._task_row(session=session, task_id=task_id)
            self._require_task_status(
                row=row,
                allowed=(TaskStatus.PROCESSING,),
                action="complete bead in",
            )
            bead = self._bead_row(session=session, task_id=task_id, bead_id=bead_id)
            if bead.status != BeadRunStatus.COMPLETED.value:
                session.exec(
                    sa_update(TaskBead)
                    .where(col(TaskBead.task_id) == task_id, col(TaskBead.bead_id) == bead_id)
                    .values(status=BeadRunStatus.COMPLETED.value, updated_at=now),
                )
                add_work_event(
                    session=session,
                    work_id=row.work_id,
                    task_id=task_id,
                    event_type="bead_completed",
                    status_from=None,
                    status_to=None,
                    details={"bead_id": bead_id},
                )

            remaining = session.exec(
                select(TaskBead.bead_id).where(
                    TaskBead.task_id == task_id,
                    TaskBead.status != BeadRunStatus.COMPLETED.value,
                ),
            ).all()
            task_completed = False
            if not remaining:
                result = session.exec(
                    sa_update(WorkTask)
                    .where(
                        col(WorkTask.task_id) == task_id,
                        col(WorkTask.status) == TaskStatus.PROCESSING.value,
                    )
                    .values(
                        status=TaskStatus.COMPLETED.value,
                        finished_at=now,
                        updated_at=now,
                    ),
                )
                self._check_task_update(
                    session=session,
                    result_rowcount=result.rowcount,
                    row=row,
                )
                add_work_event(
                    session=session,
                    work_id=row.work_id,
                    task_id=task_id,
                    event_type="task_completed",
                    status_from=TaskStatus.PROCESSING.value,
                    status_to=TaskStatus.COMPLETED.value,
                    details={},
                )
                task_completed = True
            session.commit()
            session.refresh(row)
            return BeadCompletion(
                task=_load_task_view(session=session, row=row),
                task_completed=task_completed,
                task_failed=False,
            )

    def fail_bead(self, *, task_id: str, bead_id: str, message: str) -> BeadCompletion:
        """Mark one bead failed, which fails its task (and the work for implement tasks)."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._task_row(session=session, task_id=task_id)
            self._require_task_status(
                row=row,
                allowed=(TaskStatus.PROCESSING,),
                action="fail bead in",
            )
            self._bead_row(session=session, task_id=task_id, bead_id=bead_id)
            session.exec(
                sa_update(TaskBead)
                .where(col(TaskBead.task_id) == task_id, col(TaskBead.bead_id) == bead_id)
                .values(status=BeadRunStatus.FAILED.value, updated_at=now),
            )
            add_work_event(
                session=session,
                work_id=row.work_id,
                task_id=task_id,
                event_type="bead_failed",
                status_from=None,
                status_to=None,
                details={"bead_id": bead_id, "error": message},
            )
            self._apply_task_failure(
                session=session,
                row=row,
                message=f"bead {bead_id} failed: {message}",
            )
            session.commit()
            session.refresh(row)
            return BeadCompletion(
                task=_load_task_view(session=session, row=row),
                task_completed=False,
                task_failed=True,
            )

    def fail_task(self, *, task_id: str, message: str) -> TaskView:
        """processing -> failed with the reported message."""

        with Session(self.engine) as session:
            row = self._task_row(session=session, task_id=task_id)
            self._require_task_status(row=row, allowed=(TaskStatus.PROCESSING,), action="fail")
            self._apply_task_failure(session=session, row=row, message=message)
            session.commit()
            session.refresh(row)
            return _load_task_view(session=session, row=row)

    def reset_task(self, *, task_id: str) -> TaskView:
        """failed -> pending, keeping completed beads so a re-run skips them."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._task_row(session=session, task_id=task_id)
            self._require_task_status(row=row, allowed=(TaskStatus.FAILED,), action="reset")
            result = session.exec(
                sa_update(WorkTask)
                .where(
                    col(WorkTask.task_id) == task_id,
                    col(WorkTask.status) == TaskStatus.FAILED.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    error_message=None,
                    started_at=None,
                    finished_at=None,
                    updated_at=now,
                ),
            )
            self._check_task_update(session=session, result_rowcount=result.rowcount, row=row)
            session.exec(
                sa_update(TaskBead)
                .where(
                    col(TaskBead.task_id) == task_id,
                    col(TaskBead.status) == BeadRunStatus.FAILED.value,
                )
                .values(status=BeadRunStatus.PENDING.value, updated_at=now),
            )
            add_work_event(
                session=session,
                work_id=row.work_id,
                task_id=task_id,
                event_type="task_reset",
                status_from=TaskStatus.FAILED.value,
                status_to=TaskStatus.PENDING.value,
                details={},
            )
            session.commit()
            session.refresh(row)
            return _load_task_view(session=session, row=row)

    def reset_stuck_processing_tasks(
        self,
        *,
        work_id: str,
        closed_bead_ids: Collection[str] = (),
    ) -> list[str]:
        """Return processing implement tasks of a work to pending.

        Beads already closed in the issue tracker are preserved as completed; other
        incomplete beads go back to pending.
        """

        now = to_db_datetime(utc_now())
        reset_ids: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkTask).where(
                    WorkTask.work_id == work_id,
                    WorkTask.task_type == TaskType.IMPLEMENT.value,
                    WorkTask.status == TaskStatus.PROCESSING.value,
                ),
            ).all()
            for row in rows:
                result = session.exec(
                    sa_update(WorkTask)
                    .where(
                        col(WorkTask.task_id) == row.task_id,
                        col(WorkTask.status) == TaskStatus.PROCESSING.value,
                    )
                    .values(status=TaskStatus.PENDING.value, started_at=None, updated_at=now),
                )
                if result.rowcount != 1:
                    continue
                if closed_bead_ids:
                    session.exec(
                        sa_update(TaskBead)
                        .where(
                            col(TaskBead.task_id) == row.task_id,
                            col(TaskBead.bead_id).in_(list(closed_bead_ids)),
                        )
                        .values(status=BeadRunStatus.COMPLETED.value, updated_at=now),
                    )
                session.exec(
                    sa_update(TaskBead)
                    .where(
                        col(TaskBead.task_id) == row.task_id,
                        col(TaskBead.status) == BeadRunStatus.FAILED.value,
                    )
                    .values(status=BeadRunStatus.PENDING.value, updated_at=now),
                )
                add_work_event(
                    session=session,
                    work_id=work_id,
                    task_id=row.task_id,
                    event_type="task_reset_stuck",
                    status_from=TaskStatus.PROCESSING.value,
                    status_to=TaskStatus.PENDING.value,
                    details={"closed_bead_ids": sorted(closed_bead_ids)},
                )
                reset_ids.append(row.task_id)
            session.commit()
        if reset_ids:
            logger.info("Reset %d stuck task(s) for work %s", len(reset_ids), work_id)
        return reset_ids

    def _apply_task_failure(self, *, session: Session, row: WorkTask, message: str) -> None:
        now = to_db_datetime(utc_now())
        result = session.exec(
            sa_update(WorkTask)
            .where(
                col(WorkTask.task_id) == row.task_id,
                col(WorkTask.status) == TaskStatus.PROCESSING.value,
            )
            .values(
                status=TaskStatus.FAILED.value,
                error_message=message,
                finished_at=now,
                updated_at=now,
            ),
        )
        self._check_task_update(session=session, result_rowcount=result.rowcount, row=row)
        add_work_event(
            session=session,
            work_id=row.work_id,
            task_id=row.task_id,
            event_type="task_failed",
            status_from=TaskStatus.PROCESSING.value,
            status_to=TaskStatus.FAILED.value,
            details={"error": message},
        )
        if row.task_type != TaskType.IMPLEMENT.value:
            return

        work_result = session.exec(
            sa_update(Work)
            .where(
                col(Work.work_id) == row.work_id,
                col(Work.status) == WorkStatus.PROCESSING.value,
            )
            .values(
                status=WorkStatus.FAILED.value,
                error_message=f"task {row.task_id} failed: {message}",
                finished_at=now,
                updated_at=now,
            ),
        )
        if work_result.rowcount == 1:
            add_work_event(
                session=session,
                work_id=row.work_id,
                task_id=row.task_id,
                event_type="work_failed",
                status_from=WorkStatus.PROCESSING.value,
                status_to=WorkStatus.FAILED.value,
                details={"error": message},
            )

    def _task_row(self, *, session: Session, task_id: str) -> WorkTask:
        row = session.exec(select(WorkTask).where(WorkTask.task_id == task_id)).one_or_none()
        if row is None:
            raise NotFoundError("task", task_id)
        return row

    def _bead_row(self, *, session: Session, task_id: str, bead_id: str) -> TaskBead:
        row = session.exec(
            select(TaskBead).where(TaskBead.task_id == task_id, TaskBead.bead_id == bead_id),
        ).one_or_none()
        if row is None:
            raise NotFoundError("bead", f"{bead_id} in task {task_id}")
        return row

    def _require_task_status(
        self,
        *,
        row: WorkTask,
        allowed: tuple[TaskStatus, ...],
        action: str,
    ) -> None:
        if TaskStatus(row.status) in allowed:
            return
        raise PreconditionError(
            kind="task",
            identifier=row.task_id,
            current=row.status,
            expected=[status.value for status in allowed],
            action=action,
            terminal=row.status == TaskStatus.COMPLETED.value,
        )

    def _check_task_update(self, *, session: Session, result_rowcount: int, row: WorkTask) -> None:
        if result_rowcount == 1:
            return
        session.rollback()
        raise PreconditionError(
            kind="task",
            identifier=row.task_id,
            current=row.status,
            expected=[row.status],
            action="update (status changed concurrently)",
        )

    # -- estimation cache -----------------------------------------------------

    def get_estimate(self, *, bead_id: str, description_hash: str) -> BeadEstimate | None:
        """Cached estimate for the bead, only if its description hash still matches."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ComplexityEstimate).where(
                    ComplexityEstimate.bead_id == bead_id,
                    ComplexityEstimate.description_hash == description_hash,
                ),
            ).one_or_none()
            if row is None:
                return None
            return BeadEstimate(score=row.score, tokens=row.tokens)

    def upsert_estimate(
        self,
        *,
        bead_id: str,
        description_hash: str,
        estimate: BeadEstimate,
    ) -> BeadEstimate:
        """Store an estimate; a new description hash replaces the previous row."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(ComplexityEstimate)
                    .where(col(ComplexityEstimate.bead_id) == bead_id)
                    .values(
                        description_hash=description_hash,
                        score=estimate.score,
                        tokens=estimate.tokens,
                        updated_at=now,
                    ),
                )
                if result.rowcount == 1:
                    session.commit()
                    return estimate
                session.add(
                    ComplexityEstimate(
                        bead_id=bead_id,
                        description_hash=description_hash,
                        score=estimate.score,
                        tokens=estimate.tokens,
                        created_at=now,
                        updated_at=now,
                    ),
                )
                try:
                    session.commit()
                    return estimate
                except IntegrityError:
                    session.rollback()

    # -- events ---------------------------------------------------------------

    def get_work_details(self, *, work_id: str) -> WorkDetails | None:
        """Return work with tasks and event stream."""

        work = self.get_work(work_id=work_id)
        if work is None:
            return None
        return WorkDetails(
            work=work,
            tasks=self.list_tasks(work_id=work_id),
            events=self.list_work_events(work_id=work_id),
        )

    def list_work_events(self, *, work_id: str) -> list[WorkEventView]:
        with Session(self.engine) as session:
            event_rows = session.exec(
                select(WorkEvent)
                .where(WorkEvent.work_id == work_id)
                .order_by(col(WorkEvent.created_at).asc(), col(WorkEvent.id).asc()),
            ).all()
        return [
            WorkEventView(
                event_id=row.id or 0,
                work_id=row.work_id,
                task_id=row.task_id,
                event_type=row.event_type,
                status_from=row.status_from,
                status_to=row.status_to,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json(row.details_json),
            )
            for row in event_rows
        ]


def add_work_event(  # noqa: PLR0913
    *,
    session: Session,
    work_id: str,
    event_type: str,
    status_from: str | None,
    status_to: str | None,
    details: dict[str, object],
    task_id: str | None = None,
) -> None:
    session.add(
        WorkEvent(
            work_id=work_id,
            task_id=task_id,
            event_type=event_type,
            status_from=status_from,
            status_to=status_to,
            details_json=dump_json(details),
            created_at=to_db_datetime(utc_now()),
        ),
    )


def _to_work_view(row: Work) -> WorkView:
    return WorkView(
        work_id=row.work_id,
        name=row.name,
        branch=row.branch,
        root_bead_id=row.root_bead_id,
        workspace_path=row.workspace_path,
        status=WorkStatus(row.status),
        error_message=row.error_message,
        restart_count=row.restart_count,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
    )


def _load_task_view(*, session: Session, row: WorkTask) -> TaskView:
    bead_rows = session.exec(
        select(TaskBead)
        .where(TaskBead.task_id == row.task_id)
        .order_by(col(TaskBead.position).asc()),
    ).all()
    dependency_rows = session.exec(
        select(TaskDependency.depends_on_task_id).where(TaskDependency.task_id == row.task_id),
    ).all()
    return TaskView(
        task_id=row.task_id,
        work_id=row.work_id,
        position=row.position,
        task_type=TaskType(row.task_type),
        status=TaskStatus(row.status),
        score_total=row.score_total,
        token_total=row.token_total,
        over_budget=row.over_budget,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        beads=[
            TaskBeadView(
                bead_id=bead.bead_id,
                position=bead.position,
                status=BeadRunStatus(bead.status),
            )
            for bead in bead_rows
        ],
        depends_on=sorted(dependency_rows),
    )

