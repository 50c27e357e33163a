"""Side-effect handlers executed by the control plane for each queue entry type."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import NamedTuple

from bead_orchestrator.control.models import (
    ScheduledTaskCreate,
    ScheduledTaskType,
    ScheduledTaskView,
)
from bead_orchestrator.control.repository import ScheduleRepository
from bead_orchestrator.errors import OrchestrationError
from bead_orchestrator.orchestrator.capabilities import (
    FeedbackPoller,
    IssueTracker,
    RemoteSync,
    SessionSupervisor,
    WorkspaceProvisioner,
)
from bead_orchestrator.orchestrator.models import WorkStatus, WorkView
from bead_orchestrator.orchestrator.repository import OrchestratorRepository
from bead_orchestrator.orchestrator.services import WorkService, initial_spawn_key
from bead_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)


class HandlerOutcome(NamedTuple):
    """``rearm_at`` keeps a polling entry alive instead of completing it."""

    rearm_at: datetime | None = None


class ControlPlaneHandlers:
    """Dispatches claimed queue entries to their side effects.

    Every handler must tolerate re-execution: an entry can run again after a crash
    or a stale-executing recovery.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        schedule: ScheduleRepository,
        service: WorkService,
        provisioner: WorkspaceProvisioner,
        supervisor: SessionSupervisor,
        tracker: IssueTracker | None = None,
        remote: RemoteSync | None = None,
        feedback: FeedbackPoller | None = None,
        feedback_poll_interval_seconds: int = 300,
    ) -> None:
        self.repository = repository
        self.schedule = schedule
        self.service = service
        self.provisioner = provisioner
        self.supervisor = supervisor
        self.tracker = tracker
        self.remote = remote
        self.feedback = feedback
        self.feedback_poll_interval_seconds = feedback_poll_interval_seconds
        self._handlers: dict[ScheduledTaskType, Callable[[ScheduledTaskView], HandlerOutcome]] = {
            ScheduledTaskType.CREATE_WORKSPACE: self.create_workspace,
            ScheduledTaskType.SPAWN_ORCHESTRATOR: self.spawn_orchestrator,
            ScheduledTaskType.DESTROY_WORKSPACE: self.destroy_workspace,
            ScheduledTaskType.SYNC_REMOTE: self.sync_remote,
            ScheduledTaskType.POLL_FEEDBACK: self.poll_feedback,
        }

    def handle(self, entry: ScheduledTaskView) -> HandlerOutcome:
        handler = self._handlers.get(entry.task_type)
        if handler is None:
            raise ValueError(f"No handler for scheduled task type {entry.task_type.value}")
        logger.info(
            "Running %s for work %s (attempt %d/%d)",
            entry.task_type.value,
            entry.work_id,
            entry.attempt_count,
            entry.max_attempts,
        )
        return handler(entry)

    def create_workspace(self, entry: ScheduledTaskView) -> HandlerOutcome:
        work = self._live_work(entry)
        if work is None:
            return HandlerOutcome()

        if work.workspace_path is not None and Path(work.workspace_path).exists():
            logger.info("Workspace for %s already at %s", work.work_id, work.workspace_path)
        else:
            path = self.provisioner.create(work)
            self.repository.set_workspace_path(work_id=work.work_id, workspace_path=str(path))
            logger.info("Provisioned workspace %s for work %s", path, work.work_id)

        if self.repository.has_unfinished_tasks(work_id=work.work_id):
            self.schedule.schedule_task(
                ScheduledTaskCreate(
                    work_id=work.work_id,
                    task_type=ScheduledTaskType.SPAWN_ORCHESTRATOR,
                    idempotency_key=initial_spawn_key(work.work_id),
                    max_attempts=entry.max_attempts,
                ),
            )
        return HandlerOutcome()

    def spawn_orchestrator(self, entry: ScheduledTaskView) -> HandlerOutcome:
        work = self._live_work(entry)
        if work is None:
            return HandlerOutcome()
        if work.status == WorkStatus.FAILED:
            logger.info("Work %s failed; waiting for an explicit restart", work.work_id)
            return HandlerOutcome()
        if work.workspace_path is None:
            raise OrchestrationError(f"workspace for work {work.work_id} is not ready yet")

        if self.supervisor.exists(work_id=work.work_id):
            if self.supervisor.is_alive(work_id=work.work_id):
                logger.info("Orchestrator session for %s already running", work.work_id)
                return HandlerOutcome()
            self.supervisor.stop(work_id=work.work_id)
        self.supervisor.start(work_id=work.work_id)
        logger.info("Started orchestrator session for work %s", work.work_id)
        return HandlerOutcome()

    def destroy_workspace(self, entry: ScheduledTaskView) -> HandlerOutcome:
        work = self.repository.get_work(work_id=entry.work_id)
        if work is None:
            return HandlerOutcome()

        if self.supervisor.exists(work_id=work.work_id):
            self.supervisor.stop(work_id=work.work_id)
        if self.tracker is not None and work.root_bead_id is not None:
            self.tracker.close_bead(work.root_bead_id)
        if work.workspace_path is not None:
            self.provisioner.remove(work)
        # cascades to tasks, events and queue entries, including this one
        self.repository.delete_work(work_id=work.work_id)
        logger.info("Destroyed work %s", work.work_id)
        return HandlerOutcome()

    def sync_remote(self, entry: ScheduledTaskView) -> HandlerOutcome:
        work = self.repository.get_work(work_id=entry.work_id)
        if work is None:
            return HandlerOutcome()
        if self.remote is None:
            logger.info("No remote configured; skipping push for work %s", work.work_id)
            return HandlerOutcome()

        self.remote.push(work)
        logger.info("Pushed branch %s for work %s", work.branch, work.work_id)
        if self.feedback is not None and not work.terminal:
            self.schedule.schedule_or_update_task(
                ScheduledTaskCreate(
                    work_id=work.work_id,
                    task_type=ScheduledTaskType.POLL_FEEDBACK,
                    run_at=self._next_poll(),
                    idempotency_key=f"poll-feedback-{work.work_id}",
                    max_attempts=entry.max_attempts,
                ),
            )
        return HandlerOutcome()

    def poll_feedback(self, entry: ScheduledTaskView) -> HandlerOutcome:
        work = self._live_work(entry)
        if work is None or self.feedback is None:
            return HandlerOutcome()

        result = self.feedback.poll(work)
        if result.merged:
            if work.status in (WorkStatus.PROCESSING, WorkStatus.IDLE):
                self.service.mark_merged(work_id=work.work_id)
            logger.info("Work %s was merged upstream; polling stops", work.work_id)
            return HandlerOutcome()

        if result.new_bead_ids:
            task = self.service.add_task(work_id=work.work_id, bead_ids=result.new_bead_ids)
            logger.info(
                "Feedback on work %s produced task %s with %d bead(s)",
                work.work_id,
                task.task_id,
                len(result.new_bead_ids),
            )
        return HandlerOutcome(rearm_at=self._next_poll())

    def _live_work(self, entry: ScheduledTaskView) -> WorkView | None:
        work = self.repository.get_work(work_id=entry.work_id)
        if work is None:
            logger.info("Work %s no longer exists; dropping %s", entry.work_id, entry.task_type.value)
            return None
        if work.terminal:
            logger.info(
                "Work %s is %s; skipping %s",
                work.work_id,
                work.status.value,
                entry.task_type.value,
            )
            return None
        return work

    def _next_poll(self) -> datetime:
        return utc_now() + timedelta(seconds=self.feedback_poll_interval_seconds)
