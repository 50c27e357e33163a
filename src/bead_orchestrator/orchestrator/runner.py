"""Long-running orchestrator process of one work: executes its tasks in order."""

from __future__ import annotations

import logging
import os
import socket
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from bead_orchestrator.control.models import ProcessType, ScheduledTaskCreate, ScheduledTaskType
from bead_orchestrator.errors import ExecutionFailure, OrchestrationError
from bead_orchestrator.orchestrator.capabilities import (
    ExecutionRequest,
    ExecutionResult,
    Executor,
)
from bead_orchestrator.orchestrator.models import (
    TaskStatus,
    TaskType,
    TaskView,
    WorkStatus,
)
from bead_orchestrator.orchestrator.services import WorkService
from bead_orchestrator.planning.models import Bead, BeadStatus
from bead_orchestrator.signals import stop_signal_handlers

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkRunSummary:
    """Aggregate runner counters for CLI reporting."""

    executed: int = 0
    completed: int = 0
    failed: int = 0
    work_status: WorkStatus | None = None


def render_task_prompt(task: TaskView, beads: Sequence[Bead]) -> str:
    """Plain bead listing handed to the executor."""

    lines = [f"Task {task.task_id} of work {task.work_id}", ""]
    for bead in beads:
        lines.append(f"- {bead.bead_id}: {bead.title}")
        if bead.description:
            lines.extend(f"    {line}" for line in bead.description.splitlines())
    return "\n".join(lines) + "\n"


class WorkRunner:
    """Runs implement tasks of one work sequentially while heartbeating."""

    def __init__(
        self,
        *,
        service: WorkService,
        executor: Executor,
        heartbeat_interval_seconds: float = 10.0,
    ) -> None:
        self.service = service
        self.repository = service.repository
        self.schedule = service.schedule
        self.tracker = service.tracker
        self.executor = executor
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self._stop = threading.Event()
        self._heartbeat_stop = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None

    def run(self, *, work_id: str) -> WorkRunSummary:
        """Execute every runnable task; stops at the first failure."""

        summary = WorkRunSummary()
        work = self.repository.require_work(work_id=work_id)
        summary.work_status = work.status
        if work.terminal or work.status == WorkStatus.FAILED:
            logger.info("Work %s is %s; nothing to run", work_id, work.status.value)
            return summary
        if work.workspace_path is None:
            raise OrchestrationError(f"workspace for work {work_id} is not provisioned")

        process = self.schedule.register_process(
            process_type=ProcessType.ORCHESTRATOR,
            pid=os.getpid(),
            hostname=socket.gethostname(),
            work_id=work_id,
        )
        self._start_heartbeat(process.process_id)
        try:
            with stop_signal_handlers(self._on_stop_signal):
                self._run_tasks(work_id=work_id, workspace=Path(work.workspace_path), summary=summary)
        finally:
            self._stop_heartbeat()
            self.schedule.delete_process(process_id=process.process_id)
        summary.work_status = self.repository.require_work(work_id=work_id).status
        return summary

    def request_stop(self) -> None:
        self._stop.set()

    def _run_tasks(self, *, work_id: str, workspace: Path, summary: WorkRunSummary) -> None:
        # a previous session may have died mid-task
        self.service.reset_stuck(work_id=work_id)

        work = self.repository.require_work(work_id=work_id)
        if not self.repository.has_unfinished_tasks(work_id=work_id):
            logger.info("Work %s has no pending implement tasks", work_id)
            if work.status != WorkStatus.PROCESSING:
                return
        elif work.status in (WorkStatus.PENDING, WorkStatus.IDLE):
            self.repository.transition_work(
                work_id=work_id,
                to=WorkStatus.PROCESSING,
                expected=(WorkStatus.PENDING, WorkStatus.IDLE),
            )

        while True:
            while not self._stop.is_set():
                task = self.repository.next_runnable_task(work_id=work_id)
                if task is None:
                    break
                summary.executed += 1
                outcome = self._run_task(task=task, workspace=workspace)
                if outcome == TaskStatus.COMPLETED:
                    summary.completed += 1
                elif outcome == TaskStatus.FAILED:
                    summary.failed += 1
                    return

            if self._stop.is_set():
                logger.info("Stop requested; leaving remaining tasks of %s pending", work_id)
                return
            if self.repository.has_unfinished_tasks(work_id=work_id):
                logger.warning(
                    "Work %s has unfinished tasks whose dependencies did not complete",
                    work_id,
                )
                return
            if self._finish(work_id=work_id):
                return

    def _run_task(self, *, task: TaskView, workspace: Path) -> TaskStatus:
        """Execute one task and return where it ended up.

        ``PENDING`` means the run was interrupted by a stop request and the task
        waits for the next session.
        """

        task = self.repository.start_task(task_id=task.task_id)
        beads = self._load_beads(task.incomplete_bead_ids())
        logger.info("Executing task %s with %d bead(s)", task.task_id, len(beads))
        request = ExecutionRequest(
            task_id=task.task_id,
            work_id=task.work_id,
            beads=beads,
            prompt=render_task_prompt(task, beads),
            workspace_path=workspace,
            shutdown_requested=self._stop.is_set,
        )
        try:
            result = self.executor.run(request)
        except ExecutionFailure as error:
            result = ExecutionResult(completed=False, message=str(error), timed_out=error.timed_out)
        except OSError as error:
            result = ExecutionResult(completed=False, message=f"executor failed to start: {error}")

        self._complete_closed_beads(task)
        task = self.repository.require_task(task_id=task.task_id)
        if task.status == TaskStatus.COMPLETED:
            logger.info("Task %s completed", task.task_id)
            return task.status
        if task.status != TaskStatus.PROCESSING:
            return task.status

        if self._stop.is_set():
            self.service.reset_stuck(work_id=task.work_id)
            logger.info(
                "Task %s interrupted (%s); returned to pending",
                task.task_id,
                result.message or "stop requested",
            )
            return TaskStatus.PENDING

        if not result.completed:
            message = result.message or "executor reported failure"
            if result.timed_out:
                message = f"timed out: {message}"
        else:
            message = "beads not completed: " + ", ".join(task.incomplete_bead_ids())
        self.repository.fail_task(task_id=task.task_id, message=message)
        logger.warning("Task %s failed: %s", task.task_id, message)
        return TaskStatus.FAILED

    def _complete_closed_beads(self, task: TaskView) -> None:
        """Count beads the agent closed in the tracker as completed."""

        if self.tracker is None:
            return
        pending = task.incomplete_bead_ids()
        if not pending:
            return
        current = self.repository.require_task(task_id=task.task_id)
        if current.status != TaskStatus.PROCESSING:
            return
        for bead in self.tracker.get_beads(pending):
            if bead.status == BeadStatus.CLOSED:
                self.repository.complete_bead(task_id=task.task_id, bead_id=bead.bead_id)

    def _finish(self, *, work_id: str) -> bool:
        """Move the work to idle; False when tasks were attached meanwhile."""

        self.repository.transition_work(
            work_id=work_id,
            to=WorkStatus.IDLE,
            expected=(WorkStatus.PROCESSING,),
        )
        # add_task against a processing work schedules no spawn
        if self.repository.has_unfinished_tasks(work_id=work_id):
            if self.repository.require_work(work_id=work_id).status == WorkStatus.IDLE:
                self.repository.transition_work(
                    work_id=work_id,
                    to=WorkStatus.PROCESSING,
                    expected=(WorkStatus.IDLE,),
                    event_type="work_tasks_added",
                )
            logger.info("Tasks were attached to %s while finishing; continuing", work_id)
            return False

        completed = self.repository.list_tasks(
            work_id=work_id,
            task_type=TaskType.IMPLEMENT,
            status=TaskStatus.COMPLETED,
        )
        self.schedule.schedule_task(
            ScheduledTaskCreate(
                work_id=work_id,
                task_type=ScheduledTaskType.SYNC_REMOTE,
                idempotency_key=f"sync-remote-{work_id}-{len(completed)}",
                max_attempts=self.service.max_attempts,
            ),
        )
        logger.info("Work %s is idle after %d completed task(s)", work_id, len(completed))
        return True

    def _load_beads(self, bead_ids: list[str]) -> list[Bead]:
        if self.tracker is None:
            return [Bead(bead_id=bead_id, title=bead_id) for bead_id in bead_ids]
        found = {bead.bead_id: bead for bead in self.tracker.get_beads(bead_ids)}
        return [found.get(bead_id, Bead(bead_id=bead_id, title=bead_id)) for bead_id in bead_ids]

    def _start_heartbeat(self, process_id: str) -> None:
        self._heartbeat_stop.clear()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            args=(process_id,),
            daemon=True,
            name="work-heartbeat",
        )
        self._heartbeat_thread.start()

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_thread is None:
            return
        self._heartbeat_stop.set()
        self._heartbeat_thread.join(timeout=5)
        self._heartbeat_thread = None

    def _heartbeat_loop(self, process_id: str) -> None:
        while not self._heartbeat_stop.wait(timeout=self.heartbeat_interval_seconds):
            try:
                if not self.schedule.heartbeat(process_id=process_id):
                    logger.warning("Process record %s vanished; heartbeat stopped", process_id)
                    return
            except Exception:
                logger.exception("Heartbeat update failed")

    def _on_stop_signal(self, signal_name: str) -> None:
        logger.info("Received %s; stopping after the current task", signal_name)
        self.request_stop()
