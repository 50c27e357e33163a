"""Control plane loop: drains the durable queue and supervises orchestrator sessions."""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from datetime import timedelta

from bead_orchestrator.control.handlers import ControlPlaneHandlers
from bead_orchestrator.control.models import (
    ControlPlaneRunSummary,
    ProcessType,
    ScheduledTaskCreate,
    ScheduledTaskType,
    ScheduledTaskView,
)
from bead_orchestrator.control.repository import ScheduleRepository
from bead_orchestrator.control.watcher import DatabaseChangeWatcher
from bead_orchestrator.orchestrator.capabilities import SessionSupervisor
from bead_orchestrator.orchestrator.models import WorkStatus
from bead_orchestrator.orchestrator.repository import OrchestratorRepository
from bead_orchestrator.signals import stop_signal_handlers

logger = logging.getLogger(__name__)


class ControlPlane:
    """Executes scheduled side effects with retries and respawns dead sessions."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        schedule: ScheduleRepository,
        handlers: ControlPlaneHandlers,
        supervisor: SessionSupervisor,
        poll_interval_seconds: float = 30.0,
        cleanup_interval_seconds: float = 60.0,
        stale_executing_seconds: int = 1800,
        retention_hours: int = 168,
        heartbeat_interval_seconds: float = 10.0,
        heartbeat_staleness_seconds: int = 30,
        max_attempts: int = 5,
        watch_database: bool = True,
    ) -> None:
        self.repository = repository
        self.schedule = schedule
        self.handlers = handlers
        self.supervisor = supervisor
        self.poll_interval_seconds = poll_interval_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.stale_executing_seconds = stale_executing_seconds
        self.retention_hours = retention_hours
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.heartbeat_staleness_seconds = heartbeat_staleness_seconds
        self.max_attempts = max_attempts
        self.watch_database = watch_database
        self._wakeup = threading.Event()
        self._stop_requested = False
        self._last_cleanup: float | None = None

    def run_once(self) -> ControlPlaneRunSummary:
        """One full cycle: recover, supervise, drain due entries, clean up."""

        summary = ControlPlaneRunSummary()
        rescheduled, failed = self.schedule.recover_stale_executing(
            stale_after=timedelta(seconds=self.stale_executing_seconds),
        )
        summary.recovered = rescheduled + failed
        summary.failed += failed

        summary.respawned = self._supervise_orchestrators()

        while not self._stop_requested:
            entry = self.schedule.claim_next_due_task()
            if entry is None:
                break
            summary.processed += 1
            self._execute(entry, summary=summary)

        summary.cleaned = self._cleanup_if_due()
        if summary.processed == 0:
            summary.idle_polls = 1
        return summary

    def run_loop(self, *, max_cycles: int | None = None) -> ControlPlaneRunSummary:
        """Run cycles until stopped, waking on database writes or the poll interval.

        Args:
            max_cycles: Stop after this many cycles (None = until SIGINT/SIGTERM).
        """

        aggregate = ControlPlaneRunSummary()
        process = self.schedule.register_process(
            process_type=ProcessType.CONTROL_PLANE,
            pid=os.getpid(),
            hostname=socket.gethostname(),
        )
        watcher = (
            DatabaseChangeWatcher(self.schedule.db_path, wakeup=self._wakeup)
            if self.watch_database
            else None
        )
        cycles = 0
        last_heartbeat = time.monotonic()
        try:
            if watcher is not None:
                watcher.start()
            with stop_signal_handlers(self._on_stop_signal):
                while not self._stop_requested:
                    if max_cycles is not None and cycles >= max_cycles:
                        break
                    self._wakeup.clear()
                    aggregate.add(self.run_once())
                    cycles += 1
                    # own writes also wake the watcher, so heartbeat on an interval only
                    if time.monotonic() - last_heartbeat >= self.heartbeat_interval_seconds:
                        self.schedule.heartbeat(process_id=process.process_id)
                        last_heartbeat = time.monotonic()
                    if self._stop_requested or (max_cycles is not None and cycles >= max_cycles):
                        break
                    self._wait_for_wakeup()
        finally:
            if watcher is not None:
                watcher.stop()
            self.schedule.delete_process(process_id=process.process_id)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True
        self._wakeup.set()

    def _execute(self, entry: ScheduledTaskView, *, summary: ControlPlaneRunSummary) -> None:
        try:
            outcome = self.handlers.handle(entry)
        except Exception as error:  # noqa: BLE001
            message = str(error) or type(error).__name__
            if entry.retries_left:
                logger.warning(
                    "%s for work %s failed on attempt %d/%d: %s",
                    entry.task_type.value,
                    entry.work_id,
                    entry.attempt_count,
                    entry.max_attempts,
                    message,
                )
                if self.schedule.reschedule_with_backoff(
                    task_id=entry.id,
                    attempt_count=entry.attempt_count,
                    error_message=message,
                ):
                    summary.retried += 1
                return
            logger.exception(
                "%s for work %s failed permanently after %d attempt(s)",
                entry.task_type.value,
                entry.work_id,
                entry.attempt_count,
            )
            if self.schedule.mark_failed(task_id=entry.id, error_message=message):
                summary.failed += 1
            return

        if outcome.rearm_at is not None:
            self.schedule.rearm(task_id=entry.id, run_at=outcome.rearm_at)
        else:
            # destroy_workspace deletes its own entry with the work
            self.schedule.mark_completed(task_id=entry.id)
        summary.succeeded += 1

    def _supervise_orchestrators(self) -> int:
        respawned = 0
        stale = self.schedule.list_stale_processes(
            process_type=ProcessType.ORCHESTRATOR,
            stale_after=timedelta(seconds=self.heartbeat_staleness_seconds),
        )
        for process in stale:
            work = (
                self.repository.get_work(work_id=process.work_id)
                if process.work_id is not None
                else None
            )
            self.schedule.delete_process(process_id=process.process_id)
            if work is None or work.status != WorkStatus.PROCESSING:
                continue
            logger.warning(
                "Orchestrator for work %s (pid %d on %s) missed heartbeats since %s; respawning",
                work.work_id,
                process.pid,
                process.hostname,
                process.heartbeat_at.isoformat(),
            )
            if self.supervisor.exists(work_id=work.work_id):
                self.supervisor.stop(work_id=work.work_id)
            self.schedule.schedule_task(
                ScheduledTaskCreate(
                    work_id=work.work_id,
                    task_type=ScheduledTaskType.SPAWN_ORCHESTRATOR,
                    idempotency_key=f"respawn-orchestrator-{work.work_id}-{process.process_id}",
                    max_attempts=self.max_attempts,
                ),
            )
            respawned += 1
        return respawned

    def _cleanup_if_due(self) -> int:
        now = time.monotonic()
        if (
            self._last_cleanup is not None
            and now - self._last_cleanup < self.cleanup_interval_seconds
        ):
            return 0
        self._last_cleanup = now
        removed = self.schedule.cleanup_old_tasks(older_than=timedelta(hours=self.retention_hours))
        if removed:
            logger.info("Removed %d finished queue entries", removed)
        return removed

    def _wait_for_wakeup(self) -> None:
        if self._wakeup.wait(timeout=self.poll_interval_seconds):
            logger.debug("Woken up by a database change")

    def _on_stop_signal(self, signal_name: str) -> None:
        logger.info("Received %s; stopping after the current entry", signal_name)
        self.request_stop()
