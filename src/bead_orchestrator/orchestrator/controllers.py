"""Controllers for work, task, estimate, queue and control plane CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from bead_orchestrator.config import Settings
from bead_orchestrator.control.handlers import ControlPlaneHandlers
from bead_orchestrator.control.models import (
    ControlPlaneRunSummary,
    ScheduledTaskStatus,
    ScheduledTaskType,
)
from bead_orchestrator.control.plane import ControlPlane
from bead_orchestrator.control.repository import ScheduleRepository
from bead_orchestrator.errors import EstimationPendingError, NotFoundError
from bead_orchestrator.orchestrator.local import (
    CommandEstimator,
    CommandExecutor,
    CommandSessionSupervisor,
    GitRemoteSync,
    GitWorktreeProvisioner,
    JsonIssueTracker,
)
from bead_orchestrator.orchestrator.models import (
    TaskStatus,
    TaskView,
    WorkCreate,
    WorkStatus,
    WorkView,
)
from bead_orchestrator.orchestrator.repository import OrchestratorRepository
from bead_orchestrator.orchestrator.runner import WorkRunner
from bead_orchestrator.orchestrator.services import WorkService
from bead_orchestrator.planning.estimation import EstimationService, description_hash
from bead_orchestrator.planning.planner import BatchPlanner


@dataclass(slots=True)
class WorkCreateCommand:
    """CLI input for work creation."""

    db_path: Path | None
    name: str
    branch: str | None = None
    root_bead_id: str | None = None


@dataclass(slots=True)
class WorkListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class WorkRefCommand:
    """CLI input for commands addressing one work."""

    db_path: Path | None
    work_id: str


@dataclass(slots=True)
class WorkPlanCommand:
    """CLI input for planning beads into tasks."""

    db_path: Path | None
    work_id: str
    bead_ids: tuple[str, ...]
    token_budget: int | None = None


@dataclass(slots=True)
class WorkAddTaskCommand:
    db_path: Path | None
    work_id: str
    bead_ids: tuple[str, ...]


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    work_id: str
    status: str | None


@dataclass(slots=True)
class TaskRefCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskBeadCommand:
    """CLI input for bead completion callbacks."""

    db_path: Path | None
    task_id: str
    bead_id: str
    message: str = ""


@dataclass(slots=True)
class TaskFailCommand:
    db_path: Path | None
    task_id: str
    message: str


@dataclass(slots=True)
class EstimateRecordCommand:
    """CLI input for the estimator's completion signal."""

    db_path: Path | None
    task_id: str
    bead_id: str
    score: int
    tokens: int
    description_hash: str | None = None


@dataclass(slots=True)
class EstimateShowCommand:
    db_path: Path | None
    bead_ids: tuple[str, ...]


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    work_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueTriggerCommand:
    db_path: Path | None
    work_id: str
    task_type: str


@dataclass(slots=True)
class QueueCleanupCommand:
    db_path: Path | None
    retention_hours: int | None


@dataclass(slots=True)
class ControlPlaneCommand:
    """CLI input for control plane execution."""

    db_path: Path | None
    once: bool
    max_cycles: int | None = None


@dataclass(slots=True)
class _Runtime:
    """Repositories plus the local capability wiring for one CLI invocation."""

    settings: Settings
    repository: OrchestratorRepository
    schedule: ScheduleRepository

    @property
    def state_dir(self) -> Path:
        return self.settings.db_path.parent

    def tracker(self) -> JsonIssueTracker:
        return JsonIssueTracker(self.settings.tracker.beads_file)

    def supervisor(self) -> CommandSessionSupervisor:
        return CommandSessionSupervisor(
            self.settings.commands.session_command_template,
            state_dir=self.state_dir,
        )

    def estimation(self) -> EstimationService:
        return EstimationService(
            repository=self.repository,
            estimator=CommandEstimator(
                self.settings.commands.estimator_command_template,
                state_dir=self.state_dir,
            ),
            supervisor=self.supervisor(),
        )

    def service(self) -> WorkService:
        return WorkService(
            repository=self.repository,
            schedule=self.schedule,
            tracker=self.tracker(),
            planner=BatchPlanner(estimation=self.estimation()),
            token_budget=self.settings.planner.token_budget,
            max_attempts=self.settings.control_plane.max_attempts,
        )


class OrchestratorCliController:
    """Coordinates work lifecycle, queue inspection and long-running loops."""

    # -- work -----------------------------------------------------------------

    def create_work(self, command: WorkCreateCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            work = runtime.service().create_work(
                WorkCreate(
                    name=command.name,
                    branch=command.branch,
                    root_bead_id=command.root_bead_id,
                ),
            )
        return [
            f"Work created: work_id={work.work_id} branch={work.branch} status={work.status.value}",
            "Workspace creation scheduled.",
        ]

    def list_works(self, command: WorkListCommand) -> list[str]:
        status = WorkStatus(command.status) if command.status else None
        with _runtime(command.db_path) as runtime:
            works = runtime.repository.list_works(status=status, limit=command.limit)
        lines = [f"Works: {len(works)}"]
        lines.extend(f"  {_work_line(work)}" for work in works)
        return lines

    def show_work(self, command: WorkRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            details = runtime.repository.get_work_details(work_id=command.work_id)
            queue = runtime.schedule.list_tasks(work_id=command.work_id, limit=20)
        if details is None:
            raise NotFoundError("work", command.work_id)

        work = details.work
        lines = [
            f"Work: {work.work_id} ({work.name})",
            f"Status: {work.status.value}",
            f"Branch: {work.branch}",
            f"Root bead: {work.root_bead_id or '-'}",
            f"Workspace: {work.workspace_path or '-'}",
            f"Restarts: {work.restart_count}",
            f"Error: {work.error_message or '-'}",
            f"Tasks: {len(details.tasks)}",
        ]
        lines.extend(f"  {_task_line(task)}" for task in details.tasks)
        lines.append(f"Scheduled: {len(queue)}")
        lines.extend(
            f"  {entry.task_type.value} status={entry.status.value} "
            f"attempt={entry.attempt_count}/{entry.max_attempts} "
            f"at={entry.scheduled_at.isoformat()}"
            for entry in queue
        )
        lines.append(f"Events: {len(details.events)}")
        lines.extend(
            f"  {event.created_at.isoformat()} {event.event_type} "
            f"{event.status_from or '-'} -> {event.status_to or '-'}"
            + (f" task={event.task_id}" if event.task_id else "")
            for event in details.events
        )
        return lines

    def plan_work(self, command: WorkPlanCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            try:
                outcome = runtime.service().plan_work(
                    work_id=command.work_id,
                    bead_ids=command.bead_ids,
                    token_budget=command.token_budget,
                )
            except EstimationPendingError as pending:
                return [
                    f"Estimates pending for {len(pending.bead_ids)} bead(s): "
                    f"{', '.join(pending.bead_ids)}",
                    f"Estimate task: {pending.task_id or '-'}. Plan again once it completes.",
                ]

        plan = outcome.plan
        lines = [f"Planned {len(outcome.tasks)} task(s) with budget {plan.token_budget} tokens"]
        for planned, task in zip(plan.tasks, outcome.tasks, strict=True):
            flag = " budget unsatisfiable" if planned.over_budget else ""
            lines.append(
                f"  {task.task_id} tokens={planned.token_total} score={planned.score_total} "
                f"beads={','.join(planned.bead_ids)}"
                + (f" after={','.join(task.depends_on)}" if task.depends_on else "")
                + flag,
            )
        return lines

    def add_task(self, command: WorkAddTaskCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.service().add_task(work_id=command.work_id, bead_ids=command.bead_ids)
        return [f"Task added: {_task_line(task)}"]

    def run_work(self, command: WorkRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            settings = runtime.settings
            runner = WorkRunner(
                service=runtime.service(),
                executor=CommandExecutor(
                    settings.commands.executor_command_template,
                    timeout_seconds=settings.commands.executor_timeout_seconds,
                ),
                heartbeat_interval_seconds=settings.processes.heartbeat_interval_seconds,
            )
            summary = runner.run(work_id=command.work_id)
        status = summary.work_status.value if summary.work_status else "-"
        return [
            "Runner summary: "
            f"executed={summary.executed} completed={summary.completed} "
            f"failed={summary.failed} work_status={status}",
        ]

    def restart_work(self, command: WorkRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            work = runtime.service().restart_work(work_id=command.work_id)
        return [f"Work restarted: {_work_line(work)}"]

    def resume_work(self, command: WorkRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            work = runtime.service().resume_work(work_id=command.work_id)
        return [f"Work resumed: {_work_line(work)}"]

    def complete_work(self, command: WorkRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            work = runtime.service().complete_work(work_id=command.work_id)
        return [f"Work completed: {_work_line(work)}"]

    def destroy_work(self, command: WorkRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            work = runtime.service().destroy_work(work_id=command.work_id)
        return [f"Destroy scheduled for work {work.work_id}"]

    def reset_stuck(self, command: WorkRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            runtime.repository.require_work(work_id=command.work_id)
            reset = runtime.service().reset_stuck(work_id=command.work_id)
        return [f"Reset {len(reset)} stuck task(s)" + (f": {', '.join(reset)}" if reset else "")]

    # -- tasks ----------------------------------------------------------------

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        status = TaskStatus(command.status) if command.status else None
        with _runtime(command.db_path) as runtime:
            runtime.repository.require_work(work_id=command.work_id)
            tasks = runtime.repository.list_tasks(work_id=command.work_id, status=status)
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def reset_task(self, command: TaskRefCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.repository.reset_task(task_id=command.task_id)
        return [f"Task reset: {_task_line(task)}"]

    def complete_bead(self, command: TaskBeadCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            completion = runtime.repository.complete_bead(
                task_id=command.task_id,
                bead_id=command.bead_id,
            )
        lines = [f"Bead {command.bead_id} completed in task {command.task_id}"]
        if completion.task_completed:
            lines.append(f"Task {command.task_id} completed")
        return lines

    def fail_bead(self, command: TaskBeadCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            completion = runtime.repository.fail_bead(
                task_id=command.task_id,
                bead_id=command.bead_id,
                message=command.message or "bead failed",
            )
        return [
            f"Bead {command.bead_id} failed; task {command.task_id} "
            f"status={completion.task.status.value}",
        ]

    def fail_task(self, command: TaskFailCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.repository.fail_task(task_id=command.task_id, message=command.message)
        return [f"Task failed: {_task_line(task)}"]

    # -- estimates ------------------------------------------------------------

    def record_estimate(self, command: EstimateRecordCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            bead_hash = command.description_hash
            if bead_hash is None:
                beads = runtime.tracker().get_beads([command.bead_id])
                if not beads:
                    raise NotFoundError("bead", command.bead_id)
                bead_hash = description_hash(beads[0])
            estimate = runtime.estimation().record_estimate(
                task_id=command.task_id,
                bead_id=command.bead_id,
                bead_description_hash=bead_hash,
                score=command.score,
                tokens=command.tokens,
            )
        return [
            f"Estimate recorded: bead={command.bead_id} score={estimate.score} "
            f"tokens={estimate.tokens}",
        ]

    def show_estimates(self, command: EstimateShowCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            beads = runtime.tracker().get_beads(command.bead_ids)
            estimation = runtime.estimation()
            cached = {bead.bead_id: estimation.cached(bead) for bead in beads}
        lines = []
        for bead_id in command.bead_ids:
            if bead_id not in cached:
                lines.append(f"{bead_id}: unknown bead")
                continue
            estimate = cached[bead_id]
            if estimate is None:
                lines.append(f"{bead_id}: not estimated")
            else:
                lines.append(f"{bead_id}: score={estimate.score} tokens={estimate.tokens}")
        return lines

    # -- queue ----------------------------------------------------------------

    def list_queue(self, command: QueueListCommand) -> list[str]:
        status = ScheduledTaskStatus(command.status) if command.status else None
        with _runtime(command.db_path) as runtime:
            entries = runtime.schedule.list_tasks(
                work_id=command.work_id,
                status=status,
                limit=command.limit,
            )
        lines = [f"Scheduled tasks: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.id} work={entry.work_id} type={entry.task_type.value} "
                f"status={entry.status.value} attempt={entry.attempt_count}/{entry.max_attempts} "
                f"at={entry.scheduled_at.isoformat()} key={entry.idempotency_key or '-'}"
                + (f" error={entry.error_message}" if entry.error_message else ""),
            )
        return lines

    def trigger(self, command: QueueTriggerCommand) -> list[str]:
        task_type = ScheduledTaskType(command.task_type)
        with _runtime(command.db_path) as runtime:
            runtime.repository.require_work(work_id=command.work_id)
            count = runtime.schedule.trigger_now(work_id=command.work_id, task_type=task_type)
        return [f"Triggered {count} pending {task_type.value} entr{'y' if count == 1 else 'ies'}"]

    def cleanup(self, command: QueueCleanupCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            hours = (
                command.retention_hours
                if command.retention_hours is not None
                else runtime.settings.control_plane.retention_hours
            )
            removed = runtime.schedule.cleanup_old_tasks(older_than=timedelta(hours=hours))
        return [f"Removed {removed} finished entr{'y' if removed == 1 else 'ies'}"]

    # -- control plane --------------------------------------------------------

    def run_control_plane(self, command: ControlPlaneCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            settings = runtime.settings
            service = runtime.service()
            supervisor = runtime.supervisor()
            plane = ControlPlane(
                repository=runtime.repository,
                schedule=runtime.schedule,
                handlers=ControlPlaneHandlers(
                    repository=runtime.repository,
                    schedule=runtime.schedule,
                    service=service,
                    provisioner=GitWorktreeProvisioner(
                        repo_path=settings.workspace.repo_path,
                        root=settings.workspace.root,
                        base_branch=settings.workspace.base_branch,
                    ),
                    supervisor=supervisor,
                    tracker=service.tracker,
                    remote=GitRemoteSync(),
                    feedback_poll_interval_seconds=(
                        settings.control_plane.feedback_poll_interval_seconds
                    ),
                ),
                supervisor=supervisor,
                poll_interval_seconds=settings.control_plane.poll_interval_seconds,
                cleanup_interval_seconds=settings.control_plane.cleanup_interval_seconds,
                stale_executing_seconds=settings.control_plane.stale_executing_seconds,
                retention_hours=settings.control_plane.retention_hours,
                heartbeat_interval_seconds=settings.processes.heartbeat_interval_seconds,
                heartbeat_staleness_seconds=settings.processes.staleness_seconds,
                max_attempts=settings.control_plane.max_attempts,
                watch_database=settings.control_plane.watch_database,
            )
            summary = (
                plane.run_once()
                if command.once
                else plane.run_loop(max_cycles=command.max_cycles)
            )
        return [_summary_line(summary)]


@contextmanager
def _runtime(db_path: Path | None) -> Iterator[_Runtime]:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    schedule = ScheduleRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        retry_base_seconds=settings.control_plane.retry_base_seconds,
        retry_max_seconds=settings.control_plane.retry_max_seconds,
    )
    repository.init_schema()
    try:
        yield _Runtime(settings=settings, repository=repository, schedule=schedule)
    finally:
        schedule.close()
        repository.close()


def _work_line(work: WorkView) -> str:
    return (
        f"{work.work_id} name={work.name} status={work.status.value} branch={work.branch}"
        + (f" error={work.error_message}" if work.error_message else "")
    )


def _task_line(task: TaskView) -> str:
    beads = ",".join(f"{bead.bead_id}:{bead.status.value}" for bead in task.beads)
    line = (
        f"{task.task_id} type={task.task_type.value} status={task.status.value} "
        f"tokens={task.token_total} beads={beads}"
    )
    if task.over_budget:
        line += " budget unsatisfiable"
    if task.error_message:
        line += f" error={task.error_message}"
    return line


def _summary_line(summary: ControlPlaneRunSummary) -> str:
    return (
        "Control plane summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"retried={summary.retried} failed={summary.failed} "
        f"recovered={summary.recovered} respawned={summary.respawned} "
        f"cleaned={summary.cleaned} idle_polls={summary.idle_polls}"
    )
