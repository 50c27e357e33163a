"""CLI entrypoint for bead-orchestrator."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from bead_orchestrator import __version__
from bead_orchestrator.control.models import ScheduledTaskStatus, ScheduledTaskType
from bead_orchestrator.errors import OrchestrationError
from bead_orchestrator.orchestrator.controllers import (
    ControlPlaneCommand,
    EstimateRecordCommand,
    EstimateShowCommand,
    OrchestratorCliController,
    QueueCleanupCommand,
    QueueListCommand,
    QueueTriggerCommand,
    TaskBeadCommand,
    TaskFailCommand,
    TaskListCommand,
    TaskRefCommand,
    WorkAddTaskCommand,
    WorkCreateCommand,
    WorkListCommand,
    WorkPlanCommand,
    WorkRefCommand,
)
from bead_orchestrator.orchestrator.models import TaskStatus, WorkStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestratorCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="bead-orch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level; defaults to `BEAD_ORCH_LOG_LEVEL` or INFO.",
)
def bead_orch(log_level: str | None) -> None:
    """Plan beads into budget-bounded tasks and drive them through agent sessions."""

    level = (log_level or os.getenv("BEAD_ORCH_LOG_LEVEL", "INFO")).strip().upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@bead_orch.group()
def work() -> None:
    """Work lifecycle commands."""


@work.command("create")
@_DB_PATH_OPTION
@click.option("--name", required=True, help="Human readable work name.")
@click.option("--branch", default=None, help="Branch name; defaults to `bead-orch/<work_id>`.")
@click.option("--root-bead", "root_bead_id", default=None, help="Root bead closed on destroy.")
def work_create(
    db_path: Path | None,
    name: str,
    branch: str | None,
    root_bead_id: str | None,
) -> None:
    """Create a work and schedule its workspace."""

    _run(
        lambda: CONTROLLER.create_work(
            WorkCreateCommand(
                db_path=db_path,
                name=name,
                branch=branch,
                root_bead_id=root_bead_id,
            ),
        ),
    )


@work.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in WorkStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of works to print.",
)
def work_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent works."""

    _run(lambda: CONTROLLER.list_works(WorkListCommand(db_path=db_path, status=status, limit=limit)))


@work.command("show")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
def work_show(db_path: Path | None, work_id: str) -> None:
    """Show a work with its tasks, queue entries and events."""

    _run(lambda: CONTROLLER.show_work(WorkRefCommand(db_path=db_path, work_id=work_id)))


@work.command("plan")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
@click.option("--bead", "bead_ids", multiple=True, required=True, help="Bead id. Can be repeated.")
@click.option(
    "--token-budget",
    type=click.IntRange(min=1),
    default=None,
    help="Per-task token budget; defaults to `BEAD_ORCH_TOKEN_BUDGET`.",
)
def work_plan(
    db_path: Path | None,
    work_id: str,
    bead_ids: tuple[str, ...],
    token_budget: int | None,
) -> None:
    """Plan beads into budget-bounded tasks.

    Missing estimates start one estimator run; plan again once it completes.
    """

    _run(
        lambda: CONTROLLER.plan_work(
            WorkPlanCommand(
                db_path=db_path,
                work_id=work_id,
                bead_ids=bead_ids,
                token_budget=token_budget,
            ),
        ),
    )


@work.command("add-task")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
@click.option("--bead", "bead_ids", multiple=True, required=True, help="Bead id. Can be repeated.")
def work_add_task(db_path: Path | None, work_id: str, bead_ids: tuple[str, ...]) -> None:
    """Group beads into one task by hand."""

    _run(
        lambda: CONTROLLER.add_task(
            WorkAddTaskCommand(db_path=db_path, work_id=work_id, bead_ids=bead_ids),
        ),
    )


@work.command("run")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
def work_run(db_path: Path | None, work_id: str) -> None:
    """Run the work's tasks in this process (the orchestrator session)."""

    _run(lambda: CONTROLLER.run_work(WorkRefCommand(db_path=db_path, work_id=work_id)))


@work.command("restart")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
def work_restart(db_path: Path | None, work_id: str) -> None:
    """Restart a failed work from its first unfinished task."""

    _run(lambda: CONTROLLER.restart_work(WorkRefCommand(db_path=db_path, work_id=work_id)))


@work.command("resume")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
def work_resume(db_path: Path | None, work_id: str) -> None:
    """Move an idle work back to processing."""

    _run(lambda: CONTROLLER.resume_work(WorkRefCommand(db_path=db_path, work_id=work_id)))


@work.command("complete")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
def work_complete(db_path: Path | None, work_id: str) -> None:
    """Mark an idle work completed."""

    _run(lambda: CONTROLLER.complete_work(WorkRefCommand(db_path=db_path, work_id=work_id)))


@work.command("destroy")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
def work_destroy(db_path: Path | None, work_id: str) -> None:
    """Schedule teardown of the work's session, workspace and records."""

    _run(lambda: CONTROLLER.destroy_work(WorkRefCommand(db_path=db_path, work_id=work_id)))


@work.command("reset-stuck")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
def work_reset_stuck(db_path: Path | None, work_id: str) -> None:
    """Return tasks stuck in processing to pending."""

    _run(lambda: CONTROLLER.reset_stuck(WorkRefCommand(db_path=db_path, work_id=work_id)))


@bead_orch.group()
def task() -> None:
    """Task commands, including the executor's bead callbacks."""


@task.command("list")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Optional status filter.",
)
def task_list(db_path: Path | None, work_id: str, status: str | None) -> None:
    """List a work's tasks in execution order."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, work_id=work_id, status=status),
        ),
    )


@task.command("reset")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def task_reset(db_path: Path | None, task_id: str) -> None:
    """Reset a failed task to pending; completed beads stay completed."""

    _run(lambda: CONTROLLER.reset_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task.command("complete-bead")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, envvar="BEAD_ORCH_TASK_ID", help="Task id.")
@click.option("--bead-id", required=True, help="Bead id.")
def task_complete_bead(db_path: Path | None, task_id: str, bead_id: str) -> None:
    """Report one bead of a processing task as completed."""

    _run(
        lambda: CONTROLLER.complete_bead(
            TaskBeadCommand(db_path=db_path, task_id=task_id, bead_id=bead_id),
        ),
    )


@task.command("fail-bead")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, envvar="BEAD_ORCH_TASK_ID", help="Task id.")
@click.option("--bead-id", required=True, help="Bead id.")
@click.option("--message", default="", help="Failure reason.")
def task_fail_bead(db_path: Path | None, task_id: str, bead_id: str, message: str) -> None:
    """Report one bead as failed; fails the task and its work."""

    _run(
        lambda: CONTROLLER.fail_bead(
            TaskBeadCommand(db_path=db_path, task_id=task_id, bead_id=bead_id, message=message),
        ),
    )


@task.command("fail")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, envvar="BEAD_ORCH_TASK_ID", help="Task id.")
@click.option("--message", required=True, help="Failure reason.")
def task_fail(db_path: Path | None, task_id: str, message: str) -> None:
    """Fail a processing task."""

    _run(
        lambda: CONTROLLER.fail_task(
            TaskFailCommand(db_path=db_path, task_id=task_id, message=message),
        ),
    )


@bead_orch.group()
def estimate() -> None:
    """Estimation cache commands."""


@estimate.command("record")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, envvar="BEAD_ORCH_TASK_ID", help="Estimate task id.")
@click.option("--bead-id", required=True, help="Bead id.")
@click.option("--score", type=int, required=True, help="Complexity score, clamped to 1..10.")
@click.option(
    "--tokens",
    type=int,
    required=True,
    help="Token estimate, clamped to 1000..100000.",
)
@click.option(
    "--description-hash",
    default=None,
    help="Hash of the text that was estimated; looked up in the tracker when omitted.",
)
def estimate_record(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    bead_id: str,
    score: int,
    tokens: int,
    description_hash: str | None,
) -> None:
    """Record one estimate reported by the estimator."""

    _run(
        lambda: CONTROLLER.record_estimate(
            EstimateRecordCommand(
                db_path=db_path,
                task_id=task_id,
                bead_id=bead_id,
                score=score,
                tokens=tokens,
                description_hash=description_hash,
            ),
        ),
    )


@estimate.command("show")
@_DB_PATH_OPTION
@click.option("--bead", "bead_ids", multiple=True, required=True, help="Bead id. Can be repeated.")
def estimate_show(db_path: Path | None, bead_ids: tuple[str, ...]) -> None:
    """Show cached estimates for beads."""

    _run(lambda: CONTROLLER.show_estimates(EstimateShowCommand(db_path=db_path, bead_ids=bead_ids)))


@bead_orch.group()
def queue() -> None:
    """Scheduled task queue commands."""


@queue.command("list")
@_DB_PATH_OPTION
@click.option("--work-id", default=None, help="Optional work filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in ScheduledTaskStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of entries to print.",
)
def queue_list(db_path: Path | None, work_id: str | None, status: str | None, limit: int) -> None:
    """List scheduled tasks, soonest first."""

    _run(
        lambda: CONTROLLER.list_queue(
            QueueListCommand(db_path=db_path, work_id=work_id, status=status, limit=limit),
        ),
    )


@queue.command("trigger")
@_DB_PATH_OPTION
@click.option("--work-id", required=True, help="Work id.")
@click.option(
    "--task-type",
    type=click.Choice([task_type.value for task_type in ScheduledTaskType]),
    required=True,
    help="Scheduled task type to make due now.",
)
def queue_trigger(db_path: Path | None, work_id: str, task_type: str) -> None:
    """Make pending entries of one type due immediately."""

    _run(
        lambda: CONTROLLER.trigger(
            QueueTriggerCommand(db_path=db_path, work_id=work_id, task_type=task_type),
        ),
    )


@queue.command("cleanup")
@_DB_PATH_OPTION
@click.option(
    "--retention-hours",
    type=click.IntRange(min=0),
    default=None,
    help="Keep finished entries newer than this; defaults to `BEAD_ORCH_SCHEDULER_RETENTION_HOURS`.",
)
def queue_cleanup(db_path: Path | None, retention_hours: int | None) -> None:
    """Delete old completed and failed entries."""

    _run(
        lambda: CONTROLLER.cleanup(
            QueueCleanupCommand(db_path=db_path, retention_hours=retention_hours),
        ),
    )


@bead_orch.group("control-plane")
def control_plane() -> None:
    """Control plane commands."""


@control_plane.command("run")
@_DB_PATH_OPTION
@click.option("--once/--loop", default=False, show_default=True, help="Run one cycle or loop.")
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many cycles.",
)
def control_plane_run(db_path: Path | None, once: bool, max_cycles: int | None) -> None:
    """Drain due side effects, supervise sessions and clean up the queue."""

    _run(
        lambda: CONTROLLER.run_control_plane(
            ControlPlaneCommand(db_path=db_path, once=once, max_cycles=max_cycles),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (OrchestrationError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    bead_orch()
