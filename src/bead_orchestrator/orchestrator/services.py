"""Use-case services for work lifecycle operations."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from bead_orchestrator.control.models import ScheduledTaskCreate, ScheduledTaskType
from bead_orchestrator.control.repository import ScheduleRepository
from bead_orchestrator.errors import NotFoundError, PreconditionError
from bead_orchestrator.orchestrator.capabilities import IssueTracker
from bead_orchestrator.orchestrator.models import (
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskView,
    WorkCreate,
    WorkStatus,
    WorkView,
)
from bead_orchestrator.orchestrator.repository import OrchestratorRepository
from bead_orchestrator.planning.models import Bead, BeadStatus, Plan
from bead_orchestrator.planning.planner import DEFAULT_TOKEN_BUDGET, BatchPlanner

logger = logging.getLogger(__name__)


def initial_spawn_key(work_id: str) -> str:
    return f"spawn-orchestrator-{work_id}-initial"


@dataclass(slots=True)
class PlanOutcome:
    """Persisted plan: the packing result plus the tasks created from it."""

    plan: Plan
    tasks: list[TaskView]


class WorkService:
    """Coordinates work lifecycle transitions with the side effects they schedule."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        schedule: ScheduleRepository,
        tracker: IssueTracker | None = None,
        planner: BatchPlanner | None = None,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        max_attempts: int = 5,
    ) -> None:
        self.repository = repository
        self.schedule = schedule
        self.tracker = tracker
        self.planner = planner
        self.token_budget = token_budget
        self.max_attempts = max_attempts

    def create_work(self, payload: WorkCreate) -> WorkView:
        """Create a pending work and schedule its workspace."""

        work = self.repository.create_work(payload)
        self._schedule(
            work_id=work.work_id,
            task_type=ScheduledTaskType.CREATE_WORKSPACE,
            key=f"create-workspace-{work.work_id}",
        )
        logger.info("Created work %s on branch %s", work.work_id, work.branch)
        return work

    def plan_work(
        self,
        *,
        work_id: str,
        bead_ids: Sequence[str],
        token_budget: int | None = None,
    ) -> PlanOutcome:
        """Plan beads into budget-bounded tasks and attach them to the work.

        Raises:
            CycleError: the beads' blocking relations form a cycle.
            EstimationPendingError: estimates are being computed; plan again later.
        """

        if self.planner is None or self.tracker is None:
            raise RuntimeError("Planning requires an issue tracker and a planner.")
        unique_ids = list(dict.fromkeys(bead_ids))
        if not unique_ids:
            raise ValueError("At least one bead id is required to plan a work.")

        work = self.repository.require_work(work_id=work_id)
        if work.terminal:
            raise PreconditionError(
                kind="work",
                identifier=work_id,
                current=work.status.value,
                expected=[],
                action="plan",
                terminal=True,
            )
        beads = self._load_beads(unique_ids)
        relations = self.tracker.get_relations(unique_ids)
        plan = self.planner.plan(
            work_id=work_id,
            beads=beads,
            relations=relations,
            token_budget=token_budget or self.token_budget,
        )

        created: list[TaskView] = []
        for planned in plan.tasks:
            depends_on = [
                created[dependency].task_id
                for task_index, dependency in plan.task_dependencies
                if task_index == planned.index
            ]
            created.append(
                self.repository.create_task(
                    TaskCreate(
                        work_id=work_id,
                        bead_ids=list(planned.bead_ids),
                        score_total=planned.score_total,
                        token_total=planned.token_total,
                        over_budget=planned.over_budget,
                        depends_on_task_ids=depends_on,
                    ),
                ),
            )
        if created:
            self._activate(work_id=work_id, reason_key=created[0].task_id)
        return PlanOutcome(plan=plan, tasks=created)

    def add_task(self, *, work_id: str, bead_ids: Sequence[str]) -> TaskView:
        """Manually group beads into one task and get it running."""

        task = self.repository.create_task(TaskCreate(work_id=work_id, bead_ids=list(bead_ids)))
        self._activate(work_id=work_id, reason_key=task.task_id)
        return task

    def restart_work(self, *, work_id: str) -> WorkView:
        """failed -> processing; failed tasks go back to pending and a new session is spawned."""

        work = self.repository.restart_work(work_id=work_id)
        for task in self.repository.list_tasks(
            work_id=work_id,
            task_type=TaskType.IMPLEMENT,
            status=TaskStatus.FAILED,
        ):
            self.repository.reset_task(task_id=task.task_id)
        self.reset_stuck(work_id=work_id)
        self._schedule(
            work_id=work_id,
            task_type=ScheduledTaskType.SPAWN_ORCHESTRATOR,
            key=f"restart-orchestrator-{work_id}-{work.restart_count}",
        )
        return work

    def resume_work(self, *, work_id: str) -> WorkView:
        work = self.repository.transition_work(
            work_id=work_id,
            to=WorkStatus.PROCESSING,
            expected=(WorkStatus.IDLE,),
            event_type="work_resumed",
        )
        self._schedule(
            work_id=work_id,
            task_type=ScheduledTaskType.SPAWN_ORCHESTRATOR,
            key=f"resume-orchestrator-{work_id}-{work.updated_at:%Y%m%dT%H%M%S%f}",
        )
        return work

    def complete_work(self, *, work_id: str) -> WorkView:
        return self.repository.transition_work(
            work_id=work_id,
            to=WorkStatus.COMPLETED,
            expected=(WorkStatus.IDLE,),
        )

    def mark_merged(self, *, work_id: str) -> WorkView:
        return self.repository.transition_work(
            work_id=work_id,
            to=WorkStatus.MERGED,
            expected=(WorkStatus.PROCESSING, WorkStatus.IDLE),
        )

    def destroy_work(self, *, work_id: str) -> WorkView:
        """Schedule teardown of the session, workspace and work record."""

        work = self.repository.require_work(work_id=work_id)
        self._schedule(
            work_id=work_id,
            task_type=ScheduledTaskType.DESTROY_WORKSPACE,
            key=f"destroy-workspace-{work_id}",
        )
        return work

    def reset_stuck(self, *, work_id: str) -> list[str]:
        """Return processing tasks to pending, keeping beads the tracker reports closed."""

        processing = self.repository.list_tasks(
            work_id=work_id,
            task_type=TaskType.IMPLEMENT,
            status=TaskStatus.PROCESSING,
        )
        if not processing:
            return []
        closed: list[str] = []
        if self.tracker is not None:
            bead_ids = sorted({bead_id for task in processing for bead_id in task.bead_ids})
            closed = [
                bead.bead_id
                for bead in self.tracker.get_beads(bead_ids)
                if bead.status == BeadStatus.CLOSED
            ]
        return self.repository.reset_stuck_processing_tasks(
            work_id=work_id,
            closed_bead_ids=closed,
        )

    def _activate(self, *, work_id: str, reason_key: str) -> None:
        """Make sure an orchestrator session will pick up newly attached tasks."""

        work = self.repository.require_work(work_id=work_id)
        if work.status == WorkStatus.IDLE:
            self.repository.transition_work(
                work_id=work_id,
                to=WorkStatus.PROCESSING,
                expected=(WorkStatus.IDLE,),
                event_type="work_tasks_added",
                details={"task_id": reason_key},
            )
            self._schedule(
                work_id=work_id,
                task_type=ScheduledTaskType.SPAWN_ORCHESTRATOR,
                key=f"spawn-orchestrator-{work_id}-{reason_key}",
            )
        elif work.status == WorkStatus.PENDING and work.workspace_path is not None:
            self._schedule(
                work_id=work_id,
                task_type=ScheduledTaskType.SPAWN_ORCHESTRATOR,
                key=initial_spawn_key(work_id),
            )

    def _load_beads(self, bead_ids: list[str]) -> list[Bead]:
        if self.tracker is None:
            raise RuntimeError("Loading beads requires an issue tracker.")
        beads = self.tracker.get_beads(bead_ids)
        found = {bead.bead_id for bead in beads}
        missing = [bead_id for bead_id in bead_ids if bead_id not in found]
        if missing:
            raise NotFoundError("bead", ", ".join(missing))
        return beads

    def _schedule(self, *, work_id: str, task_type: ScheduledTaskType, key: str) -> None:
        entry = self.schedule.schedule_task(
            ScheduledTaskCreate(
                work_id=work_id,
                task_type=task_type,
                idempotency_key=key,
                max_attempts=self.max_attempts,
            ),
        )
        logger.debug("Scheduled %s for work %s as %s", task_type.value, work_id, entry.id)
