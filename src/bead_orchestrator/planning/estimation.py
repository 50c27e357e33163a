"""Content-addressed estimation cache with deferred external estimation."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from bead_orchestrator.errors import ExecutionFailure, NotFoundError
from bead_orchestrator.orchestrator.capabilities import Estimator, SessionSupervisor
from bead_orchestrator.orchestrator.models import TaskCreate, TaskStatus, TaskType
from bead_orchestrator.orchestrator.repository import OrchestratorRepository
from bead_orchestrator.planning.models import PENDING_ESTIMATE, Bead, BeadEstimate

logger = logging.getLogger(__name__)

MIN_SCORE = 1
MAX_SCORE = 10
MIN_TOKENS = 1_000
MAX_TOKENS = 100_000


def description_hash(bead: Bead) -> str:
    """Hash of the text an estimate was computed from."""

    payload = f"{bead.title}\n{bead.description}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def clamp_estimate(*, score: int, tokens: int) -> BeadEstimate:
    return BeadEstimate(
        score=min(MAX_SCORE, max(MIN_SCORE, int(score))),
        tokens=min(MAX_TOKENS, max(MIN_TOKENS, int(tokens))),
    )


@dataclass(slots=True)
class EstimateBatchResult:
    """Outcome of an ``estimate_batch`` call."""

    all_cached: bool
    task_spawned: bool = False
    task_id: str | None = None
    pending_bead_ids: tuple[str, ...] = ()


class EstimationService:
    """Resolves bead estimates from the cache or requests them from the estimator."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        estimator: Estimator,
        supervisor: SessionSupervisor | None = None,
    ) -> None:
        self.repository = repository
        self.estimator = estimator
        self.supervisor = supervisor

    def cached(self, bead: Bead) -> BeadEstimate | None:
        return self.repository.get_estimate(
            bead_id=bead.bead_id,
            description_hash=description_hash(bead),
        )

    def estimate(self, *, work_id: str, bead: Bead) -> BeadEstimate:
        """Return the bead's estimate, or ``PENDING_ESTIMATE`` while a run is in flight."""

        hit = self.cached(bead)
        if hit is not None:
            return hit

        batch = self.estimate_batch(work_id=work_id, beads=[bead])
        if batch.task_spawned:
            return PENDING_ESTIMATE
        return self.cached(bead) or PENDING_ESTIMATE

    def estimate_batch(
        self,
        *,
        work_id: str,
        beads: Sequence[Bead],
        force: bool = False,
    ) -> EstimateBatchResult:
        """Spawn one estimate task for every bead missing from the cache.

        Beads already waiting in a processing estimate task of the work are not
        requested again unless ``force`` is set. Returns immediately; the estimator
        reports back through ``record_estimate``.
        """

        uncached = [bead for bead in beads if force or self.cached(bead) is None]
        if not uncached:
            return EstimateBatchResult(all_cached=True)

        in_flight = {} if force else self._in_flight_estimates(work_id=work_id)
        requested = [bead for bead in uncached if bead.bead_id not in in_flight]
        pending_bead_ids = tuple(bead.bead_id for bead in uncached)
        if not requested:
            task_id = in_flight[uncached[0].bead_id]
            logger.info("Estimates for work %s already in flight in task %s", work_id, task_id)
            return EstimateBatchResult(
                all_cached=False,
                task_spawned=True,
                task_id=task_id,
                pending_bead_ids=pending_bead_ids,
            )

        task = self.repository.create_task(
            TaskCreate(
                work_id=work_id,
                bead_ids=[bead.bead_id for bead in requested],
                task_type=TaskType.ESTIMATE,
            ),
        )
        self.repository.start_task(task_id=task.task_id)

        if self.supervisor is not None and not self.supervisor.exists(work_id=work_id):
            self.supervisor.start(work_id=work_id)

        work = self.repository.require_work(work_id=work_id)
        workspace = None if work.workspace_path is None else Path(work.workspace_path)
        try:
            self.estimator.request(task_id=task.task_id, beads=requested, workspace_path=workspace)
        except (ExecutionFailure, OSError) as error:
            self.repository.fail_task(task_id=task.task_id, message=f"estimator failed: {error}")
            raise ExecutionFailure(f"estimator failed to start: {error}") from error

        logger.info(
            "Spawned estimate task %s for %d bead(s) in work %s",
            task.task_id,
            len(requested),
            work_id,
        )
        return EstimateBatchResult(
            all_cached=False,
            task_spawned=True,
            task_id=task.task_id,
            pending_bead_ids=pending_bead_ids,
        )

    def _in_flight_estimates(self, *, work_id: str) -> dict[str, str]:
        """Bead id -> processing estimate task still waiting on that bead."""

        in_flight: dict[str, str] = {}
        for task in self.repository.list_tasks(
            work_id=work_id,
            task_type=TaskType.ESTIMATE,
            status=TaskStatus.PROCESSING,
        ):
            for bead_id in task.incomplete_bead_ids():
                in_flight.setdefault(bead_id, task.task_id)
        return in_flight

    def record_estimate(
        self,
        *,
        task_id: str,
        bead_id: str,
        bead_description_hash: str,
        score: int,
        tokens: int,
    ) -> BeadEstimate:
        """Completion signal from the estimator for one bead of an estimate task."""

        estimate = clamp_estimate(score=score, tokens=tokens)
        task = self.repository.require_task(task_id=task_id)
        if task.task_type != TaskType.ESTIMATE:
            raise ValueError(f"Task {task_id} is not an estimate task.")
        if bead_id not in task.bead_ids:
            raise NotFoundError("bead", f"{bead_id} in task {task_id}")

        self.repository.upsert_estimate(
            bead_id=bead_id,
            description_hash=bead_description_hash,
            estimate=estimate,
        )
        if task.status == TaskStatus.COMPLETED:
            # late duplicate callback; the cache write above is all that is left to do
            return estimate
        completion = self.repository.complete_bead(task_id=task_id, bead_id=bead_id)
        if completion.task_completed:
            logger.info("Estimate task %s completed", task_id)
        return estimate
