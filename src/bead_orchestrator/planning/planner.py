"""Budget-bounded, dependency-safe batch planner."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from bead_orchestrator.errors import EstimationPendingError
from bead_orchestrator.planning.estimation import EstimationService
from bead_orchestrator.planning.graph import DependencyGraph, dependency_depths, topological_sort
from bead_orchestrator.planning.models import Bead, BeadEstimate, Plan, PlannedTask, Relation

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 120_000


def pack_beads(
    *,
    order: Sequence[str],
    graph: DependencyGraph,
    estimates: Mapping[str, BeadEstimate],
    token_budget: int,
) -> list[PlannedTask]:
    """Bin-pack beads into tasks, first-fit-decreasing within each dependency depth.

    Beads are assigned depth by depth (depth = longest dependency chain below the
    bead), largest token estimate first inside a depth, so a bead's dependencies
    are always placed before the bead itself. A task is eligible when the bead
    fits into its remaining budget and every dependency sits in a task with an
    index no greater than the candidate. The tightest eligible fit wins; ties go
    to the earliest task. A bead that exceeds the budget on its own gets its own
    task flagged ``over_budget``.
    """

    if token_budget <= 0:
        raise ValueError("token_budget must be > 0")

    depths = dependency_depths(graph, order)
    topo_rank = {bead_id: index for index, bead_id in enumerate(order)}
    assignment_order = sorted(
        order,
        key=lambda bead_id: (
            depths[bead_id],
            -estimates[bead_id].tokens,
            topo_rank[bead_id],
        ),
    )

    tasks: list[PlannedTask] = []
    assigned: dict[str, int] = {}
    for bead_id in assignment_order:
        estimate = estimates[bead_id]
        best_index: int | None = None
        best_headroom: int | None = None
        for task in tasks:
            if task.over_budget:
                continue
            headroom = token_budget - (task.token_total + estimate.tokens)
            if headroom < 0:
                continue
            if any(
                dependency not in assigned or assigned[dependency] > task.index
                for dependency in graph.depends_on.get(bead_id, ())
            ):
                continue
            if best_headroom is None or headroom < best_headroom:
                best_index = task.index
                best_headroom = headroom

        if best_index is None:
            task = PlannedTask(index=len(tasks), over_budget=estimate.tokens > token_budget)
            tasks.append(task)
            best_index = task.index
            if task.over_budget:
                logger.warning(
                    "Bead %s needs %d tokens, over the %d budget; isolating it",
                    bead_id,
                    estimate.tokens,
                    token_budget,
                )

        chosen = tasks[best_index]
        chosen.bead_ids.append(bead_id)
        chosen.score_total += estimate.score
        chosen.token_total += estimate.tokens
        assigned[bead_id] = best_index
    return tasks


def derive_task_dependencies(
    tasks: Sequence[PlannedTask],
    graph: DependencyGraph,
) -> list[tuple[int, int]]:
    """Task-level edges ``(task, depends_on_task)`` for bead edges crossing tasks."""

    task_of = {bead_id: task.index for task in tasks for bead_id in task.bead_ids}
    edges: set[tuple[int, int]] = set()
    for bead_id, dependencies in graph.depends_on.items():
        if bead_id not in task_of:
            continue
        for dependency in dependencies:
            if dependency not in task_of or task_of[dependency] == task_of[bead_id]:
                continue
            edges.add((task_of[bead_id], task_of[dependency]))
    return sorted(edges)


class BatchPlanner:
    """Turns a bead set into an ordered list of budget-bounded tasks."""

    def __init__(self, *, estimation: EstimationService) -> None:
        self.estimation = estimation

    def plan(
        self,
        *,
        work_id: str,
        beads: Sequence[Bead],
        relations: Sequence[Relation],
        token_budget: int = DEFAULT_TOKEN_BUDGET,
    ) -> Plan:
        """Plan ``beads`` for a work.

        Raises:
            CycleError: blocking relations form a cycle.
            EstimationPendingError: some estimates are still being computed; one
                estimate task was spawned for all of them, plan again once it
                completes.
        """

        graph = DependencyGraph.build(beads, relations)
        order = topological_sort(graph, [bead.bead_id for bead in beads])

        estimates: dict[str, BeadEstimate] = {}
        missing: list[Bead] = []
        for bead in beads:
            cached = self.estimation.cached(bead)
            if cached is None:
                missing.append(bead)
            else:
                estimates[bead.bead_id] = cached
        if missing:
            batch = self.estimation.estimate_batch(work_id=work_id, beads=missing)
            raise EstimationPendingError(
                [bead.bead_id for bead in missing],
                task_id=batch.task_id,
            )

        tasks = pack_beads(
            order=order,
            graph=graph,
            estimates=estimates,
            token_budget=token_budget,
        )
        dependencies = derive_task_dependencies(tasks, graph)
        logger.info(
            "Planned %d bead(s) into %d task(s) for work %s (budget %d)",
            len(beads),
            len(tasks),
            work_id,
            token_budget,
        )
        return Plan(tasks=tasks, task_dependencies=dependencies, token_budget=token_budget)
