from __future__ import annotations

import random

import allure
import pytest

from bead_orchestrator.errors import CycleError, EstimationPendingError
from bead_orchestrator.orchestrator.models import TaskStatus, TaskType, WorkCreate
from bead_orchestrator.orchestrator.repository import OrchestratorRepository
from bead_orchestrator.planning.estimation import EstimationService, description_hash
from bead_orchestrator.planning.graph import DependencyGraph, topological_sort
from bead_orchestrator.planning.models import Bead, BeadEstimate, Relation, RelationKind
from bead_orchestrator.planning.planner import BatchPlanner, derive_task_dependencies, pack_beads
from conftest import FakeEstimator, FakeTracker

pytestmark = [
    allure.epic("Planning"),
    allure.feature("Budget Bin Packing"),
]


def _pack(
    tokens: dict[str, int],
    *,
    budget: int,
    blocked_by: tuple[tuple[str, str], ...] = (),
) -> tuple[list[list[str]], list[tuple[int, int]], list[bool]]:
    beads = [Bead(bead_id=bead_id, title=bead_id) for bead_id in tokens]
    graph = DependencyGraph.build(
        beads,
        [
            Relation(bead_id=dependent, other_id=dependency, kind=RelationKind.BLOCKED_BY)
            for dependent, dependency in blocked_by
        ],
    )
    order = topological_sort(graph, list(tokens))
    tasks = pack_beads(
        order=order,
        graph=graph,
        estimates={bead_id: BeadEstimate(score=1, tokens=value) for bead_id, value in tokens.items()},
        token_budget=budget,
    )
    return (
        [task.bead_ids for task in tasks],
        derive_task_dependencies(tasks, graph),
        [task.over_budget for task in tasks],
    )


def test_small_independent_beads_share_one_task() -> None:
    batches, dependencies, _ = _pack({"a": 1_000, "b": 1_000, "c": 1_000}, budget=10_000)

    assert batches == [["a", "b", "c"]]
    assert dependencies == []


def test_largest_first_with_tightest_fit() -> None:
    batches, _, _ = _pack({"small": 2_000, "medium": 4_000, "large": 6_000}, budget=9_000)

    assert batches == [["large", "small"], ["medium"]]


def test_dependent_bead_joins_its_dependency_when_budget_allows() -> None:
    batches, dependencies, _ = _pack(
        {"a": 2_000, "b": 2_000},
        budget=10_000,
        blocked_by=(("b", "a"),),
    )

    assert batches == [["a", "b"]]
    assert dependencies == []


def test_dependent_never_lands_before_its_dependency() -> None:
    batches, dependencies, _ = _pack(
        {"x": 9_000, "y": 5_000, "z": 1_000},
        budget=10_000,
        blocked_by=(("z", "y"),),
    )

    # task 0 has exactly enough room for z, but y lives in task 1
    assert batches == [["x"], ["y", "z"]]
    assert dependencies == []


def test_crossing_dependencies_become_task_edges() -> None:
    batches, dependencies, _ = _pack(
        {"a": 6_000, "b": 6_000},
        budget=10_000,
        blocked_by=(("b", "a"),),
    )

    assert batches == [["a"], ["b"]]
    assert dependencies == [(1, 0)]


def test_over_budget_bead_is_isolated_and_flagged() -> None:
    batches, _, over_budget = _pack({"huge": 15_000, "tiny": 1_000}, budget=10_000)

    assert batches == [["huge"], ["tiny"]]
    assert over_budget == [True, False]


def test_pack_rejects_non_positive_budget() -> None:
    with pytest.raises(ValueError, match="token_budget must be > 0"):
        _pack({"a": 1_000}, budget=0)


def test_planner_respects_budget_and_dependency_order() -> None:
    tokens = {
        "schema": 30_000,
        "api": 50_000,
        "ui": 40_000,
        "docs": 5_000,
        "tests": 25_000,
    }
    blocked_by = (("api", "schema"), ("ui", "api"), ("tests", "api"), ("docs", "ui"))
    batches, dependencies, over_budget = _pack(tokens, budget=60_000, blocked_by=blocked_by)

    task_of = {bead_id: index for index, batch in enumerate(batches) for bead_id in batch}
    assert sorted(task_of) == sorted(tokens)
    for batch in batches:
        assert sum(tokens[bead_id] for bead_id in batch) <= 60_000
    for dependent, dependency in blocked_by:
        assert task_of[dependency] <= task_of[dependent]
    assert all(later > earlier for later, earlier in dependencies)
    assert not any(over_budget)


def _planner(repository: OrchestratorRepository, estimator: FakeEstimator) -> BatchPlanner:
    return BatchPlanner(estimation=EstimationService(repository=repository, estimator=estimator))


def test_plan_spawns_one_estimate_task_for_missing_estimates(
    repository: OrchestratorRepository,
    tracker: FakeTracker,
) -> None:
    work = repository.create_work(WorkCreate(name="planning"))
    beads = [tracker.add("a"), tracker.add("b"), tracker.add("c")]
    repository.upsert_estimate(
        bead_id="a",
        description_hash=description_hash(beads[0]),
        estimate=BeadEstimate(score=2, tokens=3_000),
    )
    estimator = FakeEstimator()

    with pytest.raises(EstimationPendingError) as error:
        _planner(repository, estimator).plan(work_id=work.work_id, beads=beads, relations=[])

    assert error.value.bead_ids == ("b", "c")
    assert len(estimator.requests) == 1
    task_id, requested = estimator.requests[0]
    assert error.value.task_id == task_id
    assert requested == ["b", "c"]
    task = repository.require_task(task_id=task_id)
    assert task.task_type == TaskType.ESTIMATE
    assert task.status == TaskStatus.PROCESSING


def test_plan_uses_cached_estimates(repository: OrchestratorRepository, tracker: FakeTracker) -> None:
    work = repository.create_work(WorkCreate(name="planning"))
    beads = [tracker.add("small"), tracker.add("medium"), tracker.add("large")]
    for bead, tokens in zip(beads, (2_000, 4_000, 6_000), strict=True):
        repository.upsert_estimate(
            bead_id=bead.bead_id,
            description_hash=description_hash(bead),
            estimate=BeadEstimate(score=tokens // 1_000, tokens=tokens),
        )
    estimator = FakeEstimator()

    plan = _planner(repository, estimator).plan(
        work_id=work.work_id,
        beads=beads,
        relations=[],
        token_budget=9_000,
    )

    assert [task.bead_ids for task in plan.tasks] == [["large", "small"], ["medium"]]
    assert [task.token_total for task in plan.tasks] == [8_000, 4_000]
    assert [task.score_total for task in plan.tasks] == [8, 4]
    assert plan.task_index_of("medium") == 1
    assert estimator.requests == []


def test_plan_rejects_cycles_before_estimating(
    repository: OrchestratorRepository,
    tracker: FakeTracker,
) -> None:
    work = repository.create_work(WorkCreate(name="cyclic"))
    beads = [tracker.add("a"), tracker.add("b")]
    tracker.block("a", on="b")
    tracker.block("b", on="a")
    estimator = FakeEstimator()

    with pytest.raises(CycleError):
        _planner(repository, estimator).plan(
            work_id=work.work_id,
            beads=beads,
            relations=tracker.get_relations(["a", "b"]),
        )

    assert estimator.requests == []
    assert repository.list_tasks(work_id=work.work_id) == []


def _random_dag(seed: int) -> tuple[list[Bead], list[Relation], dict[str, int]]:
    rng = random.Random(seed)
    bead_ids = [f"b{index}" for index in range(rng.randint(1, 25))]
    tokens = {bead_id: rng.randint(500, 14_000) for bead_id in bead_ids}
    relations = [
        Relation(bead_id=dependent, other_id=dependency, kind=RelationKind.BLOCKED_BY)
        for position, dependent in enumerate(bead_ids)
        for dependency in bead_ids[:position]
        if rng.random() < 0.15
    ]
    rng.shuffle(bead_ids)
    return [Bead(bead_id=bead_id, title=bead_id) for bead_id in bead_ids], relations, tokens


@pytest.mark.parametrize("seed", range(50))
def test_random_plans_respect_budget_and_dependencies(seed: int) -> None:
    budget = 10_000
    beads, relations, tokens = _random_dag(seed)
    graph = DependencyGraph.build(beads, relations)
    order = topological_sort(graph, [bead.bead_id for bead in beads])

    tasks = pack_beads(
        order=order,
        graph=graph,
        estimates={bead_id: BeadEstimate(score=1, tokens=value) for bead_id, value in tokens.items()},
        token_budget=budget,
    )

    task_of = {bead_id: task.index for task in tasks for bead_id in task.bead_ids}
    assert sorted(task_of) == sorted(tokens)
    assert sum(len(task.bead_ids) for task in tasks) == len(tokens)
    for task in tasks:
        assert task.token_total == sum(tokens[bead_id] for bead_id in task.bead_ids)
        if task.over_budget:
            assert len(task.bead_ids) == 1
            assert task.token_total > budget
        else:
            assert task.token_total <= budget
    for bead_id, dependencies in graph.depends_on.items():
        assert order.index(bead_id) > max((order.index(dep) for dep in dependencies), default=-1)
        for dependency in dependencies:
            assert task_of[dependency] <= task_of[bead_id]
    for task_index, depends_on in derive_task_dependencies(tasks, graph):
        assert depends_on < task_index
