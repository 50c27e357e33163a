"""Error taxonomy shared by planning, lifecycle and control plane code."""

from __future__ import annotations

from collections.abc import Iterable


class OrchestrationError(RuntimeError):
    """Base class for errors surfaced to callers of the orchestration core."""


class CycleError(OrchestrationError):
    """Dependency relations contain a cycle; no ordering exists."""

    def __init__(self, unresolved: Iterable[str]) -> None:
        self.unresolved = tuple(sorted(unresolved))
        super().__init__(
            "cycle detected among beads: " + ", ".join(self.unresolved),
        )


class NotFoundError(OrchestrationError):
    """Referenced work, task, bead or queue entry does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class PreconditionError(OrchestrationError):
    """State transition attempted from a status that does not allow it."""

    def __init__(
        self,
        *,
        kind: str,
        identifier: str,
        current: str,
        expected: Iterable[str],
        action: str,
        terminal: bool = False,
    ) -> None:
        self.kind = kind
        self.identifier = identifier
        self.current = current
        self.expected = tuple(expected)
        self.action = action
        self.terminal = terminal
        if terminal:
            message = f"cannot {action} {kind} {identifier}: already in terminal state {current}"
        else:
            message = (
                f"cannot {action} {kind} {identifier}: status is {current}, "
                f"expected one of {', '.join(self.expected) or '<none>'}"
            )
        super().__init__(message)


class EstimationPendingError(OrchestrationError):
    """Some bead estimates are not available yet; re-plan after the estimate run."""

    def __init__(self, bead_ids: Iterable[str], *, task_id: str | None) -> None:
        self.bead_ids = tuple(bead_ids)
        self.task_id = task_id
        message = "estimates pending for beads: " + ", ".join(self.bead_ids)
        if task_id is not None:
            message += f" (estimate task {task_id})"
        super().__init__(message)


class ExecutionFailure(OrchestrationError):
    """External operation failed or timed out."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out
