"""Local implementations of the external capabilities: JSON tracker, git, subprocesses."""

from __future__ import annotations

import json
import logging
import os
import shlex
import signal
import subprocess
import time
from collections.abc import Callable, Collection, Sequence
from pathlib import Path
from typing import Any

from bead_orchestrator.errors import ExecutionFailure
from bead_orchestrator.orchestrator.capabilities import ExecutionRequest, ExecutionResult
from bead_orchestrator.orchestrator.models import WorkView
from bead_orchestrator.planning.estimation import description_hash
from bead_orchestrator.planning.models import Bead, BeadStatus, BeadType, Relation, RelationKind

logger = logging.getLogger(__name__)


class JsonIssueTracker:
    """Issue tracker backed by one JSON document.

    Layout::

        {"beads": [{"id": "...", "title": "...", "description": "...",
                    "status": "open", "priority": 2, "type": "task", "labels": []}],
         "relations": [{"bead_id": "a", "other_id": "b", "kind": "blocked_by"}]}
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def get_beads(self, bead_ids: Collection[str]) -> list[Bead]:
        by_id = {bead.bead_id: bead for bead in self._beads()}
        return [by_id[bead_id] for bead_id in dict.fromkeys(bead_ids) if bead_id in by_id]

    def get_relations(self, bead_ids: Collection[str]) -> list[Relation]:
        wanted = set(bead_ids)
        return [
            relation
            for relation in self._relations()
            if relation.bead_id in wanted or relation.other_id in wanted
        ]

    def close_bead(self, bead_id: str) -> None:
        self.update_bead_status(bead_id, BeadStatus.CLOSED)

    def update_bead_status(self, bead_id: str, status: BeadStatus) -> None:
        document = self._load()
        for raw in document["beads"]:
            if raw.get("id") == bead_id:
                raw["status"] = status.value
                break
        else:
            raise KeyError(f"Unknown bead: {bead_id}")
        self._store(document)

    def list_beads(
        self,
        *,
        status: BeadStatus | None = None,
        label: str | None = None,
    ) -> list[Bead]:
        return [
            bead
            for bead in self._beads()
            if (status is None or bead.status == status) and (label is None or label in bead.labels)
        ]

    def _beads(self) -> list[Bead]:
        return [_bead_from_json(raw) for raw in self._load()["beads"]]

    def _relations(self) -> list[Relation]:
        return [
            Relation(
                bead_id=str(raw["bead_id"]),
                other_id=str(raw["other_id"]),
                kind=RelationKind(raw["kind"]),
            )
            for raw in self._load()["relations"]
        ]

    def _load(self) -> dict[str, list[dict[str, Any]]]:
        if not self.path.exists():
            return {"beads": [], "relations": []}
        payload = json.loads(self.path.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"{self.path} must contain a JSON object.")
        return {
            "beads": list(payload.get("beads", [])),
            "relations": list(payload.get("relations", [])),
        }

    def _store(self, document: dict[str, list[dict[str, Any]]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2, ensure_ascii=False) + "\n", "utf-8")
        tmp_path.replace(self.path)


def _bead_from_json(raw: dict[str, Any]) -> Bead:
    return Bead(
        bead_id=str(raw["id"]),
        title=str(raw.get("title", "")),
        description=str(raw.get("description", "")),
        status=BeadStatus(raw.get("status", BeadStatus.OPEN.value)),
        priority=int(raw.get("priority", 2)),
        bead_type=BeadType(raw.get("type", BeadType.TASK.value)),
        labels=tuple(str(label) for label in raw.get("labels", ())),
    )


class GitWorktreeProvisioner:
    """One ``git worktree`` per work, on the work's own branch."""

    def __init__(self, *, repo_path: Path, root: Path, base_branch: str = "main") -> None:
        self.repo_path = repo_path
        self.root = root
        self.base_branch = base_branch

    def create(self, work: WorkView) -> Path:
        path = (self.root / work.work_id).resolve()
        if path.exists():
            return path
        path.parent.mkdir(parents=True, exist_ok=True)
        _run_git(
            ["worktree", "add", "-B", work.branch, str(path), self.base_branch],
            cwd=self.repo_path,
        )
        return path

    def remove(self, work: WorkView) -> None:
        path = Path(work.workspace_path) if work.workspace_path else self.root / work.work_id
        if path.exists():
            _run_git(["worktree", "remove", "--force", str(path)], cwd=self.repo_path)
        _run_git(["worktree", "prune"], cwd=self.repo_path)


class GitRemoteSync:
    """Pushes the work branch from its workspace."""

    def __init__(self, *, remote: str = "origin") -> None:
        self.remote = remote

    def push(self, work: WorkView) -> None:
        if work.workspace_path is None:
            raise ExecutionFailure(f"work {work.work_id} has no workspace to push from")
        _run_git(
            ["push", "--set-upstream", self.remote, work.branch],
            cwd=Path(work.workspace_path),
        )


def _run_git(args: Sequence[str], *, cwd: Path) -> str:
    try:
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as error:
        raise ExecutionFailure("git executable not found") from error
    if completed.returncode != 0:
        raise ExecutionFailure(
            f"git {' '.join(args)} failed with exit code {completed.returncode}: "
            f"{completed.stderr.strip()}",
        )
    return completed.stdout


class CommandExecutor:
    """Runs the agent command template for a task and waits for it.

    Placeholders: ``{task_id}``, ``{work_id}``, ``{workspace}``, ``{prompt}``,
    ``{prompt_file}``.
    """

    def __init__(self, command_template: str, *, timeout_seconds: int = 3_600) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        task_dir = request.workspace_path / ".bead-orch" / "tasks" / request.task_id
        task_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = task_dir / "prompt.txt"
        prompt_file.write_text(request.prompt, "utf-8")

        run_args = render_command(
            self.command_template,
            task_id=request.task_id,
            work_id=request.work_id,
            workspace=str(request.workspace_path),
            prompt=request.prompt,
            prompt_file=str(prompt_file),
        )
        env = os.environ.copy()
        env["BEAD_ORCH_TASK_ID"] = request.task_id
        env["BEAD_ORCH_WORK_ID"] = request.work_id

        try:
            with (
                (task_dir / "stdout.log").open("w", encoding="utf-8") as stdout_handle,
                (task_dir / "stderr.log").open("w", encoding="utf-8") as stderr_handle,
            ):
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=request.workspace_path,
                    env=env,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
                return _wait_with_timeout(
                    process,
                    timeout_seconds=self.timeout_seconds,
                    shutdown_requested=request.shutdown_requested,
                )
        except FileNotFoundError as error:
            raise ExecutionFailure(f"executor command not found: {run_args[0]}") from error


def _wait_with_timeout(
    process: subprocess.Popen[str],
    *,
    timeout_seconds: int,
    shutdown_requested: Callable[[], bool] | None,
) -> ExecutionResult:
    started = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            if returncode == 0:
                return ExecutionResult(completed=True, exit_code=0)
            return ExecutionResult(
                completed=False,
                message=f"executor exited with code {returncode}",
                exit_code=returncode,
            )
        if time.monotonic() - started >= timeout_seconds:
            _terminate_process(process)
            return ExecutionResult(
                completed=False,
                message=f"executor exceeded {timeout_seconds}s",
                timed_out=True,
                exit_code=124,
            )
        if shutdown_requested is not None and shutdown_requested():
            _terminate_process(process)
            return ExecutionResult(
                completed=False,
                message="interrupted by shutdown request",
                exit_code=process.returncode,
            )
        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


class CommandEstimator:
    """Starts the estimator command in the background; it reports via ``estimate record``.

    Placeholders: ``{task_id}`` and ``{beads_file}`` (a JSON list of the beads to
    estimate, each with its ``description_hash``).
    """

    def __init__(self, command_template: str, *, state_dir: Path) -> None:
        self.command_template = command_template
        self.state_dir = state_dir

    def request(self, *, task_id: str, beads: Sequence[Bead], workspace_path: Path | None) -> None:
        estimate_dir = self.state_dir / "estimates"
        estimate_dir.mkdir(parents=True, exist_ok=True)
        beads_file = estimate_dir / f"{task_id}.json"
        beads_file.write_text(
            json.dumps(
                [
                    {
                        "id": bead.bead_id,
                        "title": bead.title,
                        "description": bead.description,
                        "description_hash": description_hash(bead),
                    }
                    for bead in beads
                ],
                indent=2,
                ensure_ascii=False,
            ),
            "utf-8",
        )
        run_args = render_command(
            self.command_template,
            task_id=task_id,
            beads_file=str(beads_file),
        )
        env = os.environ.copy()
        env["BEAD_ORCH_TASK_ID"] = task_id
        with (estimate_dir / f"{task_id}.log").open("a", encoding="utf-8") as log_handle:
            try:
                subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=workspace_path,
                    env=env,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError as error:
                raise ExecutionFailure(f"estimator command not found: {run_args[0]}") from error
        logger.info("Estimator started for task %s (%d bead(s))", task_id, len(beads))


class CommandSessionSupervisor:
    """Detached session per work, tracked through pid files."""

    def __init__(self, command_template: str, *, state_dir: Path) -> None:
        self.command_template = command_template
        self.sessions_dir = state_dir / "sessions"
        self._children: dict[str, subprocess.Popen[bytes]] = {}

    def start(self, *, work_id: str) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        run_args = render_command(self.command_template, work_id=work_id)
        with self._log_path(work_id).open("a", encoding="utf-8") as log_handle:
            try:
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except FileNotFoundError as error:
                raise ExecutionFailure(f"session command not found: {run_args[0]}") from error
        self._children[work_id] = process
        self._pid_path(work_id).write_text(f"{process.pid}\n", "utf-8")
        logger.info("Session for work %s started with pid %d", work_id, process.pid)

    def stop(self, *, work_id: str) -> None:
        pid = self._read_pid(work_id)
        if pid is not None and self.is_alive(work_id=work_id):
            try:
                os.killpg(pid, signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                pass
        child = self._children.pop(work_id, None)
        if child is not None:
            _terminate_process(child)
        self._pid_path(work_id).unlink(missing_ok=True)

    def exists(self, *, work_id: str) -> bool:
        return self._pid_path(work_id).exists()

    def is_alive(self, *, work_id: str) -> bool:
        child = self._children.get(work_id)
        if child is not None:
            # reap our own children so an exited session is not mistaken for a zombie pid
            return child.poll() is None
        pid = self._read_pid(work_id)
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _read_pid(self, work_id: str) -> int | None:
        path = self._pid_path(work_id)
        if not path.exists():
            return None
        try:
            return int(path.read_text("utf-8").strip())
        except ValueError:
            return None

    def _pid_path(self, work_id: str) -> Path:
        return self.sessions_dir / f"{work_id}.pid"

    def _log_path(self, work_id: str) -> Path:
        return self.sessions_dir / f"{work_id}.log"


def render_command(template: str, **values: str) -> list[str]:
    """Render a command template with shell-quoted values into argv."""

    stripped = template.strip()
    if not stripped:
        raise ExecutionFailure("command template is empty")
    try:
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except KeyError as error:
        raise ExecutionFailure(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise ExecutionFailure("command template rendered an empty command")
    return argv
