from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import allure
import pytest

from bead_orchestrator.errors import ExecutionFailure
from bead_orchestrator.orchestrator.capabilities import ExecutionRequest
from bead_orchestrator.orchestrator.local import CommandExecutor, JsonIssueTracker, render_command
from bead_orchestrator.planning.models import Bead, BeadStatus, BeadType, Relation, RelationKind

pytestmark = [
    allure.epic("Integrations"),
    allure.feature("Local Capabilities"),
]


def _tracker(tmp_path: Path) -> JsonIssueTracker:
    path = tmp_path / "beads.json"
    path.write_text(
        json.dumps(
            {
                "beads": [
                    {"id": "a", "title": "Schema", "labels": ["db"]},
                    {"id": "b", "title": "API", "type": "feature", "priority": 1},
                    {"id": "c", "title": "Old", "status": "closed"},
                ],
                "relations": [
                    {"bead_id": "b", "other_id": "a", "kind": "blocked_by"},
                    {"bead_id": "x", "other_id": "y", "kind": "blocks"},
                ],
            },
        ),
        "utf-8",
    )
    return JsonIssueTracker(path)


def test_tracker_returns_beads_in_requested_order(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path)

    beads = tracker.get_beads(["b", "missing", "a", "b"])

    assert [bead.bead_id for bead in beads] == ["b", "a"]
    assert beads[0].bead_type == BeadType.FEATURE
    assert beads[0].priority == 1
    assert beads[1].labels == ("db",)
    assert tracker.get_relations(["a"]) == [
        Relation(bead_id="b", other_id="a", kind=RelationKind.BLOCKED_BY),
    ]


def test_tracker_filters_and_updates_status(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path)

    assert [bead.bead_id for bead in tracker.list_beads(status=BeadStatus.OPEN)] == ["a", "b"]
    assert [bead.bead_id for bead in tracker.list_beads(label="db")] == ["a"]

    tracker.close_bead("a")

    assert tracker.get_beads(["a"])[0].status == BeadStatus.CLOSED
    with pytest.raises(KeyError, match="Unknown bead: zz"):
        tracker.close_bead("zz")


def test_tracker_without_file_is_empty(tmp_path: Path) -> None:
    tracker = JsonIssueTracker(tmp_path / "absent.json")

    assert tracker.get_beads(["a"]) == []
    assert tracker.list_beads() == []


def test_render_command_quotes_values() -> None:
    argv = render_command(
        "agent --task {task_id} --prompt {prompt}",
        task_id="w-1.1",
        prompt="fix it; rm",
    )

    assert argv == ["agent", "--task", "w-1.1", "--prompt", "fix it; rm"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "command template is empty"),
        ("agent {unknown}", "Unsupported command template placeholder"),
    ],
)
def test_render_command_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(ExecutionFailure, match=message):
        render_command(template, task_id="t")


def _request(tmp_path: Path) -> ExecutionRequest:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    return ExecutionRequest(
        task_id="w-1.1",
        work_id="w-1",
        beads=[Bead(bead_id="a", title="Schema")],
        prompt="Task w-1.1 of work w-1\n",
        workspace_path=workspace,
    )


def _script(tmp_path: Path, body: str) -> str:
    script = tmp_path / "agent.py"
    script.write_text(body, "utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{prompt_file}}"


def test_command_executor_success_and_exit_codes(tmp_path: Path) -> None:
    request = _request(tmp_path)
    template = _script(
        tmp_path,
        "import os, pathlib, sys\n"
        "pathlib.Path('seen.txt').write_text(os.environ['BEAD_ORCH_TASK_ID'] + ':' + "
        "pathlib.Path(sys.argv[1]).read_text())\n"
        "sys.exit(0 if os.environ['BEAD_ORCH_WORK_ID'] == 'w-1' else 1)\n",
    )

    result = CommandExecutor(template, timeout_seconds=30).run(request)

    assert result.completed is True
    assert (request.workspace_path / "seen.txt").read_text() == "w-1.1:Task w-1.1 of work w-1\n"

    failing = CommandExecutor(_script(tmp_path, "import sys\nsys.exit(3)\n")).run(request)

    assert failing.completed is False
    assert failing.exit_code == 3
    assert failing.message == "executor exited with code 3"


def test_command_executor_times_out(tmp_path: Path) -> None:
    request = _request(tmp_path)
    template = _script(tmp_path, "import time\ntime.sleep(30)\n")

    result = CommandExecutor(template, timeout_seconds=1).run(request)

    assert result.completed is False
    assert result.timed_out is True
    assert result.message == "executor exceeded 1s"


def test_command_executor_missing_binary(tmp_path: Path) -> None:
    with pytest.raises(ExecutionFailure, match="executor command not found"):
        CommandExecutor("definitely-not-an-agent-binary {task_id}").run(_request(tmp_path))
