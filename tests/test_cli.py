from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import yaml

from workgraph.cli import main


def _run(tmp_path: Path, capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict]:
    rc = main(["--project-dir", str(tmp_path), *argv])
    out = capsys.readouterr().out
    return rc, json.loads(out) if out.strip().startswith("{") else {}


def test_task_add_list_and_show(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc, data = _run(tmp_path, capsys, "task", "add", "CLI Task", "--id", "t1", "--priority", "P1",
                    "--verify-manual", "looks right")
    assert rc == 0
    assert data["task"]["verify"]["criterion"] == "looks right"

    rc, data = _run(tmp_path, capsys, "task", "list")
    assert rc == 0
    assert data["total"] == 1

    rc, data = _run(tmp_path, capsys, "task", "show", "t1")
    assert data["task"]["priority"] == "P1"


def test_errors_go_to_stderr(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["--project-dir", str(tmp_path), "task", "add", "Loop", "--id", "c", "--depends-on", "c"])
    assert rc == 1
    err = capsys.readouterr().err.strip().splitlines()[-1]
    assert json.loads(err)["error"] == "cycle_detected"


def test_manual_verification_flow(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(tmp_path, capsys, "task", "add", "A", "--id", "A", "--verify-manual", "reviewed")
    _run(tmp_path, capsys, "task", "add", "B", "--id", "B", "--depends-on", "A", "--verify-manual", "reviewed")

    rc, data = _run(tmp_path, capsys, "next")
    assert data["task"]["id"] == "A"

    assert _run(tmp_path, capsys, "task", "start", "A")[0] == 0
    rc, data = _run(tmp_path, capsys, "task", "verify", "A", "--reject", "--by", "qa", "--comment", "typo")
    assert rc == 1
    assert data["verdict"] == "fail"

    rc, data = _run(tmp_path, capsys, "task", "verify", "A", "--attest", "--by", "qa")
    assert rc == 0
    assert data["checkpoint"]["next_task"] == "B"

    rc, data = _run(tmp_path, capsys, "checkpoint", "latest")
    assert data["checkpoint"]["last_task_completed"] == "A"
    rc, data = _run(tmp_path, capsys, "checkpoint", "history")
    assert data["total"] == 1


def test_verify_run_executes_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    command = f'"{sys.executable}" -c "pass"'
    _run(tmp_path, capsys, "task", "add", "Build", "--id", "build", "--verify-command", command)
    _run(tmp_path, capsys, "task", "start", "build")
    rc, data = _run(tmp_path, capsys, "task", "verify", "build", "--run")
    assert rc == 0
    assert data["reason"] == "exit status 0"


def test_run_drains_command_tasks(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    command = f'"{sys.executable}" -c "pass"'
    _run(tmp_path, capsys, "task", "add", "One", "--id", "one", "--verify-command", command)
    _run(tmp_path, capsys, "task", "add", "Two", "--id", "two", "--depends-on", "one", "--verify-command", command)
    _run(tmp_path, capsys, "task", "add", "Human", "--id", "human", "--verify-manual", "signed off")
    rc, data = _run(tmp_path, capsys, "run", "--workers", "2")
    assert rc == 0
    assert sorted(r["task_id"] for r in data["results"]) == ["one", "two"]
    rc, data = _run(tmp_path, capsys, "status")
    assert data["counts"]["done"] == 2
    assert data["next_task"] == "human"


def test_decompose_from_yaml(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(tmp_path, capsys, "task", "add", "Epic", "--id", "epic")
    plan = tmp_path / "plan.yaml"
    plan.write_text(yaml.safe_dump({"subtasks": [{"id": "s1", "title": "Schema"}, {"id": "s2", "title": "API"}]}))
    rc, data = _run(tmp_path, capsys, "task", "decompose", "epic", "--file", str(plan))
    assert rc == 0
    assert data["total"] == 2

    rc, data = _run(tmp_path, capsys, "task", "show", "epic")
    assert data["task"]["depends_on"] == ["s1", "s2"]


def test_block_escalate_resolve(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(tmp_path, capsys, "task", "add", "Migrate", "--id", "m")
    _run(tmp_path, capsys, "task", "start", "m")
    rc, _ = _run(tmp_path, capsys, "task", "block", "m", "drops a column", "--irreversible")
    assert rc == 0

    rc, data = _run(tmp_path, capsys, "escalation", "list")
    assert [t["id"] for t in data["tasks"]] == ["m"]
    assert main(["--project-dir", str(tmp_path), "task", "unblock", "m"]) == 1
    capsys.readouterr()

    assert _run(tmp_path, capsys, "escalation", "resolve", "m", "backup taken")[0] == 0
    rc, data = _run(tmp_path, capsys, "task", "unblock", "m")
    assert data["task"]["status"] == "todo"


def test_resume_reports_discontinuity(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc, data = _run(tmp_path, capsys, "resume")
    assert rc == 0
    assert "tasks" not in data

    rc, data = _run(tmp_path, capsys, "resume", "--expected", "ghost")
    assert rc == 2
    assert data["discontinuity"]["subject_id"] == "ghost"

    capsys.readouterr()
    assert main(["--project-dir", str(tmp_path), "resume", "--expected", "ghost", "--strict"]) == 2
    captured = capsys.readouterr()
    assert captured.out == ""
    assert json.loads(captured.err.strip().splitlines()[-1])["error"] == "recovery_discontinuity"

    assert main(["--project-dir", str(tmp_path), "resume", "--expected", "", "--strict"]) == 0


def test_decisions(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc, data = _run(tmp_path, capsys, "decision", "propose", "Adopt YAML", "--id", "d1")
    assert data["decision"]["status"] == "proposed"
    rc, data = _run(tmp_path, capsys, "decision", "accept", "d1", "--reasoning", "team agreed")
    assert data["decision"]["status"] == "accepted"
    rc, data = _run(tmp_path, capsys, "decision", "list", "--status", "accepted")
    assert data["total"] == 1


def test_auditor_list_and_unregistered_run(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc, data = _run(tmp_path, capsys, "auditor", "list")
    assert rc == 0
    assert len(data["auditors"]) == 6
    assert main(["--project-dir", str(tmp_path), "auditor", "run", "security", "src"]) == 1


def test_board_plan_and_archive(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(tmp_path, capsys, "task", "add", "Title with [brackets]", "--id", "a")
    assert main(["--project-dir", str(tmp_path), "board"]) == 0
    assert "Title with [brackets]" in capsys.readouterr().out

    assert main(["--project-dir", str(tmp_path), "plan"]) == 0
    assert "Batch 1" in capsys.readouterr().out

    rc, data = _run(tmp_path, capsys, "archive")
    assert Path(data["path"], "graph.yaml").exists()
