"""Tests for the task, decision and checkpoint records."""

from __future__ import annotations

from workgraph.task_engine.model import (
    Checkpoint,
    Decision,
    DecisionStatus,
    EffortEstimate,
    Task,
    TaskPriority,
    TaskStatus,
    VerifySpec,
)


class TestEnums:
    def test_priority_sort_key(self) -> None:
        ordered = sorted(TaskPriority, key=lambda p: p.sort_key)
        assert [p.value for p in ordered] == ["P0", "P1", "P2", "P3"]

    def test_terminal_statuses(self) -> None:
        assert TaskStatus.DONE.is_terminal
        assert TaskStatus.SKIPPED.is_terminal
        assert not TaskStatus.BLOCKED.is_terminal
        assert not TaskStatus.DOING.is_terminal

    def test_effort_rank(self) -> None:
        assert EffortEstimate.XS.rank < EffortEstimate.L.rank < EffortEstimate.XL.rank

    def test_decision_finality(self) -> None:
        assert not DecisionStatus.PROPOSED.is_final
        assert DecisionStatus.ACCEPTED.is_final
        assert DecisionStatus.REJECTED.is_final


class TestVerifySpec:
    def test_bare_string_is_manual_criterion(self) -> None:
        spec = VerifySpec.from_value("  docs reviewed  ")
        assert spec is not None
        assert spec.kind == "manual"
        assert spec.criterion == "docs reviewed"

    def test_empty_values_mean_no_spec(self) -> None:
        assert VerifySpec.from_value(None) is None
        assert VerifySpec.from_value("") is None
        assert VerifySpec.from_value({}) is None

    def test_command_requires_command(self) -> None:
        spec = VerifySpec.from_value({"kind": "command"})
        assert spec is not None
        assert any("verify.command" in p for p in spec.problems())

    def test_unknown_kind_reported(self) -> None:
        spec = VerifySpec.from_value({"kind": "vibes", "criterion": "x"})
        assert spec is not None
        assert any("verify.kind" in p for p in spec.problems())

    def test_expect_exit_code_defaults_to_zero(self) -> None:
        spec = VerifySpec.from_value({"kind": "command", "command": "make test"})
        assert spec is not None
        assert spec.expect_exit_code == 0
        assert spec.problems() == []


class TestTaskValidation:
    def test_valid_minimal(self) -> None:
        assert Task.validate_dict({"title": "Write parser"}) == []

    def test_missing_title(self) -> None:
        errors = Task.validate_dict({"title": "   "})
        assert any("title" in e for e in errors)

    def test_bad_priority_and_effort(self) -> None:
        errors = Task.validate_dict({"title": "x", "priority": "P9", "effort": "XXL"})
        assert any("priority" in e for e in errors)
        assert any("effort" in e for e in errors)

    def test_depends_on_must_be_list(self) -> None:
        errors = Task.validate_dict({"title": "x", "depends_on": "t1"})
        assert any("depends_on" in e for e in errors)

    def test_not_a_dict(self) -> None:
        assert Task.validate_dict("nope") == ["Expected a dict"]  # type: ignore[arg-type]


class TestTaskSerialization:
    def test_round_trip_preserves_fields(self) -> None:
        task = Task(
            id="t1",
            title="Build API",
            priority=TaskPriority.P0,
            effort=EffortEstimate.M,
            depends_on=["t0"],
            deliverable="server/api.py",
            verify=VerifySpec(kind="command", command="pytest -q"),
            metadata={"owner": "platform"},
        )
        task.add_note("comment", "kicked off")
        restored = Task.from_dict(task.to_dict())
        assert restored == task

    def test_to_dict_uses_plain_values(self) -> None:
        data = Task(id="t1", title="x", verify=VerifySpec(criterion="ok")).to_dict()
        assert data["status"] == "todo"
        assert data["priority"] == "P2"
        assert data["verify"] == {"kind": "manual", "command": None, "expect_exit_code": 0, "criterion": "ok"}

    def test_from_dict_tolerates_unknown_enums(self) -> None:
        task = Task.from_dict({"id": "t1", "title": "x", "status": "weird", "priority": "P7"})
        assert task.status == TaskStatus.TODO
        assert task.priority == TaskPriority.P2

    def test_generated_id_prefix(self) -> None:
        assert Task(title="x").id.startswith("task-")

    def test_add_note_appends(self) -> None:
        task = Task(title="x")
        entry = task.add_note("verify_fail", "exit status 1", attempt=1)
        assert task.notes == [entry]
        assert entry["kind"] == "verify_fail"
        assert entry["attempt"] == 1
        assert "ts" in entry

    def test_release_lease(self) -> None:
        task = Task(title="x", lease_owner="w1", lease_acquired_at="2024-01-01T00:00:00+00:00")
        task.release_lease()
        assert task.lease_owner is None
        assert task.lease_acquired_at is None


class TestDecisionAndCheckpoint:
    def test_decision_round_trip(self) -> None:
        decision = Decision(description="Use SQLite", reasoning="single node")
        assert decision.id.startswith("dec-")
        restored = Decision.from_dict(decision.to_dict())
        assert restored == decision
        assert restored.to_dict()["status"] == "proposed"

    def test_checkpoint_round_trip(self) -> None:
        checkpoint = Checkpoint(last_task_completed="t1", next_task="t2", seq=4)
        assert Checkpoint.from_dict(checkpoint.to_dict()) == checkpoint

    def test_checkpoint_allows_nulls(self) -> None:
        checkpoint = Checkpoint.from_dict({"last_task_completed": "t9", "next_task": None})
        assert checkpoint.next_task is None
        assert checkpoint.seq == 0
