"""End-to-end lifecycle tests for the orchestrator."""

from __future__ import annotations

import json
import sys
import threading
from pathlib import Path

import pytest

from workgraph import Orchestrator
from workgraph.auditors import Analyzer, AuditorRegistry
from workgraph.config import EngineConfig
from workgraph.errors import (
    AuditorError,
    CycleDetected,
    DecisionNotFound,
    EscalationRequired,
    InvalidTransition,
    LeaseConflict,
    RecoveryDiscontinuity,
    ScopeTooLarge,
    TaskNotFound,
    ValidationError,
    VerificationCancelled,
    VerificationFailure,
)
from workgraph.task_engine.model import DecisionStatus, TaskStatus

ATTEST = {"kind": "manual", "attested": True, "attested_by": "qa"}
REJECT = {"kind": "manual", "attested": False, "attested_by": "qa", "comment": "not yet"}


@pytest.fixture
def orch(tmp_path: Path) -> Orchestrator:
    return Orchestrator(tmp_path, config=EngineConfig())


def _finish(orch: Orchestrator, task_id: str) -> None:
    orch.start(task_id)
    orch.submit_verification(task_id, ATTEST).raise_for_verdict()


def _events(orch: Orchestrator) -> list[str]:
    return [e["type"] for e in orch.recent_events(limit=1000)]


class TestScenarios:
    def test_dependency_gates_priority(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", priority="P1", verify="reviewed")
        orch.submit_task("B", task_id="B", priority="P0", depends_on=["A"], verify="reviewed")
        assert orch.next_ready().id == "A"
        _finish(orch, "A")
        assert orch.next_ready().id == "B"
        assert orch.latest_checkpoint().next_task == "B"

    def test_self_dependency(self, orch: Orchestrator) -> None:
        with pytest.raises(CycleDetected) as excinfo:
            orch.submit_task("C", task_id="C", depends_on=["C"])
        assert excinfo.value.subject_id == "C"
        assert orch.list_tasks() == []

    def test_failed_check_keeps_task_doing(self, orch: Orchestrator) -> None:
        orch.submit_task("D", task_id="D", verify={"kind": "check", "command": "pytest"})
        orch.start("D")
        outcome = orch.submit_verification("D", {"kind": "check", "passed": 8, "failed": 2, "total": 10})
        assert not outcome.verdict.passed
        assert outcome.verdict.reason == "tests failed: 2/10"
        task = orch.get_task("D")
        assert task.status == TaskStatus.DOING
        assert any(n["text"] == "tests failed: 2/10" for n in task.notes)
        assert orch.latest_checkpoint() is None
        with pytest.raises(VerificationFailure):
            outcome.raise_for_verdict()

    def test_independent_tasks_lease_concurrently(self, orch: Orchestrator) -> None:
        orch.submit_task("E", task_id="E")
        orch.submit_task("F", task_id="F")
        assert {t.id for t in orch.ready()} == {"E", "F"}

        results: dict[str, list[str]] = {"won": [], "lost": []}
        barrier = threading.Barrier(4)

        def _lease(task_id: str, worker: str) -> None:
            barrier.wait()
            try:
                orch.start(task_id, worker=worker)
                results["won"].append(f"{task_id}:{worker}")
            except LeaseConflict:
                results["lost"].append(f"{task_id}:{worker}")

        threads = [
            threading.Thread(target=_lease, args=("E", "w1")),
            threading.Thread(target=_lease, args=("E", "w2")),
            threading.Thread(target=_lease, args=("F", "w3")),
            threading.Thread(target=_lease, args=("F", "w4")),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results["won"]) == 2
        assert sorted(w.split(":")[0] for w in results["won"]) == ["E", "F"]
        assert len(results["lost"]) == 2


class TestCompletion:
    def test_start_requires_done_dependencies(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        orch.submit_task("B", task_id="B", depends_on=["A"])
        with pytest.raises(InvalidTransition, match="dependencies not done"):
            orch.start("B")
        assert orch.get_task("B").status == TaskStatus.TODO

    def test_done_requires_pass(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", verify="reviewed")
        orch.start("A")
        orch.submit_verification("A", REJECT)
        assert orch.get_task("A").status == TaskStatus.DOING
        orch.submit_verification("A", ATTEST)
        task = orch.get_task("A")
        assert task.status == TaskStatus.DONE
        assert task.lease_owner is None
        assert task.completion_seq == 1

    def test_task_without_predicate_cannot_complete(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        orch.start("A")
        outcome = orch.submit_verification("A", ATTEST)
        assert outcome.verdict.reason == "no verification predicate defined"
        assert orch.get_task("A").status == TaskStatus.DOING

    def test_verification_requires_doing(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", verify="reviewed")
        with pytest.raises(InvalidTransition):
            orch.submit_verification("A", ATTEST)

    def test_wrong_lease_holder_rejected(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", verify="reviewed")
        orch.start("A", worker="w1")
        with pytest.raises(LeaseConflict):
            orch.submit_verification("A", ATTEST, worker="w2")
        assert orch.submit_verification("A", ATTEST, worker="w1").verdict.passed

    def test_one_checkpoint_per_completion_in_order(self, orch: Orchestrator) -> None:
        for tid in ("a", "b", "c"):
            orch.submit_task(tid.upper(), task_id=tid, verify="reviewed")
        for tid in ("b", "a", "c"):
            _finish(orch, tid)
        history = orch.checkpoints()
        assert [c.last_task_completed for c in history] == ["b", "a", "c"]
        assert [c.seq for c in history] == [1, 2, 3]
        assert history[-1].next_task is None

    def test_done_is_terminal(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", verify="reviewed")
        _finish(orch, "A")
        with pytest.raises(LeaseConflict):
            orch.start("A")
        with pytest.raises(InvalidTransition):
            orch.skip("A", "changed my mind")
        assert len(orch.checkpoints()) == 1

    def test_run_verification_executes_command(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", verify={"kind": "command", "command": f'"{sys.executable}" -c "pass"'})
        orch.start("A")
        outcome = orch.run_verification("A")
        assert outcome.verdict.passed
        assert outcome.checkpoint is not None
        assert list((orch.state_dir / "logs" / "verify").glob("A-*.log"))

    def test_cancelled_verification_changes_nothing(self, orch: Orchestrator) -> None:
        orch.submit_task(
            "A", task_id="A",
            verify={"kind": "command", "command": f'"{sys.executable}" -c "import time; time.sleep(30)"'},
        )
        orch.start("A")
        before = orch.get_task("A")
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        try:
            with pytest.raises(VerificationCancelled):
                orch.run_verification("A", cancel_event=cancel)
        finally:
            timer.cancel()
        after = orch.get_task("A")
        assert after.status == TaskStatus.DOING
        assert after.notes == before.notes
        assert orch.latest_checkpoint() is None
        assert "task.verification_cancelled" in _events(orch)


class TestEscalation:
    def test_repeated_failures_escalate(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", verify="reviewed")
        orch.start("A")
        outcomes = [orch.submit_verification("A", REJECT) for _ in range(3)]
        assert [o.escalated for o in outcomes] == [False, False, True]
        with pytest.raises(EscalationRequired):
            orch.submit_verification("A", ATTEST)
        assert [t.id for t in orch.escalations()] == ["A"]

        orch.resolve_escalation("A", "criterion clarified with product")
        assert orch.escalations() == []
        assert orch.submit_verification("A", ATTEST).verdict.passed

    def test_threshold_is_configurable(self, tmp_path: Path) -> None:
        orch = Orchestrator(tmp_path, config=EngineConfig(max_verification_attempts=1))
        orch.submit_task("A", task_id="A", verify="reviewed")
        orch.start("A")
        assert orch.submit_verification("A", REJECT).escalated

    def test_irreversible_block_needs_resolution(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        orch.start("A")
        orch.block("A", "would drop the production table", irreversible=True)
        with pytest.raises(EscalationRequired):
            orch.unblock("A")
        orch.resolve_escalation("A", "approved by DBA")
        assert orch.unblock("A").status == TaskStatus.TODO

    def test_block_requires_reason(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        orch.start("A")
        with pytest.raises(InvalidTransition, match="requires a reason"):
            orch.block("A", "")

    def test_block_and_retry(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", verify="reviewed")
        orch.start("A", worker="w1")
        blocked = orch.block("A", "waiting on API keys")
        assert blocked.lease_owner is None
        orch.unblock("A", "keys arrived")
        orch.start("A", worker="w2")
        assert orch.get_task("A").lease_owner == "w2"

    def test_skip_strands_dependents(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        orch.submit_task("B", task_id="B", depends_on=["A"])
        orch.skip("A", "feature dropped")
        assert orch.get_task("A").status == TaskStatus.SKIPPED
        assert orch.get_task("B").escalation
        status = orch.status()
        assert status["stranded"] == ["B"]
        assert status["escalations"] == ["B"]
        assert status["next_task"] is None

    def test_resolve_without_escalation(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        with pytest.raises(ValidationError):
            orch.resolve_escalation("A", "nothing to do")


class TestSubmission:
    def test_scope_too_large(self, orch: Orchestrator) -> None:
        with pytest.raises(ScopeTooLarge):
            orch.submit_task("Rewrite", effort="XL")

    def test_duplicate_id(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        with pytest.raises(ValidationError, match="already exists"):
            orch.submit_task("A again", task_id="A")

    def test_unknown_parent(self, orch: Orchestrator) -> None:
        with pytest.raises(ValidationError, match="unknown parent"):
            orch.submit_task("child", parent_id="ghost")

    def test_bad_priority(self, orch: Orchestrator) -> None:
        with pytest.raises(ValidationError):
            orch.submit_task("A", priority="urgent")

    def test_update_editable_fields(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        updated = orch.update_task("A", {"title": "A2", "priority": "P0"})
        assert updated.title == "A2"
        assert orch.get_task("A").priority.value == "P0"

    def test_update_rejects_status(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        with pytest.raises(ValidationError, match="cannot be edited"):
            orch.update_task("A", {"status": "done"})

    def test_update_missing_task(self, orch: Orchestrator) -> None:
        with pytest.raises(TaskNotFound):
            orch.update_task("ghost", {"title": "x"})

    def test_decompose_links_parent(self, orch: Orchestrator) -> None:
        orch.submit_task("Epic", task_id="epic")
        children = orch.decompose("epic", [
            {"id": "s1", "title": "Schema", "verify": "reviewed"},
            {"id": "s2", "title": "API", "depends_on": ["s1"], "verify": "reviewed"},
        ])
        assert [c.parent_id for c in children] == ["epic", "epic"]
        assert orch.get_task("epic").depends_on == ["s1", "s2"]
        assert orch.next_ready().id == "s1"

    def test_decompose_is_atomic(self, orch: Orchestrator) -> None:
        orch.submit_task("Epic", task_id="epic")
        with pytest.raises(ValidationError):
            orch.decompose("epic", [{"id": "s1", "title": "ok"}, {"id": "s2", "title": ""}])
        assert [t.id for t in orch.list_tasks()] == ["epic"]

    def test_add_note(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        orch.add_note("A", "talked to design")
        assert orch.get_task("A").notes[-1]["text"] == "talked to design"
        with pytest.raises(ValidationError):
            orch.add_note("A", "   ")


class FindingsAnalyzer(Analyzer):
    name = "fixture"

    def analyze(self, scope, *, on_progress=None):
        return [
            {"severity": "critical", "category": "secrets", "location": "config.py:3", "description": "hardcoded key"},
            {"severity": "low", "category": "style", "location": "app.py:9", "description": "long line"},
        ]


class TestAuditors:
    @pytest.fixture
    def orch(self, tmp_path: Path) -> Orchestrator:
        registry = AuditorRegistry()
        registry.register("security", FindingsAnalyzer())
        return Orchestrator(tmp_path, config=EngineConfig(), registry=registry)

    def test_findings_attached_and_spawned(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        outcome = orch.invoke_auditor("security", {"paths": ["src"]}, attach_to="A", spawn_tasks=True)
        assert len(outcome.findings) == 2
        assert orch.get_task("A").notes[-1]["kind"] == "findings"
        assert len(outcome.spawned) == 1
        spawned = orch.get_task(outcome.spawned[0].id)
        assert spawned.priority.value == "P0"
        assert spawned.parent_id == "A"

    def test_failure_is_surfaced(self, orch: Orchestrator) -> None:
        with pytest.raises(AuditorError):
            orch.invoke_auditor("security", {"paths": ["/"]})
        assert "auditor.failed" in _events(orch)

    def test_unregistered_capability(self, orch: Orchestrator) -> None:
        with pytest.raises(AuditorError):
            orch.invoke_auditor("database", {"paths": ["migrations"]})

    def test_non_numeric_max_files(self, orch: Orchestrator) -> None:
        with pytest.raises(ValidationError, match="max_files"):
            orch.invoke_auditor("security", {"paths": ["src"], "max_files": "lots"})


class TestDecisions:
    def test_accept_is_final(self, orch: Orchestrator) -> None:
        decision = orch.propose_decision("Store state in YAML", reasoning="human-readable diffs")
        orch.edit_decision(decision.id, description="Store graph state in YAML")
        accepted = orch.accept_decision(decision.id)
        assert accepted.status == DecisionStatus.ACCEPTED
        with pytest.raises(ValidationError):
            orch.reject_decision(decision.id)
        with pytest.raises(ValidationError):
            orch.edit_decision(decision.id, description="Use JSON")

    def test_listing_and_missing(self, orch: Orchestrator) -> None:
        orch.propose_decision("A", decision_id="d1")
        orch.propose_decision("B", decision_id="d2")
        orch.reject_decision("d2", reasoning="too costly")
        assert [d.id for d in orch.list_decisions("proposed")] == ["d1"]
        with pytest.raises(DecisionNotFound):
            orch.accept_decision("ghost")


class TestRecovery:
    def test_resume_on_fresh_instance(self, orch: Orchestrator, tmp_path: Path) -> None:
        orch.submit_task("A", task_id="A", verify="reviewed")
        orch.submit_task("B", task_id="B", depends_on=["A"], verify="reviewed")
        _finish(orch, "A")

        snapshot = Orchestrator(tmp_path, config=EngineConfig()).resume("A")
        assert snapshot.last_task_completed == "A"
        assert snapshot.next_task == "B"
        assert snapshot.discontinuity is None

    def test_strict_resume_raises(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", verify="reviewed")
        _finish(orch, "A")
        with pytest.raises(RecoveryDiscontinuity):
            orch.resume("B", strict=True)
        assert orch.resume("B").discontinuity is not None
        assert "recovery.discontinuity" in _events(orch)

    def test_completion_after_crash_keeps_seq_contiguous(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", verify="reviewed")
        orch.submit_task("B", task_id="B", verify="reviewed")
        _finish(orch, "A")
        # Lose the ledger tail: the graph still says A is done with seq 1.
        orch.ledger.log_path.unlink()
        (orch.state_dir / "checkpoint_head.json").unlink()
        _finish(Orchestrator(orch.project_dir, config=EngineConfig()), "B")
        history = orch.checkpoints()
        assert [(c.seq, c.last_task_completed) for c in history] == [(1, "A"), (2, "B")]

    def test_archive_and_status(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A", verify="reviewed")
        _finish(orch, "A")
        dest = orch.archive()
        assert (dest / "graph.yaml").exists()
        assert (dest / "checkpoints.jsonl").exists()
        assert (dest / "events.jsonl").exists()
        status = orch.status()
        assert status["counts"]["done"] == 1
        assert status["checkpoint"]["last_task_completed"] == "A"

    def test_events_are_jsonl(self, orch: Orchestrator) -> None:
        orch.submit_task("A", task_id="A")
        lines = (orch.state_dir / "artifacts" / "events.jsonl").read_text().splitlines()
        assert json.loads(lines[0])["type"] == "task.created"
        assert orch.recent_events(subject_id="A")[0]["subject_id"] == "A"
