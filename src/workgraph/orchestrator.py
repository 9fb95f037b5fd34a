"""Orchestrator: the single entry point for every state-changing request.

It wraps :class:`GraphStore` with the lifecycle rules (state machine, leases,
verification gate, checkpoints, escalation) and records an audit trail of
every mutation in ``.workgraph/artifacts/events.jsonl``.

Lock order is always graph then ledger.  A ``done`` transition is committed
to the graph and its checkpoint appended while the graph lock is still held,
so checkpoints land in exactly the order completions were committed.
"""

from __future__ import annotations

import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from .auditors import AuditorRegistry, AuditScope, Finding
from .config import EngineConfig, load_engine_config
from .constants import (
    ARCHIVE_DIR,
    ARTIFACTS_DIR,
    EVENTS_FILE,
    LOGS_DIR,
    NOTE_KIND_BLOCKED,
    NOTE_KIND_COMMENT,
    NOTE_KIND_ESCALATION,
    NOTE_KIND_FINDINGS,
    NOTE_KIND_SKIPPED,
    NOTE_KIND_START,
    NOTE_KIND_UNBLOCKED,
    NOTE_KIND_VERIFY_FAIL,
    NOTE_KIND_VERIFY_PASS,
    STATE_DIR_NAME,
    VERIFY_KIND_MANUAL,
)
from .errors import (
    AuditorError,
    DecisionNotFound,
    EscalationRequired,
    InvalidTransition,
    LeaseConflict,
    ValidationError,
    VerificationCancelled,
    VerificationFailure,
)
from .io_utils import _append_jsonl, _read_jsonl
from .ledger import CheckpointLedger
from .recovery import Snapshot, load_snapshot, reconcile_tx
from .task_engine.fsm import check_transition
from .task_engine.model import Checkpoint, Decision, DecisionStatus, Task, TaskStatus
from .task_engine.scheduler import Scheduler, pick_next
from .task_engine.store import EDITABLE_FIELDS, GraphStore, GraphTx
from .utils import _now_iso, _timestamp_slug, _truncate
from .verification import Evidence, Verdict, VerificationGate, run_command_check

# Finding severities that become follow-up tasks when an audit spawns work.
_SPAWN_PRIORITY = {"critical": "P0", "high": "P1"}


@dataclass
class VerificationOutcome:
    """Result of :meth:`Orchestrator.submit_verification`."""

    task: Task
    verdict: Verdict
    checkpoint: Optional[Checkpoint] = None
    escalated: bool = False

    def raise_for_verdict(self) -> None:
        if not self.verdict.passed:
            raise VerificationFailure(
                self.verdict.reason,
                subject_id=self.task.id,
                attempts=self.task.verification_attempts,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            **self.verdict.to_dict(),
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "escalated": self.escalated,
        }


@dataclass
class AuditOutcome:
    findings: list[Finding]
    attached_to: Optional[str] = None
    spawned: list[Task] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "attached_to": self.attached_to,
            "spawned": [t.to_dict() for t in self.spawned],
        }


class Orchestrator:
    """Drive tasks from submission to verified completion.

    Parameters
    ----------
    project_dir:
        Project root; state lives in ``<project_dir>/.workgraph/``.
    config:
        Engine tunables.  Loaded from ``.workgraph/config.yaml`` when omitted.
    registry:
        Auditor registry.  An empty one is created when omitted.
    """

    def __init__(
        self,
        project_dir: Path,
        config: Optional[EngineConfig] = None,
        registry: Optional[AuditorRegistry] = None,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.state_dir = self.project_dir / STATE_DIR_NAME
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.config = config or load_engine_config(self.project_dir)
        self.store = GraphStore(self.state_dir, max_effort=self.config.max_effort)
        self.scheduler = Scheduler(self.store)
        self.gate = VerificationGate()
        self.ledger = CheckpointLedger(self.state_dir)
        self.registry = registry or AuditorRegistry(timeout_seconds=self.config.auditor_timeout_seconds)
        self._events_path = self.state_dir / ARTIFACTS_DIR / EVENTS_FILE
        self._ledger_repaired = False
        self._repair_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit_event(self, event_type: str, subject_id: Optional[str], **details: Any) -> None:
        """Append an audit event; a failed write is logged, never raised."""
        payload: dict[str, Any] = {"ts": _now_iso(), "type": event_type, "subject_id": subject_id}
        if details:
            payload["details"] = details
        try:
            _append_jsonl(self._events_path, payload)
        except OSError:
            logger.exception("Failed to append event {} for {}", event_type, subject_id)

    def recent_events(self, limit: int = 100, subject_id: Optional[str] = None) -> list[dict[str, Any]]:
        if limit < 1:
            return []
        events = _read_jsonl(self._events_path)
        if subject_id:
            events = [e for e in events if e.get("subject_id") == subject_id]
        return events[-limit:]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        return self.store.get(task_id)

    def list_tasks(self, **filters: Any) -> list[Task]:
        return self.store.list(**filters)

    def next_ready(self) -> Optional[Task]:
        return self.scheduler.next_ready()

    def ready(self) -> list[Task]:
        return self.scheduler.ready()

    def execution_order(self) -> list[list[str]]:
        return self.scheduler.execution_order()

    def latest_checkpoint(self) -> Optional[Checkpoint]:
        return self.ledger.latest()

    def checkpoints(self) -> list[Checkpoint]:
        return self.ledger.history()

    def get_decision(self, decision_id: str) -> Decision:
        return self.store.get_decision(decision_id)

    def list_decisions(self, status: Optional[str] = None) -> list[Decision]:
        return self.store.list_decisions(status)

    # ------------------------------------------------------------------
    # Task submission
    # ------------------------------------------------------------------

    @staticmethod
    def _task_from_payload(payload: dict[str, Any]) -> Task:
        data = {k: v for k, v in payload.items() if v is not None}
        for forbidden in ("status", "notes", "lease_owner", "completion_seq", "completed_at", "escalation"):
            if forbidden in data:
                raise ValidationError(f"'{forbidden}' cannot be set on submission", subject_id=data.get("id"))
        errors = Task.validate_dict(data)
        if errors:
            raise ValidationError("; ".join(errors), subject_id=data.get("id"), errors=errors)
        return Task.from_dict(data)

    def submit_task(
        self,
        title: str,
        *,
        task_id: Optional[str] = None,
        deliverable: str = "",
        verify: Any = None,
        depends_on: Optional[list[str]] = None,
        priority: str = "P2",
        effort: Optional[str] = None,
        parent_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Task:
        """Validate and store a new ``todo`` task."""
        task = self._task_from_payload({
            "id": task_id,
            "title": title,
            "deliverable": deliverable,
            "verify": verify,
            "depends_on": depends_on or [],
            "priority": priority,
            "effort": effort,
            "parent_id": parent_id,
            "metadata": metadata or {},
        })
        with self.store.transaction() as tx:
            if tx.get(task.id) is not None:
                raise ValidationError("task id already exists", subject_id=task.id)
            if task.parent_id and tx.get(task.parent_id) is None:
                raise ValidationError(f"unknown parent '{task.parent_id}'", subject_id=task.id)
            stored = tx.put(task)
        self._emit_event("task.created", stored.id, priority=stored.priority.value, depends_on=stored.depends_on)
        logger.info("Created task {}: {}", stored.id, stored.title)
        return stored

    def update_task(self, task_id: str, changes: dict[str, Any]) -> Task:
        """Apply partial edits to the editable fields of an existing task."""
        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"fields cannot be edited: {unknown}", subject_id=task_id)
        with self.store.transaction() as tx:
            existing = tx.require(task_id)
            merged = existing.to_dict()
            merged.update(changes)
            errors = Task.validate_dict(merged)
            if errors:
                raise ValidationError("; ".join(errors), subject_id=task_id, errors=errors)
            stored = tx.put(Task.from_dict(merged))
        self._emit_event("task.updated", task_id, fields=sorted(changes))
        return stored

    def decompose(
        self,
        parent_id: str,
        subtasks: list[dict[str, Any]],
        *,
        link_parent: bool = True,
    ) -> list[Task]:
        """Store *subtasks* under *parent_id* in one all-or-nothing batch.

        With *link_parent* the parent (when still editable) gains a dependency
        on every sub-task, so it cannot start before they are done.
        """
        if not subtasks:
            raise ValidationError("decomposition needs at least one sub-task", subject_id=parent_id)
        children = [self._task_from_payload({**payload, "parent_id": parent_id}) for payload in subtasks]
        with self.store.transaction() as tx:
            parent = tx.require(parent_id)
            if parent.is_terminal:
                raise ValidationError(f"cannot decompose a {parent.status.value} task", subject_id=parent_id)
            clashes = [c.id for c in children if tx.get(c.id) is not None]
            if clashes:
                raise ValidationError(f"task ids already exist: {clashes}", subject_id=parent_id)
            stored = tx.put_many(children)
            if link_parent and parent.status in (TaskStatus.TODO, TaskStatus.BLOCKED):
                linked = Task.from_dict(parent.to_dict())
                linked.depends_on = parent.depends_on + [c.id for c in stored]
                tx.put(linked)
        self._emit_event("task.decomposed", parent_id, children=[c.id for c in stored])
        logger.info("Decomposed {} into {} sub-task(s)", parent_id, len(stored))
        return stored

    def add_note(self, task_id: str, text: str, kind: str = NOTE_KIND_COMMENT) -> Task:
        if not text.strip():
            raise ValidationError("note text must be non-empty", subject_id=task_id)
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            task.add_note(kind, text)
            task.touch()
            tx.dirty = True
        self._emit_event("task.noted", task_id, kind=kind)
        return task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _check_lease(task: Task, worker: Optional[str]) -> None:
        if worker is not None and task.lease_owner not in (None, worker):
            raise LeaseConflict(
                f"task is leased by {task.lease_owner}, not {worker}",
                subject_id=task.id,
                lease_owner=task.lease_owner,
            )

    def start(self, task_id: str, worker: str = "driver") -> Task:
        """Move a ready task to ``doing`` and give *worker* its lease.

        Of two concurrent calls on the same task exactly one succeeds; the
        other gets :class:`LeaseConflict`.
        """

        def _take(task: Task, tx: GraphTx) -> None:
            check_transition(task, TaskStatus.DOING)
            unresolved = tx.unsatisfied_dependencies(task)
            if unresolved:
                raise InvalidTransition(
                    f"dependencies not done: {unresolved}",
                    subject_id=task.id,
                    unresolved=unresolved,
                )
            task.status = TaskStatus.DOING
            task.lease_owner = worker
            task.lease_acquired_at = _now_iso()
            task.verification_attempts = 0
            task.add_note(NOTE_KIND_START, f"started by {worker}")
            task.touch()

        task = self.store.compare_and_set(task_id, TaskStatus.TODO, _take)
        self._emit_event("task.started", task_id, worker=worker)
        logger.info("Task {} started by {}", task_id, worker)
        return task

    def _ensure_ledger_repaired(self) -> None:
        """Realign the ledger head with its log once per process, before the first append."""
        with self._repair_lock:
            if not self._ledger_repaired:
                self.ledger.repair()
                self._ledger_repaired = True

    def submit_verification(
        self,
        task_id: str,
        evidence: Union[Evidence, dict[str, Any]],
        *,
        worker: Optional[str] = None,
    ) -> VerificationOutcome:
        """Judge *evidence* and apply the verdict.

        Pass: the task becomes ``done`` and exactly one checkpoint is written.
        Fail: the task stays ``doing`` with the reason in its notes; after
        ``max_verification_attempts`` failures it is escalated and further
        submissions raise :class:`EscalationRequired` until resolved.
        """
        if isinstance(evidence, dict):
            evidence = Evidence.from_dict(evidence)

        checkpoint: Optional[Checkpoint] = None
        escalated = False
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            if task.status != TaskStatus.DOING:
                raise InvalidTransition(
                    f"verification needs a doing task, found {task.status.value}",
                    subject_id=task_id,
                )
            self._check_lease(task, worker)
            if task.escalation:
                raise EscalationRequired(task.escalation, subject_id=task_id)

            verdict = self.gate.evaluate(task, evidence)
            evidence_note = {k: v for k, v in evidence.to_dict().items() if k != "report"}
            if evidence.report:
                evidence_note["report"] = _truncate(evidence.report, 1000)

            if verdict.passed:
                check_transition(task, TaskStatus.DONE)
                # Completions the ledger missed are appended first so seq stays contiguous.
                self._ensure_ledger_repaired()
                reconcile_tx(tx, self.ledger)
                head = self.ledger.latest()
                seq = max(tx.next_completion_seq(), (head.seq if head else 0) + 1)
                task.status = TaskStatus.DONE
                task.completed_at = _now_iso()
                task.completion_seq = seq
                task.release_lease()
                task.add_note(NOTE_KIND_VERIFY_PASS, verdict.reason, evidence=evidence_note)
                task.touch()
                tx.dirty = True
                nxt = pick_next(tx.tasks)
                tx.flush()
                checkpoint = self.ledger.append(Checkpoint(
                    last_task_completed=task.id,
                    next_task=nxt.id if nxt else None,
                    timestamp=task.completed_at,
                    seq=seq,
                ))
            else:
                check_transition(task, TaskStatus.DOING)
                task.verification_attempts += 1
                task.add_note(NOTE_KIND_VERIFY_FAIL, verdict.reason, evidence=evidence_note)
                if task.verification_attempts >= self.config.max_verification_attempts:
                    task.escalation = (
                        f"verification failed {task.verification_attempts} times; last: {verdict.reason}"
                    )
                    task.add_note(NOTE_KIND_ESCALATION, task.escalation)
                    escalated = True
                task.touch()
                tx.dirty = True

        if verdict.passed:
            self._emit_event("task.done", task_id, reason=verdict.reason, seq=checkpoint.seq if checkpoint else None)
            logger.info("Task {} verified: {}", task_id, verdict.reason)
        else:
            self._emit_event(
                "task.verification_failed", task_id,
                reason=verdict.reason, attempts=task.verification_attempts,
            )
            logger.warning("Task {} failed verification ({}): {}", task_id, task.verification_attempts, verdict.reason)
            if escalated:
                self._emit_event("task.escalated", task_id, reason=task.escalation)
        return VerificationOutcome(task=task, verdict=verdict, checkpoint=checkpoint, escalated=escalated)

    def verify_log_path(self, task_id: str) -> Path:
        return self.state_dir / LOGS_DIR / "verify" / f"{task_id}-{_timestamp_slug()}.log"

    def run_verification(
        self,
        task_id: str,
        *,
        worker: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> VerificationOutcome:
        """Execute the task's verify command, then submit the resulting evidence.

        The command runs without any lock held.  Cancelling through
        *cancel_event* raises :class:`VerificationCancelled` and leaves the
        task exactly as it was.
        """
        task = self.store.get(task_id)
        if task.status != TaskStatus.DOING:
            raise InvalidTransition(f"verification needs a doing task, found {task.status.value}", subject_id=task_id)
        if task.verify is None or task.verify.kind == VERIFY_KIND_MANUAL:
            raise ValidationError("task has no runnable verify command", subject_id=task_id)
        try:
            evidence = run_command_check(
                task,
                self.project_dir,
                self.verify_log_path(task_id),
                timeout_seconds=self.config.verify_timeout_seconds,
                cancel_event=cancel_event,
            )
        except VerificationCancelled:
            self._emit_event("task.verification_cancelled", task_id)
            raise
        return self.submit_verification(task_id, evidence, worker=worker)

    def block(self, task_id: str, reason: str, *, irreversible: bool = False, worker: Optional[str] = None) -> Task:
        """Park a ``doing`` task.  Irreversible-risk blocks are escalated."""

        def _block(task: Task, tx: GraphTx) -> None:
            self._check_lease(task, worker)
            check_transition(task, TaskStatus.BLOCKED, reason)
            task.status = TaskStatus.BLOCKED
            task.release_lease()
            task.add_note(NOTE_KIND_BLOCKED, reason, irreversible=irreversible)
            if irreversible:
                task.escalation = f"irreversible action needs approval: {reason}"
                task.add_note(NOTE_KIND_ESCALATION, task.escalation)
            task.touch()

        task = self.store.compare_and_set(task_id, TaskStatus.DOING, _block)
        self._emit_event("task.blocked", task_id, reason=reason, irreversible=irreversible)
        if irreversible:
            self._emit_event("task.escalated", task_id, reason=task.escalation)
        logger.info("Task {} blocked: {}", task_id, reason)
        return task

    def unblock(self, task_id: str, note: Optional[str] = None) -> Task:
        def _unblock(task: Task, tx: GraphTx) -> None:
            if task.escalation:
                raise EscalationRequired(task.escalation, subject_id=task.id)
            check_transition(task, TaskStatus.TODO)
            task.status = TaskStatus.TODO
            task.verification_attempts = 0
            task.add_note(NOTE_KIND_UNBLOCKED, note or "unblocked")
            task.touch()

        task = self.store.compare_and_set(task_id, TaskStatus.BLOCKED, _unblock)
        self._emit_event("task.unblocked", task_id)
        return task

    def skip(self, task_id: str, reason: str) -> Task:
        """Mark a task ``skipped``; dependents left stranded are escalated."""
        stranded: list[str] = []
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            check_transition(task, TaskStatus.SKIPPED, reason)
            task.status = TaskStatus.SKIPPED
            task.release_lease()
            task.add_note(NOTE_KIND_SKIPPED, reason)
            task.touch()
            for other in tx.tasks:
                if other.status == TaskStatus.TODO and task_id in other.depends_on and not other.escalation:
                    other.escalation = f"dependency {task_id} was skipped; task can never become ready"
                    other.add_note(NOTE_KIND_ESCALATION, other.escalation)
                    other.touch()
                    stranded.append(other.id)
            tx.dirty = True
        self._emit_event("task.skipped", task_id, reason=reason)
        for other_id in stranded:
            self._emit_event("task.escalated", other_id, reason=f"dependency {task_id} skipped")
        logger.info("Task {} skipped: {}", task_id, reason)
        return task

    # ------------------------------------------------------------------
    # Escalations
    # ------------------------------------------------------------------

    def escalations(self) -> list[Task]:
        return [t for t in self.store.snapshot() if t.escalation]

    def resolve_escalation(self, task_id: str, resolution: str) -> Task:
        """Record a human resolution; only this clears an escalation."""
        if not resolution.strip():
            raise ValidationError("resolution must be non-empty", subject_id=task_id)
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            if not task.escalation:
                raise ValidationError("task has no open escalation", subject_id=task_id)
            task.add_note(NOTE_KIND_ESCALATION, f"resolved: {resolution}", previous=task.escalation)
            task.escalation = None
            task.verification_attempts = 0
            task.touch()
            tx.dirty = True
        self._emit_event("escalation.resolved", task_id, resolution=resolution)
        return task

    # ------------------------------------------------------------------
    # Auditors
    # ------------------------------------------------------------------

    def invoke_auditor(
        self,
        name: str,
        scope: Union[AuditScope, dict[str, Any]],
        *,
        attach_to: Optional[str] = None,
        spawn_tasks: bool = False,
    ) -> AuditOutcome:
        """Run one analyzer and optionally record its findings on a task.

        Analyzer failures propagate as :class:`AuditorError`.  With
        *spawn_tasks*, critical and high findings become follow-up tasks.
        """
        if isinstance(scope, dict):
            scope = AuditScope.from_dict({"task_id": attach_to, **scope})
        if attach_to is not None:
            self.store.get(attach_to)
        try:
            findings = self.registry.invoke(name, scope)
        except AuditorError as exc:
            self._emit_event("auditor.failed", attach_to or scope.task_id, auditor=name, reason=exc.reason)
            raise

        spawned: list[Task] = []
        if attach_to is not None or spawn_tasks:
            with self.store.transaction() as tx:
                if attach_to is not None:
                    task = tx.require(attach_to)
                    task.add_note(
                        NOTE_KIND_FINDINGS,
                        f"{name} audit: {len(findings)} finding(s)",
                        auditor=name,
                        findings=[f.to_dict() for f in findings],
                    )
                    task.touch()
                    tx.dirty = True
                if spawn_tasks:
                    spawned = tx.put_many(self._tasks_for_findings(name, findings, attach_to))
        self._emit_event(
            "auditor.invoked", attach_to or scope.task_id,
            auditor=name, findings=len(findings), spawned=[t.id for t in spawned],
        )
        return AuditOutcome(findings=findings, attached_to=attach_to, spawned=spawned)

    @staticmethod
    def _tasks_for_findings(name: str, findings: list[Finding], parent_id: Optional[str]) -> list[Task]:
        tasks: list[Task] = []
        for finding in findings:
            priority = _SPAWN_PRIORITY.get(finding.severity)
            if priority is None:
                continue
            tasks.append(Task.from_dict({
                "title": f"[{name}] {finding.category}: {finding.description}"[:120],
                "priority": priority,
                "parent_id": parent_id,
                "deliverable": finding.recommendation or f"Address finding at {finding.location}",
                "verify": {"kind": VERIFY_KIND_MANUAL, "criterion": f"finding at {finding.location} resolved"},
                "metadata": {"finding": finding.to_dict(), "auditor": name},
            }))
        return tasks

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def propose_decision(self, description: str, reasoning: str = "", decision_id: Optional[str] = None) -> Decision:
        decision = Decision(description=description, reasoning=reasoning)
        if decision_id:
            decision.id = decision_id
        with self.store.transaction() as tx:
            if tx.get_decision(decision.id) is not None:
                raise ValidationError("decision id already exists", subject_id=decision.id)
            stored = tx.put_decision(decision)
        self._emit_event("decision.proposed", stored.id)
        return stored

    def _change_decision(
        self,
        decision_id: str,
        event: str,
        *,
        status: Optional[DecisionStatus] = None,
        description: Optional[str] = None,
        reasoning: Optional[str] = None,
    ) -> Decision:
        with self.store.transaction() as tx:
            existing = tx.get_decision(decision_id)
            if existing is None:
                raise DecisionNotFound("decision does not exist", subject_id=decision_id)
            changed = Decision.from_dict(existing.to_dict())
            if status is not None:
                changed.status = status
            if description is not None:
                changed.description = description
            if reasoning is not None:
                changed.reasoning = reasoning
            stored = tx.put_decision(changed)
        self._emit_event(event, decision_id, status=stored.status.value)
        return stored

    def edit_decision(
        self, decision_id: str, *, description: Optional[str] = None, reasoning: Optional[str] = None
    ) -> Decision:
        return self._change_decision(decision_id, "decision.edited", description=description, reasoning=reasoning)

    def accept_decision(self, decision_id: str, reasoning: Optional[str] = None) -> Decision:
        return self._change_decision(decision_id, "decision.accepted", status=DecisionStatus.ACCEPTED, reasoning=reasoning)

    def reject_decision(self, decision_id: str, reasoning: Optional[str] = None) -> Decision:
        return self._change_decision(decision_id, "decision.rejected", status=DecisionStatus.REJECTED, reasoning=reasoning)

    # ------------------------------------------------------------------
    # Recovery, archival, status
    # ------------------------------------------------------------------

    def resume(self, expected_last_completed: Optional[str] = None, *, strict: bool = False) -> Snapshot:
        """Rebuild working state from disk after a restart or context loss."""
        snapshot = load_snapshot(self.store, self.ledger, expected_last_completed, strict=strict)
        with self._repair_lock:
            self._ledger_repaired = True
        if snapshot.discontinuity is not None:
            self._emit_event("recovery.discontinuity", snapshot.discontinuity.subject_id,
                             reason=snapshot.discontinuity.reason)
        self._emit_event(
            "recovery.resumed", snapshot.last_task_completed,
            next_task=snapshot.next_task, reconciled=[c.seq for c in snapshot.reconciled],
        )
        return snapshot

    def archive(self) -> Path:
        """Copy the graph, ledger and event log into a timestamped archive folder."""
        dest = self.state_dir / ARCHIVE_DIR / _timestamp_slug()
        self.store.archive(dest)
        self.ledger.archive(dest)
        if self._events_path.exists():
            dest.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self._events_path, dest / self._events_path.name)
        self._emit_event("state.archived", None, path=str(dest))
        logger.info("Archived state to {}", dest)
        return dest

    def status(self) -> dict[str, Any]:
        tasks = self.store.snapshot()
        counts = {s.value: 0 for s in TaskStatus}
        for task in tasks:
            counts[task.status.value] += 1
        nxt = pick_next(tasks)
        checkpoint = self.ledger.latest()
        return {
            "counts": counts,
            "total": len(tasks),
            "next_task": nxt.id if nxt else None,
            "in_flight": [t.id for t in tasks if t.status == TaskStatus.DOING],
            "escalations": [t.id for t in tasks if t.escalation],
            "stranded": [t.id for t in self.scheduler.stranded()],
            "checkpoint": checkpoint.to_dict() if checkpoint else None,
        }
