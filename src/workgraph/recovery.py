"""Snapshot loading and crash recovery.

A :class:`Snapshot` is always rebuilt from durable state (graph document plus
checkpoint ledger); nothing from a previous session's memory is trusted.

The one crash window the design leaves open is between committing a ``done``
transition to the graph and appending its checkpoint.  Every ``done`` task
carries the ``completion_seq`` it reserved, so :func:`reconcile_tx` can append
the missing checkpoints, in sequence order, before anything else reads the
ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from .errors import RecoveryDiscontinuity
from .ledger import CheckpointLedger
from .task_engine.model import Checkpoint, Decision, Task, TaskStatus
from .task_engine.scheduler import pick_next
from .task_engine.store import GraphStore, GraphTx


@dataclass
class Snapshot:
    """Everything needed to continue work, loaded fresh from disk."""

    tasks: list[Task]
    decisions: list[Decision]
    checkpoint: Optional[Checkpoint]
    next_task: Optional[str]
    reconciled: list[Checkpoint] = field(default_factory=list)
    discontinuity: Optional[RecoveryDiscontinuity] = None

    @property
    def last_task_completed(self) -> Optional[str]:
        return self.checkpoint.last_task_completed if self.checkpoint else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [t.to_dict() for t in self.tasks],
            "decisions": [d.to_dict() for d in self.decisions],
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "next_task": self.next_task,
            "reconciled": [c.to_dict() for c in self.reconciled],
            "discontinuity": self.discontinuity.to_dict() if self.discontinuity else None,
        }


def reconcile_tx(tx: GraphTx, ledger: CheckpointLedger) -> list[Checkpoint]:
    """Append checkpoints for completions the ledger has not seen yet.

    Must run inside a graph transaction so no new completion can interleave.
    """
    head = ledger.latest()
    head_seq = head.seq if head else 0
    pending = sorted(
        (
            t for t in tx.tasks
            if t.status == TaskStatus.DONE and t.completion_seq is not None and t.completion_seq > head_seq
        ),
        key=lambda t: t.completion_seq or 0,
    )
    if not pending:
        return []

    logger.warning(
        "Ledger head at seq {} but graph has {} later completion(s); appending missing checkpoints",
        head_seq, len(pending),
    )
    nxt = pick_next(tx.tasks)
    written: list[Checkpoint] = []
    for task in pending:
        written.append(ledger.append(Checkpoint(
            last_task_completed=task.id,
            next_task=nxt.id if nxt else None,
            timestamp=task.completed_at or task.updated_at,
            seq=task.completion_seq or 0,
        )))
    return written


def reconcile(store: GraphStore, ledger: CheckpointLedger) -> list[Checkpoint]:
    ledger.repair()
    with store.transaction() as tx:
        return reconcile_tx(tx, ledger)


def _find_discontinuity(
    tasks: list[Task],
    checkpoint: Optional[Checkpoint],
    expected_last_completed: Optional[str],
) -> Optional[RecoveryDiscontinuity]:
    ledger_last = checkpoint.last_task_completed if checkpoint else None
    # "" is an explicit belief that nothing has completed yet.
    if expected_last_completed is not None and (expected_last_completed or None) != ledger_last:
        return RecoveryDiscontinuity(
            f"expected last completed task {expected_last_completed or None} but ledger records {ledger_last}",
            subject_id=expected_last_completed or None,
            expected=expected_last_completed,
            ledger=ledger_last,
        )
    if ledger_last is not None:
        by_id = {t.id: t for t in tasks}
        recorded = by_id.get(ledger_last)
        if recorded is None or recorded.status != TaskStatus.DONE:
            # Graph restored from an older copy than the ledger.
            return RecoveryDiscontinuity(
                f"ledger records {ledger_last} as completed but the graph disagrees",
                subject_id=ledger_last,
                expected=expected_last_completed,
                ledger=ledger_last,
                graph_status=recorded.status.value if recorded else None,
            )
    return None


def load_snapshot(
    store: GraphStore,
    ledger: CheckpointLedger,
    expected_last_completed: Optional[str] = None,
    *,
    strict: bool = False,
) -> Snapshot:
    """Reconcile, then rebuild the working view purely from durable state.

    *expected_last_completed* is the caller's belief about the most recent
    completion.  ``None`` means the caller has no expectation and only the
    graph/ledger agreement is checked; an empty string means the caller
    believes nothing has completed yet, so any checkpoint on disk is a
    mismatch.  A mismatch with the ledger is recorded on the snapshot as a
    :class:`RecoveryDiscontinuity` (raised instead when *strict*).  The
    returned snapshot is built from disk either way, so replaying recovery
    against the same state always recommends the same next task.
    """
    reconciled = reconcile(store, ledger)
    tasks = store.snapshot()
    decisions = store.decisions_snapshot()
    checkpoint = ledger.latest()
    nxt = pick_next(tasks)

    discontinuity = _find_discontinuity(tasks, checkpoint, expected_last_completed)
    if discontinuity is not None:
        logger.warning("Recovery discontinuity: {}", discontinuity.reason)
        if strict:
            raise discontinuity

    snapshot = Snapshot(
        tasks=tasks,
        decisions=decisions,
        checkpoint=checkpoint,
        next_task=nxt.id if nxt else None,
        reconciled=reconciled,
        discontinuity=discontinuity,
    )
    logger.info(
        "Loaded snapshot: {} task(s), last completed={}, next={}",
        len(tasks), snapshot.last_task_completed, snapshot.next_task,
    )
    return snapshot
