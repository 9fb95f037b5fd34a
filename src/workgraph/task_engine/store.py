"""File-based graph store with thread-safe locking.

Stores tasks and decisions in a single YAML document (``graph.yaml``) inside
the project's ``.workgraph/`` directory.  All reads and writes go through
:meth:`GraphStore.transaction`, which holds an exclusive file lock, loads the
document, and writes it back (temp file then rename) only when the block exits
cleanly.  A rejected mutation therefore leaves the file untouched.
"""

from __future__ import annotations

import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from loguru import logger

from ..constants import GRAPH_FILE, GRAPH_FORMAT_VERSION, GRAPH_LOCK_FILE
from ..errors import (
    CycleDetected,
    DecisionNotFound,
    InvalidTransition,
    LeaseConflict,
    ScopeTooLarge,
    TaskNotFound,
    UnknownDependency,
    ValidationError,
    WorkgraphError,
)
from ..io_utils import FileLock, _load_data_with_error, _save_data
from ..utils import _now_iso
from .model import Decision, DecisionStatus, EffortEstimate, Task, TaskStatus

# Fields a caller may change through ``put`` on an existing task.  Status,
# lease and completion bookkeeping only move through the orchestrator.
EDITABLE_FIELDS = ("title", "priority", "effort", "depends_on", "parent_id", "deliverable", "verify", "metadata")


# ---------------------------------------------------------------------------
# GraphStore
# ---------------------------------------------------------------------------

class GraphStore:
    """Thread-safe, file-backed store for :class:`Task` and :class:`Decision` records.

    Parameters
    ----------
    state_dir:
        Path to the ``.workgraph/`` directory for the project.
    max_effort:
        Largest :class:`EffortEstimate` accepted by ``put``; bigger tasks are
        rejected with :class:`ScopeTooLarge` and must be decomposed.
    """

    def __init__(self, state_dir: Path, max_effort: str = "L") -> None:
        self._state_dir = state_dir
        self._store_path = state_dir / GRAPH_FILE
        self._lock_path = state_dir / GRAPH_LOCK_FILE
        self._thread_lock = threading.Lock()
        self.max_effort = EffortEstimate(max_effort)

    @property
    def path(self) -> Path:
        return self._store_path

    # -- internal helpers ---------------------------------------------------

    def _load(self) -> tuple[list[Task], list[Decision]]:
        data, err = _load_data_with_error(self._store_path, {})
        if err:
            # Refuse to continue rather than overwrite a damaged graph.
            raise WorkgraphError(f"graph store unreadable: {err}")
        raw_tasks = data.get("tasks") or []
        raw_decisions = data.get("decisions") or []
        tasks = [Task.from_dict(d) for d in raw_tasks if isinstance(d, dict)]
        decisions = [Decision.from_dict(d) for d in raw_decisions if isinstance(d, dict)]
        return tasks, decisions

    def _save(self, tx: "GraphTx") -> None:
        payload = {
            "version": GRAPH_FORMAT_VERSION,
            "tasks": [t.to_dict() for t in tx.tasks],
            "decisions": [d.to_dict() for d in tx.decisions],
        }
        _save_data(self._store_path, payload)

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["GraphTx"]:
        """Acquire the lock, load the graph, yield a transaction, and save on exit.

        Usage::

            with store.transaction() as tx:
                task = tx.require("task-abc123")
                task.priority = TaskPriority.P0
                tx.dirty = True
        """
        with self._thread_lock, FileLock(self._lock_path):
            tasks, decisions = self._load()
            tx = GraphTx(tasks, decisions, max_effort=self.max_effort, flush=self._save)
            yield tx
            if tx.dirty:
                self._save(tx)

    def snapshot(self) -> list[Task]:
        """Return a read-only snapshot of every task (no lock held after return)."""
        with self._thread_lock, FileLock(self._lock_path):
            tasks, _ = self._load()
        return tasks

    def decisions_snapshot(self) -> list[Decision]:
        with self._thread_lock, FileLock(self._lock_path):
            _, decisions = self._load()
        return decisions

    def get(self, task_id: str) -> Task:
        for task in self.snapshot():
            if task.id == task_id:
                return task
        raise TaskNotFound("task does not exist", subject_id=task_id)

    def list(
        self,
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        parent_id: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Task]:
        with self.transaction() as tx:
            return tx.find(status=status, priority=priority, parent_id=parent_id, search=search)

    def put(self, task: Task) -> Task:
        with self.transaction() as tx:
            stored = tx.put(task)
        logger.debug("Stored task {} ({})", stored.id, stored.status.value)
        return stored

    def put_many(self, tasks: list[Task]) -> list[Task]:
        """Store several tasks atomically; any rejection stores none of them."""
        with self.transaction() as tx:
            return tx.put_many(tasks)

    def get_decision(self, decision_id: str) -> Decision:
        for decision in self.decisions_snapshot():
            if decision.id == decision_id:
                return decision
        raise DecisionNotFound("decision does not exist", subject_id=decision_id)

    def list_decisions(self, status: Optional[str] = None) -> list[Decision]:
        decisions = self.decisions_snapshot()
        if status:
            decisions = [d for d in decisions if d.status.value == status]
        return decisions

    def put_decision(self, decision: Decision) -> Decision:
        with self.transaction() as tx:
            return tx.put_decision(decision)

    def all_dependencies_satisfied(self, task_id: str) -> bool:
        with self.transaction() as tx:
            return tx.all_dependencies_satisfied(task_id)

    def compare_and_set(
        self,
        task_id: str,
        expected: TaskStatus,
        mutate: Callable[[Task, "GraphTx"], None],
    ) -> Task:
        """Apply *mutate* only if the task is still in *expected* status.

        This is the per-task compare-and-swap that keeps two workers from both
        moving the same task.  Raises :class:`LeaseConflict` when the stored
        status differs.
        """
        with self.transaction() as tx:
            task = tx.require(task_id)
            if task.status != expected:
                raise LeaseConflict(
                    f"expected status {expected.value} but found {task.status.value}",
                    subject_id=task_id,
                    expected=expected.value,
                    actual=task.status.value,
                )
            mutate(task, tx)
            tx.dirty = True
            return task

    def archive(self, dest_dir: Path) -> Optional[Path]:
        """Copy the graph document into *dest_dir*; the live file is untouched."""
        with self._thread_lock, FileLock(self._lock_path):
            if not self._store_path.exists():
                return None
            dest_dir.mkdir(parents=True, exist_ok=True)
            target = dest_dir / self._store_path.name
            shutil.copy2(self._store_path, target)
        return target


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------

class GraphTx:
    """In-memory transaction over the task and decision lists.

    Mutations are flushed back to disk when the ``transaction`` context
    manager exits without an exception.
    """

    def __init__(
        self,
        tasks: list[Task],
        decisions: list[Decision],
        *,
        max_effort: EffortEstimate = EffortEstimate.L,
        flush: Optional[Callable[["GraphTx"], None]] = None,
    ) -> None:
        self.tasks = tasks
        self.decisions = decisions
        self.max_effort = max_effort
        self.dirty = False
        self._flush = flush
        self._index: dict[str, int] = {t.id: i for i, t in enumerate(tasks)}
        self._decision_index: dict[str, int] = {d.id: i for i, d in enumerate(decisions)}

    def flush(self) -> None:
        """Write pending changes now, while the transaction still holds the lock."""
        if self.dirty and self._flush is not None:
            self._flush(self)
            self.dirty = False

    def next_completion_seq(self) -> int:
        """Sequence number for the next ``done`` transition (1-based, never reused)."""
        return max((t.completion_seq or 0 for t in self.tasks), default=0) + 1

    # -- lookups ------------------------------------------------------------

    def get(self, task_id: str) -> Optional[Task]:
        idx = self._index.get(task_id)
        return self.tasks[idx] if idx is not None else None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFound("task does not exist", subject_id=task_id)
        return task

    def list_all(self) -> list[Task]:
        return list(self.tasks)

    def find(
        self,
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        parent_id: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Task]:
        out: list[Task] = []
        for t in self.tasks:
            if status and t.status.value != status:
                continue
            if priority and t.priority.value != priority:
                continue
            if parent_id is not None and t.parent_id != parent_id:
                continue
            if search:
                q = search.lower()
                if q not in t.title.lower() and q not in t.deliverable.lower() and q not in t.id.lower():
                    continue
            out.append(t)
        return out

    def all_dependencies_satisfied(self, task_id: str) -> bool:
        task = self.require(task_id)
        for dep_id in task.depends_on:
            dep = self.get(dep_id)
            if dep is None or dep.status != TaskStatus.DONE:
                return False
        return True

    def unsatisfied_dependencies(self, task: Task) -> list[str]:
        unresolved: list[str] = []
        for dep_id in task.depends_on:
            dep = self.get(dep_id)
            if dep is None or dep.status != TaskStatus.DONE:
                unresolved.append(dep_id)
        return unresolved

    # -- task mutations -----------------------------------------------------

    def put(self, task: Task) -> Task:
        existing = self.get(task.id)
        if existing is None:
            stored = self._insert(task)
        else:
            stored = self._update(existing, task)
        self._check_dependencies(stored)
        self.dirty = True
        return stored

    def put_many(self, tasks: Iterable[Task]) -> list[Task]:
        """Insert or update a batch, validating the graph once all edges exist."""
        staged: list[Task] = []
        for task in tasks:
            existing = self.get(task.id)
            staged.append(self._insert(task) if existing is None else self._update(existing, task))
        for stored in staged:
            self._check_dependencies(stored)
        self.dirty = True
        return staged

    def _validate_fields(self, task: Task) -> None:
        errors = Task.validate_dict(task.to_dict())
        if errors:
            raise ValidationError("; ".join(errors), subject_id=task.id, errors=errors)
        if task.effort is not None and task.effort.rank > self.max_effort.rank:
            raise ScopeTooLarge(
                f"effort {task.effort.value} exceeds the {self.max_effort.value} threshold; "
                "submit decomposed sub-tasks instead",
                subject_id=task.id,
                effort=task.effort.value,
                max_effort=self.max_effort.value,
            )

    def _insert(self, task: Task) -> Task:
        self._validate_fields(task)
        if task.status != TaskStatus.TODO:
            raise ValidationError(
                f"new tasks start in todo, got {task.status.value}",
                subject_id=task.id,
            )
        task.depends_on = _dedupe(task.depends_on)
        task.release_lease()
        self._index[task.id] = len(self.tasks)
        self.tasks.append(task)
        return task

    def _update(self, existing: Task, incoming: Task) -> Task:
        self._validate_fields(incoming)
        if incoming.status != existing.status:
            raise InvalidTransition(
                f"status cannot change through put ({existing.status.value} -> {incoming.status.value})",
                subject_id=existing.id,
            )
        stored_notes = existing.notes
        if incoming.notes[: len(stored_notes)] != stored_notes:
            raise ValidationError("notes are append-only", subject_id=existing.id)

        incoming_deps = _dedupe(incoming.depends_on)
        if incoming_deps != existing.depends_on and existing.status not in (TaskStatus.TODO, TaskStatus.BLOCKED):
            raise ValidationError(
                f"depends_on cannot change while the task is {existing.status.value}",
                subject_id=existing.id,
            )
        if existing.is_terminal:
            changed = [f for f in EDITABLE_FIELDS if f not in ("metadata",) and getattr(incoming, f) != getattr(existing, f)]
            if changed:
                raise ValidationError(
                    f"task is {existing.status.value}; fields are frozen: {changed}",
                    subject_id=existing.id,
                )

        for name in EDITABLE_FIELDS:
            setattr(existing, name, getattr(incoming, name))
        existing.depends_on = incoming_deps
        existing.notes = list(incoming.notes)
        existing.touch()
        return existing

    def _check_dependencies(self, task: Task) -> None:
        if task.id in task.depends_on:
            raise CycleDetected("a task cannot depend on itself", subject_id=task.id, cycle=[task.id, task.id])
        missing = [dep for dep in task.depends_on if dep not in self._index]
        if missing:
            raise UnknownDependency(f"unknown dependencies: {missing}", subject_id=task.id, missing=missing)
        cycle = self._find_cycle_through(task.id)
        if cycle:
            raise CycleDetected(
                "depends_on would create a cycle: " + " -> ".join(cycle),
                subject_id=task.id,
                cycle=cycle,
            )

    def _find_cycle_through(self, task_id: str) -> Optional[list[str]]:
        """Depth-first walk from *task_id*'s dependencies back to itself.

        Returns the cycle as a list of ids (first == last) or None.
        """
        task = self.require(task_id)
        stack: list[tuple[str, list[str]]] = [(dep, [task_id, dep]) for dep in reversed(task.depends_on)]
        visited: set[str] = set()
        while stack:
            current, path = stack.pop()
            if current == task_id:
                return path
            if current in visited:
                continue
            visited.add(current)
            node = self.get(current)
            if node is None:
                continue
            for dep in reversed(node.depends_on):
                stack.append((dep, path + [dep]))
        return None

    # -- decision mutations -------------------------------------------------

    def get_decision(self, decision_id: str) -> Optional[Decision]:
        idx = self._decision_index.get(decision_id)
        return self.decisions[idx] if idx is not None else None

    def put_decision(self, decision: Decision) -> Decision:
        if not decision.description.strip():
            raise ValidationError("'description' is required and must be non-empty", subject_id=decision.id)
        existing = self.get_decision(decision.id)
        if existing is None:
            if decision.status != DecisionStatus.PROPOSED:
                raise ValidationError(
                    f"new decisions start as proposed, got {decision.status.value}",
                    subject_id=decision.id,
                )
            self._decision_index[decision.id] = len(self.decisions)
            self.decisions.append(decision)
            self.dirty = True
            return decision

        if existing.status.is_final:
            raise ValidationError(
                f"decision is {existing.status.value} and immutable",
                subject_id=decision.id,
            )
        existing.description = decision.description
        existing.reasoning = decision.reasoning
        existing.status = decision.status
        existing.updated_at = _now_iso()
        self.dirty = True
        return existing


def _dedupe(ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in ids:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
