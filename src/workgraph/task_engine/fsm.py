"""Task lifecycle state machine.

``todo -> doing -> done`` is the happy path; ``doing -> doing`` is a failed
verification; ``blocked`` and ``skipped`` are explicit detours.  The table is
the single source of truth for which moves are legal.
"""

from __future__ import annotations

from typing import Optional

from ..errors import InvalidTransition
from .model import Task, TaskStatus

VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.TODO: frozenset({TaskStatus.DOING, TaskStatus.SKIPPED}),
    TaskStatus.DOING: frozenset({TaskStatus.DONE, TaskStatus.DOING, TaskStatus.BLOCKED, TaskStatus.SKIPPED}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.TODO}),
    TaskStatus.DONE: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
}

# Transitions that must carry a recorded reason.
REASON_REQUIRED: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset({
    (TaskStatus.DOING, TaskStatus.BLOCKED),
    (TaskStatus.TODO, TaskStatus.SKIPPED),
    (TaskStatus.DOING, TaskStatus.SKIPPED),
})

# States in which a worker holds the task's lease.
LEASED_STATES = frozenset({TaskStatus.DOING})


def allowed_targets(status: TaskStatus) -> list[str]:
    return sorted(s.value for s in VALID_TRANSITIONS.get(status, frozenset()))


def check_transition(task: Task, target: TaskStatus, reason: Optional[str] = None) -> None:
    """Raise :class:`InvalidTransition` unless ``task.status -> target`` is legal."""
    valid = VALID_TRANSITIONS.get(task.status, frozenset())
    if target not in valid:
        raise InvalidTransition(
            f"cannot transition from {task.status.value} to {target.value}; "
            f"valid targets: {allowed_targets(task.status)}",
            subject_id=task.id,
            current=task.status.value,
            target=target.value,
        )
    if (task.status, target) in REASON_REQUIRED and not (reason or "").strip():
        raise InvalidTransition(
            f"transition from {task.status.value} to {target.value} requires a reason",
            subject_id=task.id,
            current=task.status.value,
            target=target.value,
        )


def describe() -> dict[str, object]:
    """Machine-readable description of the state machine for API clients."""
    return {
        "states": [s.value for s in TaskStatus],
        "initial": TaskStatus.TODO.value,
        "terminal": [s.value for s in TaskStatus if s.is_terminal],
        "transitions": {s.value: allowed_targets(s) for s in TaskStatus},
        "reason_required": sorted(f"{a.value}->{b.value}" for a, b in REASON_REQUIRED),
        "guards": {
            "todo->doing": "every depends_on task is done",
            "doing->done": "verification gate reported pass",
        },
    }
