"""Dependency graph, state machine and scheduler for the orchestration engine."""

from .model import Checkpoint, Decision, DecisionStatus, EffortEstimate, Task, TaskPriority, TaskStatus, VerifySpec
from .scheduler import Scheduler
from .store import GraphStore

__all__ = [
    "Checkpoint",
    "Decision",
    "DecisionStatus",
    "EffortEstimate",
    "GraphStore",
    "Scheduler",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "VerifySpec",
]
