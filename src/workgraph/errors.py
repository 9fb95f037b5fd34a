"""Exception taxonomy for the workgraph engine.

Every error carries the id of the task or decision it concerns (``subject_id``)
and a human-readable ``reason``.  Graph-integrity and state-machine errors
derive from :class:`ValueError` so callers that only know about bad input can
still catch them.
"""

from __future__ import annotations

from typing import Any, Optional


class WorkgraphError(Exception):
    """Base class for all engine errors."""

    code = "workgraph_error"

    def __init__(self, reason: str, subject_id: Optional[str] = None, **details: Any) -> None:
        self.reason = reason
        self.subject_id = subject_id
        self.details = details
        prefix = f"{subject_id}: " if subject_id else ""
        super().__init__(f"{prefix}{reason}")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.code,
            "subject_id": self.subject_id,
            "reason": self.reason,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(WorkgraphError, ValueError):
    """Malformed task or decision; the caller can correct the input and retry."""

    code = "validation_error"


class NotFound(WorkgraphError, LookupError):
    code = "not_found"


class TaskNotFound(NotFound):
    code = "task_not_found"


class DecisionNotFound(NotFound):
    code = "decision_not_found"


class CycleDetected(ValidationError):
    """Adding the requested ``depends_on`` edges would close a cycle."""

    code = "cycle_detected"


class UnknownDependency(ValidationError):
    code = "unknown_dependency"


class ScopeTooLarge(ValidationError):
    """Task effort exceeds the decomposition threshold; submit sub-tasks instead."""

    code = "scope_too_large"


class InvalidTransition(WorkgraphError, ValueError):
    code = "invalid_transition"


class LeaseConflict(InvalidTransition):
    """Another writer changed the task's status first (compare-and-swap lost)."""

    code = "lease_conflict"


class VerificationFailure(WorkgraphError):
    """A verification attempt failed; the task stays in ``doing``."""

    code = "verification_failure"


class VerificationCancelled(WorkgraphError):
    code = "verification_cancelled"


class AuditorError(WorkgraphError):
    """An analyzer could not produce findings (timeout, bad scope, bad output)."""

    code = "auditor_error"


class RecoveryDiscontinuity(WorkgraphError):
    """The caller's view of the last completion disagrees with the ledger."""

    code = "recovery_discontinuity"


class EscalationRequired(WorkgraphError):
    code = "escalation_required"
