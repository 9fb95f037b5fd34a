"""Task, decision and checkpoint records for the orchestration engine.

Every record is a plain dataclass that round-trips through ``to_dict`` /
``from_dict`` so the store can persist it as YAML and the ledger as JSON.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from ..constants import VERIFY_KIND_CHECK, VERIFY_KIND_COMMAND, VERIFY_KIND_MANUAL, VERIFY_KINDS
from ..utils import _coerce_int, _coerce_string_list, _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Lifecycle state of a task."""

    TODO = "todo"
    DOING = "doing"
    DONE = "done"
    BLOCKED = "blocked"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.SKIPPED)


class TaskPriority(str, Enum):
    """Priority level; P0 is most urgent."""

    P0 = "P0"  # Critical / drop everything
    P1 = "P1"  # High
    P2 = "P2"  # Medium (default)
    P3 = "P3"  # Low / nice-to-have

    @property
    def sort_key(self) -> int:
        return {"P0": 0, "P1": 1, "P2": 2, "P3": 3}[self.value]


class EffortEstimate(str, Enum):
    """T-shirt size scope estimate, checked against the decomposition threshold."""

    XS = "XS"
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"

    @property
    def rank(self) -> int:
        return {"XS": 0, "S": 1, "M": 2, "L": 3, "XL": 4}[self.value]


class DecisionStatus(str, Enum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

    @property
    def is_final(self) -> bool:
        return self != DecisionStatus.PROPOSED


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _generate_id(prefix: str = "task") -> str:
    """Short human-friendly ID: ``<prefix>-<8hex>``."""
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _enum_value(enum_cls: type[Enum], raw: Any, default: Enum) -> Enum:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except (ValueError, KeyError):
        return default


def _serialize(obj: Any) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for k, v in asdict(obj).items():
        data[k] = v.value if isinstance(v, Enum) else v
    return data


# ---------------------------------------------------------------------------
# Verification predicate
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VerifySpec:
    """How a task proves it is complete.

    ``command`` expects an exit status, ``check`` expects a test report and
    ``manual`` expects a human attestation of ``criterion``.
    """

    kind: str = VERIFY_KIND_MANUAL
    command: Optional[str] = None
    expect_exit_code: int = 0
    criterion: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_value(cls, raw: Any) -> Optional["VerifySpec"]:
        """Coerce a stored or submitted value; a bare string is a manual criterion."""
        if raw is None or raw == "" or raw == {}:
            return None
        if isinstance(raw, VerifySpec):
            return raw
        if isinstance(raw, str):
            return cls(kind=VERIFY_KIND_MANUAL, criterion=raw.strip())
        if isinstance(raw, dict):
            return cls(
                kind=str(raw.get("kind") or VERIFY_KIND_MANUAL),
                command=raw.get("command"),
                expect_exit_code=_coerce_int(raw.get("expect_exit_code"), 0),
                criterion=str(raw.get("criterion") or ""),
            )
        return None

    def problems(self) -> list[str]:
        errors: list[str] = []
        if self.kind not in VERIFY_KINDS:
            errors.append(f"'verify.kind' must be one of {list(VERIFY_KINDS)}, got '{self.kind}'")
        if self.kind == VERIFY_KIND_COMMAND and not (self.command or "").strip():
            errors.append("'verify.command' is required for command verification")
        if self.kind in (VERIFY_KIND_MANUAL, VERIFY_KIND_CHECK) and not self.criterion.strip() and not self.command:
            errors.append(f"'verify.criterion' is required for {self.kind} verification")
        return errors


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """An atomic unit of trackable work with dependencies and a verification gate."""

    # Identity
    id: str = field(default_factory=_generate_id)
    title: str = ""

    # Classification
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.P2
    effort: Optional[EffortEstimate] = None

    # Dependencies and hierarchy
    depends_on: list[str] = field(default_factory=list)
    parent_id: Optional[str] = None

    # Work definition
    deliverable: str = ""
    verify: Optional[VerifySpec] = None
    notes: list[dict[str, Any]] = field(default_factory=list)

    # Execution tracking
    lease_owner: Optional[str] = None
    lease_acquired_at: Optional[str] = None
    verification_attempts: int = 0
    escalation: Optional[str] = None

    # Timestamps
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None
    completion_seq: Optional[int] = None

    metadata: dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @classmethod
    def validate_dict(cls, data: dict[str, Any]) -> list[str]:
        """Check a submitted task dict; returns a list of error strings (empty = valid)."""
        errors: list[str] = []
        if not isinstance(data, dict):
            return ["Expected a dict"]
        if not str(data.get("title") or "").strip():
            errors.append("'title' is required and must be non-empty")
        if "id" in data and not str(data.get("id") or "").strip():
            errors.append("'id' must be non-empty when given")
        priority = data.get("priority")
        if priority is not None:
            valid_prios = {e.value for e in TaskPriority}
            if str(getattr(priority, "value", priority)) not in valid_prios:
                errors.append(f"'priority' must be one of {sorted(valid_prios)}, got '{priority}'")
        status = data.get("status")
        if status is not None:
            valid_statuses = {e.value for e in TaskStatus}
            if str(getattr(status, "value", status)) not in valid_statuses:
                errors.append(f"'status' must be one of {sorted(valid_statuses)}, got '{status}'")
        effort = data.get("effort")
        if effort is not None:
            valid_efforts = [e.value for e in EffortEstimate]
            if str(getattr(effort, "value", effort)) not in valid_efforts:
                errors.append(f"'effort' must be one of {valid_efforts}, got '{effort}'")
        deps = data.get("depends_on")
        if deps is not None and not isinstance(deps, (list, tuple, set)):
            errors.append("'depends_on' must be an array")
        notes = data.get("notes")
        if notes is not None and not isinstance(notes, list):
            errors.append("'notes' must be an array")
        verify = data.get("verify")
        if verify is not None and not isinstance(verify, (str, dict, VerifySpec)):
            errors.append("'verify' must be a string or an object")
        spec = VerifySpec.from_value(verify)
        if spec is not None:
            errors.extend(spec.problems())
        return errors

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML/JSON persistence."""
        data = _serialize(self)
        data["verify"] = self.verify.to_dict() if self.verify else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict, coercing enums gracefully."""
        d = dict(data)
        effort_raw = d.pop("effort", None)
        effort = _enum_value(EffortEstimate, effort_raw, None) if effort_raw is not None else None  # type: ignore[arg-type]
        return cls(
            id=str(d.pop("id", None) or _generate_id()),
            title=str(d.pop("title", "") or ""),
            status=_enum_value(TaskStatus, d.pop("status", None), TaskStatus.TODO),  # type: ignore[arg-type]
            priority=_enum_value(TaskPriority, d.pop("priority", None), TaskPriority.P2),  # type: ignore[arg-type]
            effort=effort,  # type: ignore[arg-type]
            depends_on=_coerce_string_list(d.pop("depends_on", []) or []),
            parent_id=d.pop("parent_id", None),
            deliverable=str(d.pop("deliverable", "") or ""),
            verify=VerifySpec.from_value(d.pop("verify", None)),
            notes=[dict(n) for n in (d.pop("notes", []) or []) if isinstance(n, dict)],
            lease_owner=d.pop("lease_owner", None),
            lease_acquired_at=d.pop("lease_acquired_at", None),
            verification_attempts=_coerce_int(d.pop("verification_attempts", 0), 0),
            escalation=d.pop("escalation", None),
            created_at=str(d.pop("created_at", None) or _now_iso()),
            updated_at=str(d.pop("updated_at", None) or _now_iso()),
            completed_at=d.pop("completed_at", None),
            completion_seq=d.pop("completion_seq", None),
            metadata=dict(d.pop("metadata", {}) or {}),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Bump ``updated_at`` to now."""
        self.updated_at = _now_iso()

    def add_note(self, kind: str, text: str, **extra: Any) -> dict[str, Any]:
        entry: dict[str, Any] = {"ts": _now_iso(), "kind": kind, "text": text}
        if extra:
            entry.update(extra)
        self.notes.append(entry)
        return entry

    def release_lease(self) -> None:
        self.lease_owner = None
        self.lease_acquired_at = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

@dataclass
class Decision:
    """A recorded architectural or scope choice."""

    id: str = field(default_factory=lambda: _generate_id("dec"))
    description: str = ""
    status: DecisionStatus = DecisionStatus.PROPOSED
    reasoning: str = ""
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return _serialize(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Decision":
        d = dict(data)
        return cls(
            id=str(d.pop("id", None) or _generate_id("dec")),
            description=str(d.pop("description", "") or ""),
            status=_enum_value(DecisionStatus, d.pop("status", None), DecisionStatus.PROPOSED),  # type: ignore[arg-type]
            reasoning=str(d.pop("reasoning", "") or ""),
            created_at=str(d.pop("created_at", None) or _now_iso()),
            updated_at=str(d.pop("updated_at", None) or _now_iso()),
        )


# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Checkpoint:
    """Immutable recovery marker: what just completed and what comes next."""

    last_task_completed: Optional[str]
    next_task: Optional[str]
    timestamp: str = field(default_factory=_now_iso)
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        return cls(
            last_task_completed=data.get("last_task_completed"),
            next_task=data.get("next_task"),
            timestamp=str(data.get("timestamp") or _now_iso()),
            seq=_coerce_int(data.get("seq"), 0),
        )
