"""Contract shared by all external analyzers."""

from __future__ import annotations

import abc
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from ..constants import FINDING_SEVERITIES
from ..errors import ValidationError

# Scope entries that would hand an analyzer the whole system.
_UNBOUNDED_PATHS = {"", "/", ".", "./", "*", "**", "**/*"}


class AuditorCapability(str, Enum):
    """The fixed set of analyzer kinds the orchestrator knows how to invoke."""

    SECURITY = "security"
    DATABASE = "database"
    FRONTEND = "frontend"
    PERFORMANCE = "performance"
    DEPENDENCY = "dependency"
    DOCUMENTATION = "documentation"


@dataclass(frozen=True)
class AuditScope:
    """What an analyzer may look at.  ``paths`` must name something narrower than everything."""

    paths: tuple[str, ...]
    task_id: Optional[str] = None
    max_files: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditScope":
        raw_paths = data.get("paths") or []
        if isinstance(raw_paths, str):
            raw_paths = [raw_paths]
        max_files = data.get("max_files")
        if max_files is not None:
            try:
                max_files = int(max_files)
            except (TypeError, ValueError):
                raise ValidationError(
                    f"max_files must be an integer, got {max_files!r}",
                    subject_id=data.get("task_id"),
                ) from None
        return cls(
            paths=tuple(str(p).strip() for p in raw_paths),
            task_id=data.get("task_id"),
            max_files=max_files,
        )

    def problems(self) -> list[str]:
        errors: list[str] = []
        if not self.paths:
            errors.append("scope must list at least one path")
        unbounded = [p for p in self.paths if p in _UNBOUNDED_PATHS]
        if unbounded:
            errors.append(f"scope paths are unbounded: {unbounded}")
        if self.max_files is not None and self.max_files < 1:
            errors.append("max_files must be positive")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {"paths": list(self.paths), "task_id": self.task_id, "max_files": self.max_files}


@dataclass(frozen=True)
class Finding:
    """One structured analyzer result.  The engine stores it but never interprets it."""

    severity: str
    category: str
    location: str
    description: str
    recommendation: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def parse(cls, raw: Any) -> "Finding":
        """Coerce analyzer output into a Finding, raising ValueError when malformed."""
        if isinstance(raw, Finding):
            data = raw.to_dict()
        elif isinstance(raw, dict):
            data = raw
        else:
            raise ValueError(f"finding must be an object, got {type(raw).__name__}")
        severity = str(data.get("severity") or "").lower()
        if severity not in FINDING_SEVERITIES:
            raise ValueError(f"severity must be one of {list(FINDING_SEVERITIES)}, got '{severity}'")
        for key in ("category", "location", "description"):
            if not str(data.get(key) or "").strip():
                raise ValueError(f"finding is missing '{key}'")
        metadata = data.get("metadata") or {}
        return cls(
            severity=severity,
            category=str(data["category"]),
            location=str(data["location"]),
            description=str(data["description"]),
            recommendation=str(data.get("recommendation") or ""),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )


class Analyzer(abc.ABC):
    """Abstract base for external analyzers bound to a capability.

    Subclasses implement :meth:`analyze` to examine the given scope and return
    findings.  Their domain reasoning is opaque to the engine.
    """

    #: Human-readable name for this analyzer (e.g. "Dependency CVE scan").
    name: str = "base"

    #: Short description shown to operators.
    description: str = ""

    @abc.abstractmethod
    def analyze(
        self,
        scope: AuditScope,
        *,
        on_progress: Optional[Callable[[str, float], None]] = None,
    ) -> list[Any]:
        """Examine *scope* and return findings.

        Parameters
        ----------
        scope:
            Bounded set of paths the analyzer may read.
        on_progress:
            Optional callback ``(message, fraction)`` for progress reporting.
            *fraction* is in ``[0.0, 1.0]``.

        Returns
        -------
        list
            :class:`Finding` objects or plain dicts with the same keys.
        """
        ...
