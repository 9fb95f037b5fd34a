"""Provide the public `workgraph` package exports."""

from __future__ import annotations

__version__ = "0.1.0"

from .orchestrator import AuditOutcome, Orchestrator, VerificationOutcome  # noqa: E402

__all__ = ["AuditOutcome", "Orchestrator", "VerificationOutcome", "__version__"]
