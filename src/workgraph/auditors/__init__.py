"""External analyzer contract and registry."""

from .base import Analyzer, AuditorCapability, AuditScope, Finding
from .registry import AuditorRegistry

__all__ = ["Analyzer", "AuditScope", "AuditorCapability", "AuditorRegistry", "Finding"]
