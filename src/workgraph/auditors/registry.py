"""Registry that binds analyzers to capabilities and invokes them."""

from __future__ import annotations

import concurrent.futures
from typing import Any, Optional, Union

from loguru import logger

from ..errors import AuditorError
from .base import Analyzer, AuditorCapability, AuditScope, Finding


class AuditorRegistry:
    """Catalog of analyzers, one per :class:`AuditorCapability`.

    ``invoke`` is the only way the orchestrator reaches an analyzer.  Every
    failure mode (unknown name, unbound capability, rejected scope, timeout,
    crash, malformed output) raises :class:`AuditorError`; a failed analyzer
    never comes back as an empty list.
    """

    def __init__(self, timeout_seconds: Optional[float] = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._analyzers: dict[AuditorCapability, Analyzer] = {}

    def register(self, capability: Union[str, AuditorCapability], analyzer: Analyzer) -> None:
        cap = self._capability(capability)
        if not isinstance(analyzer, Analyzer):
            raise TypeError(f"analyzer for {cap.value} must subclass Analyzer")
        if cap in self._analyzers:
            logger.warning("Replacing analyzer for {}", cap.value)
        self._analyzers[cap] = analyzer

    def unregister(self, capability: Union[str, AuditorCapability]) -> None:
        self._analyzers.pop(self._capability(capability), None)

    def list(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for cap in AuditorCapability:
            analyzer = self._analyzers.get(cap)
            out.append({
                "name": cap.value,
                "registered": analyzer is not None,
                "analyzer": analyzer.name if analyzer else None,
                "description": analyzer.description if analyzer else "",
            })
        return out

    def invoke(self, name: str, scope: AuditScope) -> list[Finding]:
        cap = self._capability(name)
        analyzer = self._analyzers.get(cap)
        if analyzer is None:
            raise AuditorError(f"no analyzer registered for '{cap.value}'", subject_id=scope.task_id)
        problems = scope.problems()
        if problems:
            raise AuditorError("scope rejected: " + "; ".join(problems), subject_id=scope.task_id)

        logger.info("Invoking {} analyzer on {}", cap.value, list(scope.paths))
        raw = self._run(cap, analyzer, scope)
        if not isinstance(raw, (list, tuple)):
            raise AuditorError(
                f"{cap.value} analyzer returned {type(raw).__name__}, expected a list",
                subject_id=scope.task_id,
            )
        findings: list[Finding] = []
        for idx, item in enumerate(raw):
            try:
                findings.append(Finding.parse(item))
            except ValueError as exc:
                raise AuditorError(
                    f"{cap.value} analyzer returned malformed finding #{idx}: {exc}",
                    subject_id=scope.task_id,
                ) from exc
        logger.info("{} analyzer produced {} finding(s)", cap.value, len(findings))
        return findings

    def _run(self, cap: AuditorCapability, analyzer: Analyzer, scope: AuditScope) -> Any:
        if not self.timeout_seconds:
            try:
                return analyzer.analyze(scope)
            except AuditorError:
                raise
            except Exception as exc:
                raise AuditorError(f"{cap.value} analyzer failed: {exc}", subject_id=scope.task_id) from exc

        # The worker thread is abandoned on timeout; the analyzer must not hold engine locks.
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"auditor-{cap.value}")
        try:
            future = pool.submit(analyzer.analyze, scope)
            try:
                return future.result(timeout=self.timeout_seconds)
            except concurrent.futures.TimeoutError as exc:
                raise AuditorError(
                    f"{cap.value} analyzer timed out after {self.timeout_seconds}s",
                    subject_id=scope.task_id,
                ) from exc
            except AuditorError:
                raise
            except Exception as exc:
                raise AuditorError(f"{cap.value} analyzer failed: {exc}", subject_id=scope.task_id) from exc
        finally:
            pool.shutdown(wait=False)

    @staticmethod
    def _capability(name: Union[str, AuditorCapability]) -> AuditorCapability:
        if isinstance(name, AuditorCapability):
            return name
        try:
            return AuditorCapability(str(name))
        except ValueError as exc:
            raise AuditorError(
                f"unknown auditor '{name}'; known: {[c.value for c in AuditorCapability]}"
            ) from exc
