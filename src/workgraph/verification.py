"""Verification gate and evidence collection.

The gate is the only authority that turns evidence into a verdict.  It never
runs anything itself; :func:`run_command_check` is the external collector that
executes a task's verify command and returns :class:`Evidence` for the gate to
judge.
"""

from __future__ import annotations

import subprocess
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import TIMEOUT_EXIT_CODE, VERIFY_KIND_CHECK, VERIFY_KIND_COMMAND, VERIFY_KIND_MANUAL
from .errors import ValidationError, VerificationCancelled
from .io_utils import _read_text_tail
from .logging_utils import summarize_pytest_failures
from .task_engine.model import Task
from .utils import _coerce_bool, _coerce_int


@dataclass(frozen=True)
class Evidence:
    """What the caller observed when running a task's check.

    Only the fields relevant to the evidence ``kind`` are read: ``exit_code``
    and ``timed_out`` for commands, the counts or ``report`` for checks, and
    ``attested`` for manual confirmation.
    """

    kind: str
    exit_code: Optional[int] = None
    timed_out: bool = False
    passed: Optional[int] = None
    failed: Optional[int] = None
    total: Optional[int] = None
    report: str = ""
    attested: Optional[bool] = None
    attested_by: Optional[str] = None
    comment: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Evidence":
        if not isinstance(data, dict) or not data.get("kind"):
            raise ValidationError("evidence must be an object with a 'kind'")

        def _opt_int(key: str) -> Optional[int]:
            raw = data.get(key)
            return None if raw is None else _coerce_int(raw, 0)

        attested = data.get("attested")
        return cls(
            kind=str(data["kind"]),
            exit_code=_opt_int("exit_code"),
            timed_out=_coerce_bool(data.get("timed_out"), False),
            passed=_opt_int("passed"),
            failed=_opt_int("failed"),
            total=_opt_int("total"),
            report=str(data.get("report") or ""),
            attested=None if attested is None else _coerce_bool(attested, False),
            attested_by=data.get("attested_by"),
            comment=str(data.get("comment") or ""),
        )


@dataclass(frozen=True)
class Verdict:
    passed: bool
    reason: str

    @classmethod
    def ok(cls, reason: str) -> "Verdict":
        return cls(passed=True, reason=reason)

    @classmethod
    def fail(cls, reason: str) -> "Verdict":
        return cls(passed=False, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return {"verdict": "pass" if self.passed else "fail", "reason": self.reason}


class VerificationGate:
    """Interpret evidence against a task's verify predicate.

    ``evaluate`` is a pure function of ``(task.verify, evidence)``: the same
    pair always yields the same verdict, and every failure carries a
    machine-readable reason.
    """

    def evaluate(self, task: Task, evidence: Evidence) -> Verdict:
        spec = task.verify
        if spec is None:
            return Verdict.fail("no verification predicate defined")
        if evidence.kind != spec.kind:
            return Verdict.fail(f"evidence kind '{evidence.kind}' does not match verify kind '{spec.kind}'")
        if spec.kind == VERIFY_KIND_COMMAND:
            return self._evaluate_command(spec.expect_exit_code, evidence)
        if spec.kind == VERIFY_KIND_CHECK:
            return self._evaluate_check(evidence)
        if spec.kind == VERIFY_KIND_MANUAL:
            return self._evaluate_manual(evidence)
        return Verdict.fail(f"unsupported verify kind '{spec.kind}'")

    @staticmethod
    def _evaluate_command(expected: int, evidence: Evidence) -> Verdict:
        if evidence.timed_out:
            return Verdict.fail("command timed out")
        if evidence.exit_code is None:
            return Verdict.fail("evidence missing exit_code")
        if evidence.exit_code != expected:
            return Verdict.fail(f"exit status {evidence.exit_code} (expected {expected})")
        return Verdict.ok(f"exit status {evidence.exit_code}")

    @staticmethod
    def _evaluate_check(evidence: Evidence) -> Verdict:
        if evidence.timed_out:
            return Verdict.fail("check timed out")
        failed = evidence.failed
        total = evidence.total
        if failed is None and evidence.report:
            summary = summarize_pytest_failures(evidence.report)
            failed_count = summary.get("failed_count")
            passed_count = summary.get("passed_count")
            if failed_count is None:
                return Verdict.fail("test report has no result summary")
            failed = int(failed_count)  # type: ignore[arg-type]
            total = failed + int(passed_count or 0)  # type: ignore[arg-type]
        if failed is None:
            return Verdict.fail("evidence missing test counts")
        if total is None:
            total = failed + (evidence.passed or 0)
        if failed > 0:
            return Verdict.fail(f"tests failed: {failed}/{total}")
        if total <= 0:
            return Verdict.fail("no tests ran")
        return Verdict.ok(f"tests passed: {total}/{total}")

    @staticmethod
    def _evaluate_manual(evidence: Evidence) -> Verdict:
        if evidence.attested is None:
            return Verdict.fail("evidence missing attestation")
        who = evidence.attested_by or "unknown"
        if not evidence.attested:
            detail = f": {evidence.comment}" if evidence.comment else ""
            return Verdict.fail(f"manual attestation rejected by {who}{detail}")
        return Verdict.ok(f"attested by {who}")


# ---------------------------------------------------------------------------
# External collector
# ---------------------------------------------------------------------------

def run_command_check(
    task: Task,
    project_dir: Path,
    log_path: Path,
    *,
    timeout_seconds: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    poll_interval: float = 0.1,
) -> Evidence:
    """Run the task's verify command and return evidence for the gate.

    Blocks until the command exits, times out, or *cancel_event* is set.
    Cancellation kills the process and raises :class:`VerificationCancelled`;
    nothing in the graph is touched either way.
    """
    spec = task.verify
    if spec is None or not spec.command or spec.kind == VERIFY_KIND_MANUAL:
        raise ValidationError("task has no verify command to run", subject_id=task.id)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Running verification for {}: {}", task.id, spec.command)
    started = time.monotonic()
    timed_out = False
    with open(log_path, "w", encoding="utf-8") as handle:
        proc = subprocess.Popen(
            spec.command,
            cwd=project_dir,
            shell=True,
            stdout=handle,
            stderr=subprocess.STDOUT,
            text=True,
        )
        while proc.poll() is None:
            if cancel_event is not None and cancel_event.wait(poll_interval):
                proc.kill()
                proc.wait()
                handle.write("\n[workgraph] Verification cancelled\n")
                logger.warning("Verification for {} cancelled", task.id)
                raise VerificationCancelled("verification cancelled", subject_id=task.id)
            if cancel_event is None:
                time.sleep(poll_interval)
            if timeout_seconds and time.monotonic() - started > timeout_seconds:
                proc.kill()
                proc.wait()
                timed_out = True
                handle.write(f"\n[workgraph] Command timed out after {timeout_seconds}s\n")
                break

    exit_code = TIMEOUT_EXIT_CODE if timed_out else int(proc.returncode)
    report = _read_text_tail(log_path, max_chars=8000)
    if spec.kind == VERIFY_KIND_CHECK:
        summary = summarize_pytest_failures(report)
        failed_count = summary.get("failed_count")
        passed_count = summary.get("passed_count")
        failed = None if failed_count is None else int(failed_count)  # type: ignore[arg-type]
        passed = None if passed_count is None else int(passed_count)  # type: ignore[arg-type]
        if failed is None and not timed_out:
            # No summary line: fall back to the exit status.
            failed = 0 if exit_code == 0 else 1
            passed = 1 if exit_code == 0 else 0
        total = None if failed is None else failed + (passed or 0)
        return Evidence(
            kind=VERIFY_KIND_CHECK,
            exit_code=exit_code,
            timed_out=timed_out,
            passed=passed,
            failed=failed,
            total=total,
            report=report,
        )
    return Evidence(kind=VERIFY_KIND_COMMAND, exit_code=exit_code, timed_out=timed_out, report=report)
