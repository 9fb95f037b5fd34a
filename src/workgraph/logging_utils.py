"""Logging setup and compact summaries of verification logs."""

import re
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

_FAILED_NODEID_RE = re.compile(r"^(?P<nodeid>\S+)\s+FAILED\b", re.M)
_FAILED_SUMMARY_RE = re.compile(r"^FAILED\s+(?P<nodeid>\S+)\b", re.M)
_ASSERT_RE = re.compile(r"^(E\s+.+)$", re.M)
_COUNTS_RE = re.compile(r"(?P<count>\d+)\s+(?P<label>passed|failed|errors?)\b")


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure the loguru logger with the given level and optional file sink."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
            "{message}"
        ),
    )
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level=level.upper(),
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )


def summarize_pytest_failures(log_text: str, max_failed: int = 5) -> dict[str, object]:
    """Summarize pytest failures from a raw log.

    Args:
        log_text: Full pytest output text.
        max_failed: Maximum number of `FAILED ...` entries to capture.

    Returns:
        A dictionary with keys `failed`, `first_error`, `passed_count` and
        `failed_count` (counts are None when the summary line is missing).
    """
    empty: dict[str, object] = {"failed": [], "first_error": None, "passed_count": None, "failed_count": None}
    if not log_text:
        return empty

    failed: list[str] = []
    seen: set[str] = set()
    for regex in (_FAILED_NODEID_RE, _FAILED_SUMMARY_RE):
        for match in regex.finditer(log_text):
            nodeid = (match.group("nodeid") or "").strip()
            if not nodeid or nodeid in seen:
                continue
            seen.add(nodeid)
            failed.append(nodeid)
            if len(failed) >= max_failed:
                break
        if len(failed) >= max_failed:
            break

    # First "E   ..." line is usually the key assertion or exception
    m_err = _ASSERT_RE.search(log_text)
    first_error = m_err.group(1).strip() if m_err else None

    passed_count: Optional[int] = None
    failed_count: Optional[int] = None
    lines = [line for line in log_text.splitlines() if line.strip()]
    # The final "=== 2 failed, 8 passed in 0.12s ===" line carries the totals.
    for line in reversed(lines):
        counts = {m.group("label"): int(m.group("count")) for m in _COUNTS_RE.finditer(line)}
        if counts:
            passed_count = counts.get("passed", 0)
            failed_count = counts.get("failed", 0) + counts.get("error", 0) + counts.get("errors", 0)
            break

    return {
        "failed": failed,
        "first_error": first_error,
        "passed_count": passed_count,
        "failed_count": failed_count,
    }
