"""Append-only checkpoint ledger.

Checkpoints are appended as JSON lines to ``checkpoints.jsonl``.  A small head
file (``checkpoint_head.json``) always holds the latest record, so
:meth:`CheckpointLedger.latest` never scans the log.  The log is the source of
truth; the head is rebuilt from it by :meth:`CheckpointLedger.repair` when a
crash left the two out of step.
"""

from __future__ import annotations

import shutil
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import CHECKPOINT_HEAD_FILE, CHECKPOINT_LOCK_FILE, CHECKPOINT_LOG_FILE
from .errors import WorkgraphError
from .io_utils import FileLock, _append_jsonl, _atomic_write_json, _load_data_with_error, _read_jsonl
from .task_engine.model import Checkpoint


class CheckpointLedger:
    """Single-writer, append-only log of completion checkpoints.

    Parameters
    ----------
    state_dir:
        Path to the ``.workgraph/`` directory for the project.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._log_path = state_dir / CHECKPOINT_LOG_FILE
        self._head_path = state_dir / CHECKPOINT_HEAD_FILE
        self._lock_path = state_dir / CHECKPOINT_LOCK_FILE
        self._thread_lock = threading.Lock()

    @property
    def log_path(self) -> Path:
        return self._log_path

    # -- internal helpers ---------------------------------------------------

    def _read_head(self) -> Optional[Checkpoint]:
        data, err = _load_data_with_error(self._head_path, {})
        if err:
            logger.warning("Checkpoint head unreadable ({}); rebuilding from log", err)
            return self._rebuild_head()
        if not data:
            if self._log_path.exists():
                return self._rebuild_head()
            return None
        return Checkpoint.from_dict(data)

    def _rebuild_head(self) -> Optional[Checkpoint]:
        records = _read_jsonl(self._log_path)
        if not records:
            return None
        head = Checkpoint.from_dict(records[-1])
        _atomic_write_json(self._head_path, head.to_dict())
        return head

    # -- public API ---------------------------------------------------------

    def append(self, checkpoint: Checkpoint) -> Checkpoint:
        """Append *checkpoint* and move the head pointer to it.

        A checkpoint with ``seq == 0`` is numbered automatically.  An explicit
        ``seq`` must be exactly one past the current head; anything else means
        completions would be recorded out of order and is refused.
        """
        with self._thread_lock, FileLock(self._lock_path):
            head = self._read_head()
            head_seq = head.seq if head else 0
            seq = checkpoint.seq or head_seq + 1
            if seq != head_seq + 1:
                raise WorkgraphError(
                    f"checkpoint seq {seq} does not follow ledger head {head_seq}",
                    subject_id=checkpoint.last_task_completed,
                )
            record = Checkpoint(
                last_task_completed=checkpoint.last_task_completed,
                next_task=checkpoint.next_task,
                timestamp=checkpoint.timestamp,
                seq=seq,
            )
            _append_jsonl(self._log_path, record.to_dict())
            _atomic_write_json(self._head_path, record.to_dict())
        logger.info(
            "Checkpoint {} written: completed={} next={}",
            record.seq, record.last_task_completed, record.next_task,
        )
        return record

    def latest(self) -> Optional[Checkpoint]:
        """Return the authoritative resume point, or None for an empty ledger."""
        with self._thread_lock, FileLock(self._lock_path):
            return self._read_head()

    def history(self) -> list[Checkpoint]:
        """Every checkpoint in append order (a full read of the log)."""
        with self._thread_lock, FileLock(self._lock_path):
            return [Checkpoint.from_dict(r) for r in _read_jsonl(self._log_path)]

    def repair(self) -> Optional[Checkpoint]:
        """Realign the head pointer with the last record in the log."""
        with self._thread_lock, FileLock(self._lock_path):
            head, _ = _load_data_with_error(self._head_path, {})
            records = _read_jsonl(self._log_path)
            if not records:
                return None
            tail = Checkpoint.from_dict(records[-1])
            if not head or Checkpoint.from_dict(head) != tail:
                logger.warning("Checkpoint head out of step with log; moving head to seq {}", tail.seq)
                _atomic_write_json(self._head_path, tail.to_dict())
            return tail

    def archive(self, dest_dir: Path) -> list[Path]:
        copied: list[Path] = []
        with self._thread_lock, FileLock(self._lock_path):
            dest_dir.mkdir(parents=True, exist_ok=True)
            for src in (self._log_path, self._head_path):
                if src.exists():
                    target = dest_dir / src.name
                    shutil.copy2(src, target)
                    copied.append(target)
        return copied
