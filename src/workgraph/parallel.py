"""Worker pool that runs independent ready tasks concurrently.

Each worker holds at most one lease.  Leases are taken through
:meth:`Orchestrator.start`, so when two workers race for the same task one of
them gets :class:`LeaseConflict` and simply moves on to the next candidate.
"""

from __future__ import annotations

import concurrent.futures
import io
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .errors import EscalationRequired, InvalidTransition, LeaseConflict, WorkgraphError
from .orchestrator import Orchestrator
from .task_engine.model import Task
from .verification import Evidence

WorkFn = Callable[[Task], Union[Evidence, dict[str, Any]]]


@dataclass
class WorkResult:
    """Outcome of one task handled by the pool."""

    task_id: str
    worker: str
    success: bool
    attempts: int = 0
    reason: Optional[str] = None
    escalated: bool = False
    duration_seconds: float = 0.0


class WorkerPool:
    """Run ready tasks on a thread pool until the graph has nothing left to do."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        max_workers: Optional[int] = None,
        poll_interval: float = 0.05,
        select: Optional[Callable[[Task], bool]] = None,
    ):
        self.orchestrator = orchestrator
        self.max_workers = max_workers or orchestrator.config.max_workers
        self.poll_interval = poll_interval
        self.select = select
        self.console = Console(stderr=True)
        self._lock = threading.Lock()
        self._active = 0
        self._status: dict[str, str] = {}  # task_id -> state
        self._errors: dict[str, str] = {}  # task_id -> reason

    def _claim(self, worker: str) -> Optional[Task]:
        for candidate in self.orchestrator.ready():
            if self.select is not None and not self.select(candidate):
                continue
            # Counted as active before the lease so idle workers do not exit mid-claim.
            with self._lock:
                self._active += 1
            try:
                task = self.orchestrator.start(candidate.id, worker=worker)
            except (LeaseConflict, InvalidTransition):
                # Another worker got there first, or a dependency changed underneath us.
                with self._lock:
                    self._active -= 1
                continue
            with self._lock:
                self._status[task.id] = "running"
            return task
        return None

    def _park(self, task_id: str, reason: str, worker: str) -> str:
        """Block a task this worker gave up on; returns the reason actually recorded."""
        try:
            self.orchestrator.block(task_id, reason, worker=worker)
        except WorkgraphError as exc:
            # The task left ``doing`` underneath us (skipped, blocked or re-leased elsewhere).
            logger.warning("Worker {} could not block task {}: {}", worker, task_id, exc.reason)
            return f"{reason} (not blocked: {exc.reason})"
        return reason

    def _work_on(self, task: Task, worker: str, work_fn: WorkFn, stop_event: threading.Event) -> WorkResult:
        started = time.monotonic()
        attempts = 0
        result: Optional[WorkResult] = None
        try:
            while result is None:
                attempts += 1
                try:
                    evidence = work_fn(task)
                    outcome = self.orchestrator.submit_verification(task.id, evidence, worker=worker)
                except EscalationRequired as exc:
                    result = WorkResult(task.id, worker, False, attempts, exc.reason, escalated=True)
                    break
                except Exception as exc:
                    logger.exception("Worker {} failed on task {}: {}", worker, task.id, exc)
                    reason = self._park(task.id, f"worker error: {exc}", worker)
                    result = WorkResult(task.id, worker, False, attempts, reason)
                    break
                if outcome.verdict.passed:
                    result = WorkResult(task.id, worker, True, attempts, outcome.verdict.reason)
                elif outcome.escalated:
                    # Release the lease; the escalation keeps the task parked until a human resolves it.
                    self._park(task.id, f"escalated: {outcome.verdict.reason}", worker)
                    result = WorkResult(task.id, worker, False, attempts, outcome.verdict.reason, escalated=True)
                elif stop_event.is_set():
                    result = WorkResult(task.id, worker, False, attempts, "stopped with task in flight")
        finally:
            if result is None:
                result = WorkResult(task.id, worker, False, attempts, "worker aborted")
            result.duration_seconds = time.monotonic() - started
            with self._lock:
                self._active -= 1
                self._status[task.id] = (
                    "completed" if result.success else ("escalated" if result.escalated else "failed")
                )
                if not result.success:
                    self._errors[task.id] = result.reason or "Unknown error"
        return result

    def _worker_loop(self, worker: str, work_fn: WorkFn, stop_event: threading.Event) -> list[WorkResult]:
        results: list[WorkResult] = []
        while not stop_event.is_set():
            task = self._claim(worker)
            if task is None:
                with self._lock:
                    others_busy = self._active > 0
                if not others_busy:
                    break
                # A running task may unlock new work when it completes.
                stop_event.wait(self.poll_interval)
                continue
            logger.info("Worker {} picked up {}", worker, task.id)
            results.append(self._work_on(task, worker, work_fn, stop_event))
        return results

    def run(self, work_fn: WorkFn, stop_event: Optional[threading.Event] = None) -> list[WorkResult]:
        """Drain the ready queue with up to ``max_workers`` concurrent leases.

        *work_fn* performs a task and returns verification evidence.  A failed
        verdict calls it again; an escalation or exception parks the task.
        """
        stop_event = stop_event or threading.Event()
        logger.info("Starting worker pool with {} worker(s)", self.max_workers)
        results: list[WorkResult] = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="workgraph") as pool:
            futures = {
                pool.submit(self._worker_loop, f"worker-{i + 1}", work_fn, stop_event): i
                for i in range(self.max_workers)
            }
            for future in concurrent.futures.as_completed(futures):
                results.extend(future.result())
        done = sum(1 for r in results if r.success)
        logger.info("Worker pool finished: {} succeeded, {} did not", done, len(results) - done)
        return results

    def get_status(self) -> dict[str, str]:
        with self._lock:
            return dict(self._status)

    def get_errors(self) -> dict[str, str]:
        with self._lock:
            return dict(self._errors)

    def print_progress(self) -> None:
        """Print current progress to console."""
        status = self.get_status()
        errors = self.get_errors()
        if not status:
            return

        table = Table(title="Worker Pool Progress", show_header=True)
        table.add_column("Task ID", style="cyan")
        table.add_column("Status", style="bold")
        table.add_column("Error", style="red")

        for task_id, state in status.items():
            error_msg = errors.get(task_id, "")
            if state == "running":
                status_str = "[yellow]Running[/yellow]"
            elif state == "completed":
                status_str = "[green]✓ Completed[/green]"
            elif state == "escalated":
                status_str = "[magenta]! Escalated[/magenta]"
            elif state == "failed":
                status_str = "[red]✗ Failed[/red]"
            else:
                status_str = state
            table.add_row(task_id, status_str, escape(error_msg[:50]) if error_msg else "")

        self.console.print(table)


def describe_plan(orchestrator: Orchestrator) -> str:
    """Render the remaining execution batches as plain text."""
    console = Console(record=True, width=100, file=io.StringIO())
    batches = orchestrator.execution_order()
    tasks = {t.id: t for t in orchestrator.list_tasks()}

    console.print("\n[bold]Execution Plan[/bold]")
    console.print(f"Batches: {len(batches)}")
    console.print(f"Max parallelism: {max((len(b) for b in batches), default=0)}")
    console.print()
    for idx, batch in enumerate(batches, 1):
        console.print(f"[bold cyan]Batch {idx}:[/bold cyan] ({len(batch)} task(s) in parallel)")
        for task_id in batch:
            task = tasks[task_id]
            pending = [d for d in task.depends_on if d in tasks and not tasks[d].is_terminal]
            if pending:
                console.print(f"  • {task_id} ({task.priority.value}) [dim](depends on: {', '.join(pending)})[/dim]")
            else:
                console.print(f"  • {task_id} ({task.priority.value})")
            console.print(f"    {escape(task.title[:80])}")
        console.print()
    return console.export_text()
