"""Deterministic scheduler over the dependency graph.

The scheduler keeps no state of its own: every answer is computed from the
store's current content, so the same snapshot always yields the same choice,
including after a crash and restart.

Ordering:
1. Only ``todo`` tasks whose dependencies are all ``done`` are eligible
2. Highest priority first (P0 before P3)
3. Earliest ``created_at`` next
4. Task id last, for a total order
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Optional

from loguru import logger

from .model import Task, TaskStatus
from .store import GraphStore


def schedule_key(task: Task) -> tuple[int, str, str]:
    return (task.priority.sort_key, task.created_at, task.id)


def ready_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Eligible tasks from an in-memory list, in scheduling order."""
    task_list = list(tasks)
    done_ids = {t.id for t in task_list if t.status == TaskStatus.DONE}
    ready = [
        t for t in task_list
        if t.status == TaskStatus.TODO and all(dep in done_ids for dep in t.depends_on)
    ]
    ready.sort(key=schedule_key)
    return ready


def pick_next(tasks: Iterable[Task]) -> Optional[Task]:
    ready = ready_tasks(tasks)
    return ready[0] if ready else None


class Scheduler:
    """Select the next eligible task(s) from a :class:`GraphStore`."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def next_ready(self) -> Optional[Task]:
        task = pick_next(self.store.snapshot())
        logger.debug("Scheduler recommends {}", task.id if task else None)
        return task

    def ready(self) -> list[Task]:
        return ready_tasks(self.store.snapshot())

    def stranded(self) -> list[Task]:
        """Todo tasks that can never run because a dependency was skipped."""
        tasks = self.store.snapshot()
        skipped = {t.id for t in tasks if t.status == TaskStatus.SKIPPED}
        return [
            t for t in tasks
            if t.status == TaskStatus.TODO and any(dep in skipped for dep in t.depends_on)
        ]

    def execution_order(self) -> list[list[str]]:
        """Topological sort into batches of independent tasks (Kahn's algorithm).

        Terminal tasks are left out; each batch is sorted in scheduling order.
        """
        tasks = self.store.snapshot()
        task_map = {t.id: t for t in tasks if not t.is_terminal}
        in_degree: dict[str, int] = {tid: 0 for tid in task_map}
        adj: dict[str, list[str]] = defaultdict(list)

        for t in task_map.values():
            for dep_id in t.depends_on:
                if dep_id in task_map:
                    adj[dep_id].append(t.id)
                    in_degree[t.id] += 1

        def _ordered(ids: list[str]) -> list[str]:
            return sorted(ids, key=lambda tid: schedule_key(task_map[tid]))

        batches: list[list[str]] = []
        queue = _ordered([tid for tid, deg in in_degree.items() if deg == 0])
        while queue:
            batches.append(queue)
            next_queue: list[str] = []
            for tid in queue:
                for neighbor in adj.get(tid, []):
                    in_degree[neighbor] -= 1
                    if in_degree[neighbor] == 0:
                        next_queue.append(neighbor)
            queue = _ordered(next_queue)

        remaining = [tid for tid, deg in in_degree.items() if deg > 0]
        if remaining:
            # The store rejects cycles on write, so this means the file was edited by hand.
            logger.error("Dependency cycle detected among tasks: {}", remaining)
        return batches
