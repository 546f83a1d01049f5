"""Poll for dispatchable tasks, claim them, and hand them to the engine."""

from __future__ import annotations

import logging
import os
import socket
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .engine import EngineOutcome, MilestoneEngine
from .errors import LockContention
from .memory.schema import Task, TaskStatus
from .memory.store import MemoryStore
from .result import Err, Ok, Result

LOGGER = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class DispatchReport:
    """What one dispatch pass selected, claimed, and skipped."""

    selected: List[str] = field(default_factory=list)
    claimed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    futures: List[Future] = field(default_factory=list)

    def wait(self) -> List[Optional[EngineOutcome]]:
        """Block until every submitted task finished; failures yield ``None``."""
        outcomes: List[Optional[EngineOutcome]] = []
        for future in self.futures:
            outcomes.append(future.result())
        return outcomes


class TaskDispatcher:
    """Claim tasks with compare-and-swap locks and run them on a thread pool.

    A task whose lock is still valid is skipped, never waited on. When the
    engine raises, the task is requeued while it has attempts left for its
    type.
    """

    def __init__(
        self,
        store: MemoryStore,
        engine_factory: Callable[[], MilestoneEngine],
        *,
        worker_id: Optional[str] = None,
        lock_ttl: int = 3600,
        max_workers: int = 2,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.store = store
        self.engine_factory = engine_factory
        self.worker_id = worker_id or default_worker_id()
        self.lock_ttl = lock_ttl
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ao-dispatch"
        )

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "TaskDispatcher":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def lock_ttl_for(self, task: Task) -> int:
        return max(self.lock_ttl, task.type.timeout_seconds)

    def claim(self, task: Task, *, steal_locks: bool = False) -> Result:
        """Try once to lock ``task``; ``Err(LockContention)`` when another worker holds it."""
        claimed = self.store.claim_task(
            task.id,
            self.worker_id,
            self.lock_ttl_for(task),
            steal=steal_locks,
        )
        if claimed is None:
            return Err(LockContention(f"Task {task.id} is locked by another worker"))
        return Ok(claimed)

    def dispatch(self, limit: int = 1, *, force: bool = False, steal_locks: bool = False) -> DispatchReport:
        """Select up to ``limit`` tasks and submit each claimed one."""
        report = DispatchReport()
        candidates = self.store.select_dispatchable(limit, force=force)
        for task in candidates:
            report.selected.append(task.id)
            claimed = self.claim(task, steal_locks=steal_locks)
            if not claimed.ok:
                LOGGER.info("Skipping task %s: %s", task.id, claimed.error)
                report.skipped.append(task.id)
                continue
            report.claimed.append(task.id)
            LOGGER.info("Dispatching task %s (priority %d) to %s", task.id, task.priority, self.worker_id)
            report.futures.append(self._executor.submit(self._process, claimed.value))
        if not candidates:
            LOGGER.debug("No dispatchable tasks found")
        return report

    def run_task(self, task_id: str, *, steal_locks: bool = False) -> Optional[EngineOutcome]:
        """Claim and run one task synchronously in the calling thread."""
        task = self.store.require_task(task_id)
        claimed = self.claim(task, steal_locks=steal_locks)
        if not claimed.ok:
            LOGGER.warning("Cannot run task %s: %s", task_id, claimed.error)
            return None
        return self._process(claimed.value)

    def _process(self, task: Task) -> Optional[EngineOutcome]:
        engine = self.engine_factory()
        try:
            return engine.run(task.id, owner=self.worker_id)
        except Exception as error:
            LOGGER.error("Task %s failed on attempt %d: %s", task.id, task.attempts, error)
            self._maybe_requeue(task.id)
            return None

    def _maybe_requeue(self, task_id: str) -> None:
        task = self.store.get_task(task_id)
        if task is None or task.status != TaskStatus.FAILED:
            return
        if task.attempts >= task.type.max_attempts:
            LOGGER.warning(
                "Task %s exhausted %d attempt(s); leaving it failed",
                task.id,
                task.type.max_attempts,
            )
            return
        self.store.transition_task(task.id, TaskStatus.PENDING)
        LOGGER.info(
            "Requeued task %s (attempt %d of %d)",
            task.id,
            task.attempts,
            task.type.max_attempts,
        )


__all__ = ["DispatchReport", "TaskDispatcher", "default_worker_id"]
