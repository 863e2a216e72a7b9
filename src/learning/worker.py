"""Worker loop: claim a batch, dispatch by task type, record the outcome."""

import time
import uuid
from datetime import datetime
from typing import Callable, Mapping, Optional

import structlog
import structlog.contextvars

from observability import log_run_summary, metrics

from .models import Task, TaskStatus, TaskType, UnknownTaskTypeError
from .queue import QueueStore

logger = structlog.get_logger().bind(source="worker")

Handler = Callable[[dict], dict]


class Worker:
    """Processes queued learning tasks.

    Safe to run from several threads at once: workers only contend on
    QueueStore.claim_batch, which hands each task to exactly one caller.
    """

    def __init__(self, queue: QueueStore, handlers: Mapping[TaskType, Handler], batch_size: int = 5):
        missing = [t.value for t in TaskType if t not in handlers]
        if missing:
            raise ValueError(f"No handler registered for task types: {', '.join(missing)}")
        self.queue = queue
        self.handlers = dict(handlers)
        self.batch_size = batch_size

    def process_queue(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Run one pass. Returns the number of tasks completed."""
        run_id = uuid.uuid4().hex[:8]
        structlog.contextvars.bind_contextvars(run_id=run_id)
        try:
            tasks = self.queue.claim_batch(limit or self.batch_size, now=now)
            if not tasks:
                return 0
            completed = sum(1 for task in tasks if self._process(task, now))
            logger.info("worker.pass_complete", claimed=len(tasks), completed=completed)
            log_run_summary(run_id=run_id)
            return completed
        finally:
            structlog.contextvars.unbind_contextvars("run_id")

    def _process(self, task: Task, now: Optional[datetime]) -> bool:
        start = time.perf_counter()
        try:
            handler = self.handlers.get(task.type)
            if handler is None:
                raise UnknownTaskTypeError(f"No handler for task type {task.type}")
            with metrics.timer("task_duration"):
                result = handler(task.payload)
        except Exception as e:
            status = self.queue.fail(task, f"{type(e).__name__}: {e}", now=now)
            if status == TaskStatus.RETRY:
                metrics.counter("tasks_retried")
            else:
                metrics.counter("tasks_failed")
            logger.warning(
                "worker.task_failed",
                task_id=task.id,
                task_type=task.type.value,
                retry_count=task.retry_count,
                status=status.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        duration_ms = int((time.perf_counter() - start) * 1000)
        self.queue.complete(task.id, result_summary=result, duration_ms=duration_ms, now=now)
        metrics.counter("tasks_completed")
        logger.info(
            "worker.task_completed",
            task_id=task.id,
            task_type=task.type.value,
            duration_ms=duration_ms,
        )
        return True
