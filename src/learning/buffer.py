"""In-memory ingestion buffer: batches new memories into pattern_detection tasks.

Not durable. A lost buffer is covered by the scheduled pattern_detection scan.
"""

import threading
from collections import deque
from typing import Optional

import structlog

from .models import PRIORITY_INSIGHT, PRIORITY_REAL_TIME, TaskType
from .queue import QueueStore

logger = structlog.get_logger().bind(source="ingestion_buffer")


class IngestionBuffer:
    """Bounded FIFO of new-memory events, guarded by one lock.

    Append, threshold check and drain happen under the lock; enqueueing happens
    outside it.
    """

    def __init__(
        self,
        queue: QueueStore,
        trigger_threshold: int = 5,
        batch_size: int = 10,
        max_size: int = 1000,
    ):
        self.queue = queue
        self.trigger_threshold = trigger_threshold
        self.batch_size = batch_size
        self.max_size = max_size
        self._events: deque[dict] = deque()
        self._lock = threading.Lock()
        self.dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def on_memory_added(self, memory_id: str, project_id: str, content: str) -> int:
        """Buffer one event; drain a batch once the threshold is reached.

        Returns the number of tasks enqueued (0 while below threshold).
        """
        event = {"memory_id": memory_id, "project_id": project_id, "content": content}
        with self._lock:
            if len(self._events) >= self.max_size:
                dropped = self._events.popleft()
                self.dropped += 1
                logger.warning(
                    "buffer.overflow_dropped",
                    memory_id=dropped["memory_id"],
                    max_size=self.max_size,
                )
            self._events.append(event)
            batch = self._drain() if len(self._events) >= self.trigger_threshold else []
        return self._enqueue(batch)

    def flush(self) -> int:
        """Drain one batch regardless of threshold (periodic timer)."""
        with self._lock:
            batch = self._drain()
        return self._enqueue(batch)

    def _drain(self) -> list[dict]:
        n = min(self.batch_size, len(self._events))
        return [self._events.popleft() for _ in range(n)]

    def _enqueue(self, batch: list[dict]) -> int:
        if not batch:
            return 0
        enqueued = 0
        for event in batch:
            task_id = self.queue.enqueue(
                TaskType.PATTERN_DETECTION,
                {**event, "trigger": "real_time"},
                priority=PRIORITY_REAL_TIME,
            )
            if task_id:
                enqueued += 1

        if len(batch) >= self.batch_size:
            spike_id: Optional[str] = self.queue.enqueue(
                TaskType.INSIGHT_GENERATION,
                {
                    "trigger_type": "activity_spike",
                    "memory_count": len(batch),
                    "project_ids": sorted({e["project_id"] for e in batch}),
                },
                priority=PRIORITY_INSIGHT,
            )
            if spike_id:
                enqueued += 1
        logger.info("buffer.drained", events=len(batch), tasks=enqueued)
        return enqueued
