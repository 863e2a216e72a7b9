"""Tests for Worker dispatch and failure handling."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from learning.models import TaskStatus, TaskType, utcnow
from learning.worker import Worker
from observability import metrics


def _handlers(**overrides):
    handlers = {t: MagicMock(return_value={"ok": True}) for t in TaskType}
    for name, fn in overrides.items():
        handlers[TaskType(name)] = fn
    return handlers


class TestConstruction:
    def test_missing_handler_rejected(self, queue):
        handlers = _handlers()
        del handlers[TaskType.EVOLUTION_TRACKING]
        with pytest.raises(ValueError, match="evolution_tracking"):
            Worker(queue, handlers)


class TestProcessQueue:
    def test_success_completes(self, queue):
        handlers = _handlers()
        worker = Worker(queue, handlers)
        task_id = queue.enqueue(TaskType.PATTERN_DETECTION, {"memory_id": "m1"}, priority=3)

        assert worker.process_queue() == 1
        handlers[TaskType.PATTERN_DETECTION].assert_called_once_with({"memory_id": "m1"})
        task = queue.get(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.result_summary == {"ok": True}
        assert task.processing_duration_ms is not None
        assert metrics.get_counter("tasks_completed") == 1

    def test_empty_queue(self, queue):
        assert Worker(queue, _handlers()).process_queue() == 0

    def test_always_failing_handler_ends_failed(self, queue):
        boom = MagicMock(side_effect=RuntimeError("boom"))
        worker = Worker(queue, _handlers(insight_generation=boom))
        task_id = queue.enqueue(TaskType.INSIGHT_GENERATION, {}, priority=4)

        start = utcnow()
        for day in range(1, 6):
            worker.process_queue(now=start + timedelta(days=day))

        task = queue.get(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 3
        assert task.error_message == "RuntimeError: boom"
        assert boom.call_count == 4
        assert metrics.get_counter("tasks_retried") == 3
        assert metrics.get_counter("tasks_failed") == 1

    def test_retry_waits_for_backoff(self, queue):
        boom = MagicMock(side_effect=RuntimeError("boom"))
        worker = Worker(queue, _handlers(insight_generation=boom))
        task_id = queue.enqueue(TaskType.INSIGHT_GENERATION, {}, priority=4)

        now = utcnow() + timedelta(seconds=1)
        worker.process_queue(now=now)
        worker.process_queue(now=now + timedelta(minutes=1))
        assert boom.call_count == 1
        assert queue.get(task_id).status == TaskStatus.RETRY

    def test_failure_does_not_stop_batch(self, queue):
        handlers = _handlers(pattern_detection=MagicMock(side_effect=KeyError("memory_id")))
        worker = Worker(queue, handlers)
        queue.enqueue(TaskType.PATTERN_DETECTION, {}, priority=3)
        queue.enqueue(TaskType.PREFERENCE_ANALYSIS, {}, priority=5)

        assert worker.process_queue() == 1
        assert queue.counts_by_status()["completed"] == 1
        assert queue.counts_by_status()["retry"] == 1

    def test_limit_caps_claims(self, queue):
        worker = Worker(queue, _handlers(), batch_size=5)
        for _ in range(4):
            queue.enqueue(TaskType.PREFERENCE_ANALYSIS, {}, priority=5)
        assert worker.process_queue(limit=2) == 2
        assert queue.counts_by_status()["pending"] == 2
