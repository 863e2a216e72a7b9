"""Tests for IngestionBuffer batching."""

import threading

import pytest

from learning.buffer import IngestionBuffer
from learning.models import TaskType


@pytest.fixture
def buffer(queue):
    return IngestionBuffer(queue, trigger_threshold=3, batch_size=10, max_size=100)


def _add(buffer, n, start=0, project_id="proj-a"):
    return [buffer.on_memory_added(f"m{i}", project_id, f"content {i}") for i in range(start, start + n)]


class TestThreshold:
    def test_below_threshold_buffers(self, buffer, queue):
        assert _add(buffer, 2) == [0, 0]
        assert len(buffer) == 2
        assert queue.list_tasks() == []

    def test_threshold_drains_to_pattern_tasks(self, buffer, queue):
        results = _add(buffer, 3)
        assert results == [0, 0, 3]
        assert len(buffer) == 0

        tasks = queue.list_tasks(task_type=TaskType.PATTERN_DETECTION)
        assert len(tasks) == 3
        assert all(t.priority == 3 for t in tasks)
        assert {t.payload["memory_id"] for t in tasks} == {"m0", "m1", "m2"}
        assert all(t.payload["trigger"] == "real_time" for t in tasks)
        assert queue.list_tasks(task_type=TaskType.INSIGHT_GENERATION) == []


class TestSpike:
    def test_full_batch_adds_insight_task(self, queue):
        buffer = IngestionBuffer(queue, trigger_threshold=3, batch_size=3, max_size=10)
        buffer.on_memory_added("m1", "proj-b", "x")
        buffer.on_memory_added("m2", "proj-a", "x")
        assert buffer.on_memory_added("m3", "proj-a", "x") == 4

        [spike] = queue.list_tasks(task_type=TaskType.INSIGHT_GENERATION)
        assert spike.priority == 4
        assert spike.payload == {
            "trigger_type": "activity_spike",
            "memory_count": 3,
            "project_ids": ["proj-a", "proj-b"],
        }


class TestFlushAndOverflow:
    def test_flush_drains_below_threshold(self, buffer, queue):
        _add(buffer, 2)
        assert buffer.flush() == 2
        assert len(buffer) == 0
        assert buffer.flush() == 0

    def test_overflow_drops_oldest(self, queue):
        buffer = IngestionBuffer(queue, trigger_threshold=50, batch_size=2, max_size=2)
        _add(buffer, 3)
        assert buffer.dropped == 1
        assert len(buffer) == 2
        buffer.flush()
        ids = {t.payload["memory_id"] for t in queue.list_tasks(task_type=TaskType.PATTERN_DETECTION)}
        assert ids == {"m1", "m2"}

    def test_concurrent_adds_enqueue_each_event_once(self, queue):
        buffer = IngestionBuffer(queue, trigger_threshold=5, batch_size=5, max_size=1000)
        threads = [
            threading.Thread(target=_add, args=(buffer, 10, i * 10)) for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        buffer.flush()

        tasks = queue.list_tasks(task_type=TaskType.PATTERN_DETECTION, limit=100)
        assert sorted(t.payload["memory_id"] for t in tasks) == sorted(f"m{i}" for i in range(40))
