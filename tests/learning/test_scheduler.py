"""Tests for LearningScheduler job wiring and catch-up."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from cli.config_models import SchedulerConfig
from learning.buffer import IngestionBuffer
from learning.models import TaskStatus, TaskType
from learning.scheduler import RECURRING_PRIORITIES, LearningScheduler


@pytest.fixture
def apscheduler():
    sched = MagicMock()
    sched.running = True
    sched.get_job.return_value = None
    return sched


@pytest.fixture
def worker():
    w = MagicMock()
    w.process_queue.return_value = 0
    return w


@pytest.fixture
def scheduler(queue, worker, apscheduler):
    return LearningScheduler(queue, worker, scheduler=apscheduler)


class TestStart:
    def test_seeds_recurring_tasks(self, scheduler, queue):
        scheduler.start()
        tasks = queue.list_tasks(status=TaskStatus.PENDING)
        assert {t.type: t.priority for t in tasks} == RECURRING_PRIORITIES
        assert all(t.payload == {"trigger": "scheduled"} for t in tasks)

    def test_registers_jobs(self, scheduler, apscheduler):
        scheduler.start()
        ids = [c.kwargs["id"] for c in apscheduler.add_job.call_args_list]
        assert ids == [
            "learning_worker",
            "recurring_pattern_detection",
            "recurring_insight_generation",
            "recurring_preference_analysis",
            "recurring_evolution_tracking",
            "queue_maintenance",
        ]
        assert all(c.kwargs["max_instances"] == 1 for c in apscheduler.add_job.call_args_list)
        apscheduler.add_listener.assert_called_once()
        apscheduler.start.assert_called_once()

    def test_buffer_flush_job(self, queue, worker, apscheduler):
        buffer = IngestionBuffer(queue)
        LearningScheduler(queue, worker, buffer=buffer, scheduler=apscheduler).start()
        ids = [c.kwargs["id"] for c in apscheduler.add_job.call_args_list]
        assert "buffer_flush" in ids

    def test_stop(self, scheduler, apscheduler):
        scheduler.stop()
        apscheduler.shutdown.assert_called_once_with(wait=False)
        apscheduler.running = False
        scheduler.stop()
        assert apscheduler.shutdown.call_count == 1


class TestRecurring:
    def test_overdue_work_processed_first(self, scheduler, queue, worker):
        queue.enqueue(TaskType.EVOLUTION_TRACKING, {}, priority=6)
        task_id = scheduler.run_recurring(TaskType.EVOLUTION_TRACKING)
        worker.process_queue.assert_called_once()
        assert queue.get(task_id).payload == {"trigger": "scheduled"}

    def test_nothing_overdue(self, scheduler, worker):
        scheduler.run_recurring(TaskType.PREFERENCE_ANALYSIS)
        worker.process_queue.assert_not_called()

    def test_flush_without_buffer(self, scheduler):
        assert scheduler.flush_buffer() == 0

    def test_maintenance(self, scheduler):
        assert scheduler.run_maintenance() == {"reset": 0, "failed": 0, "deleted": 0}


class TestSchedulingInfo:
    def test_reports_each_recurring_type(self, queue, worker, apscheduler):
        job = MagicMock()
        job.next_run_time = datetime(2026, 1, 1, 12, 0)
        apscheduler.get_job.return_value = job
        config = SchedulerConfig(preference_analysis_minutes=30)
        scheduler = LearningScheduler(queue, worker, config=config, scheduler=apscheduler)

        info = scheduler.scheduling_info()
        assert set(info) == {t.value for t in RECURRING_PRIORITIES}
        assert info["preference_analysis"] == {
            "interval_minutes": 30,
            "next_run": "2026-01-01T12:00:00",
            "last_completed": None,
            "overdue": 0,
        }

    def test_job_error_logged(self, scheduler):
        event = MagicMock(job_id="learning_worker", exception=RuntimeError("x"), traceback="tb")
        scheduler._on_job_error(event)
