"""Recurring scheduling for the learning pipeline on APScheduler."""

from typing import Optional

import structlog
from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cli.config_models import SchedulerConfig

from .buffer import IngestionBuffer
from .models import (
    PRIORITY_EVOLUTION,
    PRIORITY_INSIGHT,
    PRIORITY_PREFERENCE,
    PRIORITY_REAL_TIME,
    TaskType,
    to_iso,
)
from .queue import QueueStore
from .worker import Worker

logger = structlog.get_logger().bind(source="learning_scheduler")

RECURRING_PRIORITIES = {
    TaskType.PATTERN_DETECTION: PRIORITY_REAL_TIME,
    TaskType.INSIGHT_GENERATION: PRIORITY_INSIGHT,
    TaskType.PREFERENCE_ANALYSIS: PRIORITY_PREFERENCE,
    TaskType.EVOLUTION_TRACKING: PRIORITY_EVOLUTION,
}


class LearningScheduler:
    """Owns the worker tick, per-type recurring jobs, buffer flush and maintenance."""

    def __init__(
        self,
        queue: QueueStore,
        worker: Worker,
        buffer: Optional[IngestionBuffer] = None,
        config: Optional[SchedulerConfig] = None,
        worker_interval_minutes: int = 15,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.queue = queue
        self.worker = worker
        self.buffer = buffer
        self.config = config or SchedulerConfig()
        self.worker_interval_minutes = worker_interval_minutes
        self.scheduler = scheduler or BackgroundScheduler()

    def intervals(self) -> dict[TaskType, int]:
        cfg = self.config
        return {
            TaskType.PATTERN_DETECTION: cfg.pattern_detection_minutes,
            TaskType.INSIGHT_GENERATION: cfg.insight_generation_minutes,
            TaskType.PREFERENCE_ANALYSIS: cfg.preference_analysis_minutes,
            TaskType.EVOLUTION_TRACKING: cfg.evolution_tracking_minutes,
        }

    # --- jobs ---

    def run_worker(self) -> int:
        return self.worker.process_queue()

    def run_recurring(self, task_type: TaskType) -> Optional[str]:
        """Catch up on overdue work of this type, then enqueue the next instance."""
        overdue = self.queue.overdue_count(task_type)
        if overdue:
            logger.info("scheduler.catch_up", task_type=task_type.value, overdue=overdue)
            self.worker.process_queue()
        return self.queue.enqueue(
            task_type, {"trigger": "scheduled"}, priority=RECURRING_PRIORITIES[task_type]
        )

    def flush_buffer(self) -> int:
        if self.buffer is None:
            return 0
        return self.buffer.flush()

    def run_maintenance(self) -> dict:
        stuck = self.queue.sweep_stuck()
        deleted = self.queue.sweep_retention()
        return {**stuck, "deleted": deleted}

    # --- lifecycle ---

    def start(self):
        """Sweep, seed one instance of each recurring type, register jobs and start."""
        self.run_maintenance()
        for task_type, priority in RECURRING_PRIORITIES.items():
            self.queue.enqueue(task_type, {"trigger": "scheduled"}, priority=priority)

        self.scheduler.add_job(
            self.run_worker,
            trigger=IntervalTrigger(minutes=self.worker_interval_minutes),
            id="learning_worker",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        for task_type, minutes in self.intervals().items():
            self.scheduler.add_job(
                self.run_recurring,
                trigger=IntervalTrigger(minutes=minutes),
                args=[task_type],
                id=f"recurring_{task_type.value}",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        if self.buffer is not None:
            self.scheduler.add_job(
                self.flush_buffer,
                trigger=IntervalTrigger(seconds=self.config.flush_seconds),
                id="buffer_flush",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        self.scheduler.add_job(
            self.run_maintenance,
            trigger=IntervalTrigger(minutes=self.config.maintenance_minutes),
            id="queue_maintenance",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self.scheduler.start()
        logger.info(
            "scheduler.started",
            worker_interval_minutes=self.worker_interval_minutes,
            intervals={t.value: m for t, m in self.intervals().items()},
        )

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def _on_job_error(self, event):
        logger.error(
            "scheduler.job_error",
            job_id=event.job_id,
            exception=str(event.exception),
            traceback=event.traceback,
        )

    def scheduling_info(self) -> dict[str, dict]:
        """Per recurring type: interval, next run, last completion, overdue count."""
        info = {}
        for task_type, minutes in self.intervals().items():
            job = self.scheduler.get_job(f"recurring_{task_type.value}")
            next_run = getattr(job, "next_run_time", None) if job else None
            info[task_type.value] = {
                "interval_minutes": minutes,
                "next_run": next_run.isoformat() if next_run else None,
                "last_completed": to_iso(self.queue.last_completed_at(task_type)),
                "overdue": self.queue.overdue_count(task_type),
            }
        return info
