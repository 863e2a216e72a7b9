"""LearningPipeline: builds the stores, engines and loops from one config.

Inbound hooks (`on_memory_added`, `queue_learning_task`) and `get_status`
never raise to callers; failures are logged and a neutral value returned.
"""

from datetime import datetime
from typing import Optional

import structlog

from cli.config_models import LearningConfig
from observability import metrics

from .buffer import IngestionBuffer
from .collaborators import EmbeddingProvider, MemoryStore, SQLiteMemoryStore, make_embedding_provider
from .evolution import EvolutionTracker
from .insight_engine import InsightEngine
from .insights import InsightStore
from .models import PRIORITY_PREFERENCE, PRIORITY_REAL_TIME, TaskType
from .outcomes import OutcomeAnalyzer, OutcomeStore
from .pattern_engine import PatternEngine
from .patterns import PatternStore
from .preferences import PreferenceAnalyzer, PreferenceStore
from .queue import QueueStore
from .scheduler import LearningScheduler
from .worker import Worker

logger = structlog.get_logger().bind(source="learning_pipeline")

HEALTHY_ERROR_RATE = 0.05
DEGRADED_ERROR_RATE = 0.15


def health_from_error_rate(rate: float) -> str:
    if rate < HEALTHY_ERROR_RATE:
        return "healthy"
    if rate < DEGRADED_ERROR_RATE:
        return "degraded"
    return "unhealthy"


class LearningPipeline:
    def __init__(
        self,
        config: Optional[LearningConfig] = None,
        memories: Optional[MemoryStore] = None,
        embeddings: Optional[EmbeddingProvider] = None,
    ):
        self.config = config or LearningConfig()
        cfg = self.config
        db_path = cfg.paths.db

        self.memories = memories if memories is not None else SQLiteMemoryStore(db_path)
        self.embeddings = embeddings or make_embedding_provider(cfg.embeddings.provider)

        self.queue = QueueStore(
            db_path,
            max_retries=cfg.queue.max_retries,
            stuck_timeout_minutes=cfg.queue.stuck_timeout_minutes,
            stuck_retry_delay_minutes=cfg.queue.stuck_retry_delay_minutes,
            retention_days=cfg.queue.retention_days,
        )
        self.patterns = PatternStore(db_path)
        self.insights = InsightStore(db_path)
        self.preferences = PreferenceStore(db_path)
        self.outcomes = OutcomeStore(db_path)

        self.pattern_engine = PatternEngine(
            self.patterns,
            self.memories,
            self.embeddings,
            confidence_boost=cfg.patterns.confidence_boost,
            explicit_boost=cfg.patterns.explicit_boost,
            max_example_memories=cfg.patterns.max_example_memories,
            recent_scan_limit=cfg.patterns.recent_scan_limit,
            recent_scan_hours=cfg.patterns.recent_scan_hours,
        )
        self.insight_engine = InsightEngine(
            self.insights,
            self.patterns,
            self.memories,
            self.queue,
            self.embeddings,
            config=cfg.insights,
        )
        self.preference_analyzer = PreferenceAnalyzer(self.preferences, self.memories)
        self.evolution_tracker = EvolutionTracker(
            self.patterns,
            min_change=cfg.evolution.min_change,
            window_hours=cfg.evolution.window_hours,
        )
        self.outcome_analyzer = OutcomeAnalyzer(self.outcomes, self.patterns)

        self.buffer: Optional[IngestionBuffer] = None
        if cfg.buffer.enabled:
            self.buffer = IngestionBuffer(
                self.queue,
                trigger_threshold=cfg.buffer.trigger_threshold,
                batch_size=cfg.buffer.batch_size,
                max_size=cfg.buffer.max_size,
            )

        self.worker = Worker(self.queue, self.handlers(), batch_size=cfg.queue.claim_batch_size)
        self.scheduler = LearningScheduler(
            self.queue,
            self.worker,
            buffer=self.buffer,
            config=cfg.scheduler,
            worker_interval_minutes=cfg.worker.interval_minutes,
        )

    def handlers(self) -> dict:
        return {
            TaskType.PATTERN_DETECTION: self.pattern_engine.detect_patterns,
            TaskType.INSIGHT_GENERATION: self.insight_engine.generate_insights,
            TaskType.PREFERENCE_ANALYSIS: self.preference_analyzer.analyze_preferences,
            TaskType.EVOLUTION_TRACKING: self.evolution_tracker.track_evolution,
            TaskType.MILESTONE_ANALYSIS: self.outcome_analyzer.analyze_milestone,
            TaskType.CRITICAL_PATTERN_ANALYSIS: self.insight_engine.critical_pattern_analysis,
            TaskType.MANUAL_ANALYSIS: self.manual_analysis,
        }

    def manual_analysis(self, payload: dict, now: Optional[datetime] = None) -> dict:
        """Pattern detection (single memory or recent scan), then all insight analyses."""
        detection = self.pattern_engine.detect_patterns(
            {**payload, "trigger": "manual"}, now=now
        )
        insights = self.insight_engine.generate_insights({"trigger": "manual"}, now=now)
        return {
            "analysis": payload.get("analysis", "full"),
            "patterns": detection,
            "insights": insights,
        }

    # --- inbound ---

    def on_memory_added(self, memory_id: str, project_id: str, content: str) -> int:
        """Hand a new memory to the ingestion buffer (or straight to the queue)."""
        try:
            if self.buffer is not None:
                return self.buffer.on_memory_added(memory_id, project_id, content)
            task_id = self.queue.enqueue(
                TaskType.PATTERN_DETECTION,
                {"memory_id": memory_id, "project_id": project_id, "content": content,
                 "trigger": "real_time"},
                priority=PRIORITY_REAL_TIME,
            )
            return 1 if task_id else 0
        except Exception as e:
            logger.error("pipeline.memory_added_failed", memory_id=memory_id, error=str(e))
            return 0

    def queue_learning_task(
        self, task_type: TaskType | str, payload: Optional[dict] = None, priority: int = PRIORITY_PREFERENCE
    ) -> Optional[str]:
        try:
            return self.queue.enqueue(TaskType(task_type), payload or {}, priority=priority)
        except Exception as e:
            logger.error("pipeline.queue_task_failed", task_type=str(task_type), error=str(e))
            return None

    # --- operations ---

    def process_queue(self, limit: Optional[int] = None) -> int:
        return self.worker.process_queue(limit=limit)

    def run_maintenance(self) -> dict:
        return self.scheduler.run_maintenance()

    def start(self):
        if not self.config.scheduler.enabled:
            logger.info("pipeline.scheduler_disabled")
            return
        self.scheduler.start()

    def stop(self):
        self.scheduler.stop()

    # --- outbound ---

    def get_status(self) -> dict:
        try:
            error_rate = self.queue.error_rate()
            return {
                "queue": self.queue.counts_by_status(),
                "patterns": self.patterns.stats(),
                "insights": self.insights.counts_by_type(),
                "buffer_size": len(self.buffer) if self.buffer is not None else 0,
                "scheduling": self.scheduler.scheduling_info(),
                "performance": self.queue.type_performance(),
                "health": {
                    "status": health_from_error_rate(error_rate),
                    "error_rate": round(error_rate, 4),
                },
                "metrics": metrics.summary(),
            }
        except Exception as e:
            logger.error("pipeline.status_failed", error=str(e))
            return {}
