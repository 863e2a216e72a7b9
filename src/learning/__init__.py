"""Learning pipeline: durable task queue, pattern detection and insight generation."""

from .buffer import IngestionBuffer
from .collaborators import (
    ChromaEmbeddingProvider,
    EmbeddingProvider,
    MemoryStore,
    NullEmbeddingProvider,
    SQLiteMemoryStore,
)
from .insight_engine import InsightEngine
from .insights import InsightStore
from .models import (
    Insight,
    InsightPriority,
    InsightType,
    LearningError,
    MemoryEvent,
    MemoryNotFoundError,
    MemoryType,
    Pattern,
    PatternCandidate,
    Task,
    TaskStatus,
    TaskType,
    UnknownTaskTypeError,
)
from .pattern_engine import PatternEngine
from .patterns import PatternStore
from .pipeline import LearningPipeline
from .queue import QueueStore
from .scheduler import LearningScheduler
from .worker import Worker

__all__ = [
    "ChromaEmbeddingProvider",
    "EmbeddingProvider",
    "IngestionBuffer",
    "Insight",
    "InsightEngine",
    "InsightPriority",
    "InsightStore",
    "InsightType",
    "LearningError",
    "LearningPipeline",
    "LearningScheduler",
    "MemoryEvent",
    "MemoryNotFoundError",
    "MemoryStore",
    "MemoryType",
    "NullEmbeddingProvider",
    "Pattern",
    "PatternCandidate",
    "PatternEngine",
    "PatternStore",
    "QueueStore",
    "SQLiteMemoryStore",
    "Task",
    "TaskStatus",
    "TaskType",
    "UnknownTaskTypeError",
    "Worker",
]
