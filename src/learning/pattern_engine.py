"""Pattern detection: run matchers over memories and merge hits into the pattern store."""

from datetime import datetime, timedelta
from typing import Optional

import structlog

from .collaborators import EmbeddingProvider, MemoryStore, NullEmbeddingProvider
from .matchers import extract_candidates
from .models import (
    DetectionMethod,
    MemoryEvent,
    MemoryNotFoundError,
    MemoryType,
    PatternCandidate,
    utcnow,
)
from .patterns import CREATED, UPDATED, PatternStore

logger = structlog.get_logger().bind(source="pattern_engine")

RECENT_SCAN_TYPES = (
    MemoryType.CODE,
    MemoryType.IMPLEMENTATION_NOTES,
    MemoryType.ARCHITECTURE,
    MemoryType.DESIGN_DECISIONS,
)

# Candidates at or above this confidence count toward the documentation task
SIGNIFICANT_CONFIDENCE = 0.7
DOCUMENT_TASK_TITLE = "Document detected patterns"


class PatternEngine:
    """Handles pattern_detection tasks."""

    def __init__(
        self,
        patterns: PatternStore,
        memories: MemoryStore,
        embeddings: Optional[EmbeddingProvider] = None,
        confidence_boost: float = 0.1,
        explicit_boost: float = 0.2,
        max_example_memories: int = 50,
        recent_scan_limit: int = 50,
        recent_scan_hours: int = 24,
    ):
        self.patterns = patterns
        self.memories = memories
        self.embeddings = embeddings or NullEmbeddingProvider()
        self.confidence_boost = confidence_boost
        self.explicit_boost = explicit_boost
        self.max_example_memories = max_example_memories
        self.recent_scan_limit = recent_scan_limit
        self.recent_scan_hours = recent_scan_hours

    def detect_patterns(self, payload: dict, now: Optional[datetime] = None) -> dict:
        """Detect patterns in one memory (payload memory_id) or in the recent scan window.

        Raises MemoryNotFoundError when a named memory does not exist, so the
        worker retries the task.
        """
        now = now or utcnow()
        memory_id = payload.get("memory_id")
        trigger = payload.get("trigger", "real_time" if memory_id else "scheduled")

        if memory_id:
            memory = self.memories.get_memory(memory_id)
            if memory is None:
                raise MemoryNotFoundError(memory_id)
            batch = [memory]
        else:
            batch = self.memories.get_recent_memories(
                memory_types=list(RECENT_SCAN_TYPES),
                since=now - timedelta(hours=self.recent_scan_hours),
                limit=self.recent_scan_limit,
            )

        found = created = updated = 0
        for memory in batch:
            candidates = extract_candidates(memory)
            found += len(candidates)
            for candidate in candidates:
                outcome = self._record(candidate, memory, now)
                if outcome == CREATED:
                    created += 1
                elif outcome == UPDATED:
                    updated += 1
            if candidates:
                self._create_follow_up_tasks(memory, candidates)

        logger.info(
            "patterns.detected",
            trigger=trigger,
            memories=len(batch),
            found=found,
            created=created,
            updated=updated,
        )
        return {
            "patterns_found": found,
            "patterns_created": created,
            "patterns_updated": updated,
            "memories_processed": len(batch),
            "memory_id": memory_id or "batch",
            "trigger": trigger,
        }

    def _record(self, candidate: PatternCandidate, memory: MemoryEvent, now: datetime) -> str:
        embedding = None
        if self.patterns.get_by_signature(candidate.signature) is None:
            embedding = self.embeddings.embed(candidate.description)
        _, outcome = self.patterns.record_detection(
            candidate,
            memory,
            boost=self.confidence_boost,
            explicit_boost=self.explicit_boost,
            max_examples=self.max_example_memories,
            embedding=embedding,
            now=now,
        )
        return outcome

    def _create_follow_up_tasks(self, memory: MemoryEvent, candidates: list[PatternCandidate]):
        """Task memories for undocumented patterns and for anti-patterns.

        Failures are logged; detection results stand regardless.
        """
        significant = [
            c
            for c in candidates
            if c.confidence >= SIGNIFICANT_CONFIDENCE
            or c.detection_method == DetectionMethod.USER_EXPLICIT
        ]
        undocumented = [c for c in significant if c.detection_method != DetectionMethod.USER_EXPLICIT]
        try:
            if len(undocumented) >= 2:
                self.memories.create_task_memory(
                    [memory.project_id],
                    DOCUMENT_TASK_TITLE,
                    f"Document {len(undocumented)} patterns detected in recent memories",
                    {
                        "priority": "medium",
                        "patterns": [c.name for c in undocumented],
                        "related_memories": [memory.id],
                    },
                )
            for anti in (c for c in candidates if c.is_anti_pattern):
                self.memories.create_task_memory(
                    [memory.project_id],
                    f"Fix {anti.name}",
                    f"Address the {anti.name} detected in the codebase",
                    {
                        "priority": "high",
                        "pattern": anti.signature,
                        "pattern_type": "anti_pattern",
                        "related_memories": [memory.id],
                    },
                )
        except Exception as e:
            logger.error("patterns.task_memory_failed", memory_id=memory.id, error=str(e))
