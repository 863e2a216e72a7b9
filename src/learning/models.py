"""Data models for the learning pipeline: tasks, patterns, insights, memory events."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp. All stored timestamps use this clock."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO string so lexicographic order matches time order in SQL."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="microseconds")


def from_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


# --- Tasks ---


class TaskType(StrEnum):
    PATTERN_DETECTION = "pattern_detection"
    INSIGHT_GENERATION = "insight_generation"
    PREFERENCE_ANALYSIS = "preference_analysis"
    EVOLUTION_TRACKING = "evolution_tracking"
    MILESTONE_ANALYSIS = "milestone_analysis"
    CRITICAL_PATTERN_ANALYSIS = "critical_pattern_analysis"
    MANUAL_ANALYSIS = "manual_analysis"


class TaskStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    RETRY = "retry"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
CLAIMABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.RETRY)

# Lower number = more urgent
PRIORITY_CRITICAL = 1
PRIORITY_MANUAL = 2
PRIORITY_REAL_TIME = 3
PRIORITY_INSIGHT = 4
PRIORITY_PREFERENCE = 5
PRIORITY_EVOLUTION = 6

DEFAULT_MAX_RETRIES = 3


@dataclass
class Task:
    id: str
    type: TaskType
    priority: int
    payload: dict = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    scheduled_for: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    error_message: Optional[str] = None
    result_summary: Optional[dict] = None
    processing_duration_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def claim_order_key(task: Task) -> tuple[int, datetime]:
    """Claim order: priority ascending, then scheduled_for ascending.

    QueueStore.claim_batch orders by the same two columns.
    """
    return (task.priority, task.scheduled_for)


def backoff_delay(retry_count: int) -> timedelta:
    """Delay before a failed task becomes eligible again: 2^retry_count minutes."""
    return timedelta(minutes=2**retry_count)


# --- Memories ---


class MemoryType(StrEnum):
    SYSTEM_PATTERNS = "system_patterns"
    ARCHITECTURE = "architecture"
    DESIGN_DECISIONS = "design_decisions"
    CODE = "code"
    IMPLEMENTATION_NOTES = "implementation_notes"
    TECH_CONTEXT = "tech_context"
    BUG = "bug"
    LESSONS_LEARNED = "lessons_learned"
    TASK = "task"
    PROGRESS = "progress"
    GENERAL = "general"


@dataclass
class MemoryEvent:
    """A persisted memory as seen by the learning pipeline (read-only)."""

    id: str
    project_id: str
    content: str
    memory_type: str = MemoryType.GENERAL
    importance_score: float = 0.5
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryEvent":
        return cls(
            id=str(data["id"]),
            project_id=str(data.get("project_id", "")),
            content=data.get("content", "") or "",
            memory_type=data.get("memory_type", MemoryType.GENERAL) or MemoryType.GENERAL,
            importance_score=float(data.get("importance_score", 0.5) or 0.5),
            tags=list(data.get("tags") or []),
            created_at=from_iso(data.get("created_at")) or utcnow(),
        )


# --- Patterns ---


class DetectionMethod(StrEnum):
    KEYWORD = "keyword"
    MEMORY_TYPE = "memory_type"
    USER_EXPLICIT = "user_explicit"


_DETECTION_RANK = {
    DetectionMethod.KEYWORD: 0,
    DetectionMethod.MEMORY_TYPE: 1,
    DetectionMethod.USER_EXPLICIT: 2,
}


def promote_detection_method(current: str, incoming: str) -> DetectionMethod:
    """Return the stronger of two detection methods. Never downgrades."""
    cur = DetectionMethod(current)
    new = DetectionMethod(incoming)
    return new if _DETECTION_RANK[new] > _DETECTION_RANK[cur] else cur


ANTI_PATTERN_CATEGORY = "anti_pattern"


@dataclass
class PatternCandidate:
    """One matcher hit, before it is merged into the pattern store."""

    category: str
    type: str
    name: str
    signature: str
    description: str
    confidence: float
    detection_method: DetectionMethod
    languages: list[str] = field(default_factory=lambda: ["any"])
    example: str = ""
    context: str = ""
    metadata: dict = field(default_factory=dict)

    @property
    def is_anti_pattern(self) -> bool:
        return self.category == ANTI_PATTERN_CATEGORY


@dataclass
class Pattern:
    id: str
    category: str
    type: str
    name: str
    signature: str
    description: str
    confidence_score: float
    frequency_count: int = 1
    projects_seen: list[str] = field(default_factory=list)
    example_memories: list[str] = field(default_factory=list)
    detection_method: DetectionMethod = DetectionMethod.KEYWORD
    languages: list[str] = field(default_factory=list)
    example: str = ""
    metadata: dict = field(default_factory=dict)
    embedding: Optional[list[float]] = None
    created_at: datetime = field(default_factory=utcnow)
    last_reinforced: datetime = field(default_factory=utcnow)


def _union(existing: list, extra: list) -> list:
    """Order-preserving set union."""
    out = list(existing)
    seen = set(out)
    for item in extra:
        if item not in seen:
            out.append(item)
            seen.add(item)
    return out


def new_pattern(
    pattern_id: str,
    candidate: PatternCandidate,
    memory_id: str,
    project_id: str,
    now: Optional[datetime] = None,
) -> Pattern:
    """Build the first row for a signature from a candidate."""
    now = now or utcnow()
    return Pattern(
        id=pattern_id,
        category=candidate.category,
        type=candidate.type,
        name=candidate.name,
        signature=candidate.signature,
        description=candidate.description,
        confidence_score=min(1.0, max(0.0, candidate.confidence)),
        frequency_count=1,
        projects_seen=[project_id] if project_id else [],
        example_memories=[memory_id] if memory_id else [],
        detection_method=DetectionMethod(candidate.detection_method),
        languages=list(candidate.languages),
        example=candidate.example,
        metadata=dict(candidate.metadata),
        created_at=now,
        last_reinforced=now,
    )


def merge_pattern(
    existing: Pattern,
    candidate: PatternCandidate,
    memory_id: str,
    project_id: str,
    boost: float = 0.1,
    explicit_boost: float = 0.2,
    max_examples: int = 50,
    now: Optional[datetime] = None,
) -> Pattern:
    """Reinforce an existing pattern with a new detection.

    Monotonic: frequency +1, projects/examples grow as sets, confidence only
    rises (capped at 1.0), detection method only promotes.
    """
    method = DetectionMethod(candidate.detection_method)
    step = explicit_boost if method == DetectionMethod.USER_EXPLICIT else boost
    examples = _union(existing.example_memories, [memory_id] if memory_id else [])
    if len(examples) > max_examples:
        # Keep the first-seen examples; the set stays bounded
        examples = examples[:max_examples]
    return replace(
        existing,
        frequency_count=existing.frequency_count + 1,
        projects_seen=_union(existing.projects_seen, [project_id] if project_id else []),
        example_memories=examples,
        confidence_score=min(1.0, existing.confidence_score + max(0.0, step)),
        detection_method=promote_detection_method(existing.detection_method, method),
        languages=_union(existing.languages, candidate.languages),
        metadata={**candidate.metadata, **existing.metadata},
        last_reinforced=now or utcnow(),
    )


@dataclass
class PatternOccurrence:
    pattern_id: str
    memory_id: str
    project_id: str
    confidence: float
    context: str = ""
    detected_at: datetime = field(default_factory=utcnow)


# --- Insights ---


class InsightType(StrEnum):
    BEST_PRACTICE = "best_practice"
    ANTI_PATTERN = "anti_pattern"
    TECHNOLOGY_PREFERENCE = "technology_preference"
    EVOLUTION = "evolution"
    TEAM_PATTERN = "team_pattern"
    QUALITY_METRIC = "quality_metric"


class InsightPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class Insight:
    id: str
    type: InsightType
    category: str
    title: str
    description: str
    confidence_level: float
    evidence_strength: int
    projects_involved: list[str] = field(default_factory=list)
    supporting_patterns: list[str] = field(default_factory=list)
    actionable: bool = False
    priority: InsightPriority = InsightPriority.LOW
    metadata: dict = field(default_factory=dict)
    embedding: Optional[list[float]] = None
    created_at: datetime = field(default_factory=utcnow)
    last_reinforced: datetime = field(default_factory=utcnow)

    @property
    def needs_follow_up(self) -> bool:
        return self.actionable and self.priority != InsightPriority.LOW


def merge_insight(existing: Insight, candidate: Insight, now: Optional[datetime] = None) -> Insight:
    """Merge a regenerated insight into the stored row with the same title.

    Confidence is averaged, evidence takes the max, sets are unioned and
    metadata is shallow-merged with the candidate's keys winning.
    """
    return replace(
        existing,
        confidence_level=(existing.confidence_level + candidate.confidence_level) / 2,
        evidence_strength=max(existing.evidence_strength, candidate.evidence_strength),
        projects_involved=_union(existing.projects_involved, candidate.projects_involved),
        supporting_patterns=_union(existing.supporting_patterns, candidate.supporting_patterns),
        description=candidate.description or existing.description,
        actionable=candidate.actionable,
        priority=candidate.priority,
        metadata={**existing.metadata, **candidate.metadata},
        last_reinforced=now or utcnow(),
    )


# --- Errors ---

# Stored error messages are cut to this many characters
MAX_ERROR_LENGTH = 500


class LearningError(Exception):
    """Base error raised inside learning task handlers."""


class MemoryNotFoundError(LearningError):
    """A task referenced a memory the memory store does not have."""

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"Memory not found: {memory_id}")


class UnknownTaskTypeError(LearningError):
    """A task row carries a type with no registered handler."""


def truncate_error(message: str) -> str:
    return (message or "unknown error")[:MAX_ERROR_LENGTH]
