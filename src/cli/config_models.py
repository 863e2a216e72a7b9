"""Pydantic configuration models for the learning pipeline."""

import os
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

_ENV_RE = re.compile(r"\$\{([^}]+)\}")


def expand_env(value: str) -> str:
    """Replace ${VAR} with the environment value (empty when unset)."""
    return _ENV_RE.sub(lambda m: os.getenv(m.group(1), ""), value)


class PathsConfig(BaseModel):
    """File paths configuration."""

    db: Path = Path("~/devmemory/learning.db")
    chroma_dir: Path = Path("~/devmemory/chroma")
    log_file: Optional[Path] = Path("~/devmemory/devmemory.log")

    @field_validator("db", "chroma_dir", "log_file", mode="before")
    @classmethod
    def expand_env_vars(cls, v):
        if isinstance(v, str):
            return Path(expand_env(v))
        return v

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ in all paths."""
        self.db = self.db.expanduser()
        self.chroma_dir = self.chroma_dir.expanduser()
        if self.log_file:
            self.log_file = self.log_file.expanduser()
        return self


class QueueConfig(BaseModel):
    """Task queue limits and sweeps."""

    max_retries: int = Field(default=3, ge=0)
    stuck_timeout_minutes: int = Field(default=60, ge=1)
    stuck_retry_delay_minutes: int = Field(default=5, ge=0)
    retention_days: int = Field(default=7, ge=1)
    claim_batch_size: int = Field(default=5, ge=1)


class WorkerConfig(BaseModel):
    interval_minutes: int = Field(default=15, ge=1)


class SchedulerConfig(BaseModel):
    """Recurring job intervals (minutes unless noted)."""

    enabled: bool = True
    pattern_detection_minutes: int = Field(default=6 * 60, ge=1)
    insight_generation_minutes: int = Field(default=24 * 60, ge=1)
    preference_analysis_minutes: int = Field(default=7 * 24 * 60, ge=1)
    evolution_tracking_minutes: int = Field(default=24 * 60, ge=1)
    flush_seconds: int = Field(default=60, ge=1)
    maintenance_minutes: int = Field(default=60, ge=1)


class BufferConfig(BaseModel):
    """In-memory ingestion buffer."""

    enabled: bool = True
    trigger_threshold: int = Field(default=5, ge=1)
    batch_size: int = Field(default=10, ge=1)
    max_size: int = Field(default=1000, ge=1)

    @model_validator(mode="after")
    def validate_sizes(self):
        if self.max_size < self.batch_size:
            raise ValueError(
                f"buffer.max_size ({self.max_size}) must be >= batch_size ({self.batch_size})"
            )
        return self


class PatternsConfig(BaseModel):
    """Pattern detection and merge tuning."""

    confidence_boost: float = Field(default=0.1, ge=0.0, le=1.0)
    explicit_boost: float = Field(default=0.2, ge=0.0, le=1.0)
    max_example_memories: int = Field(default=50, ge=1)
    recent_scan_limit: int = Field(default=50, ge=1)
    recent_scan_hours: int = Field(default=24, ge=1)


class InsightsConfig(BaseModel):
    """Thresholds for the six insight analyses."""

    best_practice_min_confidence: float = 0.7
    best_practice_min_frequency: int = 3
    best_practice_min_projects: int = 2
    best_practice_high_projects: int = 3

    anti_pattern_lookback_days: int = 90
    anti_pattern_bug_window_days: int = 7
    anti_pattern_min_bugs: int = 3
    anti_pattern_high_bugs: int = 5

    tech_lookback_days: int = 90
    tech_min_mentions: int = 3

    evolution_months: int = 6
    evolution_min_months: int = 2
    evolution_growth_factor: float = 1.5
    evolution_decline_factor: float = 0.5

    team_lookback_days: int = 30
    team_min_share: float = 0.2
    team_min_samples: int = 10

    quality_lookback_days: int = 90
    quality_min_memories: int = 20
    quality_bug_ratio: float = 0.15
    quality_lessons_ratio: float = 0.05

    @field_validator(
        "best_practice_min_confidence",
        "team_min_share",
        "quality_bug_ratio",
        "quality_lessons_ratio",
    )
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"Ratio must be between 0 and 1, got {v}")
        return v

    @model_validator(mode="after")
    def validate_evolution_factors(self):
        if self.evolution_decline_factor >= self.evolution_growth_factor:
            raise ValueError("evolution_decline_factor must be below evolution_growth_factor")
        return self


class EvolutionConfig(BaseModel):
    min_change: float = Field(default=0.1, ge=0.0, le=1.0)
    window_hours: int = Field(default=24, ge=1)


class EmbeddingsConfig(BaseModel):
    provider: str = "none"

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in {"none", "chroma"}:
            raise ValueError(f"Invalid embedding provider: {v}. Must be one of none, chroma")
        return v


VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    json_output: bool = Field(default=False, alias="json")

    model_config = {"populate_by_name": True}

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


class LearningConfig(BaseModel):
    """Main configuration model."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    patterns: PatternsConfig = Field(default_factory=PatternsConfig)
    insights: InsightsConfig = Field(default_factory=InsightsConfig)
    evolution: EvolutionConfig = Field(default_factory=EvolutionConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "LearningConfig":
        return cls.model_validate(data or {})

    def to_dict(self) -> dict:
        return self.model_dump(mode="python")
