"""Pattern-to-outcome correlation, run by milestone_analysis tasks."""

import hashlib
import json
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import structlog

from db import wal_connect

from .models import InsightType, from_iso, to_iso, utcnow
from .patterns import PatternStore

logger = structlog.get_logger().bind(source="outcomes")

SUCCESS = "success"
FAILURE = "failure"
BUG = "bug"
PERFORMANCE_GAIN = "performance_gain"

EVENT_OUTCOMES = {
    "project_completion": SUCCESS,
    "deployment_success": SUCCESS,
    "refactor_completion": SUCCESS,
    "bug_report": BUG,
    "major_bug": FAILURE,
    "test_failure": FAILURE,
    "security_issue": FAILURE,
    "performance_improvement": PERFORMANCE_GAIN,
}

INSIGHT_OUTCOMES = {
    InsightType.ANTI_PATTERN: BUG,
    InsightType.QUALITY_METRIC: BUG,
    InsightType.BEST_PRACTICE: SUCCESS,
}

POSITIVE_OUTCOMES = frozenset({SUCCESS, PERFORMANCE_GAIN})
NEGATIVE_OUTCOMES = frozenset({FAILURE, BUG})

_RECOMMENDATIONS = {
    "strong_positive": "Strong positive correlation with success. Consider promoting its use.",
    "strong_negative": "Strong negative correlation with success. Review and consider refactoring.",
    "moderate_positive": "Moderate positive correlation. Generally good; monitor for improvements.",
    "moderate_negative": "Moderate negative correlation. Consider reviewing its implementation.",
    "neutral": "No clear correlation with success or failure. Context-dependent.",
}


def outcome_for(payload: dict) -> Optional[str]:
    """Outcome type implied by a milestone payload, or None."""
    event_type = payload.get("event_type")
    if event_type:
        return EVENT_OUTCOMES.get(event_type)
    insight_type = payload.get("insight_type")
    if insight_type:
        try:
            return INSIGHT_OUTCOMES.get(InsightType(insight_type))
        except ValueError:
            return None
    return None


def outcome_source(payload: dict) -> str:
    """Stable id for the event behind a payload, so a replayed task records nothing new."""
    if payload.get("event_id"):
        return str(payload["event_id"])
    if payload.get("insight_id"):
        return f"insight:{payload['insight_id']}"
    body = {k: v for k, v in payload.items() if k != "trigger"}
    digest = hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode()).hexdigest()
    return f"payload:{digest[:16]}"


def classify_correlation(success_rate: float, sample_size: int) -> tuple[str, float]:
    """(correlation_strength, confidence) for a success rate over sample_size outcomes."""
    if success_rate >= 0.8:
        return "strong_positive", min(0.9, 0.6 + sample_size * 0.1)
    if success_rate <= 0.2:
        return "strong_negative", min(0.9, 0.6 + sample_size * 0.1)
    if success_rate >= 0.6:
        return "moderate_positive", min(0.7, 0.5 + sample_size * 0.05)
    if success_rate <= 0.4:
        return "moderate_negative", min(0.7, 0.5 + sample_size * 0.05)
    return "neutral", 0.5


class OutcomeStore:
    """pattern_outcomes (one row per pattern, project and source) and pattern_correlations (one row per pattern)."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pattern_outcomes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT NOT NULL,
                    pattern_id TEXT NOT NULL,
                    outcome_type TEXT NOT NULL,
                    value REAL,
                    description TEXT,
                    metrics TEXT NOT NULL DEFAULT '{}',
                    recorded_at TEXT NOT NULL,
                    source_id TEXT
                )
            """)
            # Column for databases created before outcome sources were tracked
            try:
                conn.execute("ALTER TABLE pattern_outcomes ADD COLUMN source_id TEXT")
            except sqlite3.OperationalError:
                pass  # Column already exists
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_outcomes_source
                ON pattern_outcomes(pattern_id, project_id, source_id)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_outcomes_pattern
                ON pattern_outcomes(pattern_id, recorded_at)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pattern_correlations (
                    pattern_id TEXT PRIMARY KEY,
                    correlation_strength TEXT NOT NULL,
                    confidence_score REAL NOT NULL,
                    success_rate REAL NOT NULL,
                    sample_size INTEGER NOT NULL,
                    analysis_method TEXT NOT NULL,
                    summary TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    analyzed_at TEXT NOT NULL
                )
            """)

    def record_outcome(
        self,
        project_id: str,
        pattern_id: str,
        outcome_type: str,
        value: Optional[float] = None,
        description: Optional[str] = None,
        metrics: Optional[dict] = None,
        source_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Append one outcome. Returns False when this source already recorded it."""
        with wal_connect(self.db_path) as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO pattern_outcomes
                   (project_id, pattern_id, outcome_type, value, description, metrics,
                    recorded_at, source_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    project_id,
                    pattern_id,
                    outcome_type,
                    value,
                    description,
                    json.dumps(metrics or {}, default=str),
                    to_iso(now or utcnow()),
                    source_id,
                ),
            )
        return cur.rowcount > 0

    def outcomes(self, pattern_ids: list[str], since: datetime) -> list[dict]:
        if not pattern_ids:
            return []
        placeholders = ", ".join("?" for _ in pattern_ids)
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(
                f"""SELECT * FROM pattern_outcomes
                    WHERE pattern_id IN ({placeholders}) AND recorded_at >= ?
                    ORDER BY recorded_at""",
                (*pattern_ids, to_iso(since)),
            ).fetchall()
        return [dict(r) for r in rows]

    def upsert_correlation(self, correlation: dict, now: Optional[datetime] = None) -> None:
        with wal_connect(self.db_path) as conn:
            conn.execute(
                """INSERT INTO pattern_correlations
                   (pattern_id, correlation_strength, confidence_score, success_rate,
                    sample_size, analysis_method, summary, metadata, analyzed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(pattern_id) DO UPDATE SET
                       correlation_strength = excluded.correlation_strength,
                       confidence_score = excluded.confidence_score,
                       success_rate = excluded.success_rate,
                       sample_size = excluded.sample_size,
                       analysis_method = excluded.analysis_method,
                       summary = excluded.summary,
                       metadata = excluded.metadata,
                       analyzed_at = excluded.analyzed_at""",
                (
                    correlation["pattern_id"],
                    correlation["correlation_strength"],
                    correlation["confidence_score"],
                    correlation["success_rate"],
                    correlation["sample_size"],
                    correlation.get("analysis_method", "rule_based"),
                    correlation.get("summary"),
                    json.dumps(correlation.get("metadata", {}), default=str),
                    to_iso(now or utcnow()),
                ),
            )

    def get_correlation(self, pattern_id: str) -> Optional[dict]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute(
                "SELECT * FROM pattern_correlations WHERE pattern_id = ?", (pattern_id,)
            ).fetchone()
        if not row:
            return None
        return {
            **dict(row),
            "metadata": json.loads(row["metadata"] or "{}"),
            "analyzed_at": from_iso(row["analyzed_at"]),
        }


class OutcomeAnalyzer:
    """Handles milestone_analysis tasks."""

    def __init__(
        self,
        store: OutcomeStore,
        patterns: PatternStore,
        pattern_window_days: int = 30,
        outcome_window_days: int = 90,
        min_outcomes: int = 2,
    ):
        self.store = store
        self.patterns = patterns
        self.pattern_window_days = pattern_window_days
        self.outcome_window_days = outcome_window_days
        self.min_outcomes = min_outcomes

    def analyze_milestone(self, payload: dict, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        projects = list(payload.get("projects") or [])
        if payload.get("project_id") and payload["project_id"] not in projects:
            projects.append(payload["project_id"])

        outcome_type = outcome_for(payload)
        source_id = outcome_source(payload)
        touched: set[str] = set()
        recorded = 0
        for project_id in projects:
            pattern_ids = self.patterns.pattern_ids_for_project(
                project_id, now - timedelta(days=self.pattern_window_days)
            )
            touched.update(pattern_ids)
            if outcome_type is None:
                continue
            for pattern_id in pattern_ids:
                inserted = self.store.record_outcome(
                    project_id,
                    pattern_id,
                    outcome_type,
                    value=payload.get("value"),
                    description=payload.get("description"),
                    metrics={
                        k: payload[k]
                        for k in ("event_type", "insight_id", "insight_type")
                        if payload.get(k)
                    },
                    source_id=source_id,
                    now=now,
                )
                recorded += int(inserted)
        touched.update(payload.get("patterns") or [])

        correlations = self.correlate(sorted(touched), now=now)
        logger.info(
            "outcomes.analyzed",
            projects=len(projects),
            outcome_type=outcome_type,
            outcomes_recorded=recorded,
            correlations=len(correlations),
        )
        return {
            "projects_analyzed": len(projects),
            "outcome_type": outcome_type,
            "outcomes_recorded": recorded,
            "correlations_updated": len(correlations),
            "correlations": {c["pattern_id"]: c["correlation_strength"] for c in correlations},
        }

    def correlate(self, pattern_ids: list[str], now: Optional[datetime] = None) -> list[dict]:
        """Rule-based correlation for each pattern with enough outcomes."""
        now = now or utcnow()
        by_pattern: dict[str, list[dict]] = {}
        for row in self.store.outcomes(pattern_ids, now - timedelta(days=self.outcome_window_days)):
            by_pattern.setdefault(row["pattern_id"], []).append(row)

        correlations = []
        for pattern_id, rows in by_pattern.items():
            if len(rows) < self.min_outcomes:
                continue
            successes = sum(1 for r in rows if r["outcome_type"] in POSITIVE_OUTCOMES)
            failures = sum(1 for r in rows if r["outcome_type"] in NEGATIVE_OUTCOMES)
            if successes + failures == 0:
                continue
            rate = successes / (successes + failures)
            strength, confidence = classify_correlation(rate, len(rows))
            correlation = {
                "pattern_id": pattern_id,
                "correlation_strength": strength,
                "confidence_score": round(confidence, 3),
                "success_rate": round(rate, 3),
                "sample_size": len(rows),
                "analysis_method": "rule_based",
                "summary": f"Success rate {rate:.0%} over {len(rows)} outcomes. {_RECOMMENDATIONS[strength]}",
                "metadata": {
                    "success_outcomes": successes,
                    "failure_outcomes": failures,
                    "projects_analyzed": len({r["project_id"] for r in rows}),
                },
            }
            self.store.upsert_correlation(correlation, now=now)
            correlations.append(correlation)
        return correlations
