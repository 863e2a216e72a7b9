"""Pattern store: patterns keyed by signature, their occurrences and evolution records."""

import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from db import immediate_transaction, wal_connect

from .models import (
    DetectionMethod,
    MemoryEvent,
    Pattern,
    PatternCandidate,
    PatternOccurrence,
    from_iso,
    merge_pattern,
    new_pattern,
    to_iso,
    utcnow,
)

logger = structlog.get_logger().bind(source="pattern_store")

# Outcomes of PatternStore.record_detection
CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"


def _row_to_pattern(row: sqlite3.Row) -> Pattern:
    return Pattern(
        id=row["id"],
        category=row["category"],
        type=row["type"],
        name=row["name"],
        signature=row["signature"],
        description=row["description"] or "",
        confidence_score=row["confidence_score"],
        frequency_count=row["frequency_count"],
        projects_seen=json.loads(row["projects_seen"] or "[]"),
        example_memories=json.loads(row["example_memories"] or "[]"),
        detection_method=DetectionMethod(row["detection_method"]),
        languages=json.loads(row["languages"] or "[]"),
        example=row["example"] or "",
        metadata=json.loads(row["metadata"] or "{}"),
        embedding=json.loads(row["embedding"]) if row["embedding"] else None,
        created_at=from_iso(row["created_at"]),
        last_reinforced=from_iso(row["last_reinforced"]),
    )


def _row_to_occurrence(row: sqlite3.Row) -> PatternOccurrence:
    return PatternOccurrence(
        pattern_id=row["pattern_id"],
        memory_id=row["memory_id"],
        project_id=row["project_id"],
        confidence=row["confidence"],
        context=row["context"] or "",
        detected_at=from_iso(row["detected_at"]),
    )


class PatternStore:
    """SQLite persistence for patterns. All writes are monotonic merges."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS patterns (
                    id TEXT PRIMARY KEY,
                    signature TEXT NOT NULL UNIQUE,
                    category TEXT NOT NULL,
                    type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    confidence_score REAL NOT NULL,
                    frequency_count INTEGER NOT NULL DEFAULT 1,
                    projects_seen TEXT NOT NULL DEFAULT '[]',
                    example_memories TEXT NOT NULL DEFAULT '[]',
                    detection_method TEXT NOT NULL,
                    languages TEXT NOT NULL DEFAULT '[]',
                    example TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    embedding TEXT,
                    created_at TEXT NOT NULL,
                    last_reinforced TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pattern_occurrences (
                    pattern_id TEXT NOT NULL,
                    memory_id TEXT NOT NULL,
                    project_id TEXT,
                    confidence REAL,
                    context TEXT,
                    detected_at TEXT NOT NULL,
                    PRIMARY KEY (pattern_id, memory_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_occurrences_project
                ON pattern_occurrences(project_id, detected_at)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pattern_snapshots (
                    pattern_id TEXT PRIMARY KEY,
                    confidence_score REAL NOT NULL,
                    frequency_count INTEGER NOT NULL,
                    taken_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS evolution_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subject_type TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    change_type TEXT NOT NULL,
                    previous_state TEXT NOT NULL,
                    new_state TEXT NOT NULL,
                    change_magnitude REAL NOT NULL,
                    recorded_at TEXT NOT NULL
                )
            """)

    # --- reads ---

    def get(self, pattern_id: str) -> Optional[Pattern]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute("SELECT * FROM patterns WHERE id = ?", (pattern_id,)).fetchone()
        return _row_to_pattern(row) if row else None

    def get_by_signature(self, signature: str) -> Optional[Pattern]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute(
                "SELECT * FROM patterns WHERE signature = ?", (signature,)
            ).fetchone()
        return _row_to_pattern(row) if row else None

    def list_patterns(
        self,
        category: Optional[str] = None,
        min_confidence: float = 0.0,
        min_frequency: int = 1,
        limit: int = 100,
    ) -> list[Pattern]:
        query = "SELECT * FROM patterns WHERE confidence_score >= ? AND frequency_count >= ?"
        params: list = [min_confidence, min_frequency]
        if category:
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY confidence_score DESC, frequency_count DESC LIMIT ?"
        params.append(limit)
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_pattern(r) for r in rows]

    def reinforced_since(self, since: datetime) -> list[Pattern]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(
                "SELECT * FROM patterns WHERE last_reinforced >= ? ORDER BY last_reinforced DESC",
                (to_iso(since),),
            ).fetchall()
        return [_row_to_pattern(r) for r in rows]

    def occurrences(
        self,
        pattern_id: Optional[str] = None,
        since: Optional[datetime] = None,
        project_id: Optional[str] = None,
    ) -> list[PatternOccurrence]:
        query = "SELECT * FROM pattern_occurrences WHERE 1=1"
        params: list = []
        if pattern_id:
            query += " AND pattern_id = ?"
            params.append(pattern_id)
        if since:
            query += " AND detected_at >= ?"
            params.append(to_iso(since))
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        query += " ORDER BY detected_at ASC"
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_occurrence(r) for r in rows]

    def monthly_occurrence_counts(self, since: datetime) -> dict[str, dict[str, int]]:
        """pattern_id -> {"YYYY-MM": occurrences} for occurrences since the cutoff."""
        with wal_connect(self.db_path) as conn:
            rows = conn.execute(
                """SELECT pattern_id, substr(detected_at, 1, 7) AS month, COUNT(*)
                   FROM pattern_occurrences
                   WHERE detected_at >= ?
                   GROUP BY pattern_id, month
                   ORDER BY pattern_id, month""",
                (to_iso(since),),
            ).fetchall()
        out: dict[str, dict[str, int]] = {}
        for pattern_id, month, count in rows:
            out.setdefault(pattern_id, {})[month] = count
        return out

    def pattern_ids_for_project(self, project_id: str, since: datetime) -> list[str]:
        with wal_connect(self.db_path) as conn:
            rows = conn.execute(
                """SELECT DISTINCT pattern_id FROM pattern_occurrences
                   WHERE project_id = ? AND detected_at >= ?""",
                (project_id, to_iso(since)),
            ).fetchall()
        return [r[0] for r in rows]

    def stats(self) -> dict:
        with wal_connect(self.db_path) as conn:
            total, avg_conf = conn.execute(
                "SELECT COUNT(*), AVG(confidence_score) FROM patterns"
            ).fetchone()
            by_category = dict(
                conn.execute("SELECT category, COUNT(*) FROM patterns GROUP BY category").fetchall()
            )
            projects = conn.execute(
                "SELECT COUNT(DISTINCT project_id) FROM pattern_occurrences"
            ).fetchone()[0]
        return {
            "total": total,
            "avg_confidence": round(avg_conf, 3) if avg_conf is not None else 0.0,
            "unique_projects": projects,
            "by_category": by_category,
        }

    # --- writes ---

    def record_detection(
        self,
        candidate: PatternCandidate,
        memory: MemoryEvent,
        boost: float = 0.1,
        explicit_boost: float = 0.2,
        max_examples: int = 50,
        embedding: Optional[list[float]] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Pattern, str]:
        """Create or reinforce the pattern for candidate.signature.

        The occurrence (pattern_id, memory_id) is recorded once; seeing the same
        memory again for the same signature leaves the pattern untouched, so
        retried tasks do not inflate frequency.

        Returns (pattern, CREATED | UPDATED | UNCHANGED).
        """
        now = now or utcnow()
        with immediate_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM patterns WHERE signature = ?", (candidate.signature,)
            ).fetchone()
            if row is None:
                pattern = new_pattern(uuid.uuid4().hex, candidate, memory.id, memory.project_id, now=now)
                pattern.embedding = embedding
                self._insert_pattern(conn, pattern)
                outcome = CREATED
            else:
                existing = _row_to_pattern(row)
                seen = conn.execute(
                    "SELECT 1 FROM pattern_occurrences WHERE pattern_id = ? AND memory_id = ?",
                    (existing.id, memory.id),
                ).fetchone()
                if seen:
                    return existing, UNCHANGED
                pattern = merge_pattern(
                    existing,
                    candidate,
                    memory.id,
                    memory.project_id,
                    boost=boost,
                    explicit_boost=explicit_boost,
                    max_examples=max_examples,
                    now=now,
                )
                self._update_pattern(conn, pattern)
                outcome = UPDATED
            conn.execute(
                """INSERT OR IGNORE INTO pattern_occurrences
                   (pattern_id, memory_id, project_id, confidence, context, detected_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    pattern.id,
                    memory.id,
                    memory.project_id,
                    candidate.confidence,
                    candidate.context[:500],
                    to_iso(memory.created_at or now),
                ),
            )
        logger.debug("pattern.recorded", signature=pattern.signature, outcome=outcome)
        return pattern, outcome

    def _insert_pattern(self, conn: sqlite3.Connection, p: Pattern):
        conn.execute(
            """INSERT INTO patterns
               (id, signature, category, type, name, description, confidence_score,
                frequency_count, projects_seen, example_memories, detection_method,
                languages, example, metadata, embedding, created_at, last_reinforced)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                p.id,
                p.signature,
                p.category,
                p.type,
                p.name,
                p.description,
                p.confidence_score,
                p.frequency_count,
                json.dumps(p.projects_seen),
                json.dumps(p.example_memories),
                str(p.detection_method),
                json.dumps(p.languages),
                p.example,
                json.dumps(p.metadata, default=str),
                json.dumps(p.embedding) if p.embedding else None,
                to_iso(p.created_at),
                to_iso(p.last_reinforced),
            ),
        )

    def _update_pattern(self, conn: sqlite3.Connection, p: Pattern):
        conn.execute(
            """UPDATE patterns
               SET confidence_score = ?, frequency_count = ?, projects_seen = ?,
                   example_memories = ?, detection_method = ?, languages = ?,
                   metadata = ?, last_reinforced = ?
               WHERE id = ?""",
            (
                p.confidence_score,
                p.frequency_count,
                json.dumps(p.projects_seen),
                json.dumps(p.example_memories),
                str(p.detection_method),
                json.dumps(p.languages),
                json.dumps(p.metadata, default=str),
                to_iso(p.last_reinforced),
                p.id,
            ),
        )

    # --- evolution snapshots ---

    def get_snapshot(self, pattern_id: str) -> Optional[dict]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute(
                "SELECT * FROM pattern_snapshots WHERE pattern_id = ?", (pattern_id,)
            ).fetchone()
        return dict(row) if row else None

    def save_snapshot(self, pattern: Pattern, now: Optional[datetime] = None):
        with wal_connect(self.db_path) as conn:
            conn.execute(
                """INSERT INTO pattern_snapshots (pattern_id, confidence_score, frequency_count, taken_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(pattern_id) DO UPDATE SET
                       confidence_score = excluded.confidence_score,
                       frequency_count = excluded.frequency_count,
                       taken_at = excluded.taken_at""",
                (pattern.id, pattern.confidence_score, pattern.frequency_count, to_iso(now or utcnow())),
            )

    def record_evolution(
        self,
        subject_type: str,
        subject_id: str,
        change_type: str,
        previous_state: dict,
        new_state: dict,
        change_magnitude: float,
        now: Optional[datetime] = None,
    ) -> None:
        with wal_connect(self.db_path) as conn:
            conn.execute(
                """INSERT INTO evolution_records
                   (subject_type, subject_id, change_type, previous_state, new_state,
                    change_magnitude, recorded_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    subject_type,
                    subject_id,
                    change_type,
                    json.dumps(previous_state),
                    json.dumps(new_state),
                    change_magnitude,
                    to_iso(now or utcnow()),
                ),
            )

    def evolution_records(self, subject_id: Optional[str] = None, limit: int = 50) -> list[dict]:
        query = "SELECT * FROM evolution_records"
        params: list = []
        if subject_id:
            query += " WHERE subject_id = ?"
            params.append(subject_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                **dict(r),
                "previous_state": json.loads(r["previous_state"]),
                "new_state": json.loads(r["new_state"]),
            }
            for r in rows
        ]
