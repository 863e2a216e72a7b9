"""Insight store: insights keyed by title, merged on regeneration."""

import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from db import immediate_transaction, wal_connect

from .models import Insight, InsightPriority, InsightType, from_iso, merge_insight, to_iso, utcnow

logger = structlog.get_logger().bind(source="insight_store")


def _row_to_insight(row: sqlite3.Row) -> Insight:
    return Insight(
        id=row["id"],
        type=InsightType(row["type"]),
        category=row["category"],
        title=row["title"],
        description=row["description"] or "",
        confidence_level=row["confidence_level"],
        evidence_strength=row["evidence_strength"],
        projects_involved=json.loads(row["projects_involved"] or "[]"),
        supporting_patterns=json.loads(row["supporting_patterns"] or "[]"),
        actionable=bool(row["actionable"]),
        priority=InsightPriority(row["priority"]),
        metadata=json.loads(row["metadata"] or "{}"),
        embedding=json.loads(row["embedding"]) if row["embedding"] else None,
        created_at=from_iso(row["created_at"]),
        last_reinforced=from_iso(row["last_reinforced"]),
    )


class InsightStore:
    """SQLite persistence for insights. A title is never silently overwritten."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS insights (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL UNIQUE,
                    type TEXT NOT NULL,
                    category TEXT NOT NULL,
                    description TEXT,
                    confidence_level REAL NOT NULL,
                    evidence_strength INTEGER NOT NULL DEFAULT 0,
                    projects_involved TEXT NOT NULL DEFAULT '[]',
                    supporting_patterns TEXT NOT NULL DEFAULT '[]',
                    actionable INTEGER NOT NULL DEFAULT 0,
                    priority TEXT NOT NULL DEFAULT 'low',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    embedding TEXT,
                    created_at TEXT NOT NULL,
                    last_reinforced TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_insights_type ON insights(type)")

    def upsert(self, candidate: Insight, now: Optional[datetime] = None) -> tuple[Insight, bool]:
        """Insert a new insight or merge into the row with the same title.

        Returns (stored insight, created).
        """
        now = now or utcnow()
        with immediate_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM insights WHERE title = ?", (candidate.title,)
            ).fetchone()
            if row is None:
                if not candidate.id:
                    candidate.id = uuid.uuid4().hex
                candidate.created_at = now
                candidate.last_reinforced = now
                conn.execute(
                    """INSERT INTO insights
                       (id, title, type, category, description, confidence_level,
                        evidence_strength, projects_involved, supporting_patterns,
                        actionable, priority, metadata, embedding, created_at, last_reinforced)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        candidate.id,
                        candidate.title,
                        str(candidate.type),
                        candidate.category,
                        candidate.description,
                        candidate.confidence_level,
                        candidate.evidence_strength,
                        json.dumps(candidate.projects_involved),
                        json.dumps(candidate.supporting_patterns),
                        int(candidate.actionable),
                        str(candidate.priority),
                        json.dumps(candidate.metadata, default=str),
                        json.dumps(candidate.embedding) if candidate.embedding else None,
                        to_iso(now),
                        to_iso(now),
                    ),
                )
                return candidate, True

            merged = merge_insight(_row_to_insight(row), candidate, now=now)
            conn.execute(
                """UPDATE insights
                   SET description = ?, confidence_level = ?, evidence_strength = ?,
                       projects_involved = ?, supporting_patterns = ?, actionable = ?,
                       priority = ?, metadata = ?, last_reinforced = ?
                   WHERE id = ?""",
                (
                    merged.description,
                    merged.confidence_level,
                    merged.evidence_strength,
                    json.dumps(merged.projects_involved),
                    json.dumps(merged.supporting_patterns),
                    int(merged.actionable),
                    str(merged.priority),
                    json.dumps(merged.metadata, default=str),
                    to_iso(merged.last_reinforced),
                    merged.id,
                ),
            )
            return merged, False

    def get(self, insight_id: str) -> Optional[Insight]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute("SELECT * FROM insights WHERE id = ?", (insight_id,)).fetchone()
        return _row_to_insight(row) if row else None

    def get_by_title(self, title: str) -> Optional[Insight]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute("SELECT * FROM insights WHERE title = ?", (title,)).fetchone()
        return _row_to_insight(row) if row else None

    def list_insights(
        self,
        insight_type: Optional[InsightType | str] = None,
        actionable_only: bool = False,
        limit: int = 50,
    ) -> list[Insight]:
        query = "SELECT * FROM insights WHERE 1=1"
        params: list = []
        if insight_type:
            query += " AND type = ?"
            params.append(str(insight_type))
        if actionable_only:
            query += " AND actionable = 1"
        query += " ORDER BY last_reinforced DESC, confidence_level DESC LIMIT ?"
        params.append(limit)
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_insight(r) for r in rows]

    def counts_by_type(self) -> dict[str, int]:
        with wal_connect(self.db_path) as conn:
            rows = conn.execute("SELECT type, COUNT(*) FROM insights GROUP BY type").fetchall()
        return dict(rows)
