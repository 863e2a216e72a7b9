"""Technology preference analysis and the tech_preferences table."""

import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import structlog

from db import wal_connect

from .collaborators import MemoryStore
from .models import from_iso, to_iso, utcnow

logger = structlog.get_logger().bind(source="preferences")

# Canonical name -> regex. Order is display order.
TECHNOLOGIES: dict[str, str] = {
    "React": r"\breact\b",
    "Vue": r"\bvue(?:\.?js)?\b",
    "Angular": r"\bangular\b",
    "Node.js": r"\bnode(?:\.?js)?\b",
    "Python": r"\bpython\b",
    "Java": r"\bjava\b",
    "Go": r"\bgolang\b|\bgo\s+(?:service|module|code|routine)s?\b",
    "Rust": r"\brust\b",
    "PostgreSQL": r"\bpostgres(?:ql)?\b",
    "MySQL": r"\bmysql\b",
    "MongoDB": r"\bmongo(?:db)?\b",
    "Redis": r"\bredis\b",
    "Docker": r"\bdocker\b",
    "Kubernetes": r"\bkubernetes\b|\bk8s\b",
    "AWS": r"\baws\b|\bamazon web services\b",
    "Azure": r"\bazure\b",
    "GCP": r"\bgcp\b|\bgoogle cloud\b",
}

_TECH_RES = {name: re.compile(pattern, re.IGNORECASE) for name, pattern in TECHNOLOGIES.items()}

TECH_CATEGORIES = {
    "React": "frontend_framework",
    "Vue": "frontend_framework",
    "Angular": "frontend_framework",
    "Node.js": "backend_runtime",
    "Python": "programming_language",
    "Java": "programming_language",
    "Go": "programming_language",
    "Rust": "programming_language",
    "PostgreSQL": "database",
    "MySQL": "database",
    "MongoDB": "database",
    "Redis": "cache",
    "Docker": "containerization",
    "Kubernetes": "orchestration",
    "AWS": "cloud_platform",
    "Azure": "cloud_platform",
    "GCP": "cloud_platform",
}

POSITIVE_WORDS = ("love", "great", "excellent", "perfect", "amazing", "works well", "prefer")
NEGATIVE_WORDS = ("hate", "terrible", "awful", "broken", "issues", "problems", "slow")
SENTIMENT_WINDOW = 50


def extract_technologies(content: str) -> list[str]:
    """Canonical names of every known technology mentioned in content."""
    return [name for name, rx in _TECH_RES.items() if rx.search(content)]


def categorize_technology(tech: str) -> str:
    return TECH_CATEGORIES.get(tech, "other")


def mention_sentiment(content: str, tech: str) -> int:
    """+1 positive, -1 negative, 0 neutral, judged from words near the first mention."""
    m = _TECH_RES[tech].search(content)
    if not m:
        return 0
    window = content[max(0, m.start() - SENTIMENT_WINDOW) : m.start() + SENTIMENT_WINDOW].lower()
    if any(w in window for w in POSITIVE_WORDS):
        return 1
    if any(w in window for w in NEGATIVE_WORDS):
        return -1
    return 0


def preference_strength(count: int, positive: int, negative: int) -> float:
    if count <= 0:
        return 0.0
    return max(0.0, min((positive - negative + count) / (2 * count), 1.0))


class PreferenceStore:
    """tech_preferences rows keyed by (category, technology)."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tech_preferences (
                    category TEXT NOT NULL,
                    technology TEXT NOT NULL,
                    preference_strength REAL NOT NULL,
                    projects_count INTEGER NOT NULL DEFAULT 0,
                    last_used TEXT NOT NULL,
                    PRIMARY KEY (category, technology)
                )
            """)

    def upsert(
        self,
        category: str,
        technology: str,
        strength: float,
        projects_count: int,
        now: Optional[datetime] = None,
    ) -> None:
        """Strength is averaged with the stored value; project count keeps the max."""
        with wal_connect(self.db_path) as conn:
            conn.execute(
                """INSERT INTO tech_preferences
                   (category, technology, preference_strength, projects_count, last_used)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(category, technology) DO UPDATE SET
                       preference_strength = (preference_strength + excluded.preference_strength) / 2,
                       projects_count = MAX(projects_count, excluded.projects_count),
                       last_used = excluded.last_used""",
                (category, technology, strength, projects_count, to_iso(now or utcnow())),
            )

    def list_preferences(self, limit: int = 50) -> list[dict]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(
                """SELECT * FROM tech_preferences
                   ORDER BY preference_strength DESC, projects_count DESC LIMIT ?""",
                (limit,),
            ).fetchall()
        return [{**dict(r), "last_used": from_iso(r["last_used"])} for r in rows]


class PreferenceAnalyzer:
    """Handles preference_analysis tasks."""

    def __init__(
        self,
        store: PreferenceStore,
        memories: MemoryStore,
        lookback_days: int = 30,
        memory_limit: int = 100,
        min_mentions: int = 3,
    ):
        self.store = store
        self.memories = memories
        self.lookback_days = lookback_days
        self.memory_limit = memory_limit
        self.min_mentions = min_mentions

    def analyze_preferences(self, payload: dict, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        recent = self.memories.get_recent_memories(
            since=now - timedelta(days=self.lookback_days), limit=None
        )
        tech_memories = [m for m in recent if extract_technologies(m.content)][: self.memory_limit]

        mentions: dict[str, dict] = {}
        for memory in tech_memories:
            for tech in extract_technologies(memory.content):
                entry = mentions.setdefault(
                    tech, {"count": 0, "projects": set(), "positive": 0, "negative": 0}
                )
                entry["count"] += 1
                entry["projects"].add(memory.project_id)
                sentiment = mention_sentiment(memory.content, tech)
                if sentiment > 0:
                    entry["positive"] += 1
                elif sentiment < 0:
                    entry["negative"] += 1

        updated = 0
        for tech, data in mentions.items():
            if data["count"] < self.min_mentions:
                continue
            self.store.upsert(
                categorize_technology(tech),
                tech,
                preference_strength(data["count"], data["positive"], data["negative"]),
                len(data["projects"]),
                now=now,
            )
            updated += 1

        logger.info(
            "preferences.analyzed",
            technologies=len(mentions),
            updated=updated,
            memories=len(tech_memories),
        )
        return {
            "technologies_analyzed": len(mentions),
            "preferences_updated": updated,
            "memories_processed": len(tech_memories),
            "trigger": payload.get("trigger", "scheduled"),
        }
