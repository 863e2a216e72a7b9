"""External collaborators: the memory store and the embedding provider.

The pipeline depends only on the two protocols. ``SQLiteMemoryStore`` is a
reference adapter used by the CLI and tests; ``ChromaEmbeddingProvider`` wraps
ChromaDB's default embedding function.
"""

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, Sequence, runtime_checkable

import structlog

from cli.retry import embedding_retry
from db import wal_connect

from .models import MemoryEvent, MemoryType, from_iso, to_iso, utcnow

logger = structlog.get_logger().bind(source="collaborators")


@runtime_checkable
class MemoryStore(Protocol):
    def get_recent_memories(
        self,
        memory_types: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = 50,
    ) -> list[MemoryEvent]: ...

    def get_memory(self, memory_id: str) -> Optional[MemoryEvent]: ...

    def create_task_memory(
        self,
        project_ids: Sequence[str],
        title: str,
        description: str,
        metadata: Optional[dict] = None,
    ) -> list[str]: ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> Optional[list[float]]: ...


class SQLiteMemoryStore:
    """Minimal memories table in SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    memory_type TEXT NOT NULL DEFAULT 'general',
                    importance_score REAL NOT NULL DEFAULT 0.5,
                    tags TEXT NOT NULL DEFAULT '[]',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_memories_type_created
                ON memories(memory_type, created_at)
            """)

    def add_memory(
        self,
        project_id: str,
        content: str,
        memory_type: str = MemoryType.GENERAL,
        importance_score: float = 0.5,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict] = None,
        created_at: Optional[datetime] = None,
    ) -> MemoryEvent:
        memory = MemoryEvent(
            id=uuid.uuid4().hex,
            project_id=project_id,
            content=content,
            memory_type=str(memory_type),
            importance_score=importance_score,
            tags=list(tags or []),
            created_at=created_at or utcnow(),
        )
        with wal_connect(self.db_path) as conn:
            conn.execute(
                """INSERT INTO memories
                   (id, project_id, content, memory_type, importance_score, tags, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    memory.id,
                    memory.project_id,
                    memory.content,
                    memory.memory_type,
                    memory.importance_score,
                    json.dumps(memory.tags),
                    json.dumps(metadata or {}, default=str),
                    to_iso(memory.created_at),
                ),
            )
        return memory

    def get_memory(self, memory_id: str) -> Optional[MemoryEvent]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return self._to_event(row) if row else None

    def get_recent_memories(
        self,
        memory_types: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = 50,
    ) -> list[MemoryEvent]:
        """Newest first. ``limit=None`` returns every match."""
        query = "SELECT * FROM memories WHERE 1=1"
        params: list = []
        if memory_types:
            query += f" AND memory_type IN ({', '.join('?' for _ in memory_types)})"
            params.extend(str(t) for t in memory_types)
        if since:
            query += " AND created_at >= ?"
            params.append(to_iso(since))
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._to_event(r) for r in rows]

    def create_task_memory(
        self,
        project_ids: Sequence[str],
        title: str,
        description: str,
        metadata: Optional[dict] = None,
    ) -> list[str]:
        """Write one 'task' memory per project, skipping projects that already have this title."""
        created = []
        now = to_iso(utcnow())
        with wal_connect(self.db_path) as conn:
            for project_id in project_ids:
                exists = conn.execute(
                    """SELECT 1 FROM memories
                       WHERE project_id = ? AND memory_type = 'task'
                         AND json_extract(metadata, '$.title') = ?""",
                    (project_id, title),
                ).fetchone()
                if exists:
                    continue
                memory_id = uuid.uuid4().hex
                conn.execute(
                    """INSERT INTO memories
                       (id, project_id, content, memory_type, importance_score, tags, metadata, created_at)
                       VALUES (?, ?, ?, 'task', ?, '[]', ?, ?)""",
                    (
                        memory_id,
                        project_id,
                        f"{title}\n\n{description}",
                        0.7,
                        json.dumps(
                            {**(metadata or {}), "title": title, "source": "learning_pipeline"},
                            default=str,
                        ),
                        now,
                    ),
                )
                created.append(memory_id)
        if created:
            logger.info("memory.task_created", title=title, count=len(created))
        return created

    def task_memories(self, project_id: Optional[str] = None) -> list[dict]:
        query = "SELECT * FROM memories WHERE memory_type = 'task'"
        params: list = []
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(query + " ORDER BY created_at", params).fetchall()
        return [{**dict(r), "metadata": json.loads(r["metadata"] or "{}")} for r in rows]

    @staticmethod
    def _to_event(row) -> MemoryEvent:
        return MemoryEvent(
            id=row["id"],
            project_id=row["project_id"],
            content=row["content"],
            memory_type=row["memory_type"],
            importance_score=row["importance_score"],
            tags=json.loads(row["tags"] or "[]"),
            created_at=from_iso(row["created_at"]),
        )


class NullEmbeddingProvider:
    """No vectors. Patterns and insights are stored without embeddings."""

    def embed(self, text: str) -> Optional[list[float]]:
        return None


class ChromaEmbeddingProvider:
    """Embeddings from ChromaDB's default embedding function (all-MiniLM-L6-v2)."""

    def __init__(self):
        self._fn = None

    @property
    def _embedding_fn(self):
        """Lazy-load the embedding function; the model download is slow."""
        if self._fn is None:
            from chromadb.utils import embedding_functions

            self._fn = embedding_functions.DefaultEmbeddingFunction()
        return self._fn

    @embedding_retry(max_attempts=3)
    def _embed(self, text: str) -> list[float]:
        vectors = self._embedding_fn([text])
        return [float(x) for x in vectors[0]]

    def embed(self, text: str) -> Optional[list[float]]:
        if not text:
            return None
        try:
            return self._embed(text)
        except Exception as e:
            logger.warning("embedding.failed", error=str(e))
            return None


def make_embedding_provider(provider: str) -> EmbeddingProvider:
    if provider == "chroma":
        return ChromaEmbeddingProvider()
    return NullEmbeddingProvider()
