"""Shared test fixtures for the learning pipeline."""

import sys
from datetime import timedelta
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture(autouse=True)
def reset_metrics():
    from observability import metrics

    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "learning.db"


@pytest.fixture
def queue(db_path):
    from learning.queue import QueueStore

    return QueueStore(db_path, max_retries=3)


@pytest.fixture
def patterns(db_path):
    from learning.patterns import PatternStore

    return PatternStore(db_path)


@pytest.fixture
def insights(db_path):
    from learning.insights import InsightStore

    return InsightStore(db_path)


@pytest.fixture
def memories(db_path):
    from learning.collaborators import SQLiteMemoryStore

    return SQLiteMemoryStore(db_path)


@pytest.fixture
def config(tmp_path):
    """Config rooted in tmp_path with embeddings disabled."""
    from cli.config_models import LearningConfig

    return LearningConfig.from_dict(
        {
            "paths": {
                "db": str(tmp_path / "learning.db"),
                "chroma_dir": str(tmp_path / "chroma"),
                "log_file": str(tmp_path / "devmemory.log"),
            },
            "embeddings": {"provider": "none"},
        }
    )


@pytest.fixture
def now():
    from learning.models import utcnow

    return utcnow()


@pytest.fixture
def add_memory(memories, now):
    """Factory: add_memory(project, content, memory_type, days_ago=0)."""

    def _add(project_id="proj-a", content="notes", memory_type="general", days_ago=0, **kwargs):
        return memories.add_memory(
            project_id,
            content,
            memory_type=memory_type,
            created_at=now - timedelta(days=days_ago),
            **kwargs,
        )

    return _add
