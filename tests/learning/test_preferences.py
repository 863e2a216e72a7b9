"""Tests for technology preference extraction and analysis."""

import pytest

from learning.preferences import (
    PreferenceAnalyzer,
    PreferenceStore,
    categorize_technology,
    extract_technologies,
    mention_sentiment,
    preference_strength,
)


@pytest.fixture
def store(db_path):
    return PreferenceStore(db_path)


@pytest.fixture
def analyzer(store, memories):
    return PreferenceAnalyzer(store, memories)


class TestExtraction:
    @pytest.mark.parametrize(
        "content,expected",
        [
            ("API in Python on Postgres", ["Python", "PostgreSQL"]),
            ("frontend in javascript", []),
            ("rewrote it in golang", ["Go"]),
            ("let's go shopping", []),
            ("deployed on k8s in google cloud", ["Kubernetes", "GCP"]),
        ],
    )
    def test_extract(self, content, expected):
        assert extract_technologies(content) == expected

    def test_categories(self):
        assert categorize_technology("Redis") == "cache"
        assert categorize_technology("Elixir") == "other"

    def test_sentiment_near_mention(self):
        assert mention_sentiment("We love Rust for this", "Rust") == 1
        assert mention_sentiment("Docker builds are slow", "Docker") == -1
        assert mention_sentiment("Uses Redis", "Redis") == 0
        assert mention_sentiment("nothing here", "Redis") == 0

    def test_strength_bounds(self):
        assert preference_strength(0, 0, 0) == 0.0
        assert preference_strength(4, 4, 0) == 1.0
        assert preference_strength(4, 0, 4) == 0.0
        assert preference_strength(4, 0, 0) == 0.5


class TestAnalyzer:
    def test_min_mentions(self, analyzer, store, add_memory):
        for i in range(3):
            add_memory(f"p{i}", "We love python here", "code")
        add_memory("p0", "A redis cache", "code")

        result = analyzer.analyze_preferences({"trigger": "scheduled"})
        assert result["technologies_analyzed"] == 2
        assert result["preferences_updated"] == 1
        assert result["memories_processed"] == 4

        [pref] = store.list_preferences()
        assert pref["technology"] == "Python"
        assert pref["category"] == "programming_language"
        assert pref["projects_count"] == 3
        assert pref["preference_strength"] == pytest.approx(1.0)

    def test_old_memories_ignored(self, analyzer, add_memory):
        for _ in range(3):
            add_memory(content="python service", memory_type="code", days_ago=45)
        assert analyzer.analyze_preferences({})["technologies_analyzed"] == 0

    def test_upsert_averages_strength(self, store):
        store.upsert("database", "MySQL", 1.0, 2)
        store.upsert("database", "MySQL", 0.5, 1)
        [pref] = store.list_preferences()
        assert pref["preference_strength"] == pytest.approx(0.75)
        assert pref["projects_count"] == 2
