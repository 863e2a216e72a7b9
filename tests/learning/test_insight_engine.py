"""Tests for InsightEngine: the six analyses, failure isolation, feedback loop."""

import sqlite3
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from cli.config_models import InsightsConfig
from learning.insight_engine import InsightEngine, month_start
from learning.matchers import extract_candidates
from learning.models import (
    DetectionMethod,
    InsightPriority,
    InsightType,
    MemoryEvent,
    PatternCandidate,
    TaskType,
)
from learning.pattern_engine import PatternEngine


@pytest.fixture
def engine(insights, patterns, memories, queue):
    return InsightEngine(insights, patterns, memories, queue)


@pytest.fixture
def detector(patterns, memories):
    return PatternEngine(patterns, memories)


def _caching(confidence=0.7):
    return PatternCandidate(
        category="performance",
        type="caching",
        name="Caching Pattern",
        signature="caching_pattern",
        description="Using cache for performance optimization",
        confidence=confidence,
        detection_method=DetectionMethod.KEYWORD,
    )


def _milestone_tasks(queue, insight_type=None):
    tasks = queue.list_tasks(task_type=TaskType.MILESTONE_ANALYSIS)
    if insight_type:
        tasks = [t for t in tasks if t.payload["insight_type"] == insight_type]
    return tasks


class TestAntiPatternEndToEnd:
    def test_god_object_bugs_become_high_priority_insight(
        self, engine, detector, queue, memories, insights, add_memory
    ):
        for i in range(5):
            m = add_memory(
                "proj-a", f"Bug {i}: UserService is a god object again", "bug", days_ago=i
            )
            detector.detect_patterns({"memory_id": m.id})

        result = engine.generate_insights({"trigger": "scheduled"})

        title = "Anti-pattern: god object - Potential Issue"
        insight = insights.get_by_title(title)
        assert insight is not None
        assert insight.type == InsightType.ANTI_PATTERN
        assert insight.evidence_strength == 5
        assert insight.priority == InsightPriority.HIGH
        assert insight.projects_involved == ["proj-a"]
        assert title in result["insights"]

        [task] = _milestone_tasks(queue, "anti_pattern")
        assert task.priority == 2
        assert task.payload["trigger"] == "insight_feedback"
        assert task.payload["insight_id"] == insight.id

        titles = [t["metadata"]["title"] for t in memories.task_memories("proj-a")]
        assert f"Review and fix {title}" in titles

    def test_bugs_outside_window_ignored(self, engine, patterns, add_memory, now):
        m = add_memory("proj-a", "Order module is a god object", "bug", days_ago=30)
        [cand] = extract_candidates(m)
        patterns.record_detection(cand, m)
        for i in range(3):
            add_memory("proj-a", f"Unrelated crash {i}", "bug", days_ago=i)
        assert engine.anti_pattern_insights(now) == []

    def test_other_project_bugs_ignored(self, engine, patterns, add_memory, now):
        m = add_memory("proj-a", "Added a redis cache", "code")
        patterns.record_detection(_caching(), m)
        for i in range(4):
            add_memory("proj-b", f"Crash {i}", "bug")
        assert engine.anti_pattern_insights(now) == []


class TestBestPractice:
    def _seed(self, patterns, projects=("a", "b", "a")):
        for i, project in enumerate(projects):
            patterns.record_detection(_caching(), MemoryEvent(id=f"m{i}", project_id=project, content="cache"))

    def test_idempotent_across_runs(self, engine, patterns, insights):
        self._seed(patterns)
        engine.generate_insights({})
        engine.generate_insights({})
        assert insights.counts_by_type().get("best_practice") == 1
        insight = insights.get_by_title("Caching Pattern - Successful Pattern")
        assert insight.priority == InsightPriority.MEDIUM
        assert insight.evidence_strength == 3

    def test_high_priority_with_three_projects(self, engine, patterns, now):
        self._seed(patterns, projects=("a", "b", "c"))
        [insight] = engine.best_practice_insights(now)
        assert insight.priority == InsightPriority.HIGH

    def test_single_project_not_reported(self, engine, patterns, now):
        self._seed(patterns, projects=("a", "a", "a"))
        assert engine.best_practice_insights(now) == []

    def test_feedback_creates_document_task(self, engine, patterns, memories, queue):
        self._seed(patterns)
        engine.generate_insights({})
        [task] = _milestone_tasks(queue, "best_practice")
        assert task.priority == 4
        assert sorted(task.payload["projects"]) == ["a", "b"]
        titles = [t["metadata"]["title"] for t in memories.task_memories("a")]
        assert titles == ["Document Caching Pattern - Successful Pattern"]


class TestTechnologyPreference:
    def test_counts_every_technology(self, engine, add_memory, now):
        for i in range(3):
            add_memory(f"p{i}", "Service in python backed by postgres", "tech_context")
        add_memory("p9", "python notes", "general")
        found = {i.title: i for i in engine.technology_preference_insights(now)}
        assert set(found) == {"Python - Technology Preference", "PostgreSQL - Technology Preference"}
        python = found["Python - Technology Preference"]
        assert python.evidence_strength == 3
        assert python.confidence_level == pytest.approx(0.3)
        assert python.category == "programming_language"
        assert not python.actionable


class TestEvolution:
    def test_growing_pattern(self, engine, patterns, add_memory, now):
        old = add_memory("proj-a", "cache", "code", days_ago=70)
        patterns.record_detection(_caching(), old)
        for _ in range(3):
            patterns.record_detection(_caching(), add_memory("proj-a", "cache", "code"))

        [insight] = engine.evolution_insights(now)
        assert insight.title == "Caching Pattern - Growing Pattern"
        assert not insight.actionable
        assert insight.metadata["trend_direction"] == "growing"

    def test_declining_pattern_is_actionable(self, engine, patterns, add_memory, now):
        for _ in range(4):
            patterns.record_detection(_caching(), add_memory("proj-a", "cache", "code", days_ago=70))
        patterns.record_detection(_caching(), add_memory("proj-a", "cache", "code"))

        [insight] = engine.evolution_insights(now)
        assert insight.title == "Caching Pattern - Declining Pattern"
        assert insight.actionable
        assert insight.priority == InsightPriority.MEDIUM

    def test_single_month_not_reported(self, engine, patterns, add_memory, now):
        for _ in range(3):
            patterns.record_detection(_caching(), add_memory("proj-a", "cache", "code"))
        assert engine.evolution_insights(now) == []

    @pytest.mark.parametrize(
        "today,back,expected",
        [
            (datetime(2026, 3, 15, 9, 30), 5, datetime(2025, 10, 1)),
            (datetime(2026, 1, 31), 0, datetime(2026, 1, 1)),
            (datetime(2026, 1, 31), 1, datetime(2025, 12, 1)),
            (datetime(2026, 12, 1), 12, datetime(2025, 12, 1)),
        ],
    )
    def test_month_start(self, today, back, expected):
        assert month_start(today, back) == expected

    def test_window_starts_on_first_of_month(self, engine, patterns):
        now = datetime(2026, 3, 15, 12, 0)

        def detect(i, at):
            memory = MemoryEvent(id=f"evo-{i}", project_id="proj-a", content="cache", created_at=at)
            patterns.record_detection(_caching(), memory, now=at)

        for i in range(4):
            detect(i, datetime(2025, 9, 30, 23, 0))
        detect(4, datetime(2025, 10, 1))
        for i in range(5, 8):
            detect(i, datetime(2026, 3, 10))

        [insight] = engine.evolution_insights(now)
        assert insight.metadata["trend_data"] == {"2025-10": 1, "2026-03": 3}
        assert insight.metadata["trend_direction"] == "growing"


class TestTeamPattern:
    def test_dominant_memory_type(self, engine, add_memory, now):
        for i in range(8):
            add_memory(f"p{i % 2}", "note", "code")
        add_memory("p0", "note", "bug")
        add_memory("p0", "note", "task")
        [insight] = engine.team_pattern_insights(now)
        assert insight.title == "Heavy Use of code Memories"
        assert insight.evidence_strength == 8
        assert insight.projects_involved == ["p0", "p1"]

    def test_needs_minimum_sample(self, engine, add_memory, now):
        for _ in range(5):
            add_memory("p0", "note", "code")
        assert engine.team_pattern_insights(now) == []


class TestQualityMetric:
    def test_bug_rate_and_learning_culture(self, engine, add_memory, now):
        for _ in range(14):
            add_memory("proj-q", "note", "code")
        for _ in range(4):
            add_memory("proj-q", "crash", "bug")
        for _ in range(2):
            add_memory("proj-q", "lesson", "lessons_learned")

        found = {i.title: i for i in engine.quality_metric_insights(now)}
        assert set(found) == {"proj-q - High Bug Rate", "proj-q - Active Learning Culture"}
        assert found["proj-q - High Bug Rate"].priority == InsightPriority.HIGH
        assert found["proj-q - Active Learning Culture"].type == InsightType.QUALITY_METRIC

    def test_small_projects_skipped(self, engine, add_memory, now):
        for _ in range(5):
            add_memory("proj-q", "crash", "bug")
        assert engine.quality_metric_insights(now) == []

    def test_thresholds_configurable(self, insights, patterns, memories, queue, add_memory, now):
        engine = InsightEngine(
            insights, patterns, memories, queue, config=InsightsConfig(quality_min_memories=5)
        )
        for _ in range(5):
            add_memory("proj-q", "crash", "bug")
        [insight] = engine.quality_metric_insights(now)
        assert insight.title == "proj-q - High Bug Rate"


class TestRun:
    def test_failed_analysis_is_isolated(self, engine, patterns):
        TestBestPractice()._seed(patterns)
        engine.analyses[InsightType.EVOLUTION] = MagicMock(side_effect=RuntimeError("boom"))

        result = engine.generate_insights({"trigger_type": "activity_spike"})
        assert result["failed_analyses"] == ["evolution"]
        assert result["by_type"] == {"best_practice": 1}
        assert result["trigger"] == "activity_spike"

    def test_failed_save_is_isolated(self, engine, patterns, insights, add_memory):
        TestBestPractice()._seed(patterns)
        for _ in range(14):
            add_memory("proj-q", "note", "code")
        for _ in range(4):
            add_memory("proj-q", "crash", "bug")
        upsert = insights.upsert

        def flaky_upsert(candidate, now=None):
            if candidate.type == InsightType.BEST_PRACTICE:
                raise sqlite3.OperationalError("disk I/O error")
            return upsert(candidate, now=now)

        with patch.object(insights, "upsert", side_effect=flaky_upsert):
            result = engine.generate_insights({})

        assert result["failed_analyses"] == ["best_practice"]
        assert "proj-q - High Bug Rate" in result["insights"]
        assert insights.get_by_title("proj-q - High Bug Rate") is not None
        assert insights.get_by_title("Caching Pattern - Successful Pattern") is None

    def test_critical_runs_two_analyses(self, engine):
        for name in list(engine.analyses):
            engine.analyses[name] = MagicMock(return_value=[])
        engine.critical_pattern_analysis({})
        called = [n for n, fn in engine.analyses.items() if fn.called]
        assert sorted(called) == ["anti_pattern", "quality_metric"]

    def test_embeds_new_titles_only(self, insights, patterns, memories, queue):
        embeddings = MagicMock()
        embeddings.embed.return_value = [0.5]
        engine = InsightEngine(insights, patterns, memories, queue, embeddings)
        TestBestPractice()._seed(patterns)
        engine.generate_insights({})
        engine.generate_insights({})
        assert embeddings.embed.call_count == 1

    def test_low_priority_insights_not_fed_back(self, engine, add_memory, queue):
        for i in range(3):
            add_memory(f"p{i}", "Service in python", "tech_context")
        engine.generate_insights({})
        assert _milestone_tasks(queue) == []

    def test_empty_store(self, engine, queue):
        result = engine.generate_insights({})
        assert result["insights_generated"] == 0
        assert result["failed_analyses"] == []
        assert queue.counts_by_status()["pending"] == 0
