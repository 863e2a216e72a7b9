"""Tests for InsightStore: title-keyed upsert and listing."""

import pytest

from learning.models import Insight, InsightPriority, InsightType


def _insight(title="Proven pattern: Caching", confidence=0.8, evidence=3, projects=None, **kwargs):
    return Insight(
        id="",
        type=kwargs.pop("type", InsightType.BEST_PRACTICE),
        category="architecture",
        title=title,
        description="Seen across projects",
        confidence_level=confidence,
        evidence_strength=evidence,
        projects_involved=projects or ["a", "b"],
        supporting_patterns=["p1"],
        **kwargs,
    )


class TestUpsert:
    def test_create(self, insights):
        stored, created = insights.upsert(_insight())
        assert created
        assert stored.id
        assert insights.get(stored.id).title == "Proven pattern: Caching"

    def test_regeneration_merges_into_one_row(self, insights):
        first, _ = insights.upsert(_insight(confidence=0.8, evidence=3))
        second, created = insights.upsert(_insight(confidence=0.6, evidence=5, projects=["c"]))

        assert not created
        assert second.id == first.id
        assert len(insights.list_insights()) == 1
        stored = insights.get_by_title("Proven pattern: Caching")
        assert stored.confidence_level == pytest.approx(0.7)
        assert stored.evidence_strength == 5
        assert stored.projects_involved == ["a", "b", "c"]

    def test_repeated_generation_stays_single(self, insights):
        for _ in range(5):
            insights.upsert(_insight())
        assert insights.counts_by_type() == {"best_practice": 1}

    def test_priority_round_trips(self, insights):
        stored, _ = insights.upsert(_insight(actionable=True, priority=InsightPriority.HIGH))
        loaded = insights.get(stored.id)
        assert loaded.actionable
        assert loaded.priority == InsightPriority.HIGH
        assert loaded.needs_follow_up


class TestList:
    def test_filters(self, insights):
        insights.upsert(_insight("a"))
        insights.upsert(_insight("b", type=InsightType.ANTI_PATTERN, actionable=True))
        assert [i.title for i in insights.list_insights(insight_type=InsightType.ANTI_PATTERN)] == ["b"]
        assert [i.title for i in insights.list_insights(actionable_only=True)] == ["b"]
        assert insights.counts_by_type() == {"best_practice": 1, "anti_pattern": 1}

    def test_missing(self, insights):
        assert insights.get("nope") is None
        assert insights.get_by_title("nope") is None
