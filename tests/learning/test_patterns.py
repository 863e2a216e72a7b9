"""Tests for PatternStore: signature upsert, occurrences, snapshots, stats."""

from datetime import timedelta

import pytest

from learning.models import DetectionMethod, MemoryEvent, PatternCandidate
from learning.patterns import CREATED, UNCHANGED, UPDATED


def _candidate(signature="caching_pattern", confidence=0.5, method=DetectionMethod.KEYWORD, category="architecture"):
    return PatternCandidate(
        category=category,
        type="caching",
        name="Caching Pattern",
        signature=signature,
        description="Caching strategy",
        confidence=confidence,
        detection_method=method,
        context="we added a redis cache",
    )


def _memory(memory_id="m1", project_id="proj-a", created_at=None):
    kwargs = {"created_at": created_at} if created_at else {}
    return MemoryEvent(id=memory_id, project_id=project_id, content="cache", **kwargs)


class TestRecordDetection:
    def test_create_then_update(self, patterns):
        p1, outcome1 = patterns.record_detection(_candidate(), _memory("m1", "proj-a"))
        p2, outcome2 = patterns.record_detection(_candidate(), _memory("m2", "proj-b"))

        assert outcome1 == CREATED
        assert outcome2 == UPDATED
        assert p1.id == p2.id

        stored = patterns.get_by_signature("caching_pattern")
        assert stored.frequency_count == 2
        assert stored.confidence_score == pytest.approx(0.6)
        assert stored.projects_seen == ["proj-a", "proj-b"]
        assert stored.example_memories == ["m1", "m2"]

    def test_same_memory_is_idempotent(self, patterns):
        patterns.record_detection(_candidate(), _memory("m1"))
        _, outcome = patterns.record_detection(_candidate(), _memory("m1"))
        assert outcome == UNCHANGED
        assert patterns.get_by_signature("caching_pattern").frequency_count == 1
        assert len(patterns.occurrences()) == 1

    def test_signature_unique(self, patterns):
        for i in range(5):
            patterns.record_detection(_candidate(), _memory(f"m{i}"))
        assert patterns.stats()["total"] == 1

    def test_embedding_stored_on_create(self, patterns):
        p, _ = patterns.record_detection(_candidate(), _memory(), embedding=[0.1, 0.2])
        assert patterns.get(p.id).embedding == [0.1, 0.2]

    def test_explicit_promotes_method(self, patterns):
        patterns.record_detection(_candidate(), _memory("m1"))
        patterns.record_detection(
            _candidate(method=DetectionMethod.USER_EXPLICIT), _memory("m2"), explicit_boost=0.2
        )
        stored = patterns.get_by_signature("caching_pattern")
        assert stored.detection_method == DetectionMethod.USER_EXPLICIT
        assert stored.confidence_score == pytest.approx(0.7)

    def test_occurrence_uses_memory_time(self, patterns, now):
        created = now - timedelta(days=40)
        patterns.record_detection(_candidate(), _memory(created_at=created), now=now)
        [occ] = patterns.occurrences()
        assert occ.detected_at == created
        assert occ.context == "we added a redis cache"


class TestReads:
    def test_list_patterns_filters(self, patterns):
        patterns.record_detection(_candidate("a", 0.9), _memory("m1"))
        patterns.record_detection(_candidate("b", 0.3, category="code_pattern"), _memory("m2"))
        assert [p.signature for p in patterns.list_patterns(min_confidence=0.5)] == ["a"]
        assert [p.signature for p in patterns.list_patterns(category="code_pattern")] == ["b"]
        assert patterns.list_patterns(min_frequency=2) == []

    def test_monthly_counts(self, patterns, now):
        p, _ = patterns.record_detection(_candidate(), _memory("m1", created_at=now - timedelta(days=65)))
        patterns.record_detection(_candidate(), _memory("m2", created_at=now - timedelta(days=1)))
        patterns.record_detection(_candidate(), _memory("m3", created_at=now))
        counts = patterns.monthly_occurrence_counts(now - timedelta(days=180))[p.id]
        assert sum(counts.values()) == 3
        assert len(counts) >= 2

    def test_pattern_ids_for_project(self, patterns, now):
        a, _ = patterns.record_detection(_candidate("a"), _memory("m1", "proj-a"))
        patterns.record_detection(_candidate("b"), _memory("m2", "proj-b"))
        assert patterns.pattern_ids_for_project("proj-a", now - timedelta(days=1)) == [a.id]

    def test_stats(self, patterns):
        patterns.record_detection(_candidate("a", 0.4), _memory("m1", "proj-a"))
        patterns.record_detection(_candidate("b", 0.8, category="code_pattern"), _memory("m2", "proj-b"))
        stats = patterns.stats()
        assert stats["total"] == 2
        assert stats["avg_confidence"] == pytest.approx(0.6)
        assert stats["unique_projects"] == 2
        assert stats["by_category"] == {"architecture": 1, "code_pattern": 1}

    def test_empty_stats(self, patterns):
        assert patterns.stats() == {
            "total": 0,
            "avg_confidence": 0.0,
            "unique_projects": 0,
            "by_category": {},
        }


class TestSnapshots:
    def test_snapshot_upsert(self, patterns):
        p, _ = patterns.record_detection(_candidate(), _memory())
        assert patterns.get_snapshot(p.id) is None
        patterns.save_snapshot(p)
        p.confidence_score = 0.9
        patterns.save_snapshot(p)
        assert patterns.get_snapshot(p.id)["confidence_score"] == 0.9

    def test_evolution_records(self, patterns):
        patterns.record_evolution(
            "pattern", "p1", "confidence_increase", {"confidence": 0.5}, {"confidence": 0.7}, 0.2
        )
        [record] = patterns.evolution_records("p1")
        assert record["change_type"] == "confidence_increase"
        assert record["new_state"] == {"confidence": 0.7}
