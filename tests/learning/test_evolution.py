"""Tests for EvolutionTracker."""

from datetime import timedelta

import pytest

from learning.evolution import EvolutionTracker
from learning.models import DetectionMethod, MemoryEvent, PatternCandidate


def _candidate(confidence=0.5):
    return PatternCandidate(
        category="performance",
        type="caching",
        name="Caching Pattern",
        signature="caching_pattern",
        description="Caching",
        confidence=confidence,
        detection_method=DetectionMethod.KEYWORD,
    )


def _detect(patterns, memory_id, now):
    return patterns.record_detection(
        _candidate(), MemoryEvent(id=memory_id, project_id="proj-a", content="cache"), now=now
    )[0]


@pytest.fixture
def tracker(patterns):
    return EvolutionTracker(patterns, min_change=0.1, window_hours=24)


class TestTrackEvolution:
    def test_first_pass_only_snapshots(self, tracker, patterns, now):
        p = _detect(patterns, "m1", now)
        result = tracker.track_evolution({}, now=now)
        assert result == {"patterns_tracked": 1, "evolution_records": 0, "tracking_period_hours": 24}
        assert patterns.get_snapshot(p.id)["confidence_score"] == pytest.approx(0.5)

    def test_records_confidence_increase(self, tracker, patterns, now):
        p = _detect(patterns, "m1", now)
        tracker.track_evolution({}, now=now)
        _detect(patterns, "m2", now)
        _detect(patterns, "m3", now)

        result = tracker.track_evolution({}, now=now)
        assert result["evolution_records"] == 1
        [record] = patterns.evolution_records(p.id)
        assert record["change_type"] == "confidence_increase"
        assert record["previous_state"]["frequency_count"] == 1
        assert record["new_state"]["frequency_count"] == 3
        assert record["change_magnitude"] == pytest.approx(0.2)

    def test_small_change_not_recorded(self, tracker, patterns, now):
        _detect(patterns, "m1", now)
        tracker.track_evolution({}, now=now)
        tracker.track_evolution({}, now=now)
        assert patterns.evolution_records() == []

    def test_stale_patterns_skipped(self, tracker, patterns, now):
        _detect(patterns, "m1", now - timedelta(days=3))
        assert tracker.track_evolution({}, now=now)["patterns_tracked"] == 0

    def test_does_not_mutate_patterns(self, tracker, patterns, now):
        p = _detect(patterns, "m1", now)
        tracker.track_evolution({}, now=now)
        stored = patterns.get(p.id)
        assert stored.confidence_score == p.confidence_score
        assert stored.frequency_count == p.frequency_count
