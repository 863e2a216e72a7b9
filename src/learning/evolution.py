"""Evolution tracking: advisory records of pattern confidence changes."""

from datetime import datetime, timedelta
from typing import Optional

import structlog

from .models import utcnow
from .patterns import PatternStore

logger = structlog.get_logger().bind(source="evolution")


class EvolutionTracker:
    """Handles evolution_tracking tasks. Never mutates patterns."""

    def __init__(self, patterns: PatternStore, min_change: float = 0.1, window_hours: int = 24):
        self.patterns = patterns
        self.min_change = min_change
        self.window_hours = window_hours

    def track_evolution(self, payload: dict, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        recent = self.patterns.reinforced_since(now - timedelta(hours=self.window_hours))

        records = 0
        for pattern in recent:
            snapshot = self.patterns.get_snapshot(pattern.id)
            if snapshot is not None:
                delta = pattern.confidence_score - snapshot["confidence_score"]
                if abs(delta) >= self.min_change:
                    self.patterns.record_evolution(
                        subject_type="pattern",
                        subject_id=pattern.id,
                        change_type="confidence_increase" if delta > 0 else "confidence_decrease",
                        previous_state={
                            "confidence_score": snapshot["confidence_score"],
                            "frequency_count": snapshot["frequency_count"],
                        },
                        new_state={
                            "confidence_score": pattern.confidence_score,
                            "frequency_count": pattern.frequency_count,
                        },
                        change_magnitude=round(abs(delta), 4),
                        now=now,
                    )
                    records += 1
            self.patterns.save_snapshot(pattern, now=now)

        logger.info("evolution.tracked", patterns=len(recent), records=records)
        return {
            "patterns_tracked": len(recent),
            "evolution_records": records,
            "tracking_period_hours": self.window_hours,
        }
