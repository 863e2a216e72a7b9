"""Insight generation: six independent analyses over patterns and memories.

Each analysis returns candidate insights; a failing analysis is logged and the
rest still run. Actionable insights above low priority feed back into the
queue as milestone_analysis tasks and into the memory store as task memories.
"""

from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from cli.config_models import InsightsConfig

from .collaborators import EmbeddingProvider, MemoryStore, NullEmbeddingProvider
from .insights import InsightStore
from .models import (
    ANTI_PATTERN_CATEGORY,
    PRIORITY_INSIGHT,
    PRIORITY_MANUAL,
    Insight,
    InsightPriority,
    InsightType,
    MemoryType,
    TaskType,
    utcnow,
)
from .patterns import PatternStore
from .preferences import categorize_technology, extract_technologies
from .queue import QueueStore

logger = structlog.get_logger().bind(source="insight_engine")

SUMMARY_TITLES = 10
TECH_MEMORY_TYPES = (MemoryType.TECH_CONTEXT, MemoryType.DESIGN_DECISIONS, MemoryType.ARCHITECTURE)


def month_start(now: datetime, months_back: int = 0) -> datetime:
    """Midnight on the first day of the month `months_back` months before now."""
    index = now.year * 12 + now.month - 1 - months_back
    return datetime(index // 12, index % 12 + 1, 1)


def _candidate(**kwargs) -> Insight:
    return Insight(id="", **kwargs)


class InsightEngine:
    """Handles insight_generation and critical_pattern_analysis tasks."""

    def __init__(
        self,
        insights: InsightStore,
        patterns: PatternStore,
        memories: MemoryStore,
        queue: QueueStore,
        embeddings: Optional[EmbeddingProvider] = None,
        config: Optional[InsightsConfig] = None,
    ):
        self.insights = insights
        self.patterns = patterns
        self.memories = memories
        self.queue = queue
        self.embeddings = embeddings or NullEmbeddingProvider()
        self.config = config or InsightsConfig()

        self.analyses: dict[str, Callable[[datetime], list[Insight]]] = {
            InsightType.BEST_PRACTICE: self.best_practice_insights,
            InsightType.ANTI_PATTERN: self.anti_pattern_insights,
            InsightType.TECHNOLOGY_PREFERENCE: self.technology_preference_insights,
            InsightType.EVOLUTION: self.evolution_insights,
            InsightType.TEAM_PATTERN: self.team_pattern_insights,
            InsightType.QUALITY_METRIC: self.quality_metric_insights,
        }

    # --- task entry points ---

    def generate_insights(self, payload: dict, now: Optional[datetime] = None) -> dict:
        return self._run(list(self.analyses), payload, now or utcnow())

    def critical_pattern_analysis(self, payload: dict, now: Optional[datetime] = None) -> dict:
        return self._run(
            [InsightType.ANTI_PATTERN, InsightType.QUALITY_METRIC], payload, now or utcnow()
        )

    def _run(self, names: list[str], payload: dict, now: datetime) -> dict:
        stored: list[Insight] = []
        failed: list[str] = []
        for name in names:
            try:
                for candidate in self.analyses[name](now):
                    stored.append(self._save(candidate, now))
            except Exception as e:
                logger.warning("insights.analysis_failed", analysis=str(name), error=str(e))
                failed.append(str(name))

        follow_ups = [i for i in stored if i.needs_follow_up]
        for insight in follow_ups:
            self._feed_back(insight)

        by_type = Counter(str(i.type) for i in stored)
        logger.info(
            "insights.generated",
            total=len(stored),
            actionable=sum(1 for i in stored if i.actionable),
            follow_ups=len(follow_ups),
            failed=failed,
        )
        return {
            "insights_generated": len(stored),
            "by_type": dict(by_type),
            "actionable": sum(1 for i in stored if i.actionable),
            "failed_analyses": failed,
            "insights": [i.title for i in stored[:SUMMARY_TITLES]],
            "trigger": payload.get("trigger_type") or payload.get("trigger", "scheduled"),
        }

    def _save(self, candidate: Insight, now: datetime) -> Insight:
        if self.insights.get_by_title(candidate.title) is None:
            candidate.embedding = self.embeddings.embed(f"{candidate.title} {candidate.description}")
        insight, _ = self.insights.upsert(candidate, now=now)
        return insight

    # --- feedback ---

    def _feed_back(self, insight: Insight):
        priority = PRIORITY_MANUAL if insight.priority == InsightPriority.HIGH else PRIORITY_INSIGHT
        self.queue.enqueue(
            TaskType.MILESTONE_ANALYSIS,
            {
                "insight_id": insight.id,
                "insight_type": str(insight.type),
                "insight_title": insight.title,
                "projects": insight.projects_involved,
                "patterns": insight.supporting_patterns,
                "trigger": "insight_feedback",
            },
            priority=priority,
        )

        task = self._follow_up_task(insight)
        if task is None or not insight.projects_involved:
            return
        title, description = task
        try:
            self.memories.create_task_memory(
                insight.projects_involved,
                title,
                description,
                {
                    "priority": str(insight.priority),
                    "insight_id": insight.id,
                    "insight_type": str(insight.type),
                },
            )
        except Exception as e:
            logger.error("insights.task_memory_failed", insight_id=insight.id, error=str(e))

    @staticmethod
    def _follow_up_task(insight: Insight) -> Optional[tuple[str, str]]:
        if insight.type == InsightType.ANTI_PATTERN:
            return (
                f"Review and fix {insight.title}",
                f"{insight.description} This pattern has been identified as problematic.",
            )
        if insight.type == InsightType.QUALITY_METRIC:
            return f"Improve code quality for {insight.projects_involved[0]}", insight.description
        if insight.type == InsightType.BEST_PRACTICE:
            return (
                f"Document {insight.title}",
                f"Create documentation for this successful pattern: {insight.description}",
            )
        if insight.type == InsightType.EVOLUTION:
            name = insight.metadata.get("pattern_name", insight.title)
            return f"Investigate declining {name}", insight.description
        return None

    # --- analyses ---

    def best_practice_insights(self, now: datetime) -> list[Insight]:
        cfg = self.config
        out = []
        for p in self.patterns.list_patterns(
            min_confidence=cfg.best_practice_min_confidence,
            min_frequency=cfg.best_practice_min_frequency,
            limit=1000,
        ):
            if p.category == ANTI_PATTERN_CATEGORY:
                continue
            n_projects = len(p.projects_seen)
            if n_projects < cfg.best_practice_min_projects:
                continue
            out.append(
                _candidate(
                    type=InsightType.BEST_PRACTICE,
                    category=p.category,
                    title=f"{p.name} - Successful Pattern",
                    description=(
                        f"The {p.name} has been used in {n_projects} projects. It appears "
                        f"{p.frequency_count} times with {round(p.confidence_score * 100)}% confidence."
                    ),
                    confidence_level=p.confidence_score,
                    evidence_strength=p.frequency_count,
                    projects_involved=list(p.projects_seen),
                    supporting_patterns=[p.id],
                    actionable=True,
                    priority=InsightPriority.HIGH
                    if n_projects >= cfg.best_practice_high_projects
                    else InsightPriority.MEDIUM,
                    metadata={"pattern_type": p.type, "detection_method": str(p.detection_method)},
                )
            )
        return out

    def anti_pattern_insights(self, now: datetime) -> list[Insight]:
        """Patterns whose occurrences sit near bug reports in the same project."""
        cfg = self.config
        since = now - timedelta(days=cfg.anti_pattern_lookback_days)
        window = timedelta(days=cfg.anti_pattern_bug_window_days)

        bugs_by_project = defaultdict(list)
        for bug in self.memories.get_recent_memories(
            memory_types=[MemoryType.BUG], since=since - window, limit=None
        ):
            bugs_by_project[bug.project_id].append(bug)

        bug_ids: dict[str, set] = defaultdict(set)
        bug_projects: dict[str, set] = defaultdict(set)
        for occ in self.patterns.occurrences(since=since):
            for bug in bugs_by_project.get(occ.project_id, ()):
                if abs(bug.created_at - occ.detected_at) <= window:
                    bug_ids[occ.pattern_id].add(bug.id)
                    bug_projects[occ.pattern_id].add(occ.project_id)

        out = []
        for pattern_id, ids in bug_ids.items():
            bug_count = len(ids)
            if bug_count < cfg.anti_pattern_min_bugs:
                continue
            pattern = self.patterns.get(pattern_id)
            if pattern is None:
                continue
            projects = sorted(bug_projects[pattern_id])
            out.append(
                _candidate(
                    type=InsightType.ANTI_PATTERN,
                    category=pattern.category,
                    title=f"{pattern.name} - Potential Issue",
                    description=(
                        f"The {pattern.name} appears to be associated with {bug_count} bug reports "
                        f"across projects: {', '.join(projects)}. Consider reviewing its usage."
                    ),
                    confidence_level=min(bug_count * 0.15, 0.9),
                    evidence_strength=bug_count,
                    projects_involved=projects,
                    supporting_patterns=[pattern.id],
                    actionable=True,
                    priority=InsightPriority.HIGH
                    if bug_count >= cfg.anti_pattern_high_bugs
                    else InsightPriority.MEDIUM,
                    metadata={
                        "bug_correlation": bug_count,
                        "pattern_name": pattern.name,
                        "recommendation": "Review pattern usage and consider refactoring",
                    },
                )
            )
        return out

    def technology_preference_insights(self, now: datetime) -> list[Insight]:
        cfg = self.config
        memories = self.memories.get_recent_memories(
            memory_types=list(TECH_MEMORY_TYPES),
            since=now - timedelta(days=cfg.tech_lookback_days),
            limit=None,
        )
        usage: dict[str, dict] = {}
        for memory in memories:
            for tech in extract_technologies(memory.content):
                entry = usage.setdefault(tech, {"count": 0, "projects": set(), "importance": []})
                entry["count"] += 1
                entry["projects"].add(memory.project_id)
                entry["importance"].append(memory.importance_score)

        out = []
        for tech, data in sorted(usage.items(), key=lambda kv: -kv[1]["count"]):
            count = data["count"]
            if count < cfg.tech_min_mentions:
                continue
            projects = sorted(data["projects"])
            avg_importance = sum(data["importance"]) / len(data["importance"])
            category = categorize_technology(tech)
            out.append(
                _candidate(
                    type=InsightType.TECHNOLOGY_PREFERENCE,
                    category=category,
                    title=f"{tech} - Technology Preference",
                    description=(
                        f"{tech} is used across {len(projects)} projects. It appears in {count} "
                        f"technical decisions with average importance {avg_importance:.1f}."
                    ),
                    confidence_level=min(count * 0.1, 0.9),
                    evidence_strength=count,
                    projects_involved=projects,
                    actionable=False,
                    priority=InsightPriority.LOW,
                    metadata={
                        "technology_category": category,
                        "total_mentions": count,
                        "project_count": len(projects),
                    },
                )
            )
        return out

    def evolution_insights(self, now: datetime) -> list[Insight]:
        """Growing or declining monthly occurrence counts."""
        cfg = self.config
        # Whole calendar months only, so the first bucket is never partial
        since = month_start(now, cfg.evolution_months - 1)
        out = []
        for pattern_id, monthly in self.patterns.monthly_occurrence_counts(since).items():
            if len(monthly) < cfg.evolution_min_months:
                continue
            months = sorted(monthly)
            first, last = monthly[months[0]], monthly[months[-1]]
            growing = last >= first * cfg.evolution_growth_factor
            declining = last <= first * cfg.evolution_decline_factor
            if not (growing or declining):
                continue
            pattern = self.patterns.get(pattern_id)
            if pattern is None:
                continue
            direction = "Growing" if growing else "Declining"
            out.append(
                _candidate(
                    type=InsightType.EVOLUTION,
                    category=pattern.category,
                    title=f"{pattern.name} - {direction} Pattern",
                    description=(
                        f"The usage of {pattern.name} is {'increasing' if growing else 'decreasing'}. "
                        f"Monthly occurrences changed from {first} to {last} over {len(months)} months."
                    ),
                    confidence_level=0.7,
                    evidence_strength=sum(monthly.values()),
                    projects_involved=list(pattern.projects_seen),
                    supporting_patterns=[pattern.id],
                    actionable=declining,
                    priority=InsightPriority.MEDIUM if declining else InsightPriority.LOW,
                    metadata={
                        "pattern_name": pattern.name,
                        "trend_direction": direction.lower(),
                        "trend_data": {m: monthly[m] for m in months},
                    },
                )
            )
        return out

    def team_pattern_insights(self, now: datetime) -> list[Insight]:
        """Memory types that dominate recent activity."""
        cfg = self.config
        memories = self.memories.get_recent_memories(
            since=now - timedelta(days=cfg.team_lookback_days), limit=None
        )
        total = len(memories)
        if total < cfg.team_min_samples:
            return []

        counts = Counter(m.memory_type for m in memories)
        projects: dict[str, set] = defaultdict(set)
        for m in memories:
            projects[m.memory_type].add(m.project_id)

        out = []
        for memory_type, count in counts.most_common():
            share = count / total
            if share <= cfg.team_min_share:
                continue
            out.append(
                _candidate(
                    type=InsightType.TEAM_PATTERN,
                    category="process",
                    title=f"Heavy Use of {memory_type} Memories",
                    description=(
                        f"The team creates {memory_type} memories frequently ({share:.1%} of all "
                        f"memories) across {len(projects[memory_type])} projects."
                    ),
                    confidence_level=0.8,
                    evidence_strength=count,
                    projects_involved=sorted(projects[memory_type]),
                    actionable=False,
                    priority=InsightPriority.LOW,
                    metadata={"memory_type": memory_type, "share": round(share, 3), "total": total},
                )
            )
        return out

    def quality_metric_insights(self, now: datetime) -> list[Insight]:
        cfg = self.config
        memories = self.memories.get_recent_memories(
            since=now - timedelta(days=cfg.quality_lookback_days), limit=None
        )
        by_project: dict[str, Counter] = defaultdict(Counter)
        for m in memories:
            by_project[m.project_id][m.memory_type] += 1

        out = []
        for project_id, counts in sorted(by_project.items()):
            total = sum(counts.values())
            if total < cfg.quality_min_memories:
                continue
            bugs = counts[MemoryType.BUG]
            lessons = counts[MemoryType.LESSONS_LEARNED]
            bug_ratio = bugs / total
            lessons_ratio = lessons / total

            if bug_ratio > cfg.quality_bug_ratio:
                out.append(
                    _candidate(
                        type=InsightType.QUALITY_METRIC,
                        category="quality",
                        title=f"{project_id} - High Bug Rate",
                        description=(
                            f"Project {project_id} has a high bug-to-memory ratio ({bug_ratio:.1%}). "
                            "Consider additional quality measures or code reviews."
                        ),
                        confidence_level=0.7,
                        evidence_strength=bugs,
                        projects_involved=[project_id],
                        actionable=True,
                        priority=InsightPriority.HIGH,
                        metadata={"bug_count": bugs, "total_memories": total, "bug_ratio": round(bug_ratio, 3)},
                    )
                )
            if lessons_ratio > cfg.quality_lessons_ratio:
                out.append(
                    _candidate(
                        type=InsightType.QUALITY_METRIC,
                        category="learning",
                        title=f"{project_id} - Active Learning Culture",
                        description=(
                            f"Project {project_id} documents lessons learned regularly "
                            f"({lessons} of {total} memories)."
                        ),
                        confidence_level=0.8,
                        evidence_strength=lessons,
                        projects_involved=[project_id],
                        actionable=False,
                        priority=InsightPriority.LOW,
                        metadata={"lessons_count": lessons, "lessons_ratio": round(lessons_ratio, 3)},
                    )
                )
        return out
