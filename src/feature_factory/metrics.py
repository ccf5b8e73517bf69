"""Timing, quality and learning metrics for the diagnose, fix and learn cycle."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from feature_factory.errors import StateError
from feature_factory.worker.discovery import Diagnosis, DiscoveredWork

logger = logging.getLogger(__name__)

DEFAULT_MAX_STORED_CYCLES = 1000


def _now() -> datetime:
    return datetime.now(UTC)


def _average(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _rate(flags: list[bool]) -> float:
    return sum(1 for flag in flags if flag) / len(flags) if flags else 0.0


@dataclass(slots=True, frozen=True)
class TimingMetrics:
    time_to_diagnosis_seconds: float
    time_to_fix_seconds: float
    time_to_validation_seconds: float
    total_cycle_seconds: float
    fix_attempts: int


@dataclass(slots=True, frozen=True)
class QualityMetrics:
    diagnosis_accurate: bool
    first_fix_worked: bool
    root_cause_matched: bool
    diagnosis_confidence: float


@dataclass(slots=True, frozen=True)
class LearningMetrics:
    learnings_captured: int
    novel_patterns: int
    known_patterns_matched: int
    learnings_promoted: int


@dataclass(slots=True)
class ProcessMetrics:
    id: str
    work_id: str
    resource_id: str | None
    workflow_used: str
    resolution: str
    diagnosis: Diagnosis
    timing: TimingMetrics
    quality: QualityMetrics
    learning: LearningMetrics
    started_at: datetime
    completed_at: datetime


@dataclass(slots=True)
class _Cycle:
    work_id: str
    diagnosis: Diagnosis
    started_at: datetime
    diagnosed_at: datetime | None = None
    fix_started_at: datetime | None = None
    fix_attempts: int = 0
    learnings_captured: int = 0
    novel_patterns: int = 0
    known_patterns_matched: int = 0


@dataclass(slots=True)
class CategoryMetrics:
    count: int = 0
    avg_cycle_seconds: float = 0.0
    first_fix_success_rate: float = 0.0
    avg_confidence: float = 0.0


@dataclass(slots=True)
class AggregateMetrics:
    total_cycles: int = 0
    avg_time_to_diagnosis_seconds: float = 0.0
    avg_time_to_fix_seconds: float = 0.0
    avg_time_to_validation_seconds: float = 0.0
    avg_cycle_seconds: float = 0.0
    avg_fix_attempts: float = 0.0
    diagnosis_accuracy_rate: float = 0.0
    first_fix_success_rate: float = 0.0
    root_cause_match_rate: float = 0.0
    avg_successful_confidence: float = 0.0
    total_learnings_captured: int = 0
    total_novel_patterns: int = 0
    total_known_patterns_matched: int = 0
    total_learnings_promoted: int = 0
    by_category: dict[str, CategoryMetrics] = field(default_factory=dict)
    start: datetime | None = None
    end: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCycles": self.total_cycles,
            "averageTiming": {
                "timeToDiagnosisSeconds": self.avg_time_to_diagnosis_seconds,
                "timeToFixSeconds": self.avg_time_to_fix_seconds,
                "timeToValidationSeconds": self.avg_time_to_validation_seconds,
                "totalCycleSeconds": self.avg_cycle_seconds,
                "avgFixAttempts": self.avg_fix_attempts,
            },
            "qualityRates": {
                "diagnosisAccuracyRate": self.diagnosis_accuracy_rate,
                "firstFixSuccessRate": self.first_fix_success_rate,
                "rootCauseMatchRate": self.root_cause_match_rate,
                "avgSuccessfulConfidence": self.avg_successful_confidence,
            },
            "learningTotals": {
                "totalLearningsCaptured": self.total_learnings_captured,
                "totalNovelPatterns": self.total_novel_patterns,
                "totalKnownPatternsMatched": self.total_known_patterns_matched,
                "totalLearningsPromoted": self.total_learnings_promoted,
            },
            "byCategory": {
                category: {
                    "count": metrics.count,
                    "avgCycleSeconds": metrics.avg_cycle_seconds,
                    "firstFixSuccessRate": metrics.first_fix_success_rate,
                    "avgConfidence": metrics.avg_confidence,
                }
                for category, metrics in self.by_category.items()
            },
            "timeRange": {
                "start": self.start.isoformat() if self.start else None,
                "end": self.end.isoformat() if self.end else None,
            },
        }


class ProcessMetricsCollector:
    """Tracks fix cycles from diagnosis to validated resolution.

    A cycle is opened with ``start_cycle``, fed fix attempts and captured learnings, and
    closed by ``complete_cycle`` (kept, newest ``max_stored_cycles`` only) or
    ``cancel_cycle`` (discarded).
    """

    def __init__(
        self,
        *,
        max_stored_cycles: int = DEFAULT_MAX_STORED_CYCLES,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        if max_stored_cycles <= 0:
            raise ValueError("max_stored_cycles must be greater than 0")
        self.max_stored_cycles = max_stored_cycles
        self._clock = clock
        self._completed: list[ProcessMetrics] = []
        self._in_progress: dict[str, _Cycle] = {}

    def _cycle(self, work_id: str) -> _Cycle:
        cycle = self._in_progress.get(work_id)
        if cycle is None:
            raise StateError(f"No in-progress cycle found for {work_id}")
        return cycle

    def start_cycle(self, work: DiscoveredWork, diagnosis: Diagnosis, *, diagnosed_at: datetime | None = None) -> None:
        self._in_progress[work.id] = _Cycle(
            work_id=work.id,
            diagnosis=diagnosis,
            started_at=self._clock(),
            diagnosed_at=diagnosed_at,
            known_patterns_matched=1 if diagnosis.is_known_pattern else 0,
        )
        logger.debug("Started metrics cycle for %s", work.id)

    def record_fix_attempt(self, work_id: str) -> int:
        cycle = self._cycle(work_id)
        if cycle.fix_started_at is None:
            cycle.fix_started_at = self._clock()
        cycle.fix_attempts += 1
        return cycle.fix_attempts

    def record_learning_capture(self, work_id: str, *, novel: bool) -> None:
        cycle = self._cycle(work_id)
        cycle.learnings_captured += 1
        if novel:
            cycle.novel_patterns += 1

    def complete_cycle(
        self,
        work_id: str,
        resolution: str,
        *,
        diagnosis_accurate: bool,
        root_cause_matched: bool,
        workflow_used: str,
        learnings_promoted: int = 0,
    ) -> ProcessMetrics:
        cycle = self._cycle(work_id)
        completed_at = self._clock()
        fix_started_at = cycle.fix_started_at or cycle.started_at
        time_to_diagnosis = 0.0
        if cycle.diagnosed_at is not None:
            time_to_diagnosis = max(0.0, (cycle.diagnosed_at - cycle.started_at).total_seconds())
        fix_seconds = (completed_at - fix_started_at).total_seconds()
        metrics = ProcessMetrics(
            id=f"metrics-{work_id}-{int(completed_at.timestamp() * 1000)}",
            work_id=work_id,
            resource_id=cycle.diagnosis.resource_id,
            workflow_used=workflow_used,
            resolution=resolution,
            diagnosis=cycle.diagnosis,
            timing=TimingMetrics(
                time_to_diagnosis_seconds=time_to_diagnosis,
                time_to_fix_seconds=fix_seconds,
                time_to_validation_seconds=fix_seconds,
                total_cycle_seconds=(completed_at - cycle.started_at).total_seconds(),
                fix_attempts=cycle.fix_attempts,
            ),
            quality=QualityMetrics(
                diagnosis_accurate=diagnosis_accurate,
                first_fix_worked=cycle.fix_attempts == 1,
                root_cause_matched=root_cause_matched,
                diagnosis_confidence=cycle.diagnosis.confidence,
            ),
            learning=LearningMetrics(
                learnings_captured=cycle.learnings_captured,
                novel_patterns=cycle.novel_patterns,
                known_patterns_matched=cycle.known_patterns_matched,
                learnings_promoted=learnings_promoted,
            ),
            started_at=cycle.started_at,
            completed_at=completed_at,
        )
        self._completed.append(metrics)
        del self._completed[: -self.max_stored_cycles]
        del self._in_progress[work_id]
        logger.info(
            "Fix cycle for %s completed in %.1fs after %d attempt(s)",
            work_id,
            metrics.timing.total_cycle_seconds,
            cycle.fix_attempts,
        )
        return metrics

    def cancel_cycle(self, work_id: str) -> None:
        self._in_progress.pop(work_id, None)

    def completed_metrics(self) -> list[ProcessMetrics]:
        return list(self._completed)

    def metrics_in_range(self, start: datetime, end: datetime) -> list[ProcessMetrics]:
        return [metrics for metrics in self._completed if start <= metrics.completed_at <= end]

    def in_progress(self) -> list[dict[str, Any]]:
        return [
            {"workId": cycle.work_id, "startedAt": cycle.started_at.isoformat(), "fixAttempts": cycle.fix_attempts}
            for cycle in self._in_progress.values()
        ]

    def compute_aggregates(self, metrics: list[ProcessMetrics] | None = None) -> AggregateMetrics:
        data = self._completed if metrics is None else metrics
        if not data:
            return AggregateMetrics()
        by_category: dict[str, list[ProcessMetrics]] = {}
        for item in data:
            by_category.setdefault(item.diagnosis.category, []).append(item)
        completed = [item.completed_at for item in data]
        return AggregateMetrics(
            total_cycles=len(data),
            avg_time_to_diagnosis_seconds=_average([item.timing.time_to_diagnosis_seconds for item in data]),
            avg_time_to_fix_seconds=_average([item.timing.time_to_fix_seconds for item in data]),
            avg_time_to_validation_seconds=_average([item.timing.time_to_validation_seconds for item in data]),
            avg_cycle_seconds=_average([item.timing.total_cycle_seconds for item in data]),
            avg_fix_attempts=_average([item.timing.fix_attempts for item in data]),
            diagnosis_accuracy_rate=_rate([item.quality.diagnosis_accurate for item in data]),
            first_fix_success_rate=_rate([item.quality.first_fix_worked for item in data]),
            root_cause_match_rate=_rate([item.quality.root_cause_matched for item in data]),
            # Confidence only counts where the diagnosis turned out to be right.
            avg_successful_confidence=_average(
                [item.quality.diagnosis_confidence for item in data if item.quality.diagnosis_accurate]
            ),
            total_learnings_captured=sum(item.learning.learnings_captured for item in data),
            total_novel_patterns=sum(item.learning.novel_patterns for item in data),
            total_known_patterns_matched=sum(item.learning.known_patterns_matched for item in data),
            total_learnings_promoted=sum(item.learning.learnings_promoted for item in data),
            by_category={
                category: CategoryMetrics(
                    count=len(items),
                    avg_cycle_seconds=_average([item.timing.total_cycle_seconds for item in items]),
                    first_fix_success_rate=_rate([item.quality.first_fix_worked for item in items]),
                    avg_confidence=_average([item.quality.diagnosis_confidence for item in items]),
                )
                for category, items in by_category.items()
            },
            start=min(completed),
            end=max(completed),
        )

    def clear(self) -> None:
        self._completed.clear()
        self._in_progress.clear()
