from datetime import UTC, datetime, timedelta

import pytest

from feature_factory.errors import StateError
from feature_factory.metrics import ProcessMetricsCollector
from feature_factory.worker.discovery import Diagnosis, DiscoveredWork

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class StepClock:
    """Returns START, then advances by ``step`` on every reading."""

    def __init__(self, step: timedelta = timedelta(seconds=10)) -> None:
        self.now = START - step
        self.step = step

    def __call__(self) -> datetime:
        self.now += self.step
        return self.now


def _work(work_id: str) -> DiscoveredWork:
    return DiscoveredWork(
        id=work_id,
        source="validation-failure",
        priority="high",
        tier=2,
        suggested_workflow="bug-fix",
        summary=f"summary {work_id}",
        description="d",
    )


def _diagnosis(category: str = "code", confidence: float = 0.8, known: bool = False) -> Diagnosis:
    return Diagnosis.from_dict(
        {
            "patternId": f"PAT-{category}",
            "summary": "s",
            "rootCause": {"category": category, "description": "d", "confidence": confidence},
            "validationResult": {"resourceSid": "SM1"},
            "isKnownPattern": known,
        }
    )


def test_cycle_records_timing_quality_and_learning() -> None:
    collector = ProcessMetricsCollector(clock=StepClock())
    collector.start_cycle(_work("w1"), _diagnosis(known=True), diagnosed_at=START + timedelta(seconds=5))
    assert collector.record_fix_attempt("w1") == 1
    collector.record_learning_capture("w1", novel=True)
    collector.record_learning_capture("w1", novel=False)

    metrics = collector.complete_cycle(
        "w1",
        "guarded body",
        diagnosis_accurate=True,
        root_cause_matched=True,
        workflow_used="bug-fix",
        learnings_promoted=1,
    )

    assert metrics.resource_id == "SM1"
    assert metrics.timing.time_to_diagnosis_seconds == 5.0
    assert metrics.timing.time_to_fix_seconds == 10.0
    assert metrics.timing.total_cycle_seconds == 20.0
    assert metrics.timing.fix_attempts == 1
    assert metrics.quality.first_fix_worked
    assert metrics.quality.diagnosis_confidence == 0.8
    assert (metrics.learning.learnings_captured, metrics.learning.novel_patterns) == (2, 1)
    assert metrics.learning.known_patterns_matched == 1
    assert metrics.learning.learnings_promoted == 1
    assert collector.in_progress() == []


def test_unknown_cycles_raise_and_cancel_discards() -> None:
    collector = ProcessMetricsCollector(clock=StepClock())

    with pytest.raises(StateError, match="No in-progress cycle found for w9"):
        collector.record_fix_attempt("w9")

    collector.start_cycle(_work("w1"), _diagnosis())
    assert collector.in_progress()[0]["workId"] == "w1"
    collector.cancel_cycle("w1")

    assert collector.in_progress() == []
    with pytest.raises(StateError):
        collector.complete_cycle("w1", "x", diagnosis_accurate=True, root_cause_matched=True, workflow_used="bug-fix")


def _complete(
    collector: ProcessMetricsCollector, work_id: str, diagnosis: Diagnosis, attempts: int, accurate: bool
) -> None:
    collector.start_cycle(_work(work_id), diagnosis)
    for _ in range(attempts):
        collector.record_fix_attempt(work_id)
    collector.complete_cycle(
        work_id, "done", diagnosis_accurate=accurate, root_cause_matched=accurate, workflow_used="bug-fix"
    )


def test_aggregates_rates_and_categories() -> None:
    collector = ProcessMetricsCollector(clock=StepClock())
    _complete(collector, "w1", _diagnosis("code", 0.8), attempts=1, accurate=True)
    _complete(collector, "w2", _diagnosis("code", 0.6), attempts=3, accurate=False)
    _complete(collector, "w3", _diagnosis("configuration", 0.9), attempts=1, accurate=True)

    aggregates = collector.compute_aggregates()

    assert aggregates.total_cycles == 3
    assert aggregates.avg_fix_attempts == pytest.approx(5 / 3)
    assert aggregates.first_fix_success_rate == pytest.approx(2 / 3)
    assert aggregates.diagnosis_accuracy_rate == pytest.approx(2 / 3)
    assert aggregates.avg_successful_confidence == pytest.approx(0.85)
    assert aggregates.by_category["code"].count == 2
    assert aggregates.by_category["code"].first_fix_success_rate == 0.5
    assert aggregates.by_category["configuration"].avg_confidence == 0.9
    assert aggregates.start is not None and aggregates.end is not None
    assert aggregates.start < aggregates.end
    assert aggregates.to_dict()["byCategory"]["code"]["count"] == 2


def test_storage_is_bounded_and_filterable() -> None:
    collector = ProcessMetricsCollector(max_stored_cycles=2, clock=StepClock())
    for index in range(3):
        _complete(collector, f"w{index}", _diagnosis(), attempts=1, accurate=True)

    kept = collector.completed_metrics()

    assert [metrics.work_id for metrics in kept] == ["w1", "w2"]
    assert collector.metrics_in_range(kept[1].completed_at, kept[1].completed_at) == [kept[1]]
    assert collector.compute_aggregates([]).total_cycles == 0
    assert collector.compute_aggregates([]).to_dict()["timeRange"] == {"start": None, "end": None}
    collector.clear()
    assert collector.completed_metrics() == []
    with pytest.raises(ValueError):
        ProcessMetricsCollector(max_stored_cycles=0)
