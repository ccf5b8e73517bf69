"""Replay verification: does a captured learning make the same fix faster or possible?

A scenario is replayed twice through a fix executor, once as a baseline and once with
its learnings injected into the fix request, and the two runs are compared.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from feature_factory.persistence import utcnow_iso
from feature_factory.worker.discovery import Diagnosis, format_work_description
from feature_factory.worker.worker import ExecuteWorkflow

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_ATTEMPT_TIMEOUT_SECONDS = 30.0
DEFAULT_ATTEMPT_DELAY_SECONDS = 1.0

AsyncHook = Callable[[], Awaitable[None]]
VerificationEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class ReplayScenario:
    id: str
    name: str
    diagnosis: Diagnosis
    validate_success: Callable[[], Awaitable[bool]]
    captured_learnings: list[str] = field(default_factory=list)
    description: str = ""
    resolution: str = ""
    setup_failure: AsyncHook | None = None
    cleanup: AsyncHook | None = None


@dataclass(slots=True)
class ReplayAttempt:
    attempt: int
    duration_seconds: float
    success: bool
    actions: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "durationSeconds": self.duration_seconds,
            "success": self.success,
            "actions": list(self.actions),
            "error": self.error,
        }


@dataclass(slots=True)
class ReplayResult:
    scenario_id: str
    with_learnings: bool
    success: bool
    total_duration_seconds: float
    attempts: list[ReplayAttempt]
    started_at: str
    completed_at: str

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenarioId": self.scenario_id,
            "withLearnings": self.with_learnings,
            "success": self.success,
            "totalDurationSeconds": self.total_duration_seconds,
            "totalAttempts": self.total_attempts,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }


@dataclass(slots=True, frozen=True)
class Improvement:
    time_saved_seconds: float
    time_improvement_percent: float
    attempts_saved: int
    attempts_improvement_percent: float
    learnings_helped: bool
    learnings_enabled_success: bool

    @classmethod
    def between(cls, baseline: ReplayResult, enhanced: ReplayResult) -> Improvement:
        time_saved = baseline.total_duration_seconds - enhanced.total_duration_seconds
        attempts_saved = baseline.total_attempts - enhanced.total_attempts
        return cls(
            time_saved_seconds=time_saved,
            time_improvement_percent=_percent(time_saved, baseline.total_duration_seconds),
            attempts_saved=attempts_saved,
            attempts_improvement_percent=_percent(attempts_saved, baseline.total_attempts),
            learnings_helped=enhanced.success and (time_saved > 0 or attempts_saved > 0),
            learnings_enabled_success=not baseline.success and enhanced.success,
        )


def _percent(saved: float, base: float) -> float:
    return saved / base * 100 if base > 0 else 0.0


@dataclass(slots=True)
class ReplayComparison:
    scenario_id: str
    scenario_name: str
    baseline: ReplayResult
    enhanced: ReplayResult
    improvement: Improvement
    timestamp: str = field(default_factory=utcnow_iso)

    @property
    def learnings_hurt(self) -> bool:
        """Both runs succeeded and the run with learnings was slower and needed more attempts."""
        return (
            self.baseline.success
            and self.enhanced.success
            and self.improvement.time_saved_seconds < 0
            and self.improvement.attempts_saved < 0
        )


@dataclass(slots=True)
class VerificationSummary:
    total_scenarios: int = 0
    scenarios_improved: int = 0
    scenarios_enabled_success: int = 0
    scenarios_no_difference: int = 0
    scenarios_hurt: int = 0
    avg_time_improvement_percent: float = 0.0
    avg_attempts_improvement_percent: float = 0.0
    success_rate_with_learnings: float = 0.0
    success_rate_without_learnings: float = 0.0
    comparisons: list[ReplayComparison] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalScenarios": self.total_scenarios,
            "scenariosImproved": self.scenarios_improved,
            "scenariosEnabledSuccess": self.scenarios_enabled_success,
            "scenariosNoDifference": self.scenarios_no_difference,
            "scenariosHurt": self.scenarios_hurt,
            "avgTimeImprovementPercent": self.avg_time_improvement_percent,
            "avgAttemptsImprovementPercent": self.avg_attempts_improvement_percent,
            "successRateWithLearnings": self.success_rate_with_learnings,
            "successRateWithoutLearnings": self.success_rate_without_learnings,
            "comparisons": [comparison.scenario_id for comparison in self.comparisons],
        }


def summarize_comparisons(comparisons: list[ReplayComparison]) -> VerificationSummary:
    """Each comparison lands in exactly one bucket: enabled success, improved, hurt or no difference."""
    if not comparisons:
        return VerificationSummary()
    summary = VerificationSummary(total_scenarios=len(comparisons), comparisons=list(comparisons))
    for comparison in comparisons:
        improvement = comparison.improvement
        if improvement.learnings_enabled_success:
            summary.scenarios_enabled_success += 1
        elif improvement.learnings_helped:
            summary.scenarios_improved += 1
        elif comparison.learnings_hurt:
            summary.scenarios_hurt += 1
        else:
            summary.scenarios_no_difference += 1
    count = len(comparisons)
    summary.avg_time_improvement_percent = sum(c.improvement.time_improvement_percent for c in comparisons) / count
    summary.avg_attempts_improvement_percent = (
        sum(c.improvement.attempts_improvement_percent for c in comparisons) / count
    )
    summary.success_rate_with_learnings = sum(1 for c in comparisons if c.enhanced.success) / count
    summary.success_rate_without_learnings = sum(1 for c in comparisons if c.baseline.success) / count
    return summary


class FixExecutor(ABC):
    @abstractmethod
    async def attempt_fix(self, diagnosis: Diagnosis, learnings: list[str] | None) -> list[str]:
        """Try to fix the diagnosed problem and return the actions taken."""


def fix_request(diagnosis: Diagnosis, learnings: list[str] | None) -> str:
    lines = [f"Fix: {diagnosis.summary}", "", format_work_description(diagnosis)]
    if learnings:
        lines.extend(["", "**Learnings from earlier fixes**:", *(f"- {learning}" for learning in learnings)])
    return "\n".join(lines)


class WorkflowFixExecutor(FixExecutor):
    """Replays a fix by running a workflow through the same callable the worker uses."""

    def __init__(self, execute: ExecuteWorkflow, *, workflow: str = "bug-fix", budget_usd: float = 2.0) -> None:
        self.execute = execute
        self.workflow = workflow
        self.budget_usd = budget_usd
        self.total_cost_usd = 0.0

    async def attempt_fix(self, diagnosis: Diagnosis, learnings: list[str] | None) -> list[str]:
        result = await self.execute(self.workflow, fix_request(diagnosis, learnings), self.budget_usd)
        self.total_cost_usd += result.cost_usd
        outcome = "completed" if result.success else "failed"
        actions = [f"{self.workflow} {outcome} (${result.cost_usd:.4f})"]
        if result.resolution:
            actions.append(result.resolution)
        if result.error:
            actions.append(f"error: {result.error}")
        return actions


class ReplayVerifier:
    """Runs registered scenarios with and without their learnings and compares the runs.

    Each replay makes up to ``max_attempts`` fix attempts, stopping at the first one whose
    ``validate_success`` check passes. An attempt that raises or exceeds
    ``attempt_timeout_seconds`` counts as failed. ``cleanup`` always runs after a replay.
    """

    def __init__(
        self,
        executor: FixExecutor,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        attempt_timeout_seconds: float = DEFAULT_ATTEMPT_TIMEOUT_SECONDS,
        attempt_delay_seconds: float = DEFAULT_ATTEMPT_DELAY_SECONDS,
        event_hook: VerificationEventHook | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be greater than 0")
        self.executor = executor
        self.max_attempts = max_attempts
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self.attempt_delay_seconds = attempt_delay_seconds
        self.event_hook = event_hook
        self._clock = clock
        self._sleep = sleep
        self._scenarios: dict[str, ReplayScenario] = {}

    def _emit(self, event: str, **payload: Any) -> None:
        if self.event_hook:
            self.event_hook({"event": event, "timestamp": utcnow_iso(), **payload})

    def register_scenario(self, scenario: ReplayScenario) -> None:
        self._scenarios[scenario.id] = scenario
        logger.debug("Registered replay scenario %s", scenario.id)

    def unregister_scenario(self, scenario_id: str) -> None:
        self._scenarios.pop(scenario_id, None)

    @property
    def scenarios(self) -> list[ReplayScenario]:
        return list(self._scenarios.values())

    def _scenario(self, scenario_id: str) -> ReplayScenario:
        scenario = self._scenarios.get(scenario_id)
        if scenario is None:
            raise ValueError(f"Scenario not found: {scenario_id}")
        return scenario

    async def _attempt(self, scenario: ReplayScenario, number: int, with_learnings: bool) -> ReplayAttempt:
        started = self._clock()
        learnings = scenario.captured_learnings if with_learnings else None
        actions: list[str] = []
        success = False
        error = None
        try:
            actions = await asyncio.wait_for(
                self.executor.attempt_fix(scenario.diagnosis, learnings),
                timeout=self.attempt_timeout_seconds,
            )
            success = await scenario.validate_success()
        except TimeoutError:
            error = f"Attempt timed out after {self.attempt_timeout_seconds:g}s"
        except Exception as exc:
            error = str(exc) or type(exc).__name__
        return ReplayAttempt(
            attempt=number,
            duration_seconds=self._clock() - started,
            success=success,
            actions=list(actions),
            error=error,
        )

    async def replay(self, scenario_id: str, *, with_learnings: bool) -> ReplayResult:
        scenario = self._scenario(scenario_id)
        started_at = utcnow_iso()
        started = self._clock()
        attempts: list[ReplayAttempt] = []
        self._emit("replay-started", scenarioId=scenario_id, withLearnings=with_learnings)
        if scenario.setup_failure is not None:
            await scenario.setup_failure()
        try:
            for number in range(1, self.max_attempts + 1):
                attempt = await self._attempt(scenario, number, with_learnings)
                attempts.append(attempt)
                self._emit("replay-attempt", scenarioId=scenario_id, **attempt.to_dict())
                logger.info(
                    "Replay %s attempt %d/%d: %s",
                    scenario_id,
                    number,
                    self.max_attempts,
                    "success" if attempt.success else attempt.error or "failed",
                )
                if attempt.success:
                    break
                if number < self.max_attempts:
                    await self._sleep(self.attempt_delay_seconds)
        finally:
            if scenario.cleanup is not None:
                await scenario.cleanup()
        result = ReplayResult(
            scenario_id=scenario_id,
            with_learnings=with_learnings,
            success=bool(attempts) and attempts[-1].success,
            total_duration_seconds=self._clock() - started,
            attempts=attempts,
            started_at=started_at,
            completed_at=utcnow_iso(),
        )
        self._emit("replay-completed", **result.to_dict())
        return result

    async def compare(self, scenario_id: str) -> ReplayComparison:
        scenario = self._scenario(scenario_id)
        baseline = await self.replay(scenario_id, with_learnings=False)
        enhanced = await self.replay(scenario_id, with_learnings=True)
        comparison = ReplayComparison(
            scenario_id=scenario_id,
            scenario_name=scenario.name,
            baseline=baseline,
            enhanced=enhanced,
            improvement=Improvement.between(baseline, enhanced),
        )
        self._emit(
            "comparison-completed",
            scenarioId=scenario_id,
            timeImprovementPercent=comparison.improvement.time_improvement_percent,
            attemptsImprovementPercent=comparison.improvement.attempts_improvement_percent,
        )
        logger.info(
            "Compared %s: time %.1f%% better, attempts %.1f%% better",
            scenario_id,
            comparison.improvement.time_improvement_percent,
            comparison.improvement.attempts_improvement_percent,
        )
        return comparison

    async def verify_all(self) -> VerificationSummary:
        """Compare every registered scenario; a scenario that errors is left out of the summary."""
        comparisons: list[ReplayComparison] = []
        for scenario in self.scenarios:
            try:
                comparisons.append(await self.compare(scenario.id))
            except Exception as exc:
                logger.warning("Replay verification of %s failed: %s", scenario.id, exc)
        summary = summarize_comparisons(comparisons)
        self._emit("verification-completed", **summary.to_dict())
        return summary
