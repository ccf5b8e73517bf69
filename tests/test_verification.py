import asyncio
from typing import Any

import pytest

from feature_factory.verification import (
    FixExecutor,
    ReplayScenario,
    ReplayVerifier,
    WorkflowFixExecutor,
    fix_request,
    summarize_comparisons,
)
from feature_factory.worker import WorkflowResult
from feature_factory.worker.discovery import Diagnosis

DIAGNOSIS = Diagnosis.from_dict(
    {
        "patternId": "PAT-webhook-500",
        "summary": "Webhook handler throws on empty body",
        "rootCause": {"category": "code", "description": "null body", "confidence": 0.8},
    }
)


class TickClock:
    """Advances one second per reading."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


async def _no_sleep(seconds: float) -> None:
    _ = seconds


class ScriptedExecutor(FixExecutor):
    """Fails until it has been called ``needed`` times, fewer when learnings are supplied."""

    def __init__(self, needed: int, needed_with_learnings: int, errors: list[Exception] | None = None) -> None:
        self.needed = needed
        self.needed_with_learnings = needed_with_learnings
        self.errors = list(errors or [])
        self.calls: list[list[str] | None] = []
        self.fixed = False

    async def attempt_fix(self, diagnosis: Diagnosis, learnings: list[str] | None) -> list[str]:
        self.calls.append(learnings)
        if self.errors:
            raise self.errors.pop(0)
        attempts = sum(1 for call in self.calls if (call is None) == (learnings is None))
        self.fixed = attempts >= (self.needed_with_learnings if learnings else self.needed)
        return [f"patched {diagnosis.pattern_id}"]


def _scenario(executor: ScriptedExecutor, **overrides: Any) -> ReplayScenario:
    async def validate() -> bool:
        return executor.fixed

    values: dict[str, Any] = {
        "id": "webhook-500",
        "name": "Webhook 500 on empty body",
        "diagnosis": DIAGNOSIS,
        "validate_success": validate,
        "captured_learnings": ["Guard request bodies before parsing"],
    }
    values.update(overrides)
    return ReplayScenario(**values)


def _verifier(executor: FixExecutor, **kwargs: Any) -> ReplayVerifier:
    kwargs.setdefault("clock", TickClock())
    kwargs.setdefault("sleep", _no_sleep)
    return ReplayVerifier(executor, **kwargs)


def test_replay_stops_at_first_validated_attempt() -> None:
    executor = ScriptedExecutor(needed=3, needed_with_learnings=1)
    verifier = _verifier(executor, max_attempts=5)
    verifier.register_scenario(_scenario(executor))

    result = asyncio.run(verifier.replay("webhook-500", with_learnings=False))

    assert result.success
    assert result.total_attempts == 3
    assert [attempt.success for attempt in result.attempts] == [False, False, True]
    assert result.attempts[0].actions == ["patched PAT-webhook-500"]
    assert executor.calls == [None, None, None]


def test_compare_credits_learnings_that_save_attempts() -> None:
    executor = ScriptedExecutor(needed=3, needed_with_learnings=1)
    events: list[dict[str, Any]] = []
    verifier = _verifier(executor, event_hook=events.append)
    verifier.register_scenario(_scenario(executor))

    comparison = asyncio.run(verifier.compare("webhook-500"))

    assert comparison.baseline.total_attempts == 3
    assert comparison.enhanced.total_attempts == 1
    assert comparison.improvement.attempts_saved == 2
    assert comparison.improvement.attempts_improvement_percent == pytest.approx(200 / 3)
    assert comparison.improvement.learnings_helped
    assert not comparison.improvement.learnings_enabled_success
    assert executor.calls[-1] == ["Guard request bodies before parsing"]
    assert [event["event"] for event in events].count("replay-attempt") == 4
    assert events[-1]["event"] == "comparison-completed"


def test_learnings_that_enable_success_are_counted_separately() -> None:
    executor = ScriptedExecutor(needed=99, needed_with_learnings=2)
    verifier = _verifier(executor, max_attempts=2)
    verifier.register_scenario(_scenario(executor))

    summary = asyncio.run(verifier.verify_all())

    assert summary.total_scenarios == 1
    assert summary.scenarios_enabled_success == 1
    assert summary.scenarios_improved == 0
    assert summary.success_rate_with_learnings == 1.0
    assert summary.success_rate_without_learnings == 0.0


def test_failing_and_slow_attempts_are_recorded_not_raised() -> None:
    class SlowExecutor(FixExecutor):
        async def attempt_fix(self, diagnosis: Diagnosis, learnings: list[str] | None) -> list[str]:
            await asyncio.sleep(1)
            return []

    flaky = ScriptedExecutor(needed=1, needed_with_learnings=1, errors=[RuntimeError("sandbox gone")])
    verifier = _verifier(flaky, max_attempts=2)
    verifier.register_scenario(_scenario(flaky))
    slow = _verifier(SlowExecutor(), max_attempts=1, attempt_timeout_seconds=0.01)
    slow.register_scenario(_scenario(flaky, id="slow"))

    recovered = asyncio.run(verifier.replay("webhook-500", with_learnings=False))
    timed_out = asyncio.run(slow.replay("slow", with_learnings=False))

    assert recovered.success
    assert recovered.attempts[0].error == "sandbox gone"
    assert not timed_out.success
    assert timed_out.attempts[0].error == "Attempt timed out after 0.01s"


def test_setup_and_cleanup_wrap_each_replay() -> None:
    executor = ScriptedExecutor(needed=1, needed_with_learnings=1)
    calls: list[str] = []

    async def setup() -> None:
        calls.append("setup")

    async def cleanup() -> None:
        calls.append("cleanup")

    verifier = _verifier(executor)
    verifier.register_scenario(_scenario(executor, setup_failure=setup, cleanup=cleanup))

    asyncio.run(verifier.compare("webhook-500"))

    assert calls == ["setup", "cleanup", "setup", "cleanup"]


def test_unknown_scenarios_are_rejected_and_skipped_in_summary() -> None:
    executor = ScriptedExecutor(needed=1, needed_with_learnings=1)
    verifier = _verifier(executor)

    with pytest.raises(ValueError, match="Scenario not found: missing"):
        asyncio.run(verifier.replay("missing", with_learnings=True))

    verifier.register_scenario(_scenario(executor))
    verifier.unregister_scenario("webhook-500")
    assert verifier.scenarios == []
    assert asyncio.run(verifier.verify_all()).total_scenarios == 0
    assert summarize_comparisons([]).success_rate_with_learnings == 0.0


def test_workflow_executor_injects_learnings_into_request() -> None:
    requests: list[tuple[str, str, float]] = []

    async def execute(workflow_type: str, description: str, budget_usd: float) -> WorkflowResult:
        requests.append((workflow_type, description, budget_usd))
        return WorkflowResult(True, 0.25, resolution="Session s1 completed")

    executor = WorkflowFixExecutor(execute, budget_usd=1.5)

    actions = asyncio.run(executor.attempt_fix(DIAGNOSIS, ["Guard request bodies"]))

    assert actions == ["bug-fix completed ($0.2500)", "Session s1 completed"]
    assert executor.total_cost_usd == 0.25
    workflow_type, description, budget = requests[0]
    assert (workflow_type, budget) == ("bug-fix", 1.5)
    assert description.startswith("Fix: Webhook handler throws on empty body")
    assert description.endswith("**Learnings from earlier fixes**:\n- Guard request bodies")
    assert "Learnings" not in fix_request(DIAGNOSIS, None)
