import pytest

from feature_factory.config import ApprovalConfig
from feature_factory.worker.discovery import DiscoveredWork
from feature_factory.worker.policy import ApprovalPolicy


def _work(tier: int, *, source: str = "debugger-alert", priority: str = "medium", workflow: str = "bug-fix") -> DiscoveredWork:
    return DiscoveredWork(
        id=f"w-{tier}",
        source=source,
        priority=priority,
        tier=tier,
        suggested_workflow=workflow,
        summary="s",
        description="d",
    )


@pytest.mark.parametrize(
    ("tier", "expected"),
    [(1, "auto-execute"), (2, "auto-execute"), (3, "confirm"), (4, "escalate"), (9, "escalate")],
)
def test_tier_defaults(tier: int, expected: str) -> None:
    decision = ApprovalPolicy().evaluate(_work(tier))

    assert decision.decision == expected
    assert decision.tier == tier


def test_source_override_beats_priority_override() -> None:
    policy = ApprovalPolicy(
        source_overrides={"debugger-alert": "confirm"},
        priority_overrides={"critical": "auto-execute"},
    )

    by_source = policy.evaluate(_work(1, priority="critical"))
    by_priority = policy.evaluate(_work(4, source="user-request", priority="critical"))

    assert by_source.decision == "confirm"
    assert by_source.reason == "source override: debugger-alert -> confirm"
    assert by_priority.decision == "auto-execute"
    assert by_priority.reason == "priority override: critical -> auto-execute"


def test_manual_review_always_escalates() -> None:
    policy = ApprovalPolicy(source_overrides={"user-request": "auto-execute"})

    decision = policy.evaluate(_work(1, source="user-request", workflow="manual-review"))

    assert decision.decision == "escalate"


def test_costly_auto_execute_is_lowered_to_confirm() -> None:
    policy = ApprovalPolicy(max_auto_execute_budget_usd=10.0)

    within = policy.evaluate(_work(1), estimated_cost_usd=9.5)
    over = policy.evaluate(_work(1), estimated_cost_usd=12.0)

    assert within.decision == "auto-execute"
    assert over.decision == "confirm"
    assert over.reason == "estimated cost $12.00 exceeds auto-execute budget of $10.00"


def test_policy_from_config_converts_tier_keys() -> None:
    config = ApprovalConfig()
    config.tier_defaults["3"] = "escalate"
    config.max_auto_execute_budget_usd = 2.0

    policy = ApprovalPolicy.from_config(config)

    assert policy.tier_defaults[3] == "escalate"
    assert policy.max_auto_execute_budget_usd == 2.0


def test_unknown_action_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown approval action"):
        ApprovalPolicy(priority_overrides={"low": "ignore"})
