"""Routes discovered work to auto-execute, confirm, or escalate."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal

from feature_factory.config import ApprovalConfig
from feature_factory.worker.discovery import DiscoveredWork

ApprovalAction = Literal["auto-execute", "confirm", "escalate"]
APPROVAL_ACTIONS: tuple[str, ...] = ("auto-execute", "confirm", "escalate")


@dataclass(slots=True, frozen=True)
class ApprovalDecision:
    decision: ApprovalAction
    reason: str
    tier: int
    source: str


@dataclass(slots=True)
class ApprovalPolicy:
    tier_defaults: dict[int, str] = field(
        default_factory=lambda: {1: "auto-execute", 2: "auto-execute", 3: "confirm", 4: "escalate"}
    )
    source_overrides: dict[str, str] = field(default_factory=dict)
    priority_overrides: dict[str, str] = field(default_factory=dict)
    max_auto_execute_budget_usd: float = 10.0

    def __post_init__(self) -> None:
        for mapping in (self.tier_defaults, self.source_overrides, self.priority_overrides):
            _check_actions(mapping)

    @classmethod
    def from_config(cls, config: ApprovalConfig) -> ApprovalPolicy:
        return cls(
            tier_defaults={int(tier): action for tier, action in config.tier_defaults.items()},
            source_overrides=dict(config.source_overrides),
            priority_overrides=dict(config.priority_overrides),
            max_auto_execute_budget_usd=config.max_auto_execute_budget_usd,
        )

    def evaluate(self, work: DiscoveredWork, *, estimated_cost_usd: float | None = None) -> ApprovalDecision:
        """Decide how ``work`` may proceed.

        Precedence is source override, then priority override, then the tier default. Manual
        review always escalates, and an auto-execute decision whose estimated cost is over the
        ceiling is lowered to confirm.
        """
        if work.suggested_workflow == "manual-review":
            return ApprovalDecision(
                decision="escalate",
                reason="manual-review workflow requires human handling",
                tier=work.tier,
                source=work.source,
            )

        if work.source in self.source_overrides:
            decision = self.source_overrides[work.source]
            reason = f"source override: {work.source} -> {decision}"
        elif work.priority in self.priority_overrides:
            decision = self.priority_overrides[work.priority]
            reason = f"priority override: {work.priority} -> {decision}"
        else:
            decision = self.tier_defaults.get(work.tier, "escalate")
            reason = f"tier {work.tier} default -> {decision}"

        if (
            decision == "auto-execute"
            and estimated_cost_usd is not None
            and estimated_cost_usd > self.max_auto_execute_budget_usd
        ):
            decision = "confirm"
            reason = (
                f"estimated cost ${estimated_cost_usd:.2f} exceeds auto-execute budget of "
                f"${self.max_auto_execute_budget_usd:.2f}"
            )

        return ApprovalDecision(decision=decision, reason=reason, tier=work.tier, source=work.source)  # type: ignore[arg-type]


def _check_actions(mapping: Mapping[object, str]) -> None:
    for key, action in mapping.items():
        if action not in APPROVAL_ACTIONS:
            raise ValueError(f"Unknown approval action for {key}: {action}")
