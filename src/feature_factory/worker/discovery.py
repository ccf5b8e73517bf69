"""Work items and their classification from a validation-failure diagnosis."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Literal

from feature_factory.persistence import parse_iso, utcnow_iso

WorkSource = Literal["validation-failure", "debugger-alert", "user-request", "scheduled", "webhook-error"]
WorkPriority = Literal["critical", "high", "medium", "low"]
SuggestedWorkflow = Literal["bug-fix", "refactor", "new-feature", "investigation", "manual-review"]
WorkStatus = Literal["pending", "in-progress", "completed", "escalated", "deferred"]

PRIORITY_ORDER: tuple[str, ...] = ("critical", "high", "medium", "low")
TERMINAL_WORK_STATUSES = frozenset({"completed", "escalated", "deferred"})
RESOURCE_ID_KEYS = ("sid", "resourceSid", "callSid", "messageSid")


def priority_rank(priority: str) -> int:
    try:
        return PRIORITY_ORDER.index(priority)
    except ValueError:
        return len(PRIORITY_ORDER)


@dataclass(slots=True)
class DiscoveredWork:
    id: str
    source: str
    priority: str
    tier: int
    suggested_workflow: str
    summary: str
    description: str
    discovered_at: str = field(default_factory=utcnow_iso)
    resource_ids: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    status: str = "pending"
    assigned_to: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    resolution: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORK_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "discoveredAt": self.discovered_at,
            "source": self.source,
            "priority": self.priority,
            "tier": self.tier,
            "suggestedWorkflow": self.suggested_workflow,
            "summary": self.summary,
            "description": self.description,
            "resourceIds": list(self.resource_ids),
            "tags": list(self.tags),
            "status": self.status,
            "assignedTo": self.assigned_to,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "resolution": self.resolution,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> DiscoveredWork:
        discovered_at = str(payload.get("discoveredAt") or utcnow_iso())
        parse_iso(discovered_at)
        return cls(
            id=str(payload["id"]),
            discovered_at=discovered_at,
            source=str(payload.get("source", "user-request")),
            priority=str(payload.get("priority", "medium")),
            tier=int(payload.get("tier", 3)),
            suggested_workflow=str(payload.get("suggestedWorkflow", "bug-fix")),
            summary=str(payload.get("summary", "")),
            description=str(payload.get("description", "")),
            resource_ids=[str(item) for item in payload.get("resourceIds") or []],
            tags=[str(item) for item in payload.get("tags") or []],
            status=str(payload.get("status", "pending")),
            assigned_to=payload.get("assignedTo"),
            started_at=payload.get("startedAt"),
            completed_at=payload.get("completedAt"),
            resolution=payload.get("resolution"),
        )


@dataclass(slots=True)
class SuggestedFix:
    description: str
    action_type: str
    confidence: float
    automated: bool


@dataclass(slots=True)
class Evidence:
    source: str
    relevance: str
    data: Any = None


@dataclass(slots=True)
class Diagnosis:
    """Root-cause analysis of a failed validation, as produced by the diagnostic bridge."""

    pattern_id: str
    summary: str
    category: str
    root_cause: str
    confidence: float
    suggested_fixes: list[SuggestedFix] = field(default_factory=list)
    evidence: list[Evidence] = field(default_factory=list)
    resource_id: str | None = None
    is_known_pattern: bool = False
    previous_occurrences: int = 0

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Diagnosis:
        root_cause = payload.get("rootCause") or {}
        validation = payload.get("validationResult") or {}
        return cls(
            pattern_id=str(payload["patternId"]),
            summary=str(payload.get("summary", "")),
            category=str(root_cause.get("category", "unknown")),
            root_cause=str(root_cause.get("description", "")),
            confidence=float(root_cause.get("confidence", 0.0)),
            suggested_fixes=[
                SuggestedFix(
                    description=str(fix.get("description", "")),
                    action_type=str(fix.get("actionType", "code")),
                    confidence=float(fix.get("confidence", 0.0)),
                    automated=bool(fix.get("automated", False)),
                )
                for fix in payload.get("suggestedFixes") or []
            ],
            evidence=[
                Evidence(
                    source=str(item.get("source", "")),
                    relevance=str(item.get("relevance", "supporting")),
                    data=item.get("data"),
                )
                for item in payload.get("evidence") or []
            ],
            resource_id=validation.get("resourceSid") or None,
            is_known_pattern=bool(payload.get("isKnownPattern", False)),
            previous_occurrences=int(payload.get("previousOccurrences", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "patternId": self.pattern_id,
            "summary": self.summary,
            "rootCause": {
                "category": self.category,
                "description": self.root_cause,
                "confidence": self.confidence,
            },
            "suggestedFixes": [
                {
                    "description": fix.description,
                    "actionType": fix.action_type,
                    "confidence": fix.confidence,
                    "automated": fix.automated,
                }
                for fix in self.suggested_fixes
            ],
            "evidence": [
                {"source": item.source, "relevance": item.relevance, "data": item.data} for item in self.evidence
            ],
            "isKnownPattern": self.is_known_pattern,
            "previousOccurrences": self.previous_occurrences,
        }
        if self.resource_id:
            payload["validationResult"] = {"resourceSid": self.resource_id}
        return payload


def determine_priority(diagnosis: Diagnosis) -> WorkPriority:
    if diagnosis.category == "configuration" and diagnosis.confidence > 0.8:
        return "critical"
    if diagnosis.category == "code":
        return "high"
    if diagnosis.category in ("external", "timing"):
        return "medium"
    return "low"


def determine_automation_tier(diagnosis: Diagnosis) -> int:
    """1 = simple configuration fix, 2 = confident code fix, 3 = needs review, 4 = manual."""
    has_automated_fix = any(fix.automated and fix.confidence > 0.7 for fix in diagnosis.suggested_fixes)
    if diagnosis.category == "configuration" and has_automated_fix and diagnosis.confidence > 0.8:
        return 1
    if diagnosis.category == "code" and has_automated_fix and diagnosis.confidence > 0.6:
        return 2
    if diagnosis.suggested_fixes and diagnosis.confidence > 0.5:
        return 3
    return 4


def suggest_workflow(diagnosis: Diagnosis) -> SuggestedWorkflow:
    if diagnosis.category == "configuration":
        return "bug-fix"
    if diagnosis.category == "code":
        if any("refactor" in fix.description.lower() for fix in diagnosis.suggested_fixes):
            return "refactor"
        return "bug-fix"
    if diagnosis.category == "external":
        return "manual-review"
    return "investigation"


def format_work_description(diagnosis: Diagnosis) -> str:
    lines = [
        f"**Root Cause**: {diagnosis.root_cause}",
        f"**Category**: {diagnosis.category}",
        f"**Confidence**: {diagnosis.confidence * 100:.0f}%",
        "",
        "**Evidence**:",
        *(f"- {item.source}: {item.relevance}" for item in diagnosis.evidence),
        "",
        "**Suggested Fixes**:",
        *(
            f"- [{fix.action_type}] {fix.description} "
            f"(confidence: {fix.confidence * 100:.0f}%, automated: {str(fix.automated).lower()})"
            for fix in diagnosis.suggested_fixes
        ),
    ]
    if diagnosis.is_known_pattern:
        lines.extend(["", f"**Note**: This is a known pattern (seen {diagnosis.previous_occurrences} times before)"])
    return "\n".join(lines)


def extract_resource_ids(diagnosis: Diagnosis) -> list[str]:
    ordered: dict[str, None] = {}
    if diagnosis.resource_id:
        ordered[diagnosis.resource_id] = None
    for item in diagnosis.evidence:
        if not isinstance(item.data, dict):
            continue
        for key in RESOURCE_ID_KEYS:
            value = item.data.get(key)
            if isinstance(value, str) and value:
                ordered.setdefault(value, None)
    return list(ordered)


def create_work_from_diagnosis(diagnosis: Diagnosis, source: str = "validation-failure") -> DiscoveredWork:
    workflow = suggest_workflow(diagnosis)
    return DiscoveredWork(
        id=f"work-{diagnosis.pattern_id}-{int(time.time() * 1000)}-{secrets.token_hex(2)}",
        source=source,
        priority=determine_priority(diagnosis),
        tier=determine_automation_tier(diagnosis),
        suggested_workflow=workflow,
        summary=diagnosis.summary,
        description=format_work_description(diagnosis),
        resource_ids=extract_resource_ids(diagnosis),
        tags=[diagnosis.category, workflow],
    )
