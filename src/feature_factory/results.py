from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal

JSON_BLOCK_PATTERN = re.compile(r"```json\s*\n(.*?)\n?\s*```", re.DOTALL)

# USD per million tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "sonnet": (3.0, 15.0),
    "opus": (15.0, 75.0),
    "haiku": (0.25, 1.25),
}


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Price a model call by alias; unknown models are priced as sonnet."""
    input_price, output_price = MODEL_PRICING.get(model, MODEL_PRICING["sonnet"])
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


@dataclass(slots=True)
class StructuredOutput:
    """Final answer of an agent: either a parsed JSON object or the raw text.

    Validators must go through ``get``/``has`` so that a raw fallback simply reads
    as "field missing" instead of raising.
    """

    kind: Literal["parsed", "raw"]
    data: dict[str, Any] = field(default_factory=dict)
    raw_text: str = ""

    @property
    def parsed(self) -> bool:
        return self.kind == "parsed"

    def get(self, key: str, default: Any = None) -> Any:
        if not self.parsed:
            return default
        return self.data.get(key, default)

    def has(self, key: str) -> bool:
        return self.parsed and self.data.get(key) is not None

    def to_dict(self) -> dict[str, Any]:
        if self.parsed:
            return dict(self.data)
        return {"rawOutput": self.raw_text}

    @classmethod
    def from_dict(cls, payload: Any) -> StructuredOutput:
        if not isinstance(payload, dict):
            return cls(kind="raw", raw_text=str(payload or ""))
        if set(payload) == {"rawOutput"}:
            return cls(kind="raw", raw_text=str(payload["rawOutput"]))
        return cls(kind="parsed", data=dict(payload))


def parse_structured_output(text: str) -> StructuredOutput:
    """Extract a JSON object from a fenced ```json block, else the whole text."""
    match = JSON_BLOCK_PATTERN.search(text)
    candidates = [match.group(1)] if match else []
    candidates.append(text.strip())
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return StructuredOutput(kind="parsed", data=parsed, raw_text=text)
    return StructuredOutput(kind="raw", raw_text=text)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item).strip()]


@dataclass(slots=True)
class AgentResult:
    agent: str
    success: bool
    output: StructuredOutput = field(default_factory=lambda: StructuredOutput(kind="raw"))
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    cost_usd: float = 0.0
    turns_used: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "success": self.success,
            "output": self.output.to_dict(),
            "filesCreated": list(self.files_created),
            "filesModified": list(self.files_modified),
            "commits": list(self.commits),
            "costUsd": self.cost_usd,
            "turnsUsed": self.turns_used,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentResult:
        return cls(
            agent=str(payload.get("agent", "")),
            success=bool(payload.get("success", False)),
            output=StructuredOutput.from_dict(payload.get("output")),
            files_created=_string_list(payload.get("filesCreated")),
            files_modified=_string_list(payload.get("filesModified")),
            commits=_string_list(payload.get("commits")),
            cost_usd=float(payload.get("costUsd", 0.0) or 0.0),
            turns_used=int(payload.get("turnsUsed", 0) or 0),
            error=payload.get("error"),
        )
