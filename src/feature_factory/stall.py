from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Literal

from feature_factory.config import StallConfig

StallType = Literal["repetition", "oscillation", "idle"]

INTERVENTION_HEADER = "=== STALL DETECTED ===\n\n"
INTERVENTION_FOOTER = (
    "\n\nIf you cannot make progress, summarize what you have accomplished "
    "and what is blocking you, then stop."
)


def hash_tool_input(tool_input: Any) -> str:
    """Stable digest of a tool input, independent of key order at any depth."""
    canonical = json.dumps(tool_input, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    tool_name: str
    input_hash: str
    had_file_activity: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.tool_name, self.input_hash)


@dataclass(slots=True)
class StallDetection:
    type: StallType
    description: str
    evidence: list[str] = field(default_factory=list)

    def intervention_message(self) -> str:
        if self.type == "repetition":
            body = (
                "You are repeating the same tool call with identical input. "
                f"{self.description}. Try a different approach or different input."
            )
        elif self.type == "oscillation":
            body = (
                "You are oscillating between two actions without making progress. "
                f"{self.description}. Step back, reassess your approach, and try a "
                "different strategy."
            )
        else:
            body = (
                "You have not created or modified any files for an extended period. "
                f"{self.description}. If you are researching, start writing code. "
                "If you are stuck, explain what is blocking you."
            )
        return INTERVENTION_HEADER + body + INTERVENTION_FOOTER


def detect_repetition(history: list[ToolCallRecord], threshold: int) -> StallDetection | None:
    if threshold <= 0 or len(history) < threshold:
        return None
    tail = history[-1]
    count = 0
    for record in reversed(history):
        if record.key != tail.key:
            break
        count += 1
    if count < threshold:
        return None
    return StallDetection(
        type="repetition",
        description=f"Repeated {tail.tool_name} with identical input {count} times",
        evidence=[
            f"Tool: {tail.tool_name}",
            f"Consecutive identical calls: {count}",
            f"Threshold: {threshold}",
        ],
    )


def detect_oscillation(history: list[ToolCallRecord], window_size: int) -> StallDetection | None:
    if window_size < 4 or len(history) < window_size:
        return None
    window = history[-window_size:]
    first, second = window[0], window[1]
    if first.key == second.key:
        return None
    for index, record in enumerate(window):
        expected = first if index % 2 == 0 else second
        if record.key != expected.key:
            return None
    return StallDetection(
        type="oscillation",
        description=f"Oscillating between {first.tool_name} and {second.tool_name}",
        evidence=[
            f"Pattern A: {first.tool_name} (hash: {first.input_hash})",
            f"Pattern B: {second.tool_name} (hash: {second.input_hash})",
            f"Window size: {window_size}",
        ],
    )


def detect_idle(current_turn: int, last_file_activity_turn: int, threshold: int) -> StallDetection | None:
    idle_turns = current_turn - last_file_activity_turn
    if threshold <= 0 or idle_turns < threshold:
        return None
    return StallDetection(
        type="idle",
        description=f"No file changes for {idle_turns} turns",
        evidence=[
            f"Current turn: {current_turn}",
            f"Last file activity: turn {last_file_activity_turn}",
            f"Idle turns: {idle_turns}",
            f"Threshold: {threshold}",
        ],
    )


class StallTracker:
    """Per-phase record of tool calls used to spot an agent that is going nowhere."""

    def __init__(self, config: StallConfig | None = None) -> None:
        self.config = config or StallConfig()
        self.history: list[ToolCallRecord] = []
        self.current_turn = 0
        self.last_file_activity_turn = 0
        self.interventions = 0
        self.detections: list[StallDetection] = []

    def record_turn(self, calls: list[ToolCallRecord]) -> None:
        self.current_turn += 1
        for call in calls:
            self.history.append(call)
            if call.had_file_activity:
                self.last_file_activity_turn = self.current_turn

    def detect(self) -> StallDetection | None:
        if not self.config.enabled:
            return None
        return (
            detect_repetition(self.history, self.config.repetition_threshold)
            or detect_oscillation(self.history, self.config.oscillation_window)
            or detect_idle(
                self.current_turn,
                self.last_file_activity_turn,
                self.config.idle_threshold,
            )
        )

    def record_intervention(self, detection: StallDetection) -> None:
        self.interventions += 1
        self.detections.append(detection)

    def should_hard_stop(self) -> bool:
        return self.interventions >= self.config.max_interventions

    def summary(self) -> dict[str, Any]:
        tool_counts: dict[str, int] = {}
        for record in self.history:
            tool_counts[record.tool_name] = tool_counts.get(record.tool_name, 0) + 1
        return {
            "turns": self.current_turn,
            "toolCalls": tool_counts,
            "lastFileActivityTurn": self.last_file_activity_turn,
            "interventions": self.interventions,
            "stalls": [detection.type for detection in self.detections],
        }
