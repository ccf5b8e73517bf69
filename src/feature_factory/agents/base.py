from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import ClassVar

TOOL_ALLOWLIST = {"Read", "Write", "Edit", "Glob", "Grep", "Bash"}


class PhaseAgent:
    """Static description of one agent type: its role prompt, tools, and output contract."""

    role: ClassVar[str] = "agent"
    description: ClassVar[str] = ""
    fallback_prompt: ClassVar[str] = "You are a software engineering agent."
    tools: ClassVar[tuple[str, ...]] = ("Read", "Glob", "Grep")
    max_turns: ClassVar[int] = 30
    output_schema: ClassVar[Mapping[str, str]] = {}

    def __init__(self, *, prompts_dir: Path | None = None, extra_tools: tuple[str, ...] = ()) -> None:
        self.prompts_dir = prompts_dir
        self.allowed_tools = self._normalize_tools([*self.tools, *extra_tools])
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if self.prompts_dir is not None:
            override = self.prompts_dir / f"{self.role}.md"
            if override.is_file():
                return override.read_text(encoding="utf-8").strip()
        return self.fallback_prompt.strip()

    @staticmethod
    def _normalize_tools(tools: list[str]) -> list[str]:
        normalized: list[str] = []
        for tool in tools:
            name = str(tool).strip()
            if name and name not in normalized:
                normalized.append(name)
        unknown = [
            name for name in normalized if name not in TOOL_ALLOWLIST and not name.startswith("mcp__")
        ]
        if unknown:
            raise ValueError("Tool policy rejected unknown tools: " + ", ".join(unknown))
        return normalized

    def turn_limit(self, configured_limit: int) -> int:
        return max(1, min(self.max_turns, configured_limit))
