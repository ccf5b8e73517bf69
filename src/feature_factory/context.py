"""Keeps agent conversation history inside the model's context window.

Tool output is truncated per tool before it is appended to history, and once the
prompt size reported by the model crosses a threshold, older turn pairs are folded
into a short summary appended to the original task prompt.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

Message = dict[str, Any]

TEST_SUMMARY_PATTERNS = (
    re.compile(r"=+ ([^=\n]*\b\d+ (?:passed|failed)[^=\n]*) =+"),
    re.compile(r"Tests:\s*\d+\s*(?:passed|failed)[^\n]*", re.IGNORECASE),
)
PATH_PATTERN = re.compile(r"(?:/[\w./-]+\.(?:py|pyi|toml|cfg|ini|json|md|txt|ts|js))")


@dataclass(slots=True)
class TruncationResult:
    output: str
    was_truncated: bool
    original_length: int
    truncated_length: int


@dataclass(slots=True)
class CompactionResult:
    messages: list[Message]
    turn_pairs_removed: int
    summary: str


@dataclass(slots=True)
class ContextLimits:
    bash_output_max_chars: int = 30_000
    read_output_max_chars: int = 40_000
    grep_output_max_chars: int = 20_000
    glob_max_paths: int = 200
    default_output_max_chars: int = 20_000
    compaction_threshold_tokens: int = 120_000
    keep_recent_turn_pairs: int = 8
    bash_head_lines: int = 150
    bash_tail_lines: int = 150


@dataclass(slots=True)
class ContextManager:
    limits: ContextLimits = field(default_factory=ContextLimits)

    def truncate(self, tool_name: str, output: str) -> TruncationResult:
        if tool_name == "Bash":
            return self._truncate_bash(output)
        if tool_name == "Read":
            return self._truncate_middle(output, self.limits.read_output_max_chars, len(output))
        if tool_name == "Grep":
            return self._truncate_grep(output)
        if tool_name == "Glob":
            return self._truncate_glob(output)
        return self._truncate_simple(output)

    @staticmethod
    def _unchanged(output: str) -> TruncationResult:
        return TruncationResult(output, False, len(output), len(output))

    def _truncate_bash(self, output: str) -> TruncationResult:
        max_chars = self.limits.bash_output_max_chars
        if len(output) <= max_chars:
            return self._unchanged(output)
        lines = output.split("\n")
        head_count = self.limits.bash_head_lines
        tail_count = self.limits.bash_tail_lines
        if len(lines) <= head_count + tail_count:
            return self._truncate_middle(output, max_chars, len(output))
        omitted = len(lines) - head_count - tail_count
        head = "\n".join(lines[:head_count])
        tail = "\n".join(lines[-tail_count:])
        truncated = f"{head}\n\n[TRUNCATED: {omitted} lines omitted]\n\n{tail}"
        if len(truncated) > max_chars:
            return self._truncate_middle(truncated, max_chars, len(output))
        return TruncationResult(truncated, True, len(output), len(truncated))

    @staticmethod
    def _truncate_middle(output: str, max_chars: int, original_length: int) -> TruncationResult:
        if len(output) <= max_chars:
            return TruncationResult(output, False, original_length, len(output))
        # 60 characters are reserved for the marker.
        half = max(0, (max_chars - 60) // 2)
        head = output[:half]
        tail = output[-half:] if half else ""
        omitted = len(output) - half * 2
        truncated = f"{head}\n\n[TRUNCATED: {omitted} characters omitted]\n\n{tail}"
        return TruncationResult(truncated, True, original_length, len(truncated))

    def _truncate_grep(self, output: str) -> TruncationResult:
        max_chars = self.limits.grep_output_max_chars
        if len(output) <= max_chars:
            return self._unchanged(output)
        lines = output.split("\n")
        budget = max_chars - 80
        used = 0
        kept = 0
        for line in lines:
            if used + len(line) + 1 > budget:
                break
            used += len(line) + 1
            kept += 1
        truncated = "\n".join(lines[:kept]) + f"\n\n[TRUNCATED: {len(lines) - kept} more matches]"
        return TruncationResult(truncated, True, len(output), len(truncated))

    def _truncate_glob(self, output: str) -> TruncationResult:
        paths = [line for line in output.split("\n") if line]
        max_paths = self.limits.glob_max_paths
        if len(paths) <= max_paths:
            return self._unchanged(output)
        truncated = "\n".join(paths[:max_paths]) + (
            f"\n\n[TRUNCATED: {len(paths) - max_paths} more paths]"
        )
        return TruncationResult(truncated, True, len(output), len(truncated))

    def _truncate_simple(self, output: str) -> TruncationResult:
        max_chars = self.limits.default_output_max_chars
        if len(output) <= max_chars:
            return self._unchanged(output)
        truncated = output[:max_chars] + "\n\n[TRUNCATED]"
        return TruncationResult(truncated, True, len(output), len(truncated))

    @staticmethod
    def estimate_tokens(messages: list[Message]) -> int:
        """Rough size of a history at four characters per token."""
        total = 0
        for message in messages:
            content = message.get("content")
            if isinstance(content, str):
                total += len(content)
            else:
                total += len(json.dumps(content, ensure_ascii=False, default=str))
        return total // 4

    def should_compact(self, input_tokens: int, messages: list[Message] | None = None) -> bool:
        used = input_tokens
        if used <= 0 and messages is not None:
            used = self.estimate_tokens(messages)
        return used >= self.limits.compaction_threshold_tokens

    def compact(self, messages: list[Message]) -> CompactionResult:
        keep_recent = self.limits.keep_recent_turn_pairs * 2
        if len(messages) <= keep_recent + 1:
            return CompactionResult(list(messages), 0, "")

        initial = messages[0]
        split = len(messages) - keep_recent
        # The first kept message must have the opposite role of the initial prompt.
        if split < len(messages) and messages[split].get("role") == initial.get("role"):
            split += 1
        evictable = messages[1:split]
        recent = messages[split:]

        summary_lines: list[str] = []
        files_touched: list[str] = []
        test_status = ""
        for offset, message in enumerate(evictable):
            turn_number = offset + 2
            if message.get("role") == "assistant":
                tool_summary = self._tool_summary(message)
                if tool_summary:
                    summary_lines.append(f"- Turn {turn_number}: {tool_summary}")
                continue
            files, status = self._result_summary(message)
            for path in files:
                if path not in files_touched:
                    files_touched.append(path)
            if status:
                test_status = status

        summary = (
            f"\n\n[CONTEXT COMPACTED - Turns 2-{len(evictable) + 1} summarized]\n## Earlier work:\n"
        )
        summary += "\n".join(summary_lines)
        if files_touched:
            summary += f"\nFiles touched: {', '.join(files_touched)}"
        if test_status:
            summary += f"\nTest status: {test_status}"

        logger.debug("Compacted %d messages from agent history", len(evictable))
        return CompactionResult(
            messages=[self._append_text(initial, summary), *recent],
            turn_pairs_removed=len(evictable) // 2,
            summary=summary,
        )

    @classmethod
    def _tool_summary(cls, message: Message) -> str:
        content = message.get("content")
        if not isinstance(content, list):
            return ""
        parts: list[str] = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            name = str(block.get("name", ""))
            tool_input = block.get("input")
            first_arg = cls._first_arg(name, tool_input if isinstance(tool_input, dict) else {})
            parts.append(f"{name} {first_arg}" if first_arg else name)
        return ", ".join(parts)

    @staticmethod
    def _first_arg(tool_name: str, tool_input: dict[str, Any]) -> str:
        if tool_name in {"Read", "Write", "Edit"}:
            value = tool_input.get("file_path")
            return _shorten_path(value) if isinstance(value, str) else ""
        if tool_name == "Bash":
            value = tool_input.get("command")
            return _shorten_arg(value, 60) if isinstance(value, str) else ""
        if tool_name == "Grep":
            value = tool_input.get("pattern")
            return f'"{_shorten_arg(value, 30)}"' if isinstance(value, str) else ""
        if tool_name == "Glob":
            value = tool_input.get("pattern")
            return value if isinstance(value, str) else ""
        return ""

    @staticmethod
    def _result_summary(message: Message) -> tuple[list[str], str]:
        files: list[str] = []
        test_status = ""
        content = message.get("content")
        if not isinstance(content, list):
            return files, test_status
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            text = block.get("content")
            if not isinstance(text, str):
                continue
            for pattern in TEST_SUMMARY_PATTERNS:
                match = pattern.search(text)
                if match:
                    test_status = (match.group(1) if match.groups() else match.group(0)).strip()
            files.extend(PATH_PATTERN.findall(text)[:5])
        return files, test_status

    @staticmethod
    def _append_text(message: Message, text: str) -> Message:
        content = message.get("content")
        if isinstance(content, str):
            return {**message, "content": content + text}
        if isinstance(content, list):
            blocks = list(content)
            for index in range(len(blocks) - 1, -1, -1):
                block = blocks[index]
                if isinstance(block, dict) and block.get("type") == "text":
                    blocks[index] = {**block, "text": str(block.get("text", "")) + text}
                    return {**message, "content": blocks}
            blocks.append({"type": "text", "text": text})
            return {**message, "content": blocks}
        return message


def _shorten_path(path: str) -> str:
    parts = path.split("/")
    if len(parts) <= 3:
        return path
    return ".../" + "/".join(parts[-3:])


def _shorten_arg(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return value[:max_length] + "..."
