from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

Message = dict[str, Any]


class BackendExecutionError(RuntimeError):
    """Raised when a model provider call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a model call exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the provider rejects a request or returns an unusable response."""


@dataclass(slots=True, frozen=True)
class ToolCall:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ModelResponse:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str | None = None

    def assistant_message(self) -> Message:
        """History entry for this response, as plain content blocks."""
        blocks: list[dict[str, Any]] = []
        if self.text:
            blocks.append({"type": "text", "text": self.text})
        for call in self.tool_calls:
            blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.input})
        return {"role": "assistant", "content": blocks}


class ModelBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]],
        model: str,
    ) -> ModelResponse:
        """Send one request and return the model's text, tool calls, and token usage."""
