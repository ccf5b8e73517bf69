from __future__ import annotations

import asyncio
import logging
from typing import Any

import anthropic

from feature_factory.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    Message,
    ModelBackend,
    ModelResponse,
    ToolCall,
)
from feature_factory.config import ModelsConfig

logger = logging.getLogger(__name__)


class ClaudeBackend(ModelBackend):
    """Anthropic Messages API with native tool use."""

    name = "anthropic"

    def __init__(
        self,
        *,
        models: ModelsConfig | None = None,
        max_tokens: int = 8192,
        client: Any | None = None,
    ) -> None:
        self.models = models or ModelsConfig()
        self.max_tokens = max_tokens
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = anthropic.Anthropic()
            except anthropic.AnthropicError as exc:
                raise BackendProcessError(
                    f"Anthropic client could not be created: {exc}",
                    backend=self.name,
                    retriable=False,
                ) from exc
        return self._client

    async def complete(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]],
        model: str,
    ) -> ModelResponse:
        request: dict[str, Any] = {
            "model": self.models.resolve(model),
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": list(messages),
        }
        if tools:
            request["tools"] = tools
        client = self._get_client()
        try:
            response = await asyncio.to_thread(client.messages.create, **request)
        except anthropic.APITimeoutError as exc:
            raise BackendTimeoutError(str(exc), backend=self.name, retriable=True) from exc
        except anthropic.APIConnectionError as exc:
            raise BackendExecutionError(str(exc), backend=self.name, retriable=True) from exc
        except anthropic.APIStatusError as exc:
            retriable = exc.status_code == 429 or exc.status_code >= 500
            raise BackendProcessError(
                f"Anthropic API error {exc.status_code}: {exc.message}",
                backend=self.name,
                exit_code=exc.status_code,
                retriable=retriable,
            ) from exc
        return self._parse_response(response)

    @staticmethod
    def _parse_response(response: Any) -> ModelResponse:
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in getattr(response, "content", None) or []:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                text_parts.append(block.text)
            elif block_type == "tool_use":
                tool_input = block.input if isinstance(block.input, dict) else {}
                tool_calls.append(ToolCall(id=block.id, name=block.name, input=tool_input))
        usage = getattr(response, "usage", None)
        return ModelResponse(
            text="\n".join(text_parts),
            tool_calls=tool_calls,
            input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
            stop_reason=getattr(response, "stop_reason", None),
        )
