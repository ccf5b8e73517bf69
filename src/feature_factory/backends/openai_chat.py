from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import openai

from feature_factory.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    Message,
    ModelBackend,
    ModelResponse,
    ToolCall,
)
from feature_factory.config import MODEL_ALIASES, ModelsConfig

logger = logging.getLogger(__name__)


def to_chat_messages(system_prompt: str, messages: list[Message]) -> list[dict[str, Any]]:
    """Translate content-block history into chat-completions messages."""
    chat: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for message in messages:
        role = message.get("role")
        content = message.get("content")
        if isinstance(content, str):
            chat.append({"role": role, "content": content})
            continue
        blocks = [block for block in content or [] if isinstance(block, dict)]
        texts = [str(block.get("text", "")) for block in blocks if block.get("type") == "text"]
        if role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) or None}
            tool_calls = [
                {
                    "id": block["id"],
                    "type": "function",
                    "function": {
                        "name": block["name"],
                        "arguments": json.dumps(block.get("input") or {}),
                    },
                }
                for block in blocks
                if block.get("type") == "tool_use"
            ]
            if tool_calls:
                entry["tool_calls"] = tool_calls
            chat.append(entry)
            continue
        for block in blocks:
            if block.get("type") == "tool_result":
                chat.append(
                    {
                        "role": "tool",
                        "tool_call_id": block.get("tool_use_id", ""),
                        "content": str(block.get("content", "")),
                    }
                )
        if texts:
            chat.append({"role": "user", "content": "\n".join(texts)})
    return chat


def to_chat_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema", {"type": "object", "properties": {}}),
            },
        }
        for tool in tools
    ]


class OpenAIChatBackend(ModelBackend):
    """OpenAI Chat Completions with function calling, used as the fallback provider."""

    name = "openai"

    def __init__(self, *, models: ModelsConfig | None = None, client: Any | None = None) -> None:
        self.models = models or ModelsConfig()
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = openai.OpenAI()
            except openai.OpenAIError as exc:
                raise BackendProcessError(
                    f"OpenAI client could not be created: {exc}",
                    backend=self.name,
                    retriable=False,
                ) from exc
        return self._client

    def _model_name(self, model: str) -> str:
        # Aliases name Claude tiers; the fallback provider has a single configured model.
        if model in MODEL_ALIASES or model.startswith("claude"):
            return self.models.openai_model
        return model

    async def complete(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]],
        model: str,
    ) -> ModelResponse:
        request: dict[str, Any] = {
            "model": self._model_name(model),
            "messages": to_chat_messages(system_prompt, messages),
        }
        if tools:
            request["tools"] = to_chat_tools(tools)
        client = self._get_client()
        try:
            response = await asyncio.to_thread(client.chat.completions.create, **request)
        except openai.APITimeoutError as exc:
            raise BackendTimeoutError(str(exc), backend=self.name, retriable=True) from exc
        except openai.APIConnectionError as exc:
            raise BackendExecutionError(str(exc), backend=self.name, retriable=True) from exc
        except openai.APIStatusError as exc:
            retriable = exc.status_code == 429 or exc.status_code >= 500
            raise BackendProcessError(
                f"OpenAI API error {exc.status_code}: {exc.message}",
                backend=self.name,
                exit_code=exc.status_code,
                retriable=retriable,
            ) from exc
        return self._parse_response(response)

    def _parse_response(self, response: Any) -> ModelResponse:
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise BackendProcessError("OpenAI response contained no choices", backend=self.name)
        choice = choices[0]
        message = choice.message
        tool_calls: list[ToolCall] = []
        for call in getattr(message, "tool_calls", None) or []:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning("Discarding malformed arguments for tool call %s", call.function.name)
                arguments = {}
            tool_calls.append(
                ToolCall(
                    id=call.id,
                    name=call.function.name,
                    input=arguments if isinstance(arguments, dict) else {},
                )
            )
        usage = getattr(response, "usage", None)
        return ModelResponse(
            text=message.content or "",
            tool_calls=tool_calls,
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            stop_reason=getattr(choice, "finish_reason", None),
        )
