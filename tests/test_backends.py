import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest

from feature_factory.backends import (
    ClaudeBackend,
    OpenAIChatBackend,
    ResilientBackend,
    RetryPolicy,
    build_resilient_backend,
)
from feature_factory.backends.base import BackendExecutionError, ModelBackend, ModelResponse, ToolCall
from feature_factory.backends.openai_chat import to_chat_messages, to_chat_tools
from feature_factory.config import FactoryConfig


class AlwaysFailBackend(ModelBackend):
    def __init__(self, name: str, *, retriable: bool = True) -> None:
        self.name = name
        self.retriable = retriable
        self.calls = 0

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
    ) -> ModelResponse:
        _ = system_prompt, messages, tools, model
        self.calls += 1
        raise BackendExecutionError("boom", backend=self.name, retriable=self.retriable)


class SuccessBackend(ModelBackend):
    def __init__(self, name: str) -> None:
        self.name = name
        self.models: list[str] = []

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
    ) -> ModelResponse:
        _ = system_prompt, messages, tools
        self.models.append(model)
        return ModelResponse(text="ok", input_tokens=10, output_tokens=2)


class SlowBackend(ModelBackend):
    name = "slow"

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
    ) -> ModelResponse:
        _ = system_prompt, messages, tools, model
        await asyncio.sleep(1)
        return ModelResponse(text="late")


class RecordingMessages:
    def __init__(self, response: Any) -> None:
        self.response = response
        self.requests: list[dict[str, Any]] = []

    def create(self, **request: Any) -> Any:
        self.requests.append(request)
        return self.response


def test_resilient_backend_retries_then_falls_back() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend("anthropic")
    fallback = SuccessBackend("openai")
    backend = ResilientBackend(
        primary=primary,
        fallback=fallback,
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5),
        event_hook=events.append,
    )

    response = asyncio.run(backend.complete("system", [{"role": "user", "content": "hi"}], [], "sonnet"))

    assert response.text == "ok"
    assert primary.calls == 2
    assert fallback.models == ["sonnet"]
    assert [event["event"] for event in events] == [
        "backend_attempt_failed",
        "backend_retry",
        "backend_attempt_failed",
        "backend_fallback_success",
    ]


def test_non_retriable_error_skips_remaining_attempts() -> None:
    primary = AlwaysFailBackend("anthropic", retriable=False)
    fallback = AlwaysFailBackend("openai", retriable=False)
    backend = ResilientBackend(primary, fallback, RetryPolicy(max_retries=3, backoff_seconds=0.0))

    with pytest.raises(BackendExecutionError, match="All backend attempts failed") as excinfo:
        asyncio.run(backend.complete("system", [], [], "sonnet"))

    assert primary.calls == 1
    assert fallback.calls == 1
    assert excinfo.value.retriable is False


def test_timeout_is_reported_as_backend_error() -> None:
    backend = ResilientBackend(SlowBackend(), None, RetryPolicy(max_retries=0, timeout_seconds=0.1))

    with pytest.raises(BackendExecutionError, match="timed out after 0.1s"):
        asyncio.run(backend.complete("system", [], [], "sonnet"))


def test_build_resilient_backend_honours_fallback_setting() -> None:
    config = FactoryConfig.default()
    config.backend.max_retries = 4

    with_fallback = build_resilient_backend(config)
    config.backend.fallback = "none"
    without_fallback = build_resilient_backend(config)

    assert isinstance(with_fallback.primary, ClaudeBackend)
    assert isinstance(with_fallback.fallback, OpenAIChatBackend)
    assert with_fallback.retry_policy.max_retries == 4
    assert without_fallback.fallback is None


def test_claude_backend_sends_resolved_model_and_parses_blocks() -> None:
    response = SimpleNamespace(
        content=[
            SimpleNamespace(type="text", text="Reading the file."),
            SimpleNamespace(type="tool_use", id="toolu_1", name="Read", input={"file_path": "a.py"}),
        ],
        usage=SimpleNamespace(input_tokens=120, output_tokens=30),
        stop_reason="tool_use",
    )
    messages_api = RecordingMessages(response)
    backend = ClaudeBackend(client=SimpleNamespace(messages=messages_api))
    tools = [{"name": "Read", "description": "Read", "input_schema": {"type": "object"}}]

    result = asyncio.run(backend.complete("system", [{"role": "user", "content": "go"}], tools, "haiku"))

    request = messages_api.requests[0]
    assert request["model"] == "claude-haiku-4-5"
    assert request["system"] == "system"
    assert request["tools"] == tools
    assert result.text == "Reading the file."
    assert result.tool_calls == [ToolCall(id="toolu_1", name="Read", input={"file_path": "a.py"})]
    assert (result.input_tokens, result.output_tokens) == (120, 30)
    assert result.stop_reason == "tool_use"


def test_openai_backend_translates_history_and_tool_calls() -> None:
    response = SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(
                    content=None,
                    tool_calls=[
                        SimpleNamespace(
                            id="call_1",
                            function=SimpleNamespace(name="Bash", arguments='{"command": "ls"}'),
                        ),
                        SimpleNamespace(id="call_2", function=SimpleNamespace(name="Glob", arguments="{oops")),
                    ],
                ),
                finish_reason="tool_calls",
            )
        ],
        usage=SimpleNamespace(prompt_tokens=50, completion_tokens=5),
    )
    completions = RecordingMessages(response)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    backend = OpenAIChatBackend(client=client)

    result = asyncio.run(backend.complete("system", [{"role": "user", "content": "go"}], [], "sonnet"))

    assert completions.requests[0]["model"] == "gpt-4.1"
    assert "tools" not in completions.requests[0]
    assert result.text == ""
    assert result.tool_calls[0] == ToolCall(id="call_1", name="Bash", input={"command": "ls"})
    assert result.tool_calls[1].input == {}
    assert result.input_tokens == 50


def test_chat_message_translation() -> None:
    history = [
        {"role": "user", "content": "Build it"},
        {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "Looking"},
                {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a.py"}},
            ],
        },
        {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": "t1", "content": "x = 1"},
                {"type": "text", "text": "=== STALL DETECTED ==="},
            ],
        },
    ]

    chat = to_chat_messages("system", history)

    assert chat[0] == {"role": "system", "content": "system"}
    assert chat[1] == {"role": "user", "content": "Build it"}
    assert chat[2]["tool_calls"][0]["function"] == {
        "name": "Read",
        "arguments": json.dumps({"file_path": "a.py"}),
    }
    assert chat[3] == {"role": "tool", "tool_call_id": "t1", "content": "x = 1"}
    assert chat[4] == {"role": "user", "content": "=== STALL DETECTED ==="}
    assert to_chat_tools([{"name": "Read", "input_schema": {"type": "object"}}])[0]["function"]["parameters"] == {
        "type": "object"
    }


def test_assistant_message_uses_content_blocks() -> None:
    response = ModelResponse(text="Done", tool_calls=[ToolCall(id="t1", name="Glob", input={"pattern": "*"})])

    assert response.assistant_message() == {
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Done"},
            {"type": "tool_use", "id": "t1", "name": "Glob", "input": {"pattern": "*"}},
        ],
    }
