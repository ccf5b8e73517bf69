from feature_factory.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    ModelBackend,
    ModelResponse,
    ToolCall,
)
from feature_factory.backends.claude import ClaudeBackend
from feature_factory.backends.openai_chat import OpenAIChatBackend
from feature_factory.backends.resilient import BackendEventHook, ResilientBackend, RetryPolicy
from feature_factory.config import FactoryConfig, ModelsConfig


def create_backend(name: str, models: ModelsConfig) -> ModelBackend:
    if name == "anthropic":
        return ClaudeBackend(models=models)
    if name == "openai":
        return OpenAIChatBackend(models=models)
    raise ValueError(f"Unknown backend: {name}")


def build_resilient_backend(
    config: FactoryConfig,
    *,
    event_hook: BackendEventHook | None = None,
) -> ResilientBackend:
    primary = create_backend(config.backend.primary, config.models)
    fallback = None
    if config.backend.fallback not in ("", "none", config.backend.primary):
        fallback = create_backend(config.backend.fallback, config.models)
    return ResilientBackend(
        primary=primary,
        fallback=fallback,
        retry_policy=RetryPolicy(
            max_retries=config.backend.max_retries,
            backoff_seconds=config.backend.retry_backoff_seconds,
            timeout_seconds=config.backend.timeout_seconds,
        ),
        event_hook=event_hook,
    )


__all__ = [
    "BackendEventHook",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeBackend",
    "ModelBackend",
    "ModelResponse",
    "OpenAIChatBackend",
    "ResilientBackend",
    "RetryPolicy",
    "ToolCall",
    "build_resilient_backend",
    "create_backend",
]
