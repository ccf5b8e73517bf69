from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from feature_factory.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    Message,
    ModelBackend,
    ModelResponse,
)

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


class ResilientBackend(ModelBackend):
    """Wraps primary/fallback providers with timeout, retry, and failover."""

    name = "resilient"

    def __init__(
        self,
        primary: ModelBackend,
        fallback: ModelBackend | None,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempt_order(self) -> list[ModelBackend]:
        attempts = [self.primary]
        if self.fallback is not None and self.fallback.name != self.primary.name:
            attempts.append(self.fallback)
        return attempts

    async def _call_once(
        self,
        backend: ModelBackend,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]],
        model: str,
    ) -> ModelResponse:
        try:
            return await asyncio.wait_for(
                backend.complete(system_prompt, messages, tools, model),
                timeout=self.retry_policy.timeout_seconds,
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                backend=backend.name,
                retriable=True,
            ) from exc

    async def complete(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]],
        model: str,
    ) -> ModelResponse:
        errors: list[str] = []
        for backend in self._attempt_order():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend.name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    response = await self._call_once(backend, system_prompt, messages, tools, model)
                except BackendExecutionError as exc:
                    errors.append(f"{backend.name}[{attempt}]: {exc}")
                    logger.warning("Backend %s attempt %d failed: %s", backend.name, attempt, exc)
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend.name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if backend is not self.primary:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend.name,
                            "attempt": attempt,
                        }
                    )
                return response

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            retriable=False,
        )
