"""Bounded tool loop that runs one phase's agent against a model provider."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from feature_factory.agents.base import PhaseAgent
from feature_factory.backends.base import BackendExecutionError, Message, ModelBackend, ModelResponse, ToolCall
from feature_factory.config import FactoryConfig
from feature_factory.context import ContextLimits, ContextManager
from feature_factory.results import AgentResult, StructuredOutput, calculate_cost, parse_structured_output
from feature_factory.stall import StallTracker, ToolCallRecord, hash_tool_input
from feature_factory.tools import ToolExecutor, ToolResult

logger = logging.getLogger(__name__)


def _merge_unique(target: list[str], values: Iterable[Any]) -> None:
    for value in values:
        text = str(value).strip()
        if text and text not in target:
            target.append(text)


def _output_list(output: StructuredOutput, key: str) -> list[Any]:
    value = output.get(key)
    return value if isinstance(value, list) else []


class AgentRunner:
    def __init__(
        self,
        backend: ModelBackend,
        tools: ToolExecutor,
        config: FactoryConfig,
        *,
        context_manager: ContextManager | None = None,
        stall_detection: bool = True,
    ) -> None:
        self.backend = backend
        self.tools = tools
        self.config = config
        self.context_manager = context_manager or ContextManager(
            ContextLimits(
                compaction_threshold_tokens=config.context.compaction_threshold_tokens,
                keep_recent_turn_pairs=config.context.keep_recent_turns,
            )
        )
        self.stall_detection = stall_detection and config.stall.enabled

    async def run(self, agent: PhaseAgent, prompt: str, *, model: str | None = None) -> AgentResult:
        model_name = model or self.config.engine.default_model
        turn_limit = agent.turn_limit(self.config.engine.max_turns_per_agent)
        tool_schemas = self.tools.schemas_for(agent.allowed_tools)
        tracker = StallTracker(self.config.stall)
        messages: list[Message] = [{"role": "user", "content": prompt}]
        files_created: list[str] = []
        files_modified: list[str] = []
        cost_usd = 0.0

        for turn in range(1, turn_limit + 1):
            try:
                response = await self.backend.complete(agent.system_prompt, messages, tool_schemas, model_name)
            except BackendExecutionError as exc:
                logger.warning("Agent %s model call failed on turn %d: %s", agent.role, turn, exc)
                return AgentResult(
                    agent=agent.role,
                    success=False,
                    files_created=files_created,
                    files_modified=files_modified,
                    cost_usd=cost_usd,
                    turns_used=turn - 1,
                    error=str(exc),
                )
            cost_usd += calculate_cost(model_name, response.input_tokens, response.output_tokens)

            if not response.tool_calls:
                return self._final_result(agent, response, files_created, files_modified, cost_usd, turn)

            messages.append(response.assistant_message())
            result_blocks: list[dict[str, Any]] = []
            records: list[ToolCallRecord] = []
            for call in response.tool_calls:
                result = await self._execute_tool(agent, call)
                _merge_unique(files_created, result.files_created)
                _merge_unique(files_modified, result.files_modified)
                truncated = self.context_manager.truncate(call.name, result.render())
                block: dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": call.id,
                    "content": truncated.output,
                }
                if not result.success:
                    block["is_error"] = True
                result_blocks.append(block)
                records.append(ToolCallRecord(call.name, hash_tool_input(call.input), result.had_file_activity))

            tracker.record_turn(records)
            detection = tracker.detect() if self.stall_detection else None
            if detection is not None:
                if tracker.should_hard_stop():
                    logger.warning("Agent %s hard-stopped: %s", agent.role, detection.description)
                    return self._stalled_result(
                        agent, tracker, detection.description, files_created, files_modified, cost_usd, turn
                    )
                tracker.record_intervention(detection)
                logger.info("Stall detected for %s (%s): %s", agent.role, detection.type, detection.description)
                result_blocks.append({"type": "text", "text": detection.intervention_message()})
            messages.append({"role": "user", "content": result_blocks})

            if self.context_manager.should_compact(response.input_tokens, messages):
                compaction = self.context_manager.compact(messages)
                messages = compaction.messages
                logger.info("Compacted %d turn pairs for %s", compaction.turn_pairs_removed, agent.role)

        return AgentResult(
            agent=agent.role,
            success=False,
            files_created=files_created,
            files_modified=files_modified,
            cost_usd=cost_usd,
            turns_used=turn_limit,
            error=f"Max turns ({turn_limit}) reached without final answer",
        )

    async def _execute_tool(self, agent: PhaseAgent, call: ToolCall) -> ToolResult:
        if call.name not in agent.allowed_tools:
            return ToolResult(success=False, error=f"Tool {call.name} is not allowed for agent {agent.role}")
        logger.debug("%s -> %s %s", agent.role, call.name, call.input)
        return await asyncio.to_thread(self.tools.execute, call.name, call.input)

    @staticmethod
    def _final_result(
        agent: PhaseAgent,
        response: ModelResponse,
        files_created: list[str],
        files_modified: list[str],
        cost_usd: float,
        turns: int,
    ) -> AgentResult:
        output = parse_structured_output(response.text)
        created = list(files_created)
        modified = list(files_modified)
        _merge_unique(created, _output_list(output, "filesCreated"))
        _merge_unique(modified, _output_list(output, "filesModified"))
        commits: list[str] = []
        _merge_unique(commits, _output_list(output, "commits"))
        return AgentResult(
            agent=agent.role,
            success=True,
            output=output,
            files_created=created,
            files_modified=modified,
            commits=commits,
            cost_usd=cost_usd,
            turns_used=turns,
        )

    @staticmethod
    def _stalled_result(
        agent: PhaseAgent,
        tracker: StallTracker,
        blocking: str,
        files_created: list[str],
        files_modified: list[str],
        cost_usd: float,
        turns: int,
    ) -> AgentResult:
        summary = tracker.summary()
        touched = [*files_created, *files_modified]
        accomplished = (
            f"{len(files_created)} file(s) created, {len(files_modified)} file(s) modified "
            f"over {turns} turns"
        )
        if touched:
            accomplished += f" ({', '.join(touched[:10])})"
        return AgentResult(
            agent=agent.role,
            success=False,
            output=StructuredOutput(
                kind="parsed",
                data={"stall": summary, "accomplished": accomplished, "blockedBy": blocking},
            ),
            files_created=list(files_created),
            files_modified=list(files_modified),
            cost_usd=cost_usd,
            turns_used=turns,
            error=(
                f"Stalled after {tracker.interventions} interventions: {blocking}. "
                f"Accomplished: {accomplished}"
            ),
        )
