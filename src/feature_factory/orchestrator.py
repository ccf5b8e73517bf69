"""Workflow state machine.

A run moves ``not-started -> running -> (awaiting-approval <-> running) -> completed | failed |
cancelled``. Each call to ``step`` executes at most one phase. Pausing for approval returns to the
caller after the state has been persisted; ``continue_workflow`` or ``resume_session`` picks the
run up again from the session file.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import math
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from feature_factory.agents import build_agent
from feature_factory.backends.base import ModelBackend
from feature_factory.checkpoints import CheckpointManager
from feature_factory.config import FactoryConfig, format_budget
from feature_factory.errors import CheckpointError, StateError
from feature_factory.hooks import HookContext, PrePhaseHooks
from feature_factory.persistence import utcnow_iso
from feature_factory.results import AgentResult
from feature_factory.runner import AgentRunner
from feature_factory.sandbox import SandboxInfo, SandboxManager
from feature_factory.session import (
    PersistedSession,
    SessionStore,
    SessionSummary,
    WorkflowState,
    generate_session_id,
)
from feature_factory.tools import ToolExecutor, ToolProvider
from feature_factory.workflows import Phase, Workflow, get_workflow

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


def generate_phase_summary(agent: str, result: AgentResult) -> str:
    lines = [
        f"Agent: {agent}",
        f"Success: {str(result.success).lower()}",
        f"Cost: ${result.cost_usd:.4f}",
        f"Turns: {result.turns_used}",
    ]
    if result.files_created:
        lines.append(f"Files created: {', '.join(result.files_created)}")
    if result.files_modified:
        lines.append(f"Files modified: {', '.join(result.files_modified)}")
    if result.commits:
        lines.append(f"Commits: {', '.join(result.commits)}")
    return "\n".join(lines)


class Orchestrator:
    def __init__(
        self,
        config: FactoryConfig,
        backend: ModelBackend,
        project_dir: Path,
        *,
        event_hook: EventHook | None = None,
        tool_provider: ToolProvider | None = None,
        prompts_dir: Path | None = None,
        hooks: PrePhaseHooks | None = None,
        sandbox_manager: SandboxManager | None = None,
        stall_detection: bool = True,
        retries_enabled: bool = True,
    ) -> None:
        self.config = config
        self.backend = backend
        self.project_dir = project_dir.resolve()
        self.event_hook = event_hook
        self.tool_provider = tool_provider
        self.prompts_dir = prompts_dir
        self.hooks = hooks or PrePhaseHooks(config.project)
        self.sandbox_manager = sandbox_manager or SandboxManager(config.project)
        self.stall_detection = stall_detection
        self.retries_enabled = retries_enabled
        self.sessions = SessionStore(self.project_dir)
        self.state: WorkflowState | None = None
        self._clock_started: float | None = None

    # ------------------------------------------------------------------ helpers

    def _emit(self, event: str, **payload: Any) -> None:
        record: dict[str, Any] = {"event": event, "timestamp": utcnow_iso()}
        if self.state is not None:
            record["sessionId"] = self.state.session_id
        record.update(payload)
        logger.debug("event %s", record)
        if self.event_hook:
            self.event_hook(record)

    def _require_state(self) -> WorkflowState:
        if self.state is None:
            raise StateError("No workflow in progress")
        return self.state

    def _persist(self) -> None:
        self.sessions.save(self._require_state())

    @property
    def workflow(self) -> Workflow:
        return get_workflow(self._require_state().workflow)

    @property
    def sandbox_info(self) -> SandboxInfo | None:
        state = self._require_state()
        if not state.sandbox:
            return None
        return SandboxInfo(
            sandbox_dir=Path(state.sandbox["sandboxDir"]),
            source_dir=Path(state.sandbox["sourceDir"]),
            start_commit_hash=state.sandbox["startCommitHash"],
        )

    @property
    def working_dir(self) -> Path:
        info = self.sandbox_info
        return info.sandbox_dir if info is not None else self.project_dir

    def _checkpoints(self) -> CheckpointManager:
        return CheckpointManager(self.working_dir)

    def _runner(self) -> AgentRunner:
        tools = ToolExecutor(self.working_dir, self.config.tools, self.tool_provider)
        return AgentRunner(self.backend, tools, self.config, stall_detection=self.stall_detection)

    def _max_retries(self, phase: Phase) -> int:
        if not self.retries_enabled:
            return 0
        if phase.max_retries is not None:
            return phase.max_retries
        return self.config.engine.max_retries_per_phase

    def _requires_approval(self, phase: Phase, index: int) -> bool:
        mode = self.config.engine.approval_mode
        if mode == "after-each-phase":
            return phase.approval_required
        if mode == "at-end":
            phases = self.workflow.phases
            return index == len(phases) - 1 and any(p.approval_required for p in phases)
        return False

    def _duration_exceeded(self) -> bool:
        limit_minutes = self.config.engine.max_duration_minutes
        if limit_minutes <= 0 or self._clock_started is None:
            return False
        return time.monotonic() - self._clock_started >= limit_minutes * 60

    def _budget_error(self) -> str | None:
        """Reason the next phase may not start, or None once spend is still under the ceiling."""
        state = self._require_state()
        budget = state.budget_usd
        if math.isinf(budget):
            return None
        spent = state.total_cost_usd
        if spent >= budget:
            return f"Budget exceeded: ${spent:.2f} of ${budget:.2f}"
        return None

    # ------------------------------------------------------------------ prompt

    def build_prompt(self, phase: Phase, index: int) -> str:
        state = self._require_state()
        agent = build_agent(phase.agent, prompts_dir=self.prompts_dir)
        sections = [f"# Task\n\n{state.description}\n"]

        context_parts: list[str] = []
        if index > 0:
            previous_phase = self.workflow.phases[index - 1]
            previous_result = state.phase_history.get(index - 1)
            if previous_phase.handoff is not None and previous_result is not None:
                handoff = previous_phase.handoff.from_result(previous_result)
                context_parts.append(
                    f"## From {previous_phase.name} ({handoff.title})\n\n"
                    f"```json\n{json.dumps(handoff.to_context(), indent=2, default=str)}\n```"
                )
        if state.feedback:
            context_parts.append(f"## Reviewer feedback\n\n{state.feedback}")
        if context_parts:
            sections.append("# Additional Context\n\n" + "\n\n".join(context_parts) + "\n")

        if state.phase_results:
            lines = ["# Previous Phase Results\n"]
            for agent_type, result in state.phase_results.items():
                lines.append(f"## {agent_type}\n")
                lines.append(f"```json\n{json.dumps(result.output.to_dict(), indent=2, default=str)}\n```\n")
            sections.append("\n".join(lines))

        schema = {**agent.output_schema, **phase.output_fields}
        sections.append(
            "# Expected Output\n\n"
            "Respond with a JSON object in the following format:\n\n"
            f"```json\n{json.dumps(schema, indent=2)}\n```\n"
        )
        return "\n".join(sections)

    # ------------------------------------------------------------------ lifecycle

    async def start(
        self,
        workflow_type: str,
        description: str,
        *,
        budget_usd: float | None = None,
        model: str | None = None,
        autonomous: bool = False,
        sandbox: bool = False,
        session_id: str | None = None,
    ) -> WorkflowState:
        """Create a run and emit ``workflow-started``. Does not execute any phase."""
        workflow = get_workflow(workflow_type)
        sandbox_payload = None
        if sandbox:
            info = self.sandbox_manager.create(self.project_dir)
            sandbox_payload = info.to_dict()
        self.state = WorkflowState(
            session_id=session_id or generate_session_id(),
            workflow=workflow.name,
            description=description,
            budget_usd=self.config.engine.max_budget_usd if budget_usd is None else budget_usd,
            model=model or self.config.engine.default_model,
            status="running",
            autonomous=autonomous,
            sandboxed=sandbox,
            sandbox=sandbox_payload,
        )
        self._clock_started = time.monotonic()
        self._persist()
        self._emit(
            "workflow-started",
            workflow=workflow.name,
            description=description,
            totalPhases=len(workflow.phases),
            budgetUsd=format_budget(self.state.budget_usd),
            sandboxed=sandbox,
        )
        return self.state

    async def run(self, workflow_type: str, description: str, **options: Any) -> WorkflowState:
        await self.start(workflow_type, description, **options)
        return await self._drive()

    async def _drive(self) -> WorkflowState:
        state = self._require_state()
        while state.status == "running":
            await self.step()
        return state

    async def step(self) -> WorkflowState:
        """Execute the current phase once and apply its outcome to the state machine."""
        state = self._require_state()
        if state.status != "running":
            return state
        phases = self.workflow.phases
        index = state.current_phase_index
        if index >= len(phases):
            self._complete()
            return state
        phase = phases[index]

        if self._duration_exceeded():
            self._fail(
                phase,
                f"Maximum duration of {self.config.engine.max_duration_minutes} minutes exceeded",
                recoverable=False,
            )
            return state
        budget_error = self._budget_error()
        if budget_error:
            self._fail(phase, budget_error, recoverable=False)
            return state

        attempt = state.retry_counts.get(index, 0) + 1
        self._emit(
            "phase-started",
            phase=phase.name,
            agent=phase.agent,
            phaseIndex=index,
            totalPhases=len(phases),
            attempt=attempt,
        )

        if self.config.engine.git_checkpoints:
            self._create_checkpoint(phase, index)

        if self.config.engine.pre_phase_hooks:
            for hook_name in phase.pre_phase_hooks:
                outcome = self.hooks.run(
                    hook_name,
                    HookContext(working_dir=self.working_dir, phase_results=dict(state.phase_results)),
                )
                if not outcome.passed:
                    self._fail(phase, f"Pre-phase hook {hook_name} failed: {outcome.error}", recoverable=False)
                    return state

        try:
            prompt = self.build_prompt(phase, index)
            agent = build_agent(phase.agent, prompts_dir=self.prompts_dir, extra_tools=self._vendor_tools())
            result = await self._runner().run(agent, prompt, model=state.model)
        except Exception as exc:
            logger.exception("Unexpected error while running phase %s", phase.name)
            self._fail(phase, f"Unexpected error in {phase.name}: {exc}", recoverable=False)
            return state

        record = self._record_result(phase, index, result)
        self._emit(
            "cost-update",
            phase=phase.name,
            phaseCostUsd=record.cost_usd,
            currentCostUsd=state.total_cost_usd,
            budgetRemainingUsd=None if math.isinf(state.budget_usd) else state.budget_usd - state.total_cost_usd,
        )

        if not result.success:
            self._handle_phase_failure(phase, index, result.error or "Agent failed")
            return state
        if not phase.validate(result.output):
            self._handle_phase_failure(phase, index, "Phase validation failed")
            return state

        self._emit("phase-completed", phase=phase.name, agent=phase.agent, result=result.to_dict())
        state.feedback = None
        if self._requires_approval(phase, index):
            state.status = "awaiting-approval"
            self._persist()
            self._emit(
                "approval-requested",
                phase=phase.name,
                agent=phase.agent,
                summary=generate_phase_summary(phase.agent, record),
                result=result.to_dict(),
            )
            return state

        state.current_phase_index = index + 1
        self._persist()
        if state.current_phase_index >= len(phases):
            self._complete()
        return state

    def _vendor_tools(self) -> tuple[str, ...]:
        if self.tool_provider is None:
            return ()
        return tuple(schema["name"] for schema in self.tool_provider.schemas())

    def _create_checkpoint(self, phase: Phase, index: int) -> None:
        state = self._require_state()
        try:
            checkpoint = self._checkpoints().create(state.session_id, index, phase.name)
        except CheckpointError as exc:
            logger.warning("Checkpoint for %s could not be created: %s", phase.name, exc)
            return
        if checkpoint is None:
            return
        state.checkpoints[phase.agent] = checkpoint.tag
        self._persist()
        self._emit(
            "checkpoint-created",
            phase=phase.name,
            tag=checkpoint.tag,
            commitHash=checkpoint.commit_hash,
        )

    def _record_result(self, phase: Phase, index: int, result: AgentResult) -> AgentResult:
        state = self._require_state()
        previous = state.phase_history.get(index)
        record = result
        if previous is not None:
            # Retries of the same phase add to that phase's spend.
            record = dataclasses.replace(
                result,
                cost_usd=previous.cost_usd + result.cost_usd,
                turns_used=previous.turns_used + result.turns_used,
            )
        state.phase_history[index] = record
        state.phase_results[phase.agent] = record
        state.recompute_totals()
        self._persist()
        return record

    def _handle_phase_failure(self, phase: Phase, index: int, error: str) -> None:
        state = self._require_state()
        retries_used = state.retry_counts.get(index, 0)
        max_retries = self._max_retries(phase)
        if retries_used >= max_retries:
            self._fail(phase, error, recoverable=True)
            return
        state.retry_counts[index] = retries_used + 1
        tag = state.checkpoints.get(phase.agent)
        if self.config.engine.git_checkpoints and tag:
            try:
                self._checkpoints().rollback(tag)
            except CheckpointError as exc:
                logger.warning("Rollback before retrying %s failed: %s", phase.name, exc)
        self._persist()
        self._emit(
            "phase-retry",
            phase=phase.name,
            agent=phase.agent,
            attempt=retries_used + 1,
            maxRetries=max_retries,
            error=error,
        )

    def _fail(self, phase: Phase | None, error: str, *, recoverable: bool) -> None:
        state = self._require_state()
        state.status = "failed"
        state.error = error
        state.failed_phase = phase.name if phase else None
        state.completed_at = utcnow_iso()
        self._persist()
        self._emit(
            "workflow-error",
            phase=phase.name if phase else None,
            agent=phase.agent if phase else None,
            error=error,
            recoverable=recoverable,
            checkpoint=state.checkpoints.get(phase.agent) if phase else None,
        )
        self._finalize(success=False)

    def _complete(self) -> None:
        state = self._require_state()
        state.status = "completed"
        state.completed_at = utcnow_iso()
        self._persist()
        self._finalize(success=True)

    def _finalize(self, *, success: bool) -> None:
        state = self._require_state()
        copied: list[str] = []
        skipped: list[str] = []
        info = self.sandbox_info
        if info is not None:
            if success:
                copy_result = self.sandbox_manager.copy_back(info)
                copied, skipped = copy_result.files_copied, copy_result.skipped
            self.sandbox_manager.cleanup(info.sandbox_dir)
        else:
            self._checkpoints().cleanup(state.session_id)
        self._emit(
            "workflow-completed",
            workflow=state.workflow,
            success=success,
            status=state.status,
            totalCostUsd=state.total_cost_usd,
            totalTurns=state.total_turns,
            phaseReached=state.current_phase_index,
            error=state.error,
            sandboxFilesCopied=copied,
            sandboxFilesSkipped=skipped,
        )

    async def continue_workflow(
        self,
        approved: bool,
        feedback: str | None = None,
        *,
        rollback: bool = False,
    ) -> WorkflowState:
        state = self._require_state()
        if state.status != "awaiting-approval":
            raise StateError("Workflow is not awaiting approval")
        phase = self.workflow.phases[state.current_phase_index]
        self._emit("approval-received", phase=phase.name, approved=approved, feedback=feedback)

        if not approved:
            tag = state.checkpoints.get(phase.agent)
            if rollback and tag and not state.sandboxed:
                self._checkpoints().rollback(tag)
                self._emit("rollback", phase=phase.name, tag=tag)
            state.status = "cancelled"
            state.error = feedback or "Approval denied"
            state.completed_at = utcnow_iso()
            self._persist()
            self._finalize(success=False)
            return state

        state.feedback = feedback or None
        state.current_phase_index += 1
        state.status = "running"
        if self._clock_started is None:
            self._clock_started = time.monotonic()
        self._persist()
        return await self._drive()

    async def resume_session(self, session_id: str, *, budget_usd: float | None = None) -> WorkflowState:
        """Reload a persisted run. Running sessions continue; paused ones wait for approval."""
        persisted = self.sessions.load(session_id)
        if persisted is None:
            raise StateError(f"Session not found: {session_id}")
        state = persisted.state
        if state.is_terminal:
            raise StateError(f"Session {session_id} is already {state.status}")
        try:
            get_workflow(state.workflow)
        except ValueError as exc:
            raise StateError(f"Session {session_id} cannot be resumed: {exc}") from exc
        self.state = state
        if budget_usd is not None:
            state.budget_usd = budget_usd
        self._clock_started = time.monotonic()
        self._emit(
            "workflow-resumed",
            workflow=state.workflow,
            phaseIndex=state.current_phase_index,
            status=state.status,
        )
        info = self.sandbox_info
        if info is not None and not info.sandbox_dir.is_dir():
            self._fail(None, f"Sandbox directory no longer exists: {info.sandbox_dir}", recoverable=False)
            return state
        self._persist()
        if state.status == "running":
            return await self._drive()
        return state

    def rollback_phase(self, agent: str) -> str:
        state = self._require_state()
        tag = state.checkpoints.get(agent)
        if not tag:
            raise StateError(f"No checkpoint recorded for {agent}")
        self._checkpoints().rollback(tag)
        return tag

    def list_sessions(self) -> list[SessionSummary]:
        return self.sessions.list_sessions()

    def get_resumable_session(self) -> PersistedSession | None:
        return self.sessions.get_resumable()


__all__ = ["EventHook", "Orchestrator", "generate_phase_summary"]
