from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from feature_factory.autonomous import AuditLogger, acknowledge_autonomous_mode, build_session_summary
from feature_factory.backends import BackendExecutionError, ModelBackend, build_resilient_backend
from feature_factory.config import (
    MODEL_ALIASES,
    ConfigError,
    FactoryConfig,
    format_budget,
    load_config,
    parse_budget,
    validate_config,
)
from feature_factory.errors import FactoryError
from feature_factory.orchestrator import Orchestrator
from feature_factory.session import SessionStore, WorkflowState, generate_session_id
from feature_factory.worker import (
    ApprovalPolicy,
    AutonomousWorker,
    FileQueueSource,
    PersistentQueue,
    ValidationFailure,
    ValidationFailureSource,
    WorkSourceProvider,
    WorkflowResult,
    add_manual_item,
    is_worker_locked,
    load_worker_status,
    report_validation_failures,
    request_stop,
    validation_inbox_path,
)
from feature_factory.workflows import get_workflow

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "feature-factory.toml"
HANDLED_ERRORS = (FactoryError, BackendExecutionError, ConfigError)


@dataclass(slots=True)
class Runtime:
    project_dir: Path
    config_path: Path
    config: FactoryConfig


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _load_runtime(config_value: str, *, verbose: bool = False) -> Runtime:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    try:
        config = load_config(config_path)
    except (ConfigError, ValueError, TypeError) as exc:
        raise click.ClickException(f"Invalid configuration in {config_path}: {exc}") from exc
    verbose = verbose or config.engine.verbose
    config.engine.verbose = verbose
    _configure_logging(verbose)
    return Runtime(project_dir=project_dir, config_path=config_path, config=config)


def _is_interactive() -> bool:
    return sys.stdin.isatty()


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.info("backend event: %s", json.dumps(event, default=str, sort_keys=True))


def _build_backend(config: FactoryConfig, project_dir: Path) -> ModelBackend:
    return build_resilient_backend(config, event_hook=_log_backend_event)


def _event_printer(verbose: bool) -> Callable[[dict[str, Any]], None]:
    def render(event: dict[str, Any]) -> None:
        name = event.get("event")
        if name == "workflow-started":
            click.echo(f"Session {event.get('sessionId')}: {event['workflow']} ({event['totalPhases']} phases)")
            click.echo(f"Budget: {event.get('budgetUsd')}")
        elif name == "workflow-resumed":
            click.echo(f"Resumed session {event.get('sessionId')} at phase {event['phaseIndex'] + 1}")
        elif name == "phase-started":
            attempt = event.get("attempt", 1)
            suffix = f" (attempt {attempt})" if attempt > 1 else ""
            click.echo(f"[{event['phaseIndex'] + 1}/{event['totalPhases']}] {event['phase']}{suffix}")
        elif name == "phase-completed":
            result = event["result"]
            click.echo(f"  done: ${result['costUsd']:.4f}, {result['turnsUsed']} turns")
        elif name == "phase-retry":
            click.echo(f"  retrying {event['phase']} ({event['attempt']}/{event['maxRetries']}): {event['error']}")
        elif name == "approval-requested":
            click.echo(f"\nApproval requested for {event['phase']}:")
            click.echo(event["summary"])
        elif name == "workflow-error":
            click.echo(f"Error in {event.get('phase') or 'workflow'}: {event['error']}", err=True)
        elif name == "workflow-completed":
            click.echo(
                f"Workflow {event['status']}: ${event['totalCostUsd']:.4f} over {event['totalTurns']} turns"
            )
            copied = event.get("sandboxFilesCopied") or []
            if copied:
                click.echo(f"Copied {len(copied)} file(s) back from sandbox")
        elif verbose and name in ("checkpoint-created", "cost-update", "approval-received", "rollback"):
            click.echo(f"  {name}: {json.dumps({k: v for k, v in event.items() if k != 'event'}, default=str)}")

    return render


def _event_hook(verbose: bool, audit: AuditLogger | None) -> Callable[[dict[str, Any]], None]:
    printer = _event_printer(verbose)

    def hook(event: dict[str, Any]) -> None:
        printer(event)
        if audit is not None:
            audit.log_event(event)

    return hook


def _make_orchestrator(
    runtime: Runtime,
    event_hook: Callable[[dict[str, Any]], None],
    *,
    stall_detection: bool = True,
    retries_enabled: bool = True,
) -> Orchestrator:
    return Orchestrator(
        runtime.config,
        _build_backend(runtime.config, runtime.project_dir),
        runtime.project_dir,
        event_hook=event_hook,
        prompts_dir=runtime.project_dir / ".feature-factory" / "prompts",
        stall_detection=stall_detection,
        retries_enabled=retries_enabled,
    )


async def _settle_approvals(orchestrator: Orchestrator, state: WorkflowState) -> WorkflowState:
    while state.status == "awaiting-approval":
        if not _is_interactive():
            click.echo(
                f"Session {state.session_id} is awaiting approval. "
                f"Run 'feature-factory resume {state.session_id} --approve' or '--reject'."
            )
            return state
        approved = click.confirm("Approve and continue?", default=True)
        feedback = click.prompt("Feedback (optional)", default="", show_default=False).strip() or None
        rollback = False
        if not approved and not state.sandboxed:
            rollback = click.confirm("Roll back this phase's changes?", default=False)
        state = await orchestrator.continue_workflow(approved, feedback, rollback=rollback)
    return state


def _finish(state: WorkflowState, audit: AuditLogger | None) -> None:
    if audit is not None:
        audit.close()
        summary = build_session_summary(
            state,
            phases_total=len(get_workflow(state.workflow).phases),
            audit_log_path=audit.path,
        )
        click.echo("")
        click.echo(summary.render())
    if state.status == "failed":
        raise click.ClickException(f"Workflow failed: {state.error}")


def _workflow_options(func: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.argument("description"),
        click.option("--budget", default=None, help="Budget in USD, or 'unlimited'."),
        click.option("--model", type=click.Choice(MODEL_ALIASES), default=None),
        click.option("--no-approval", is_flag=True, default=False, help="Skip approval gates."),
        click.option("--dangerously-autonomous", is_flag=True, default=False),
        click.option("--max-duration", type=click.IntRange(min=0), default=None, help="Wall-clock limit in minutes."),
        click.option("--sandbox/--no-sandbox", default=None),
        click.option("--no-stall-detection", is_flag=True, default=False),
        click.option("--no-retry", is_flag=True, default=False),
        click.option("--no-checkpoints", is_flag=True, default=False),
        click.option("--verbose", is_flag=True, default=False),
        click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _run_workflow(
    workflow_type: str,
    description: str,
    *,
    budget: str | None,
    model: str | None,
    no_approval: bool,
    dangerously_autonomous: bool,
    max_duration: int | None,
    sandbox: bool | None,
    no_stall_detection: bool,
    no_retry: bool,
    no_checkpoints: bool,
    verbose: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value, verbose=verbose)
    config = runtime.config
    try:
        budget_usd = parse_budget(budget) if budget is not None else None
        if dangerously_autonomous:
            acknowledgment = acknowledge_autonomous_mode(interactive=_is_interactive())
            logger.info("Autonomous mode acknowledged via %s", acknowledgment.via)
            config.engine.approval_mode = "none"
            if budget_usd is None:
                budget_usd = config.worker.max_budget_usd
        if no_approval:
            config.engine.approval_mode = "none"
        if model:
            config.engine.default_model = model  # type: ignore[assignment]
        if max_duration is not None:
            config.engine.max_duration_minutes = max_duration
        if no_checkpoints:
            config.engine.git_checkpoints = False
        if budget_usd is not None:
            config.engine.max_budget_usd = budget_usd
        validate_config(config)
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    use_sandbox = dangerously_autonomous if sandbox is None else sandbox
    session_id = generate_session_id()
    audit = AuditLogger(runtime.project_dir, session_id) if dangerously_autonomous else None
    orchestrator = _make_orchestrator(
        runtime,
        _event_hook(config.engine.verbose, audit),
        stall_detection=not no_stall_detection,
        retries_enabled=not no_retry,
    )

    async def execute() -> WorkflowState:
        state = await orchestrator.run(
            workflow_type,
            description,
            budget_usd=budget_usd,
            model=model,
            autonomous=dangerously_autonomous,
            sandbox=use_sandbox,
            session_id=session_id,
        )
        return await _settle_approvals(orchestrator, state)

    try:
        state = asyncio.run(execute())
    except HANDLED_ERRORS as exc:
        if audit is not None:
            audit.log("workflow-aborted", {"error": str(exc)})
            audit.close()
        raise click.ClickException(str(exc)) from exc
    _finish(state, audit)


@click.group()
def cli() -> None:
    """Feature Factory CLI."""


@cli.command("new-feature")
@_workflow_options
def new_feature_command(description: str, **options: Any) -> None:
    """Design, specify, test, implement, verify, review and document a feature."""
    _run_workflow("new-feature", description, **options)


@cli.command("bug-fix")
@_workflow_options
def bug_fix_command(description: str, **options: Any) -> None:
    """Diagnose, reproduce with a failing test, fix and verify a bug."""
    _run_workflow("bug-fix", description, **options)


@cli.command("refactor")
@_workflow_options
def refactor_command(description: str, **options: Any) -> None:
    """Restructure code behind a green test suite."""
    _run_workflow("refactor", description, **options)


def _session_line(summary: Any) -> str:
    return (
        f"{summary.session_id}  {summary.status:<17} {summary.workflow:<11} "
        f"phase {summary.current_phase + 1}  ${summary.total_cost_usd:.4f}  {summary.description[:50]}"
    )


@cli.command("status")
@click.option("--all", "show_all", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(show_all: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    store = SessionStore(runtime.project_dir)
    if show_all:
        sessions = store.list_sessions()
        if not sessions:
            click.echo("No sessions found.")
            return
        for summary in sessions:
            click.echo(_session_line(summary))
        return

    persisted = store.get_resumable()
    if persisted is None:
        click.echo("No active session.")
        return
    state = persisted.state
    phases = get_workflow(state.workflow).phases
    current = phases[min(state.current_phase_index, len(phases) - 1)]
    click.echo(f"Session: {state.session_id}")
    click.echo(f"Workflow: {state.workflow}")
    click.echo(f"Description: {state.description}")
    click.echo(f"Status: {state.status}")
    click.echo(f"Phase: {state.current_phase_index + 1}/{len(phases)} ({current.name})")
    click.echo(f"Cost: ${state.total_cost_usd:.4f} of {format_budget(state.budget_usd)}")
    click.echo(f"Last updated: {persisted.metadata.last_updated_at}")


@cli.command("resume")
@click.argument("session_id", required=False)
@click.option("--budget", default=None, help="New budget in USD, or 'unlimited'.")
@click.option("--approve", "decision", flag_value="approve", default=None)
@click.option("--reject", "decision", flag_value="reject")
@click.option("--feedback", default=None)
@click.option("--rollback", is_flag=True, default=False, help="Roll back the phase when rejecting.")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def resume_command(
    session_id: str | None,
    budget: str | None,
    decision: str | None,
    feedback: str | None,
    rollback: bool,
    verbose: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value, verbose=verbose)
    store = SessionStore(runtime.project_dir)
    if session_id is None:
        persisted = store.get_resumable()
        if persisted is None:
            raise click.ClickException("No resumable session found.")
        session_id = persisted.state.session_id
    try:
        budget_usd = parse_budget(budget) if budget is not None else None
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    loaded = store.load(session_id)
    audit = None
    if loaded is not None and loaded.state.autonomous:
        audit = AuditLogger(runtime.project_dir, session_id)
    orchestrator = _make_orchestrator(runtime, _event_hook(runtime.config.engine.verbose, audit))

    async def execute() -> WorkflowState:
        state = await orchestrator.resume_session(session_id, budget_usd=budget_usd)
        if state.status == "awaiting-approval" and decision is not None:
            state = await orchestrator.continue_workflow(decision == "approve", feedback, rollback=rollback)
        return await _settle_approvals(orchestrator, state)

    try:
        state = asyncio.run(execute())
    except HANDLED_ERRORS as exc:
        if audit is not None:
            audit.close()
        raise click.ClickException(str(exc)) from exc
    _finish(state, audit)


@cli.group("sessions")
def sessions_group() -> None:
    """Inspect and clean up persisted sessions."""


@sessions_group.command("list")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def sessions_list_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    sessions = SessionStore(runtime.project_dir).list_sessions()
    if not sessions:
        click.echo("No sessions found.")
        return
    for summary in sessions:
        click.echo(_session_line(summary))


@sessions_group.command("cleanup")
@click.option("--days", type=click.IntRange(min=0), default=7, show_default=True)
@click.option("--include-failed", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def sessions_cleanup_command(days: int, include_failed: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    deleted = SessionStore(runtime.project_dir).cleanup(older_than_days=days, include_failed=include_failed)
    click.echo(f"Deleted {deleted} session(s) older than {days} day(s).")


@cli.group("worker")
def worker_group() -> None:
    """Run the autonomous worker."""


def _workflow_executor(runtime: Runtime, sandbox: bool) -> Callable[[str, str, float], Any]:
    async def execute(workflow_type: str, description: str, budget_usd: float) -> WorkflowResult:
        session_id = generate_session_id()
        with AuditLogger(runtime.project_dir, session_id) as audit:
            runtime.config.engine.approval_mode = "none"
            orchestrator = _make_orchestrator(runtime, _event_hook(runtime.config.engine.verbose, audit))
            state = await orchestrator.run(
                workflow_type,
                description,
                budget_usd=budget_usd,
                autonomous=True,
                sandbox=sandbox,
                session_id=session_id,
            )
        return WorkflowResult(
            success=state.status == "completed",
            cost_usd=state.total_cost_usd,
            resolution=f"Session {state.session_id} completed" if state.status == "completed" else None,
            error=state.error,
        )

    return execute


@worker_group.command("start")
@click.option("--once", is_flag=True, default=False, help="Run a single poll cycle and exit.")
@click.option("--sandbox/--no-sandbox", default=True, show_default=True)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def worker_start_command(once: bool, sandbox: bool, verbose: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value, verbose=verbose)
    try:
        acknowledge_autonomous_mode(interactive=_is_interactive())
        policy = ApprovalPolicy.from_config(runtime.config.approval)
        sources: list[WorkSourceProvider] = [FileQueueSource(runtime.project_dir)]
        if runtime.config.worker.validation_inbox:
            sources.append(
                ValidationFailureSource(
                    min_priority=runtime.config.worker.min_priority,
                    inbox=validation_inbox_path(runtime.project_dir),
                )
            )
    except (FactoryError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    async def confirm(work: Any) -> bool:
        return click.confirm(f"Run {work.suggested_workflow} for '{work.summary}'?", default=False)

    worker = AutonomousWorker(
        runtime.project_dir,
        config=runtime.config.worker,
        policy=policy,
        sources=sources,
        on_execute_workflow=_workflow_executor(runtime, sandbox),
        on_confirmation_required=confirm if _is_interactive() else None,
        event_hook=lambda event: click.echo(
            f"[worker] {event['event']}" + (f": {event['summary']}" if "summary" in event else "")
        ),
    )
    try:
        asyncio.run(worker.run_forever(once=once))
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    stats = worker.stats
    click.echo(
        f"Worker finished: {stats.completed} completed, {stats.escalated} escalated, "
        f"{stats.failed} failed, ${stats.total_cost_usd:.4f} spent"
    )


@worker_group.command("stop")
def worker_stop_command() -> None:
    path = request_stop(Path.cwd().resolve())
    click.echo(f"Stop requested ({path}).")


@worker_group.command("status")
def worker_status_command() -> None:
    project_dir = Path.cwd().resolve()
    status = load_worker_status(project_dir)
    payload: dict[str, Any] = {"locked": is_worker_locked(project_dir)}
    payload["status"] = status.to_dict() if status is not None else None
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.group("queue")
def queue_group() -> None:
    """Manage the autonomous work queue."""


@queue_group.command("add")
@click.argument("description")
@click.option(
    "--priority",
    type=click.Choice(["critical", "high", "medium", "low"]),
    default="medium",
    show_default=True,
)
@click.option(
    "--workflow",
    type=click.Choice(["bug-fix", "refactor", "new-feature", "investigation", "manual-review"]),
    default="bug-fix",
    show_default=True,
)
def queue_add_command(description: str, priority: str, workflow: str) -> None:
    item = add_manual_item(Path.cwd().resolve(), description, priority=priority, workflow=workflow)
    click.echo(f"Queued {item['id']}: {description}")


@queue_group.command("list")
def queue_list_command() -> None:
    queue = PersistentQueue(Path.cwd().resolve())
    items = queue.get_all()
    if not items:
        click.echo("Queue is empty.")
        return
    for item in items:
        click.echo(f"{item.id}  {item.status:<11} {item.priority:<8} tier {item.tier}  {item.summary[:60]}")


@queue_group.command("report")
@click.argument("failures_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def queue_report_command(failures_file: Path) -> None:
    """Hand validation failures from a JSON file to the worker's validation inbox."""
    try:
        payload = json.loads(failures_file.read_text(encoding="utf-8"))
        raw_items = payload if isinstance(payload, list) else [payload]
        failures = [ValidationFailure.from_dict(item) for item in raw_items]
        pending = report_validation_failures(Path.cwd().resolve(), failures)
    except (OSError, json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid validation failure file: {exc}") from exc
    click.echo(f"Reported {len(failures)} validation failure(s); {pending} awaiting the worker.")
