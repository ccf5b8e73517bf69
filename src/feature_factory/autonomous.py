"""Unattended execution: risk acknowledgment, audit trail and end-of-run summary."""

from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TextIO

import click

from feature_factory.errors import AcknowledgmentError
from feature_factory.persistence import parse_iso, state_dir, utcnow_iso
from feature_factory.session import WorkflowState

ACKNOWLEDGMENT_PHRASE = "I ACKNOWLEDGE THE RISKS"
COUNTDOWN_SECONDS = 5
MAX_ACKNOWLEDGMENT_ATTEMPTS = 3

AUTONOMOUS_ENV = "FEATURE_FACTORY_AUTONOMOUS"
ACKNOWLEDGED_ENV = "FEATURE_FACTORY_AUTONOMOUS_ACKNOWLEDGED"

WARNING_BANNER = """
==================== AUTONOMOUS MODE WARNING ====================
This mode runs the full pipeline WITHOUT human approval prompts.

  - Model and tool calls are billed until the budget is reached.
  - Agents may run shell commands in the working copy.
  - Commits and file changes are applied without review.

Quality gates remain enforced: failing-tests-first, passing test suite,
coverage threshold and credential scanning.
=================================================================
""".strip("\n")


@dataclass(slots=True)
class Acknowledgment:
    via: str
    acknowledged_at: str = field(default_factory=utcnow_iso)


def is_autonomous_ci(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return env.get(AUTONOMOUS_ENV) == "true" and env.get(ACKNOWLEDGED_ENV) == "true"


def require_acknowledgment(
    *,
    max_attempts: int = MAX_ACKNOWLEDGMENT_ATTEMPTS,
    countdown_seconds: int = COUNTDOWN_SECONDS,
    prompt: Callable[[str], str] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    echo: Callable[[str], None] = click.echo,
) -> Acknowledgment:
    """Show the warning banner and wait for the exact acknowledgment phrase."""
    ask = prompt or (lambda text: click.prompt(text, default="", show_default=False))
    echo(WARNING_BANNER)
    for remaining in range(countdown_seconds, 0, -1):
        echo(f"Starting in {remaining} seconds...")
        sleep(1)

    for attempt in range(1, max_attempts + 1):
        echo(f"To proceed, type: {ACKNOWLEDGMENT_PHRASE}")
        echo(f"({max_attempts - attempt + 1} attempts remaining)")
        if ask(">").strip() == ACKNOWLEDGMENT_PHRASE:
            echo("Acknowledgment received. Proceeding with autonomous mode.")
            return Acknowledgment(via="interactive")
        if attempt < max_attempts:
            echo(f"Incorrect. Please type exactly: {ACKNOWLEDGMENT_PHRASE}")
    raise AcknowledgmentError(
        f"Acknowledgment failed after {max_attempts} attempts. Autonomous mode cancelled."
    )


def acknowledge_autonomous_mode(*, interactive: bool, **prompt_options: Any) -> Acknowledgment:
    if is_autonomous_ci():
        return Acknowledgment(via="environment")
    if not interactive:
        raise AcknowledgmentError(
            "Autonomous mode without a terminal requires "
            f"{AUTONOMOUS_ENV}=true and {ACKNOWLEDGED_ENV}=true"
        )
    return require_acknowledgment(**prompt_options)


class AuditLogger:
    """Append-only per-session audit file, one ``[timestamp] event {json}`` line per entry."""

    def __init__(self, working_dir: Path, session_id: str) -> None:
        self.session_id = session_id
        self.path = state_dir(working_dir) / f"autonomous-{session_id}.log"
        self._handle: TextIO | None = self.path.open("a", encoding="utf-8")
        rule = "=" * 80
        self._write(f"\n{rule}\nAutonomous Session: {session_id}\nStarted: {utcnow_iso()}\n{rule}\n\n")

    def _write(self, text: str) -> None:
        if self._handle is None:
            return
        self._handle.write(text)
        self._handle.flush()

    def log(self, event: str, data: Mapping[str, Any] | None = None) -> None:
        line = f"[{utcnow_iso()}] {event}"
        if data:
            line += f" {json.dumps(dict(data), default=str, sort_keys=True)}"
        self._write(line + "\n")

    def log_event(self, event: Mapping[str, Any]) -> None:
        payload = {key: value for key, value in event.items() if key not in ("event", "timestamp")}
        self.log(str(event.get("event", "event")), payload)

    def close(self) -> None:
        if self._handle is None:
            return
        rule = "=" * 80
        self._write(f"\n{rule}\nSession ended: {utcnow_iso()}\n{rule}\n")
        self._handle.close()
        self._handle = None

    def __enter__(self) -> AuditLogger:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass(slots=True)
class TestResults:
    __test__ = False

    tests_run: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    coverage_percent: float = 0.0
    verdict: str | None = None


@dataclass(slots=True)
class AutonomousSummary:
    session_id: str
    duration_seconds: float
    total_cost_usd: float
    total_turns: int
    phases_completed: int
    phases_total: int
    status: str
    files_created: list[str]
    files_modified: list[str]
    test_results: TestResults
    audit_log_path: Path | None

    def render(self) -> str:
        lines = [
            "AUTONOMOUS SESSION COMPLETE",
            f"Session: {self.session_id}",
            f"Status: {self.status}",
            f"Duration: {round(self.duration_seconds / 60)} minutes",
            f"Phases completed: {self.phases_completed}/{self.phases_total}",
            f"Cost: ${self.total_cost_usd:.2f}",
            f"Turns: {self.total_turns}",
            "",
            "TEST RESULTS:",
            f"  Tests: {self.test_results.tests_passed}/{self.test_results.tests_run} passing",
            f"  Coverage: {self.test_results.coverage_percent:g}%",
        ]
        if self.test_results.verdict:
            lines.append(f"  Verdict: {self.test_results.verdict}")
        if self.files_created or self.files_modified:
            lines.append("")
            lines.append("FILES:")
            lines.extend(f"  {name} (created)" for name in self.files_created[:5])
            lines.extend(f"  {name} (modified)" for name in self.files_modified[:5])
            total = len(self.files_created) + len(self.files_modified)
            if total > 10:
                lines.append(f"  (+ {total - 10} more files)")
        if self.audit_log_path is not None:
            lines.append("")
            lines.append(f"AUDIT LOG: {self.audit_log_path}")
        return "\n".join(lines)


def _number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


def build_session_summary(
    state: WorkflowState,
    *,
    phases_total: int,
    audit_log_path: Path | None = None,
    finished_at: datetime | None = None,
) -> AutonomousSummary:
    end = finished_at or (parse_iso(state.completed_at) if state.completed_at else datetime.now(UTC))
    duration = max(0.0, (end - parse_iso(state.started_at)).total_seconds())

    files_created: list[str] = []
    files_modified: list[str] = []
    for result in state.phase_history.values():
        files_created.extend(name for name in result.files_created if name not in files_created)
        files_modified.extend(name for name in result.files_modified if name not in files_modified)

    tests = TestResults()
    qa = state.phase_results.get("qa")
    if qa is not None:
        output = qa.output
        tests.tests_run = int(_number(output.get("testsRun")))
        tests.tests_passed = int(_number(output.get("testsPassed")))
        tests.tests_failed = int(_number(output.get("testsFailed")))
        tests.coverage_percent = float(_number(output.get("coveragePercent")))
        verdict = output.get("verdict")
        tests.verdict = verdict if isinstance(verdict, str) else None

    return AutonomousSummary(
        session_id=state.session_id,
        duration_seconds=duration,
        total_cost_usd=state.total_cost_usd,
        total_turns=state.total_turns,
        phases_completed=sum(1 for result in state.phase_history.values() if result.success),
        phases_total=phases_total,
        status=state.status,
        files_created=files_created,
        files_modified=files_modified,
        test_results=tests,
        audit_log_path=audit_log_path,
    )
