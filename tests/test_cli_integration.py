import json
import re
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from feature_factory import cli as cli_module
from feature_factory.backends.base import ModelBackend, ModelResponse
from feature_factory.cli import cli
from feature_factory.config import FactoryConfig, save_config
from feature_factory.session import SessionStore, WorkflowState

ARCHITECT_DIAGNOSIS = {"diagnosis": "off by one", "rootCause": "range end", "suggestedFix": "use <="}
REGRESSION_TESTS = {"testsCreated": 2, "allTestsFailing": True, "reproducedBug": True}
FIX_DONE = {"allTestsPassing": True, "fixDescription": "boundary fixed"}
FIX_REVIEW = {"verdict": "APPROVED", "isMinimalFix": True}
REGRESSION_CHECK = {"verdict": "PASSED", "noRegressions": True, "testsFailed": 0}
BUG_FIX_HAPPY_PATH = [ARCHITECT_DIAGNOSIS, REGRESSION_TESTS, FIX_DONE, FIX_REVIEW, REGRESSION_CHECK]


class FakeBackend(ModelBackend):
    name = "fake"

    def __init__(self, payloads: list[dict[str, Any] | Exception]) -> None:
        self.payloads = list(payloads)

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
    ) -> ModelResponse:
        _ = system_prompt, messages, tools, model
        payload = self.payloads.pop(0)
        if isinstance(payload, Exception):
            raise payload
        return ModelResponse(text=json.dumps(payload), input_tokens=1_000)


def _project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, backend: ModelBackend) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    config = FactoryConfig.default()
    config.engine.default_model = "haiku"
    config.engine.git_checkpoints = False
    config.engine.pre_phase_hooks = False
    save_config(project / "feature-factory.toml", config)

    monkeypatch.chdir(project)
    monkeypatch.setattr(cli_module, "_build_backend", lambda config, project_dir: backend)
    monkeypatch.setattr(cli_module, "_is_interactive", lambda: False)
    return project


def _paused_session_id(output: str) -> str:
    match = re.search(r"Session (\S+) is awaiting approval", output)
    assert match, output
    return match.group(1)


def test_bug_fix_without_approval_completes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _project(tmp_path, monkeypatch, FakeBackend(BUG_FIX_HAPPY_PATH))
    runner = CliRunner()

    result = runner.invoke(cli, ["bug-fix", "Fix pagination", "--no-approval"])

    assert result.exit_code == 0, result.output
    assert "bug-fix (5 phases)" in result.output
    assert "[1/5] Root Cause Diagnosis" in result.output
    assert "[5/5] Regression Check" in result.output
    assert "Workflow completed:" in result.output

    sessions = runner.invoke(cli, ["sessions", "list"])
    assert sessions.exit_code == 0
    assert "completed" in sessions.output
    assert "Fix pagination" in sessions.output

    status = runner.invoke(cli, ["status"])
    assert status.output.strip() == "No active session."


def test_approval_pause_and_resume_from_another_process(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _project(tmp_path, monkeypatch, FakeBackend(BUG_FIX_HAPPY_PATH))
    runner = CliRunner()

    started = runner.invoke(cli, ["bug-fix", "Fix pagination"])
    assert started.exit_code == 0, started.output
    assert "Approval requested for Root Cause Diagnosis:" in started.output
    session_id = _paused_session_id(started.output)

    status = runner.invoke(cli, ["status"])
    assert f"Session: {session_id}" in status.output
    assert "Status: awaiting-approval" in status.output
    assert "Phase: 1/5 (Root Cause Diagnosis)" in status.output

    resumed = runner.invoke(cli, ["resume", session_id, "--approve"])
    assert resumed.exit_code == 0, resumed.output
    assert f"Resumed session {session_id} at phase 1" in resumed.output
    assert "Approval requested for Fix Review:" in resumed.output
    assert _paused_session_id(resumed.output) == session_id

    finished = runner.invoke(cli, ["resume", "--approve", "--feedback", "ship it"])
    assert finished.exit_code == 0, finished.output
    assert "[5/5] Regression Check" in finished.output
    assert "Workflow completed:" in finished.output

    again = runner.invoke(cli, ["resume", session_id])
    assert again.exit_code == 1
    assert "already completed" in again.output


def test_reject_cancels_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _project(tmp_path, monkeypatch, FakeBackend(BUG_FIX_HAPPY_PATH))
    runner = CliRunner()

    started = runner.invoke(cli, ["bug-fix", "Fix pagination"])
    session_id = _paused_session_id(started.output)
    rejected = runner.invoke(cli, ["resume", session_id, "--reject", "--feedback", "wrong root cause"])

    assert rejected.exit_code == 0, rejected.output
    assert "Workflow cancelled:" in rejected.output
    listing = runner.invoke(cli, ["sessions", "list"])
    assert "cancelled" in listing.output


def test_failed_workflow_exits_non_zero(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _project(tmp_path, monkeypatch, FakeBackend([RuntimeError("socket closed")]))

    result = CliRunner().invoke(cli, ["bug-fix", "Fix pagination", "--no-approval", "--no-retry"])

    assert result.exit_code == 1
    assert "Workflow failed:" in result.output


def test_invalid_budget_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _project(tmp_path, monkeypatch, FakeBackend([]))

    result = CliRunner().invoke(cli, ["new-feature", "Add pager", "--budget", "lots"])

    assert result.exit_code == 1
    assert "Invalid budget: 'lots'" in result.output


def test_autonomous_run_requires_acknowledgment_without_terminal(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _project(tmp_path, monkeypatch, FakeBackend([]))
    monkeypatch.delenv("FEATURE_FACTORY_AUTONOMOUS", raising=False)
    monkeypatch.delenv("FEATURE_FACTORY_AUTONOMOUS_ACKNOWLEDGED", raising=False)

    result = CliRunner().invoke(cli, ["refactor", "Split module", "--dangerously-autonomous"])

    assert result.exit_code == 1
    assert "requires FEATURE_FACTORY_AUTONOMOUS=true" in result.output


def test_sessions_cleanup_reports_count(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _project(tmp_path, monkeypatch, FakeBackend(BUG_FIX_HAPPY_PATH))
    runner = CliRunner()
    runner.invoke(cli, ["bug-fix", "Fix pagination", "--no-approval"])

    result = runner.invoke(cli, ["sessions", "cleanup", "--days", "0"])

    assert result.exit_code == 0
    assert result.output.strip() == "Deleted 1 session(s) older than 0 day(s)."
    assert runner.invoke(cli, ["sessions", "list"]).output.strip() == "No sessions found."


def test_worker_processes_manual_queue(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _project(tmp_path, monkeypatch, FakeBackend(BUG_FIX_HAPPY_PATH))
    monkeypatch.setenv("FEATURE_FACTORY_AUTONOMOUS", "true")
    monkeypatch.setenv("FEATURE_FACTORY_AUTONOMOUS_ACKNOWLEDGED", "true")
    runner = CliRunner()

    queued = runner.invoke(cli, ["queue", "add", "Fix pagination", "--priority", "high"])
    assert queued.exit_code == 0
    assert queued.output.startswith("Queued ")
    assert runner.invoke(cli, ["queue", "list"]).output.strip() == "Queue is empty."

    worker = runner.invoke(cli, ["worker", "start", "--once", "--no-sandbox"])
    assert worker.exit_code == 0, worker.output
    assert "[worker] work-picked-up" in worker.output
    assert "[worker] work-completed" in worker.output
    assert "Worker finished: 1 completed, 0 escalated, 0 failed" in worker.output

    listing = runner.invoke(cli, ["queue", "list"])
    assert "completed" in listing.output
    assert "high" in listing.output

    status = runner.invoke(cli, ["worker", "status"])
    payload = json.loads(status.output)
    assert payload["locked"] is False
    assert payload["status"]["state"] == "stopped"


def test_worker_stop_writes_signal(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _project(tmp_path, monkeypatch, FakeBackend([]))

    result = CliRunner().invoke(cli, ["worker", "stop"])

    assert result.exit_code == 0
    assert result.output.startswith("Stop requested (")


def test_resume_of_unknown_workflow_reports_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    project = _project(tmp_path, monkeypatch, FakeBackend([]))
    SessionStore(project).save(
        WorkflowState(
            session_id="20260101-old",
            workflow="migration",
            description="Legacy run",
            budget_usd=5.0,
            model="haiku",
            status="running",
        )
    )

    result = CliRunner().invoke(cli, ["resume", "20260101-old"])

    assert result.exit_code == 1
    assert "Unknown workflow type: migration" in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)


def test_reported_validation_failure_reaches_worker(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    project = _project(tmp_path, monkeypatch, FakeBackend([]))
    monkeypatch.setenv("FEATURE_FACTORY_AUTONOMOUS", "true")
    monkeypatch.setenv("FEATURE_FACTORY_AUTONOMOUS_ACKNOWLEDGED", "true")
    failures = project / "failures.json"
    failures.write_text(
        json.dumps([{"type": "call", "result": {"resourceSid": "CA1", "errors": ["no answer"]}}]),
        encoding="utf-8",
    )
    runner = CliRunner()

    reported = runner.invoke(cli, ["queue", "report", "failures.json"])
    assert reported.exit_code == 0, reported.output
    assert reported.output.strip() == "Reported 1 validation failure(s); 1 awaiting the worker."

    worker = runner.invoke(cli, ["worker", "start", "--once", "--no-sandbox"])
    assert worker.exit_code == 0, worker.output
    assert "[worker] work-escalated: call validation failure for CA1" in worker.output
    assert "Worker finished: 0 completed, 1 escalated, 0 failed" in worker.output


def test_malformed_validation_failure_file_is_rejected(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    project = _project(tmp_path, monkeypatch, FakeBackend([]))
    (project / "failures.json").write_text('{"type": "call", "result": [1, 2]}', encoding="utf-8")

    result = CliRunner().invoke(cli, ["queue", "report", "failures.json"])

    assert result.exit_code == 1
    assert "Invalid validation failure file" in result.output
