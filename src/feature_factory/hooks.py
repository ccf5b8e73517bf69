"""Quality gates that run before a phase's agent starts.

``tdd-enforcement`` requires freshly written tests that fail, ``test-passing-enforcement``
requires a green suite, and ``coverage-threshold`` requires the coverage command to report at
least the configured percentage.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from feature_factory.config import ProjectConfig
from feature_factory.results import AgentResult

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
TEST_TIMEOUT_SECONDS = 120.0
COVERAGE_TIMEOUT_SECONDS = 180.0

_JEST_SUMMARY = re.compile(r"Tests:\s*(?P<body>[^\n]*\d+\s+total)", re.IGNORECASE)
_PYTEST_SUMMARY = re.compile(
    r"^[=\s]*(?P<body>\d+ (?:failed|passed|errors?)(?:, \d+ \w+)*)(?: in [\d.]+s)?[=\s]*$",
    re.MULTILINE,
)
_COUNT = re.compile(r"(\d+)\s+(failed|passed|errors?|total)")
_NO_TESTS = re.compile(r"no tests ran|No tests found|collected 0 items", re.IGNORECASE)
_PYTEST_COVERAGE_TOTAL = re.compile(r"^TOTAL\s.*?(\d+(?:\.\d+)?)%\s*$", re.MULTILINE)
_JEST_COVERAGE = re.compile(r"(Statements|Branches|Functions|Lines)\s*:\s*([\d.]+)%", re.IGNORECASE)
_COVERAGE_FILE_ROW = re.compile(r"^(?P<file>\S+\.(?:py|js|ts))\s+(?:\d+\s+)+(?P<pct>\d+(?:\.\d+)?)%", re.MULTILINE)


@dataclass(slots=True)
class CommandOutput:
    exit_code: int
    output: str


CommandRunner = Callable[[str, Path, float], CommandOutput]


def run_command(command: str, cwd: Path, timeout: float) -> CommandOutput:
    command_text = command.strip()
    if not command_text:
        return CommandOutput(exit_code=1, output="Command is empty.")
    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text
    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
            timeout=timeout,
            env={**os.environ, "CI": "true"},
        )
    except subprocess.TimeoutExpired:
        return CommandOutput(exit_code=124, output=f"Command timed out after {timeout:g}s: {command_text}")
    except FileNotFoundError as exc:
        return CommandOutput(exit_code=127, output=str(exc))
    return CommandOutput(exit_code=proc.returncode, output=proc.stdout + proc.stderr)


@dataclass(slots=True)
class TestRunSummary:
    __test__ = False

    tests_found: bool
    passing: int = 0
    failing: int = 0
    total: int = 0
    raw_output: str = ""
    error: str | None = None


def parse_test_output(output: str) -> TestRunSummary:
    """Read pass/fail counts from a pytest or jest summary line."""
    body = None
    jest = _JEST_SUMMARY.search(output)
    if jest:
        body = jest.group("body")
    else:
        matches = list(_PYTEST_SUMMARY.finditer(output))
        if matches:
            body = matches[-1].group("body")
    if body is None:
        if _NO_TESTS.search(output):
            return TestRunSummary(tests_found=False, raw_output=output)
        return TestRunSummary(tests_found=False, raw_output=output, error="Could not parse test output")

    counts: dict[str, int] = {}
    for number, label in _COUNT.findall(body):
        key = "errors" if label.startswith("error") else label
        counts[key] = counts.get(key, 0) + int(number)
    passing = counts.get("passed", 0)
    failing = counts.get("failed", 0) + counts.get("errors", 0)
    total = counts.get("total", passing + failing)
    return TestRunSummary(
        tests_found=total > 0,
        passing=passing,
        failing=failing,
        total=total,
        raw_output=output,
    )


@dataclass(slots=True)
class CoverageSummary:
    percent: float
    files_below: list[tuple[str, float]] = field(default_factory=list)
    raw_output: str = ""
    error: str | None = None


def parse_coverage_output(output: str, threshold: float) -> CoverageSummary:
    """Coverage percent from a pytest-cov TOTAL row, else the jest statement/branch average."""
    files_below = [
        (match.group("file"), float(match.group("pct")))
        for match in _COVERAGE_FILE_ROW.finditer(output)
        if float(match.group("pct")) < threshold
    ]
    total = _PYTEST_COVERAGE_TOTAL.search(output)
    if total:
        return CoverageSummary(percent=float(total.group(1)), files_below=files_below, raw_output=output)
    jest = {label.lower(): float(value) for label, value in _JEST_COVERAGE.findall(output)}
    statements = jest.get("statements", 0.0)
    branches = jest.get("branches", 0.0)
    if statements > 0 or branches > 0:
        return CoverageSummary(percent=(statements + branches) / 2, files_below=files_below, raw_output=output)
    return CoverageSummary(
        percent=0.0,
        raw_output=output,
        error="Could not parse coverage data from output",
    )


@dataclass(slots=True)
class HookResult:
    passed: bool
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class HookContext:
    working_dir: Path
    phase_results: Mapping[str, AgentResult]


class PrePhaseHooks:
    def __init__(self, project: ProjectConfig | None = None, command_runner: CommandRunner = run_command) -> None:
        self.project = project or ProjectConfig()
        self.command_runner = command_runner
        self._hooks: dict[str, Callable[[HookContext], HookResult]] = {
            "tdd-enforcement": self.tdd_enforcement,
            "test-passing-enforcement": self.test_passing_enforcement,
            "coverage-threshold": self.coverage_threshold,
        }

    @property
    def names(self) -> list[str]:
        return list(self._hooks)

    def run(self, hook_name: str, context: HookContext) -> HookResult:
        hook = self._hooks.get(hook_name)
        if hook is None:
            return HookResult(passed=False, error=f"Unknown hook: {hook_name}")
        result = hook(context)
        for warning in result.warnings:
            logger.warning("[%s] %s", hook_name, warning)
        return result

    def _run_tests(self, working_dir: Path) -> TestRunSummary:
        completed = self.command_runner(self.project.test_command, working_dir, TEST_TIMEOUT_SECONDS)
        return parse_test_output(completed.output)

    def tdd_enforcement(self, context: HookContext) -> HookResult:
        test_gen = context.phase_results.get("test-gen")
        if test_gen is None:
            return HookResult(False, "TDD VIOLATION: test-gen phase has not run. Cannot proceed to dev phase.")
        if not test_gen.success:
            return HookResult(False, "TDD VIOLATION: test-gen phase failed. Cannot proceed to dev phase.")
        tests_created = test_gen.output.get("testsCreated")
        if not isinstance(tests_created, int) or tests_created <= 0:
            return HookResult(
                False,
                "TDD VIOLATION: No tests were created in test-gen phase. "
                "Cannot proceed without failing tests.",
            )

        summary = self._run_tests(context.working_dir)
        if summary.error:
            return HookResult(
                False,
                f"TDD VIOLATION: Could not run tests: {summary.error}",
                data={"rawOutput": summary.raw_output[-2000:]},
            )
        if not summary.tests_found:
            return HookResult(
                False,
                "TDD VIOLATION: No tests found when running the test command.",
                data={"rawOutput": summary.raw_output[-2000:]},
            )
        counts = {"totalTests": summary.total, "passingTests": summary.passing, "failingTests": summary.failing}
        if summary.failing == 0:
            return HookResult(
                False,
                f"TDD VIOLATION: All {summary.total} tests pass. Tests must fail before implementation.",
                data=counts,
            )
        warnings = []
        if summary.passing > 0:
            warnings.append(f"{summary.passing} tests already pass. These may be from previous work.")
        return HookResult(True, data=counts, warnings=warnings)

    def test_passing_enforcement(self, context: HookContext) -> HookResult:
        summary = self._run_tests(context.working_dir)
        if summary.error:
            return HookResult(
                False,
                f"REFACTOR SAFETY VIOLATION: Could not run tests: {summary.error}",
                data={"rawOutput": summary.raw_output[-2000:]},
            )
        if not summary.tests_found:
            return HookResult(
                False,
                "REFACTOR SAFETY VIOLATION: No tests found. "
                "Cannot refactor without passing tests as a safety baseline.",
            )
        counts = {"totalTests": summary.total, "passingTests": summary.passing, "failingTests": summary.failing}
        if summary.failing > 0:
            return HookResult(
                False,
                f"REFACTOR SAFETY VIOLATION: {summary.failing} tests failing. "
                "Fix tests first or use the bug-fix workflow.",
                data=counts,
            )
        return HookResult(True, data=counts)

    def coverage_threshold(self, context: HookContext) -> HookResult:
        dev = context.phase_results.get("dev")
        if dev is None:
            return HookResult(False, "Coverage threshold hook: dev phase has not run.")
        if not dev.success:
            return HookResult(False, "Coverage threshold hook: dev phase failed. Cannot check coverage.")
        if dev.output.get("allTestsPassing") is not True:
            return HookResult(
                False,
                "Coverage threshold hook: tests are not passing. Fix tests before checking coverage.",
            )

        threshold = float(self.project.coverage_threshold)
        completed = self.command_runner(self.project.coverage_command, context.working_dir, COVERAGE_TIMEOUT_SECONDS)
        coverage = parse_coverage_output(completed.output, threshold)
        if coverage.error:
            return HookResult(
                False,
                f"Coverage threshold hook: {coverage.error}",
                data={"rawOutput": coverage.raw_output[-2000:]},
            )
        data = {
            "coveragePercent": coverage.percent,
            "threshold": threshold,
            "filesBelowThreshold": [{"file": name, "coverage": pct} for name, pct in coverage.files_below],
        }
        if coverage.percent < threshold:
            listed = "\n".join(f"  - {name}: {pct:.1f}%" for name, pct in coverage.files_below[:5])
            return HookResult(
                False,
                f"Coverage threshold not met: {coverage.percent:.1f}% < {threshold:g}%",
                data=data,
                warnings=[f"Files below threshold:\n{listed}"] if listed else [],
            )
        warnings = []
        if coverage.files_below:
            warnings.append(f"{len(coverage.files_below)} file(s) below {threshold:g}% coverage")
        return HookResult(True, data=data, warnings=warnings)
