"""Statically declared workflow definitions.

Each phase names the agent that runs it, whether a human must approve its result,
how its result is validated, and which typed handoff record carries its output into
the next phase's prompt.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

from feature_factory.results import AgentResult, StructuredOutput

Validator = Callable[[StructuredOutput], bool]


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


@dataclass(slots=True, frozen=True)
class Handoff(ABC):
    """Typed subset of a phase result that the following phase receives as input."""

    title: ClassVar[str] = "handoff"

    @classmethod
    @abstractmethod
    def from_result(cls, result: AgentResult) -> Handoff:
        """Build the handoff from a completed phase result."""

    def to_context(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value not in (None, [], {})}


@dataclass(slots=True, frozen=True)
class DesignHandoff(Handoff):
    """Design Review -> Specification."""

    title: ClassVar[str] = "design"
    design_notes: str | None = None
    suggested_pattern: str | None = None
    files_to_create: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)

    @classmethod
    def from_result(cls, result: AgentResult) -> DesignHandoff:
        output = result.output
        return cls(
            design_notes=_as_text(output.get("designNotes")),
            suggested_pattern=_as_text(output.get("suggestedPattern")),
            files_to_create=_as_list(output.get("filesToCreate")),
            files_to_modify=_as_list(output.get("filesToModify")),
            risks=_as_list(output.get("risks")),
        )


@dataclass(slots=True, frozen=True)
class SpecificationHandoff(Handoff):
    """Specification -> TDD Red Phase."""

    title: ClassVar[str] = "specification"
    overview: str | None = None
    function_specs: list[Any] = field(default_factory=list)
    test_scenarios: Any = None

    @classmethod
    def from_result(cls, result: AgentResult) -> SpecificationHandoff:
        output = result.output
        return cls(
            overview=_as_text(output.get("overview")),
            function_specs=_as_list(output.get("functionSpecs")),
            test_scenarios=output.get("testScenarios"),
        )


@dataclass(slots=True, frozen=True)
class TestsHandoff(Handoff):
    """Test generation -> implementation."""

    __test__ = False

    title: ClassVar[str] = "tests"
    test_files: list[Any] = field(default_factory=list)
    tests_created: int | None = None
    reproduced_bug: bool | None = None

    @classmethod
    def from_result(cls, result: AgentResult) -> TestsHandoff:
        output = result.output
        reproduced = output.get("reproducedBug")
        return cls(
            test_files=_as_list(output.get("testFiles")),
            tests_created=_as_int(output.get("testsCreated")),
            reproduced_bug=reproduced if isinstance(reproduced, bool) else None,
        )


@dataclass(slots=True, frozen=True)
class ImplementationHandoff(Handoff):
    """Implementation -> QA or review."""

    title: ClassVar[str] = "implementation"
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    test_output: str | None = None
    change_description: str | None = None

    @classmethod
    def from_result(cls, result: AgentResult) -> ImplementationHandoff:
        output = result.output
        description = output.get("fixDescription") or output.get("changesDescription")
        return cls(
            files_created=list(result.files_created),
            files_modified=list(result.files_modified),
            commits=list(result.commits),
            test_output=_as_text(output.get("testRunOutput")),
            change_description=_as_text(description),
        )


@dataclass(slots=True, frozen=True)
class QualityHandoff(Handoff):
    """QA -> review, or a baseline QA run -> refactor review."""

    title: ClassVar[str] = "quality"
    verdict: str | None = None
    summary: str | None = None
    tests_run: int | None = None
    tests_passed: int | None = None
    tests_failed: int | None = None
    coverage_percent: float | None = None
    coverage_gaps: list[Any] = field(default_factory=list)
    security_issues: list[Any] = field(default_factory=list)
    recommendations: list[Any] = field(default_factory=list)
    no_regressions: bool | None = None

    @classmethod
    def from_result(cls, result: AgentResult) -> QualityHandoff:
        output = result.output
        coverage = output.get("coveragePercent")
        no_regressions = output.get("noRegressions")
        return cls(
            verdict=_as_text(output.get("verdict")),
            summary=_as_text(output.get("summary")),
            tests_run=_as_int(output.get("testsRun")),
            tests_passed=_as_int(output.get("testsPassed")),
            tests_failed=_as_int(output.get("testsFailed")),
            coverage_percent=float(coverage) if isinstance(coverage, (int, float)) else None,
            coverage_gaps=_as_list(output.get("coverageGaps")),
            security_issues=_as_list(output.get("securityIssues")),
            recommendations=_as_list(output.get("recommendations")),
            no_regressions=no_regressions if isinstance(no_regressions, bool) else None,
        )


@dataclass(slots=True, frozen=True)
class ReviewHandoff(Handoff):
    """Code review -> documentation or final verification."""

    title: ClassVar[str] = "review"
    verdict: str | None = None
    summary: str | None = None
    issues: list[Any] = field(default_factory=list)
    is_minimal_fix: bool | None = None
    improvements_validated: bool | None = None

    @classmethod
    def from_result(cls, result: AgentResult) -> ReviewHandoff:
        output = result.output
        minimal = output.get("isMinimalFix")
        validated = output.get("improvementsValidated")
        return cls(
            verdict=_as_text(output.get("verdict")),
            summary=_as_text(output.get("summary")),
            issues=_as_list(output.get("issues")),
            is_minimal_fix=minimal if isinstance(minimal, bool) else None,
            improvements_validated=validated if isinstance(validated, bool) else None,
        )


@dataclass(slots=True, frozen=True)
class DiagnosisHandoff(Handoff):
    """Root cause diagnosis -> regression tests."""

    title: ClassVar[str] = "diagnosis"
    diagnosis: Any = None
    root_cause: Any = None
    affected_files: list[str] = field(default_factory=list)
    suggested_fix: Any = None
    risk_assessment: Any = None
    reproduction_steps: list[Any] = field(default_factory=list)

    @classmethod
    def from_result(cls, result: AgentResult) -> DiagnosisHandoff:
        output = result.output
        return cls(
            diagnosis=output.get("diagnosis"),
            root_cause=output.get("rootCause"),
            affected_files=_as_list(output.get("affectedFiles")),
            suggested_fix=output.get("suggestedFix"),
            risk_assessment=output.get("riskAssessment"),
            reproduction_steps=_as_list(output.get("reproductionSteps")),
        )


@dataclass(slots=True, frozen=True)
class RefactorPlanHandoff(Handoff):
    """Refactor review -> refactor implementation."""

    title: ClassVar[str] = "refactor plan"
    rationale: str | None = None
    scope: Any = None
    affected_files: list[str] = field(default_factory=list)
    expected_improvements: list[Any] = field(default_factory=list)
    risks: list[Any] = field(default_factory=list)
    refactoring_plan: Any = None

    @classmethod
    def from_result(cls, result: AgentResult) -> RefactorPlanHandoff:
        output = result.output
        return cls(
            rationale=_as_text(output.get("rationale")),
            scope=output.get("scope"),
            affected_files=_as_list(output.get("affectedFiles")),
            expected_improvements=_as_list(output.get("expectedImprovements")),
            risks=_as_list(output.get("risks")),
            refactoring_plan=output.get("refactoringPlan"),
        )


@dataclass(slots=True, frozen=True)
class Phase:
    agent: str
    name: str
    approval_required: bool
    validate: Validator
    handoff: type[Handoff] | None = None
    max_retries: int | None = None
    pre_phase_hooks: tuple[str, ...] = ()
    output_fields: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Workflow:
    name: str
    description: str
    phases: tuple[Phase, ...]

    def phase_index(self, phase_name: str) -> int | None:
        for index, phase in enumerate(self.phases):
            if phase.name == phase_name:
                return index
        return None


def _verdict_not_failed(output: StructuredOutput) -> bool:
    return output.has("verdict") and output.get("verdict") != "FAILED"


def _approved_design(output: StructuredOutput) -> bool:
    return output.get("approved") is True


def _complete_specification(output: StructuredOutput) -> bool:
    function_specs = output.get("functionSpecs")
    return isinstance(function_specs, list) and bool(function_specs) and output.has("testScenarios")


def _tests_failing(output: StructuredOutput) -> bool:
    tests_created = _as_int(output.get("testsCreated")) or 0
    return tests_created > 0 and output.get("allTestsFailing") is True


def _bug_reproduced(output: StructuredOutput) -> bool:
    return _tests_failing(output) and output.get("reproducedBug") is True


def _all_tests_passing(output: StructuredOutput) -> bool:
    return output.get("allTestsPassing") is True


def _review_approved(output: StructuredOutput) -> bool:
    return output.get("verdict") == "APPROVED"


def _docs_verified(output: StructuredOutput) -> bool:
    return output.get("aboutMeVerified") is True


def _no_failing_tests(output: StructuredOutput) -> bool:
    return _verdict_not_failed(output) and output.get("testsFailed") == 0


NEW_FEATURE = Workflow(
    name="new-feature",
    description="Full TDD pipeline for new features",
    phases=(
        Phase(
            agent="architect",
            name="Design Review",
            approval_required=True,
            validate=_approved_design,
            handoff=DesignHandoff,
        ),
        Phase(
            agent="spec",
            name="Specification",
            approval_required=True,
            validate=_complete_specification,
            handoff=SpecificationHandoff,
        ),
        Phase(
            agent="test-gen",
            name="TDD Red Phase",
            approval_required=False,
            validate=_tests_failing,
            handoff=TestsHandoff,
        ),
        Phase(
            agent="dev",
            name="TDD Green Phase",
            approval_required=False,
            validate=_all_tests_passing,
            handoff=ImplementationHandoff,
            pre_phase_hooks=("tdd-enforcement",),
        ),
        Phase(
            agent="qa",
            name="Quality Assurance",
            approval_required=False,
            validate=_verdict_not_failed,
            handoff=QualityHandoff,
            pre_phase_hooks=("coverage-threshold",),
        ),
        Phase(
            agent="review",
            name="Code Review",
            approval_required=True,
            validate=_review_approved,
            handoff=ReviewHandoff,
        ),
        Phase(
            agent="docs",
            name="Documentation",
            approval_required=False,
            validate=_docs_verified,
        ),
    ),
)

BUG_FIX = Workflow(
    name="bug-fix",
    description="Diagnosis and fix pipeline for existing bugs",
    phases=(
        Phase(
            agent="architect",
            name="Root Cause Diagnosis",
            approval_required=True,
            validate=lambda output: output.has("rootCause") and output.has("suggestedFix"),
            handoff=DiagnosisHandoff,
            output_fields={
                "diagnosis": "string - What is going wrong",
                "rootCause": "string - The underlying cause",
                "affectedFiles": "string[] - Files involved in the bug",
                "suggestedFix": "string - Smallest safe fix",
                "riskAssessment": "string - Risk of the proposed fix",
                "reproductionSteps": "string[] - How to reproduce the bug",
            },
        ),
        Phase(
            agent="test-gen",
            name="Regression Tests",
            approval_required=False,
            validate=_bug_reproduced,
            handoff=TestsHandoff,
            output_fields={"reproducedBug": "boolean - The new tests reproduce the bug"},
        ),
        Phase(
            agent="dev",
            name="Bug Fix Implementation",
            approval_required=False,
            validate=_all_tests_passing,
            handoff=ImplementationHandoff,
            max_retries=2,
            pre_phase_hooks=("tdd-enforcement",),
            output_fields={"fixDescription": "string - What the fix changes"},
        ),
        Phase(
            agent="review",
            name="Fix Review",
            approval_required=True,
            validate=lambda output: _review_approved(output) and output.get("isMinimalFix") is True,
            handoff=ReviewHandoff,
            output_fields={"isMinimalFix": "boolean - The change is the minimal fix"},
        ),
        Phase(
            agent="qa",
            name="Regression Check",
            approval_required=False,
            validate=lambda output: _verdict_not_failed(output)
            and output.get("noRegressions") is True,
            handoff=QualityHandoff,
            output_fields={"noRegressions": "boolean - No previously passing test now fails"},
        ),
    ),
)

REFACTOR = Workflow(
    name="refactor",
    description="Safe refactoring pipeline that preserves behavior",
    phases=(
        Phase(
            agent="qa",
            name="Test Baseline",
            approval_required=False,
            validate=_no_failing_tests,
            handoff=QualityHandoff,
            pre_phase_hooks=("test-passing-enforcement",),
        ),
        Phase(
            agent="architect",
            name="Refactor Review",
            approval_required=True,
            validate=lambda output: _approved_design(output) and output.has("refactoringPlan"),
            handoff=RefactorPlanHandoff,
            output_fields={
                "rationale": "string - Why the refactor is worth doing",
                "scope": "string - What is in and out of scope",
                "affectedFiles": "string[] - Files to change",
                "expectedImprovements": "string[] - Measurable improvements",
                "refactoringPlan": "object[] - Ordered refactoring steps",
            },
        ),
        Phase(
            agent="dev",
            name="Refactor Implementation",
            approval_required=False,
            validate=_all_tests_passing,
            handoff=ImplementationHandoff,
            pre_phase_hooks=("test-passing-enforcement",),
            output_fields={"changesDescription": "string - Summary of the refactor"},
        ),
        Phase(
            agent="review",
            name="Code Quality Review",
            approval_required=True,
            validate=lambda output: _review_approved(output)
            and output.get("improvementsValidated") is True,
            handoff=ReviewHandoff,
            output_fields={
                "improvementsValidated": "boolean - The expected improvements were achieved"
            },
        ),
        Phase(
            agent="qa",
            name="Final Verification",
            approval_required=False,
            validate=lambda output: _no_failing_tests(output)
            and output.get("noRegressions") is True,
            handoff=QualityHandoff,
            pre_phase_hooks=("test-passing-enforcement",),
            output_fields={"noRegressions": "boolean - Behavior matches the baseline"},
        ),
    ),
)

WORKFLOWS: dict[str, Workflow] = {
    workflow.name: workflow for workflow in (NEW_FEATURE, BUG_FIX, REFACTOR)
}


def get_workflow(name: str) -> Workflow:
    try:
        return WORKFLOWS[name]
    except KeyError as exc:
        raise ValueError(
            f"Unknown workflow type: {name}. Expected one of: {', '.join(sorted(WORKFLOWS))}"
        ) from exc


def is_valid_workflow(name: str) -> bool:
    return name in WORKFLOWS
