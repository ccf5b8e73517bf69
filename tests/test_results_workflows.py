import pytest

from feature_factory.agents import AGENT_TYPES, build_agent
from feature_factory.results import AgentResult, StructuredOutput, calculate_cost, parse_structured_output
from feature_factory.workflows import (
    BUG_FIX,
    NEW_FEATURE,
    REFACTOR,
    DesignHandoff,
    Handoff,
    QualityHandoff,
    get_workflow,
    is_valid_workflow,
)


def test_parse_structured_output_prefers_fenced_json() -> None:
    text = 'Done.\n```json\n{"approved": true, "risks": ["none"]}\n```\nThanks.'

    output = parse_structured_output(text)

    assert output.parsed
    assert output.get("approved") is True
    assert output.get("risks") == ["none"]


def test_parse_structured_output_accepts_bare_json() -> None:
    output = parse_structured_output('  {"verdict": "APPROVED"}  ')

    assert output.parsed
    assert output.get("verdict") == "APPROVED"


def test_unparseable_output_falls_back_to_raw_text() -> None:
    output = parse_structured_output("I changed a few files, looks good.")

    assert not output.parsed
    assert output.get("approved") is None
    assert output.has("approved") is False
    assert output.to_dict() == {"rawOutput": "I changed a few files, looks good."}


def test_validators_treat_raw_fallback_as_failure() -> None:
    raw = StructuredOutput(kind="raw", raw_text="no json here")

    for workflow in (NEW_FEATURE, BUG_FIX, REFACTOR):
        for phase in workflow.phases:
            assert phase.validate(raw) is False, phase.name


def test_agent_result_serialization_keeps_camel_case_keys() -> None:
    result = AgentResult(
        agent="dev",
        success=True,
        output=StructuredOutput(kind="parsed", data={"allTestsPassing": True}),
        files_created=["src/app.py"],
        commits=["abc123"],
        cost_usd=0.25,
        turns_used=4,
    )

    payload = result.to_dict()
    restored = AgentResult.from_dict(payload)

    assert payload["filesCreated"] == ["src/app.py"]
    assert payload["costUsd"] == 0.25
    assert restored.output.get("allTestsPassing") is True
    assert restored.turns_used == 4


def test_calculate_cost_uses_per_million_pricing() -> None:
    assert calculate_cost("sonnet", 1_000_000, 0) == pytest.approx(3.0)
    assert calculate_cost("opus", 0, 1_000_000) == pytest.approx(75.0)
    assert calculate_cost("haiku", 1_000_000, 1_000_000) == pytest.approx(1.5)
    assert calculate_cost("unknown-model", 1_000_000, 0) == pytest.approx(3.0)


def test_workflow_registry_lookup() -> None:
    assert get_workflow("bug-fix") is BUG_FIX
    assert is_valid_workflow("refactor")
    assert not is_valid_workflow("investigation")
    with pytest.raises(ValueError, match="Unknown workflow type"):
        get_workflow("investigation")


def test_declared_phase_orders() -> None:
    assert [phase.agent for phase in NEW_FEATURE.phases] == [
        "architect",
        "spec",
        "test-gen",
        "dev",
        "qa",
        "review",
        "docs",
    ]
    assert [phase.agent for phase in BUG_FIX.phases] == ["architect", "test-gen", "dev", "review", "qa"]
    assert [phase.agent for phase in REFACTOR.phases] == ["qa", "architect", "dev", "review", "qa"]
    assert BUG_FIX.phases[2].max_retries == 2


def test_every_phase_agent_is_registered() -> None:
    for workflow in (NEW_FEATURE, BUG_FIX, REFACTOR):
        for phase in workflow.phases:
            assert phase.agent in AGENT_TYPES


def test_new_feature_validators() -> None:
    design, spec, red, green = NEW_FEATURE.phases[:4]

    assert design.validate(StructuredOutput(kind="parsed", data={"approved": True}))
    assert not design.validate(StructuredOutput(kind="parsed", data={"approved": "yes"}))
    assert spec.validate(
        StructuredOutput(kind="parsed", data={"functionSpecs": [{"name": "f"}], "testScenarios": {"unit": []}})
    )
    assert not spec.validate(StructuredOutput(kind="parsed", data={"functionSpecs": [], "testScenarios": {}}))
    assert red.validate(StructuredOutput(kind="parsed", data={"testsCreated": 3, "allTestsFailing": True}))
    assert not red.validate(StructuredOutput(kind="parsed", data={"testsCreated": 0, "allTestsFailing": True}))
    assert green.validate(StructuredOutput(kind="parsed", data={"allTestsPassing": True}))


def test_design_handoff_keeps_only_declared_fields() -> None:
    result = AgentResult(
        agent="architect",
        success=True,
        output=StructuredOutput(
            kind="parsed",
            data={
                "approved": True,
                "designNotes": "Use a repository class",
                "filesToCreate": ["src/repo.py"],
                "unrelated": "dropped",
            },
        ),
    )

    context = DesignHandoff.from_result(result).to_context()

    assert context == {"design_notes": "Use a repository class", "files_to_create": ["src/repo.py"]}


def test_quality_handoff_from_raw_output_is_empty() -> None:
    result = AgentResult(agent="qa", success=True, output=StructuredOutput(kind="raw", raw_text="ok"))

    assert QualityHandoff.from_result(result).to_context() == {}


def test_handoff_base_cannot_be_built() -> None:
    with pytest.raises(TypeError):
        Handoff()

    for workflow in (NEW_FEATURE, BUG_FIX, REFACTOR):
        for phase in workflow.phases:
            if phase.handoff is not None:
                assert not getattr(phase.handoff, "__abstractmethods__", None), phase.name


def test_build_agent_applies_prompt_override_and_vendor_tools(tmp_path) -> None:
    (tmp_path / "dev.md").write_text("Custom dev prompt\n", encoding="utf-8")

    agent = build_agent("dev", prompts_dir=tmp_path, extra_tools=("mcp__vendor__send",))

    assert agent.system_prompt == "Custom dev prompt"
    assert "mcp__vendor__send" in agent.allowed_tools
    assert agent.turn_limit(10) == 10


def test_build_agent_rejects_unknown_agent_and_tools() -> None:
    with pytest.raises(ValueError, match="Unknown agent type"):
        build_agent("astronaut")
    with pytest.raises(ValueError, match="Tool policy rejected"):
        build_agent("dev", extra_tools=("Teleport",))
