from __future__ import annotations

from feature_factory.agents.base import PhaseAgent


class SpecAgent(PhaseAgent):
    role = "spec"
    description = "Requirements translator and detailed specification author"
    fallback_prompt = """
You are the Specification agent.
Turn the approved design into function-level specifications with inputs, outputs,
error cases, and concrete test scenarios grouped by category.
""".strip()
    tools = ("Read", "Glob", "Grep")
    max_turns = 30
    output_schema = {
        "overview": "string - High-level feature description",
        "userStories": "object[] - User stories with acceptance criteria",
        "functionSpecs": "object[] - Detailed function specifications",
        "testScenarios": "object - Test scenarios by category",
        "dependencies": "string[] - External dependencies",
        "assumptions": "string[] - Assumptions made",
    }
