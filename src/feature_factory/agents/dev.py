from __future__ import annotations

from feature_factory.agents.base import PhaseAgent


class DevAgent(PhaseAgent):
    role = "dev"
    description = "TDD green phase implementer"
    fallback_prompt = """
You are the Developer agent.
Write the minimal implementation that makes the failing tests pass.
Do not modify the tests. Run the full suite and the linter before finishing,
and commit your work with a descriptive message.
""".strip()
    tools = ("Read", "Write", "Edit", "Glob", "Grep", "Bash")
    max_turns = 60
    output_schema = {
        "testsPassedBefore": "number - Tests passing before you started",
        "testsPassedAfter": "number - Tests passing after implementation",
        "allTestsPassing": "boolean - All tests pass (MUST be true)",
        "filesCreated": "string[] - Created file paths",
        "filesModified": "string[] - Modified file paths",
        "commits": "string[] - Commit hashes",
        "testRunOutput": "string - Final test output",
    }
