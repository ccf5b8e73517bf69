from __future__ import annotations

from feature_factory.agents.base import PhaseAgent


class TestGenAgent(PhaseAgent):
    __test__ = False

    role = "test-gen"
    description = "TDD red phase implementer that writes failing tests first"
    fallback_prompt = """
You are the Test Generation agent.
Write tests for the specified behavior before any implementation exists.
Run the test suite and confirm that every new test fails for the right reason.
Do not write implementation code.
""".strip()
    tools = ("Read", "Glob", "Grep", "Write", "Bash")
    max_turns = 60
    output_schema = {
        "testsCreated": "number - Count of test files created",
        "testFiles": "object[] - Test file paths and descriptions",
        "coverageGoals": "string[] - What the tests cover",
        "allTestsFailing": "boolean - All new tests fail (MUST be true)",
        "testRunOutput": "string - Output from the test run",
    }
