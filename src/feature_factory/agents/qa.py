from __future__ import annotations

from feature_factory.agents.base import PhaseAgent


class QAAgent(PhaseAgent):
    role = "qa"
    description = "Quality assurance: tests, coverage, and security scanning"
    fallback_prompt = """
You are the QA agent.
Run the full test suite with coverage, identify coverage gaps and security issues,
and give a verdict of PASSED, NEEDS_ATTENTION, or FAILED.
""".strip()
    tools = ("Read", "Glob", "Grep", "Bash")
    max_turns = 50
    output_schema = {
        "testsRun": "number - Total tests executed",
        "testsPassed": "number - Passing tests",
        "testsFailed": "number - Failing tests",
        "coveragePercent": "number - Overall coverage percentage",
        "coverageGaps": "object[] - Files or functions below threshold",
        "securityIssues": "object[] - Security findings with severity",
        "verdict": "string - PASSED, NEEDS_ATTENTION, or FAILED",
        "summary": "string - Brief summary of analysis",
        "recommendations": "string[] - Actionable recommendations",
    }
