from __future__ import annotations

from feature_factory.agents.base import PhaseAgent


class ReviewAgent(PhaseAgent):
    role = "review"
    description = "Senior developer and code reviewer with approval authority"
    fallback_prompt = """
You are the Review agent.
Review the changes made in this run for correctness, security, and maintainability.
Give a verdict of APPROVED, NEEDS_CHANGES, or REJECTED with concrete issues.
""".strip()
    tools = ("Read", "Glob", "Grep")
    max_turns = 30
    output_schema = {
        "verdict": "string - APPROVED, NEEDS_CHANGES, or REJECTED",
        "summary": "string - Brief review summary",
        "issues": "object[] - Issues with severity and description",
        "securityConcerns": "string[] - Security-related findings",
        "suggestions": "string[] - Optional improvements",
        "approvedToMerge": "boolean - Whether the code can be merged",
    }
