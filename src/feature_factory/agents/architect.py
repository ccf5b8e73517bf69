from __future__ import annotations

from feature_factory.agents.base import PhaseAgent


class ArchitectAgent(PhaseAgent):
    role = "architect"
    description = "Design leader and system integration specialist"
    fallback_prompt = """
You are the Architect agent.
Review the requested change against the existing codebase, decide whether the design
fits, recommend an implementation pattern, and list the files to create or modify.
For bug reports, diagnose the root cause and propose the smallest safe fix.
You produce designs, not code.
""".strip()
    tools = ("Read", "Glob", "Grep")
    max_turns = 20
    output_schema = {
        "approved": "boolean - Whether the design is approved",
        "designNotes": "string - Architectural analysis and recommendations",
        "suggestedPattern": "string - Recommended implementation pattern",
        "filesToCreate": "string[] - New files to create",
        "filesToModify": "string[] - Existing files to modify",
        "risks": "string[] - Architectural concerns",
    }
