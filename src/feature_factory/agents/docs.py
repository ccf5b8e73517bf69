from __future__ import annotations

from feature_factory.agents.base import PhaseAgent


class DocsAgent(PhaseAgent):
    role = "docs"
    description = "Technical writer for documentation updates"
    fallback_prompt = """
You are the Documentation agent.
Update the README and module documentation for the changes made in this run.
Every new source file must open with a short header comment describing its purpose.
""".strip()
    tools = ("Read", "Write", "Edit", "Glob", "Grep")
    max_turns = 25
    output_schema = {
        "filesUpdated": "string[] - Documentation files updated",
        "readmeUpdated": "boolean - Whether the README was updated",
        "aboutMeVerified": "boolean - All new files carry a header comment",
        "examplesAdded": "string[] - Examples added",
    }
