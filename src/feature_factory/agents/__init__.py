from __future__ import annotations

from pathlib import Path

from feature_factory.agents.architect import ArchitectAgent
from feature_factory.agents.base import TOOL_ALLOWLIST, PhaseAgent
from feature_factory.agents.dev import DevAgent
from feature_factory.agents.docs import DocsAgent
from feature_factory.agents.qa import QAAgent
from feature_factory.agents.review import ReviewAgent
from feature_factory.agents.spec import SpecAgent
from feature_factory.agents.test_gen import TestGenAgent

AGENT_TYPES: dict[str, type[PhaseAgent]] = {
    agent.role: agent
    for agent in (
        ArchitectAgent,
        SpecAgent,
        TestGenAgent,
        DevAgent,
        QAAgent,
        ReviewAgent,
        DocsAgent,
    )
}


def build_agent(
    agent_type: str,
    *,
    prompts_dir: Path | None = None,
    extra_tools: tuple[str, ...] = (),
) -> PhaseAgent:
    try:
        agent_class = AGENT_TYPES[agent_type]
    except KeyError as exc:
        raise ValueError(f"Unknown agent type: {agent_type}") from exc
    return agent_class(prompts_dir=prompts_dir, extra_tools=extra_tools)


__all__ = [
    "AGENT_TYPES",
    "TOOL_ALLOWLIST",
    "ArchitectAgent",
    "DevAgent",
    "DocsAgent",
    "PhaseAgent",
    "QAAgent",
    "ReviewAgent",
    "SpecAgent",
    "TestGenAgent",
    "build_agent",
]
