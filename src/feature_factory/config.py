from __future__ import annotations

import json
import math
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["anthropic", "openai"]
ModelAlias = Literal["sonnet", "opus", "haiku"]
ApprovalMode = Literal["after-each-phase", "at-end", "none"]

MODEL_ALIASES: tuple[str, ...] = ("sonnet", "opus", "haiku")
APPROVAL_MODES: tuple[str, ...] = ("after-each-phase", "at-end", "none")
WORK_PRIORITIES: tuple[str, ...] = ("critical", "high", "medium", "low")
UNLIMITED_BUDGET = math.inf


class ConfigError(ValueError):
    """Raised when configuration values are out of range."""


@dataclass(slots=True)
class EngineConfig:
    max_budget_usd: float = 5.0
    max_turns_per_agent: int = 50
    default_model: ModelAlias = "sonnet"
    approval_mode: ApprovalMode = "after-each-phase"
    max_retries_per_phase: int = 1
    max_duration_minutes: int = 0
    git_checkpoints: bool = True
    pre_phase_hooks: bool = True
    verbose: bool = False


@dataclass(slots=True)
class ProjectConfig:
    test_command: str = "pytest -q"
    coverage_command: str = "pytest -q --cov"
    coverage_threshold: int = 80
    dependency_dir: str = ".venv"
    dependency_manifests: list[str] = field(
        default_factory=lambda: ["pyproject.toml", "requirements.txt"]
    )
    install_command: str = "python -m venv .venv && .venv/bin/pip install -e ."


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "anthropic"
    fallback: BackendName = "openai"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class ModelsConfig:
    sonnet: str = "claude-sonnet-4-5"
    opus: str = "claude-opus-4-1"
    haiku: str = "claude-haiku-4-5"
    openai_model: str = "gpt-4.1"

    def resolve(self, alias: str) -> str:
        if alias in MODEL_ALIASES:
            return str(getattr(self, alias))
        return alias


@dataclass(slots=True)
class StallConfig:
    enabled: bool = True
    repetition_threshold: int = 3
    oscillation_window: int = 6
    idle_threshold: int = 10
    max_interventions: int = 2


@dataclass(slots=True)
class ContextConfig:
    compaction_threshold_tokens: int = 120_000
    keep_recent_turns: int = 8


@dataclass(slots=True)
class ToolsConfig:
    bash_timeout_seconds: float = 120.0
    blocked_command_patterns: list[str] = field(
        default_factory=lambda: [
            "--no-verify",
            "git push --force",
            "git push -f",
            "rm -rf /",
            "sudo rm",
        ]
    )


@dataclass(slots=True)
class WorkerConfig:
    poll_interval_seconds: float = 60.0
    max_budget_usd: float = 50.0
    max_item_budget_usd: float = 10.0
    min_priority: str = "low"
    validation_inbox: bool = True


@dataclass(slots=True)
class ApprovalConfig:
    max_auto_execute_budget_usd: float = 10.0
    tier_defaults: dict[str, str] = field(
        default_factory=lambda: {
            "1": "auto-execute",
            "2": "auto-execute",
            "3": "confirm",
            "4": "escalate",
        }
    )
    source_overrides: dict[str, str] = field(default_factory=dict)
    priority_overrides: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class FactoryConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    stall: StallConfig = field(default_factory=StallConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)

    @classmethod
    def default(cls) -> FactoryConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FactoryConfig:
        return cls(
            engine=EngineConfig(**data.get("engine", {})),
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            models=ModelsConfig(**data.get("models", {})),
            stall=StallConfig(**data.get("stall", {})),
            context=ContextConfig(**data.get("context", {})),
            tools=ToolsConfig(**data.get("tools", {})),
            worker=WorkerConfig(**data.get("worker", {})),
            approval=ApprovalConfig(**data.get("approval", {})),
        )

    def to_dict(self) -> dict:
        return {
            "engine": {
                "max_budget_usd": self.engine.max_budget_usd,
                "max_turns_per_agent": self.engine.max_turns_per_agent,
                "default_model": self.engine.default_model,
                "approval_mode": self.engine.approval_mode,
                "max_retries_per_phase": self.engine.max_retries_per_phase,
                "max_duration_minutes": self.engine.max_duration_minutes,
                "git_checkpoints": self.engine.git_checkpoints,
                "pre_phase_hooks": self.engine.pre_phase_hooks,
                "verbose": self.engine.verbose,
            },
            "project": {
                "test_command": self.project.test_command,
                "coverage_command": self.project.coverage_command,
                "coverage_threshold": self.project.coverage_threshold,
                "dependency_dir": self.project.dependency_dir,
                "dependency_manifests": list(self.project.dependency_manifests),
                "install_command": self.project.install_command,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "models": {
                "sonnet": self.models.sonnet,
                "opus": self.models.opus,
                "haiku": self.models.haiku,
                "openai_model": self.models.openai_model,
            },
            "stall": {
                "enabled": self.stall.enabled,
                "repetition_threshold": self.stall.repetition_threshold,
                "oscillation_window": self.stall.oscillation_window,
                "idle_threshold": self.stall.idle_threshold,
                "max_interventions": self.stall.max_interventions,
            },
            "context": {
                "compaction_threshold_tokens": self.context.compaction_threshold_tokens,
                "keep_recent_turns": self.context.keep_recent_turns,
            },
            "tools": {
                "bash_timeout_seconds": self.tools.bash_timeout_seconds,
                "blocked_command_patterns": list(self.tools.blocked_command_patterns),
            },
            "worker": {
                "poll_interval_seconds": self.worker.poll_interval_seconds,
                "max_budget_usd": self.worker.max_budget_usd,
                "max_item_budget_usd": self.worker.max_item_budget_usd,
                "min_priority": self.worker.min_priority,
                "validation_inbox": self.worker.validation_inbox,
            },
            "approval": {
                "max_auto_execute_budget_usd": self.approval.max_auto_execute_budget_usd,
                "tier_defaults": dict(self.approval.tier_defaults),
                "source_overrides": dict(self.approval.source_overrides),
                "priority_overrides": dict(self.approval.priority_overrides),
            },
        }


def validate_config(config: FactoryConfig) -> None:
    if config.engine.max_budget_usd <= 0:
        raise ConfigError("max_budget_usd must be greater than 0")
    if config.engine.max_turns_per_agent <= 0:
        raise ConfigError("max_turns_per_agent must be greater than 0")
    if config.engine.default_model not in MODEL_ALIASES:
        raise ConfigError(f"default_model must be one of: {', '.join(MODEL_ALIASES)}")
    if config.engine.approval_mode not in APPROVAL_MODES:
        raise ConfigError(f"approval_mode must be one of: {', '.join(APPROVAL_MODES)}")
    window = config.stall.oscillation_window
    if window < 4 or window % 2:
        raise ConfigError("stall.oscillation_window must be an even number of at least 4")
    if config.worker.min_priority not in WORK_PRIORITIES:
        raise ConfigError(f"worker.min_priority must be one of: {', '.join(WORK_PRIORITIES)}")


def apply_env_overrides(config: FactoryConfig, env: Mapping[str, str] | None = None) -> FactoryConfig:
    source = os.environ if env is None else env
    budget = source.get("FEATURE_FACTORY_MAX_BUDGET")
    if budget:
        config.engine.max_budget_usd = parse_budget(budget)
    max_turns = source.get("FEATURE_FACTORY_MAX_TURNS")
    if max_turns:
        config.engine.max_turns_per_agent = int(max_turns)
    model = source.get("FEATURE_FACTORY_MODEL")
    if model:
        config.engine.default_model = model  # type: ignore[assignment]
    approval_mode = source.get("FEATURE_FACTORY_APPROVAL_MODE")
    if approval_mode:
        config.engine.approval_mode = approval_mode  # type: ignore[assignment]
    if source.get("FEATURE_FACTORY_VERBOSE") == "true":
        config.engine.verbose = True
    return config


def parse_budget(raw: str) -> float:
    value = raw.strip().lower()
    if value == "unlimited":
        return UNLIMITED_BUDGET
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid budget: {raw!r}") from exc


def format_budget(amount: float) -> str:
    if math.isinf(amount):
        return "unlimited"
    return f"${amount:.2f}"


def _toml_key(key: str) -> str:
    if key.replace("_", "").replace("-", "").isalnum():
        return key
    return json.dumps(key)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isinf(value):
            return "inf" if value > 0 else "-inf"
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        pairs = ", ".join(f"{_toml_key(str(k))} = {_toml_value(v)}" for k, v in value.items())
        return "{" + (f" {pairs} " if pairs else "") + "}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FactoryConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "engine",
        "project",
        "backend",
        "models",
        "stall",
        "context",
        "tools",
        "worker",
        "approval",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, *, env: Mapping[str, str] | None = None) -> FactoryConfig:
    if path.exists():
        config = FactoryConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    else:
        config = FactoryConfig.default()
    return apply_env_overrides(config, env)


def save_config(path: Path, config: FactoryConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
