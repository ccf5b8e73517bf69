import math
import tomllib
from pathlib import Path

import pytest

from feature_factory import __version__
from feature_factory.config import (
    ConfigError,
    FactoryConfig,
    apply_env_overrides,
    dumps_toml,
    format_budget,
    load_config,
    parse_budget,
    save_config,
    validate_config,
)


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "feature-factory.toml"
    config = FactoryConfig.default()
    config.engine.max_budget_usd = 12.5
    config.engine.approval_mode = "at-end"
    config.engine.git_checkpoints = False
    config.project.test_command = "pytest -q tests/unit"
    config.backend.fallback = "none"
    config.stall.oscillation_window = 8
    config.tools.blocked_command_patterns = ["rm -rf /", "git push --force"]
    config.approval.source_overrides = {"debugger-alert": "confirm"}
    config.worker.min_priority = "high"

    save_config(config_path, config)
    loaded = load_config(config_path, env={})

    assert loaded.engine.max_budget_usd == 12.5
    assert loaded.engine.approval_mode == "at-end"
    assert loaded.engine.git_checkpoints is False
    assert loaded.project.test_command == "pytest -q tests/unit"
    assert loaded.backend.fallback == "none"
    assert loaded.stall.oscillation_window == 8
    assert loaded.tools.blocked_command_patterns == ["rm -rf /", "git push --force"]
    assert loaded.approval.source_overrides == {"debugger-alert": "confirm"}
    assert loaded.approval.tier_defaults["4"] == "escalate"
    assert loaded.worker.min_priority == "high"
    assert loaded.worker.validation_inbox is True


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml", env={})

    assert config.engine.max_budget_usd == 5.0
    assert config.engine.max_turns_per_agent == 50
    assert config.engine.default_model == "sonnet"
    assert config.engine.approval_mode == "after-each-phase"
    assert config.stall.max_interventions == 2
    assert config.worker.max_item_budget_usd == 10.0


def test_unlimited_budget_is_written_as_toml_inf(tmp_path: Path) -> None:
    config = FactoryConfig.default()
    config.engine.max_budget_usd = math.inf

    parsed = tomllib.loads(dumps_toml(config))

    assert math.isinf(parsed["engine"]["max_budget_usd"])


def test_env_overrides_apply_after_file() -> None:
    config = apply_env_overrides(
        FactoryConfig.default(),
        {
            "FEATURE_FACTORY_MAX_BUDGET": "unlimited",
            "FEATURE_FACTORY_MAX_TURNS": "7",
            "FEATURE_FACTORY_MODEL": "opus",
            "FEATURE_FACTORY_APPROVAL_MODE": "none",
            "FEATURE_FACTORY_VERBOSE": "true",
        },
    )

    assert math.isinf(config.engine.max_budget_usd)
    assert config.engine.max_turns_per_agent == 7
    assert config.engine.default_model == "opus"
    assert config.engine.approval_mode == "none"
    assert config.engine.verbose is True


def test_parse_and_format_budget() -> None:
    assert parse_budget(" 2.5 ") == 2.5
    assert math.isinf(parse_budget("UNLIMITED"))
    assert format_budget(math.inf) == "unlimited"
    assert format_budget(3) == "$3.00"
    with pytest.raises(ConfigError):
        parse_budget("lots")


@pytest.mark.parametrize(
    ("section", "field", "value"),
    [
        ("engine", "max_budget_usd", 0),
        ("engine", "max_turns_per_agent", -1),
        ("engine", "default_model", "gpt-9"),
        ("engine", "approval_mode", "sometimes"),
        ("stall", "oscillation_window", 5),
        ("stall", "oscillation_window", 2),
        ("worker", "min_priority", "urgent"),
    ],
)
def test_validate_config_rejects_bad_values(section: str, field: str, value: object) -> None:
    config = FactoryConfig.default()
    setattr(getattr(config, section), field, value)

    with pytest.raises(ConfigError):
        validate_config(config)


def test_model_aliases_resolve_to_concrete_ids() -> None:
    models = FactoryConfig.default().models

    assert models.resolve("sonnet") == models.sonnet
    assert models.resolve("haiku") == models.haiku
    assert models.resolve("claude-custom") == "claude-custom"


def test_version_matches_pyproject() -> None:
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
    assert data["project"]["version"] == __version__
