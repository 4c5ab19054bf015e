from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ralph_loop.config import Settings, parse_config_value
from ralph_loop.errors import ConfigError
from ralph_loop.orchestrator.backend import DEFAULT_COMMAND_TEMPLATE

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def _write_config(ralph_dir: Path, content: str) -> None:
    ralph_dir.mkdir(parents=True, exist_ok=True)
    (ralph_dir / "config").write_text(content, "utf-8")


def test_defaults_without_config_file(tmp_path: Path) -> None:
    settings = Settings.load(tmp_path / ".ralph")

    assert settings.loop.max_retries == 3
    assert settings.loop.default_iterations == 10
    assert settings.costs.max_cost_per_iteration is None
    assert settings.costs.max_cost_per_session is None
    assert settings.output.save_output is False
    assert settings.templates.default_template == "empty"
    assert settings.agent.command_template == DEFAULT_COMMAND_TEMPLATE
    assert settings.repo_root == tmp_path.resolve()
    settings.validate()


def test_config_file_values_are_parsed(tmp_path: Path) -> None:
    ralph_dir = tmp_path / ".ralph"
    _write_config(
        ralph_dir,
        "# ralph settings\n"
        "\n"
        "MAX_RETRIES=5\n"
        'DEFAULT_ITERATIONS="20"\n'
        "max_cost_per_iteration = 0.50\n"
        "MAX_COST_PER_SESSION='10'\n"
        "SAVE_OUTPUT=true\n"
        "OUTPUT_DIR=$SCRIPT_DIR/output\n"
        "PRD_TEMPLATES_DIR=$SCRIPT_DIR/templates\n"
        "AGENT_MODEL=sonnet\n",
    )

    settings = Settings.load(ralph_dir)

    assert settings.loop.max_retries == 5
    assert settings.loop.default_iterations == 20
    assert settings.costs.max_cost_per_iteration == 0.5
    assert settings.costs.max_cost_per_session == 10.0
    assert settings.output.save_output is True
    assert settings.output_dir == ralph_dir / "output"
    assert settings.templates_dir == ralph_dir / "templates"
    assert settings.agent.model == "sonnet"
    assert settings.output_path("s1", 3) == ralph_dir / "output" / "s1-iteration-3.log"


def test_invalid_values_fall_back_to_defaults(tmp_path: Path, caplog) -> None:
    ralph_dir = tmp_path / ".ralph"
    _write_config(
        ralph_dir,
        "MAX_RETRIES=-1\n"
        "DEFAULT_ITERATIONS=500\n"
        "MAX_COST_PER_SESSION=abc\n"
        "SAVE_OUTPUT=maybe\n"
        "NOT_A_KEY=1\n"
        "SOUND_ON_COMPLETE=true\n"
        "garbage line\n",
    )

    settings = Settings.load(ralph_dir)

    assert settings.loop.max_retries == 3
    assert settings.loop.default_iterations == 10
    assert settings.costs.max_cost_per_session is None
    assert settings.output.save_output is False
    assert "Invalid value for MAX_RETRIES (line 1)" in caplog.text
    assert "Unknown config key NOT_A_KEY" in caplog.text
    assert "SOUND_ON_COMPLETE" not in caplog.text
    assert "missing '=' separator" in caplog.text


def test_environment_overrides_config_file(tmp_path: Path, monkeypatch) -> None:
    ralph_dir = tmp_path / ".ralph"
    _write_config(ralph_dir, "MAX_RETRIES=5\nAGENT_TIMEOUT_SECONDS=60\n")
    monkeypatch.setenv("RALPH_MAX_RETRIES", "1")
    monkeypatch.setenv("RALPH_AGENT_COMMAND", "agent --file {prompt_file}")

    settings = Settings.load(ralph_dir)

    assert settings.loop.max_retries == 1
    assert settings.agent.timeout_seconds == 60
    assert settings.agent.command_template == "agent --file {prompt_file}"


def test_from_env_ignores_config_file(tmp_path: Path, monkeypatch) -> None:
    ralph_dir = tmp_path / ".ralph"
    _write_config(ralph_dir, "MAX_RETRIES=5\n")
    monkeypatch.setenv("RALPH_DEFAULT_ITERATIONS", "7")

    settings = Settings.from_env(ralph_dir)

    assert settings.loop.max_retries == 3
    assert settings.loop.default_iterations == 7


def test_with_overrides_replaces_session_limit(tmp_path: Path) -> None:
    settings = Settings(ralph_dir=tmp_path)
    settings.costs.max_cost_per_session = 10.0

    overridden = settings.with_overrides(max_cost=2.5)

    assert overridden.costs.max_cost_per_session == 2.5
    assert settings.costs.max_cost_per_session == 10.0
    assert settings.with_overrides() is settings


def test_output_path_disabled_by_default(tmp_path: Path) -> None:
    assert Settings(ralph_dir=tmp_path).output_path("s1", 1) is None


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda s: setattr(s.loop, "max_retries", -1), "MAX_RETRIES"),
        (lambda s: setattr(s.loop, "default_iterations", 0), "DEFAULT_ITERATIONS"),
        (lambda s: setattr(s.costs, "max_cost_per_session", 0.0), "MAX_COST_PER_SESSION"),
        (lambda s: setattr(s.agent, "command_template", "claude --print"), "AGENT_COMMAND"),
        (lambda s: setattr(s.agent, "timeout_seconds", 0), "AGENT_TIMEOUT_SECONDS"),
    ],
)
def test_validate_rejects_unusable_settings(tmp_path: Path, mutate, message: str) -> None:
    settings = Settings(ralph_dir=tmp_path)
    mutate(settings)

    with pytest.raises(ConfigError, match=message):
        settings.validate()


def test_validate_rejects_iteration_limit_above_session_limit(tmp_path: Path) -> None:
    settings = Settings(ralph_dir=tmp_path)
    settings.costs.max_cost_per_iteration = 5.0
    settings.costs.max_cost_per_session = 1.0

    with pytest.raises(ConfigError) as error:
        settings.validate()

    assert error.value.hint == "5.0 > 1.0"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("  value  ", "value"),
        ('"quoted value"', "quoted value"),
        ("'single'", "single"),
        ("$SCRIPT_DIR/templates", "templates"),
        ('"mismatched\'', "\"mismatched'"),
    ],
)
def test_parse_config_value(raw: str, expected: str) -> None:
    assert parse_config_value(raw) == expected
