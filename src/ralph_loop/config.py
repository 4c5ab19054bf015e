"""Runtime configuration: ``.ralph/config`` file layered under ``RALPH_*`` env vars."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from ralph_loop.errors import ConfigError
from ralph_loop.orchestrator.backend.cli_backend import DEFAULT_COMMAND_TEMPLATE

logger = logging.getLogger(__name__)

CONFIG_FILE = "config"
DEFAULT_RALPH_DIR = Path(".ralph")
ENV_PREFIX = "RALPH_"
MAX_ITERATIONS = 100
_SCRIPT_DIR = re.compile(r"\$SCRIPT_DIR/?")


@dataclass(slots=True)
class LoopSettings:
    """Iteration budget and retry settings."""

    max_retries: int = 3
    default_iterations: int = 10


@dataclass(slots=True)
class CostSettings:
    """Spending ceilings in USD; ``None`` means unlimited."""

    max_cost_per_iteration: float | None = None
    max_cost_per_session: float | None = None


@dataclass(slots=True)
class OutputSettings:
    """Raw agent output persistence."""

    save_output: bool = False
    output_dir: str = "logs"


@dataclass(slots=True)
class TemplateSettings:
    """Task document templates."""

    prd_templates_dir: str = "templates"
    default_template: str = "empty"


@dataclass(slots=True)
class AgentSettings:
    """Agent CLI invocation."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    executable: str = "claude"
    model: str = ""
    timeout_seconds: int = 3_600


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    ralph_dir: Path = DEFAULT_RALPH_DIR
    loop: LoopSettings = field(default_factory=LoopSettings)
    costs: CostSettings = field(default_factory=CostSettings)
    output: OutputSettings = field(default_factory=OutputSettings)
    templates: TemplateSettings = field(default_factory=TemplateSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, ralph_dir: Path | None = None) -> Settings:
        """Defaults overridden by ``RALPH_*`` environment variables only."""

        settings = cls(ralph_dir=ralph_dir or Path(os.getenv("RALPH_DIR", str(DEFAULT_RALPH_DIR))))
        settings.apply_env()
        return settings

    @classmethod
    def load(cls, ralph_dir: Path | None = None) -> Settings:
        """Defaults, then ``<ralph_dir>/config``, then environment overrides.

        A missing file is silent; an unreadable one is logged and defaults are used.
        """

        settings = cls(ralph_dir=ralph_dir or Path(os.getenv("RALPH_DIR", str(DEFAULT_RALPH_DIR))))
        config_path = settings.ralph_dir / CONFIG_FILE
        try:
            content = config_path.read_text("utf-8")
        except FileNotFoundError:
            content = ""
        except OSError as error:
            logger.error(
                "Could not read %s (%s); using defaults. Check file permissions.",
                config_path,
                error.strerror or error,
            )
            content = ""
        settings.apply_lines(content.splitlines())
        settings.apply_env()
        return settings

    def apply_lines(self, lines: Iterable[str]) -> None:
        """Apply ``KEY=VALUE`` lines; bad lines and values are warned about and skipped."""

        for line_number, line in enumerate(lines, start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            key, separator, raw_value = stripped.partition("=")
            if not separator:
                logger.warning(
                    "Invalid config line %s: missing '=' separator (%s)",
                    line_number,
                    stripped[:50],
                )
                continue
            self.apply_value(
                key.strip().upper(),
                parse_config_value(raw_value),
                f"line {line_number}",
            )

    def apply_env(self, environ: dict[str, str] | None = None) -> None:
        source = os.environ if environ is None else environ
        for key in _KEYS:
            value = source.get(f"{ENV_PREFIX}{key}")
            if value is not None:
                self.apply_value(key, value.strip(), f"{ENV_PREFIX}{key}")

    def apply_value(self, key: str, value: str, origin: str) -> None:
        """Set one known key; an invalid value resets it to the default."""

        if key in _IGNORED_KEYS:
            logger.debug("Ignoring unsupported config key %s (%s)", key, origin)
            return
        spec = _KEYS.get(key)
        if spec is None:
            logger.warning(
                "Unknown config key %s (%s). Valid keys: %s",
                key,
                origin,
                ", ".join(_KEYS),
            )
            return

        group_name, attr, parser = spec
        group = getattr(self, group_name)
        try:
            parsed = parser(value)
        except ValueError as error:
            default = _default_for(group, attr)
            logger.warning(
                "Invalid value for %s (%s): %s. Using default: %s",
                key,
                origin,
                error,
                default,
            )
            parsed = default
        setattr(group, attr, parsed)

    def with_overrides(self, *, max_cost: float | None = None) -> Settings:
        """Copy with CLI overrides applied."""

        if max_cost is None:
            return self
        return replace(self, costs=replace(self.costs, max_cost_per_session=max_cost))

    def validate(self) -> None:
        """Raise ``ConfigError`` for settings that cannot drive a run."""

        if self.loop.max_retries < 0:
            raise ConfigError("MAX_RETRIES must be >= 0.")
        if not 1 <= self.loop.default_iterations <= MAX_ITERATIONS:
            raise ConfigError(f"DEFAULT_ITERATIONS must be between 1 and {MAX_ITERATIONS}.")
        for name, value in (
            ("MAX_COST_PER_ITERATION", self.costs.max_cost_per_iteration),
            ("MAX_COST_PER_SESSION", self.costs.max_cost_per_session),
        ):
            if value is not None and value <= 0:
                raise ConfigError(f"{name} must be > 0.")
        per_iteration = self.costs.max_cost_per_iteration
        per_session = self.costs.max_cost_per_session
        if per_iteration is not None and per_session is not None and per_iteration > per_session:
            raise ConfigError(
                "MAX_COST_PER_ITERATION must not exceed MAX_COST_PER_SESSION.",
                hint=f"{per_iteration} > {per_session}",
            )
        template = self.agent.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ConfigError("AGENT_COMMAND must include {prompt} or {prompt_file}.")
        if self.agent.timeout_seconds <= 0:
            raise ConfigError("AGENT_TIMEOUT_SECONDS must be > 0.")

    @property
    def repo_root(self) -> Path:
        """Project root: the parent of a ``.ralph`` directory, else the working directory."""

        if self.ralph_dir.name == DEFAULT_RALPH_DIR.name:
            return self.ralph_dir.resolve().parent
        return Path.cwd()

    @property
    def templates_dir(self) -> Path:
        return _under(self.ralph_dir, self.templates.prd_templates_dir)

    @property
    def output_dir(self) -> Path:
        return _under(self.ralph_dir, self.output.output_dir)

    def output_path(self, session_id: str, iteration: int) -> Path | None:
        """Where to save raw agent output, or ``None`` when saving is off."""

        if not self.output.save_output:
            return None
        return self.output_dir / f"{session_id}-iteration-{iteration}.log"


def parse_config_value(raw: str) -> str:
    """Strip whitespace, one pair of surrounding quotes and ``$SCRIPT_DIR/``."""

    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:  # noqa: PLR2004
        value = value[1:-1]
    return _SCRIPT_DIR.sub("", value)


def _parse_non_negative_int(value: str) -> int:
    parsed = _parse_int(value)
    if parsed < 0:
        raise ValueError(f"{value!r} must be >= 0")
    return parsed


def _parse_positive_int(value: str) -> int:
    parsed = _parse_int(value)
    if parsed <= 0:
        raise ValueError(f"{value!r} must be > 0")
    return parsed


def _parse_iterations(value: str) -> int:
    parsed = _parse_positive_int(value)
    if parsed > MAX_ITERATIONS:
        raise ValueError(f"{value!r} exceeds maximum of {MAX_ITERATIONS}")
    return parsed


def _parse_positive_float(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError:
        raise ValueError(f"{value!r} is not a valid number (expected e.g. 0.50 USD)") from None
    if parsed <= 0:
        raise ValueError(f"{value!r} must be positive (expected e.g. 0.50 USD)")
    return parsed


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"{value!r} is not a boolean")


def _parse_non_empty(value: str) -> str:
    if not value.strip():
        raise ValueError("empty value")
    return value.strip()


def _parse_int(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ValueError(f"{value!r} is not a valid integer") from None


def _default_for(group: Any, attr: str) -> Any:
    fresh = type(group)()
    return getattr(fresh, attr)


def _under(base: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else base / path


_KEYS: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "MAX_RETRIES": ("loop", "max_retries", _parse_non_negative_int),
    "DEFAULT_ITERATIONS": ("loop", "default_iterations", _parse_iterations),
    "MAX_COST_PER_ITERATION": ("costs", "max_cost_per_iteration", _parse_positive_float),
    "MAX_COST_PER_SESSION": ("costs", "max_cost_per_session", _parse_positive_float),
    "SAVE_OUTPUT": ("output", "save_output", _parse_bool),
    "OUTPUT_DIR": ("output", "output_dir", _parse_non_empty),
    "PRD_TEMPLATES_DIR": ("templates", "prd_templates_dir", _parse_non_empty),
    "DEFAULT_TEMPLATE": ("templates", "default_template", _parse_non_empty),
    "AGENT_COMMAND": ("agent", "command_template", _parse_non_empty),
    "AGENT_EXECUTABLE": ("agent", "executable", _parse_non_empty),
    "AGENT_MODEL": ("agent", "model", str.strip),
    "AGENT_TIMEOUT_SECONDS": ("agent", "timeout_seconds", _parse_positive_int),
}

# Keys of the interactive UI (sound notifications, Linear import) that this CLI does not act on.
_IGNORED_KEYS = frozenset({"SOUND_ON_COMPLETE", "NOTIFICATION_SOUND", "LINEAR_DEFAULT_TEAM_ID"})

