"""Lifecycle plugin hooks loaded from ``.ralph/plugins``."""

from __future__ import annotations

import importlib.util
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ralph_loop.errors import PluginError
from ralph_loop.orchestrator.models import IterationResult, Session

if TYPE_CHECKING:
    from ralph_loop.config import Settings

logger = logging.getLogger(__name__)

PLUGINS_DIR = "plugins"
PLUGINS_CONFIG = "plugins.json"
HOOKS = ("before_run", "before_iteration", "after_iteration", "done", "on_error")


@dataclass(frozen=True, slots=True)
class PluginContext:
    """Snapshot of run state handed to every hook.

    The session is a copy; hooks that mutate it do not affect the run.
    """

    settings: Settings
    session: Session
    repo_root: Path
    branch: str
    verbose: bool = False
    dry_run: bool = False


@dataclass(frozen=True, slots=True)
class IterationContext:
    """Run state plus the iteration a hook fires around."""

    run: PluginContext
    iteration: int
    total_iterations: int
    result: IterationResult | None = None

    @property
    def session(self) -> Session:
        return self.run.session


@dataclass(slots=True)
class RegisteredPlugin:
    name: str
    plugin: Any


class PluginRegistry:
    """Fixed hook slots dispatched synchronously in registration order.

    A failing hook is logged and its siblings still run. ``on_error`` is the
    exception: a failure there raises ``PluginError``.
    """

    def __init__(self) -> None:
        self._plugins: list[RegisteredPlugin] = []

    def __len__(self) -> int:
        return len(self._plugins)

    @property
    def names(self) -> list[str]:
        return [item.name for item in self._plugins]

    def register(self, plugin: Any, *, name: str | None = None) -> None:
        resolved = name or getattr(plugin, "name", None) or type(plugin).__name__
        self._plugins.append(RegisteredPlugin(name=str(resolved), plugin=plugin))

    def before_run(self, context: PluginContext) -> None:
        self._dispatch("before_run", context)

    def before_iteration(self, context: IterationContext) -> None:
        self._dispatch("before_iteration", context)

    def after_iteration(self, context: IterationContext) -> None:
        self._dispatch("after_iteration", context)

    def done(self, context: PluginContext) -> None:
        self._dispatch("done", context)

    def on_error(self, context: PluginContext, error: BaseException) -> None:
        for item in self._plugins:
            hook = getattr(item.plugin, "on_error", None)
            if not callable(hook):
                continue
            try:
                hook(context, error)
            except Exception as hook_error:  # noqa: BLE001
                raise PluginError(
                    f'Plugin "{item.name}" failed in on_error: {hook_error}',
                ) from hook_error

    def _dispatch(self, hook_name: str, context: PluginContext | IterationContext) -> None:
        for item in self._plugins:
            hook = getattr(item.plugin, hook_name, None)
            if not callable(hook):
                continue
            try:
                hook(context)
            except Exception:  # noqa: BLE001
                logger.exception('Plugin "%s" error in %s', item.name, hook_name)


def load_plugins(ralph_dir: Path) -> PluginRegistry:
    """Load ``<ralph_dir>/plugins/*.py`` and entries listed in ``plugins.json``.

    Plugins that fail to import are logged and skipped. A file reached both
    ways is registered once.
    """

    registry = PluginRegistry()
    seen: set[Path] = set()
    plugins_dir = ralph_dir / PLUGINS_DIR
    if plugins_dir.is_dir():
        for path in sorted(plugins_dir.glob("*.py")):
            if path.name.startswith("_"):
                continue
            _register_file(registry, path, seen)

    for reference in _configured_plugins(ralph_dir):
        path = Path(reference)
        if not path.is_absolute():
            path = ralph_dir / path
        _register_file(registry, path, seen)

    if len(registry):
        logger.info("Loaded plugins: %s", ", ".join(registry.names))
    return registry


def load_plugin_file(path: Path) -> Any | None:
    """Import one plugin module and return its ``plugin`` export."""

    module_name = f"ralph_plugin_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        logger.warning("Plugin at %s is not an importable Python file", path)
        return None
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load plugin from %s", path)
        return None

    plugin = getattr(module, "plugin", None)
    if plugin is None:
        logger.warning("Plugin at %s has no 'plugin' export", path)
        return None
    if isinstance(plugin, type):
        plugin = plugin()
    return plugin


def _register_file(registry: PluginRegistry, path: Path, seen: set[Path]) -> None:
    resolved = path.resolve()
    if resolved in seen:
        logger.debug("Plugin %s already loaded; skipping", path)
        return
    seen.add(resolved)
    plugin = load_plugin_file(path)
    if plugin is None:
        return
    registry.register(plugin, name=getattr(plugin, "name", None) or path.stem)


def _configured_plugins(ralph_dir: Path) -> list[str]:
    config_path = ralph_dir / PLUGINS_CONFIG
    try:
        raw = json.loads(config_path.read_text("utf-8"))
    except FileNotFoundError:
        return []
    except json.JSONDecodeError as error:
        logger.error("Invalid %s: %s", config_path, error)
        return []
    except OSError as error:
        logger.error("Could not read %s: %s", config_path, error)
        return []

    entries = raw.get("plugins") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        return []
    return [str(entry) for entry in entries if entry]
