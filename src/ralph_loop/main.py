"""CLI entrypoint for ralph-loop."""

import logging
import sys
from pathlib import Path

import rich_click as click

from ralph_loop import __version__
from ralph_loop.errors import RalphError
from ralph_loop.orchestrator.controllers import (
    CommandResult,
    OrchestratorCliController,
    PreflightCommand,
    RunCommand,
    SessionResetCommand,
    SessionShowCommand,
    TasksCommand,
    TemplatesCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_RALPH_DIR_OPTION = click.option(
    "--ralph-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding PRD.md, progress.txt, config and session.json. Defaults to `.ralph`.",
)


@click.group()
@click.version_option(version=__version__, prog_name="ralph")
def ralph() -> None:
    """Run an AI coding agent in a loop against `.ralph/PRD.md`."""


@ralph.command("run")
@click.option(
    "--iterations",
    "-n",
    type=click.IntRange(min=1, max=100),
    default=None,
    help="Iterations to run. Defaults to DEFAULT_ITERATIONS from `.ralph/config`.",
)
@_RALPH_DIR_OPTION
@click.option("--prompt", "-p", default=None, help="Task instruction appended to the PRD context.")
@click.option("--branch", "-b", default=None, help="Create or switch to this branch first.")
@click.option("--resume", is_flag=True, help="Resume after the last checkpoint of the session.")
@click.option("--reset", is_flag=True, help="Clear session.json and progress.txt, then exit.")
@click.option("--skip-preflight", is_flag=True, help="Do not run environment checks.")
@click.option(
    "--max-cost",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Session cost ceiling in USD; overrides MAX_COST_PER_SESSION.",
)
@click.option("--dry-run", is_flag=True, help="Show what would run without invoking the agent.")
@click.option("--no-plugins", is_flag=True, help="Do not load `.ralph/plugins`.")
@click.option("--debug", is_flag=True, help="Enable debug logging.")
@click.option("--verbose", "-v", is_flag=True, help="Print agent output after each iteration.")
def run(  # noqa: PLR0913
    iterations: int | None,
    ralph_dir: Path | None,
    prompt: str | None,
    branch: str | None,
    resume: bool,
    reset: bool,
    skip_preflight: bool,
    max_cost: float | None,
    dry_run: bool,
    no_plugins: bool,
    debug: bool,
    verbose: bool,
) -> None:
    """Run agent iterations until the PRD is complete or a limit is hit."""

    _configure_logging(debug=debug)
    result = _invoke(
        lambda: ORCHESTRATOR_CONTROLLER.run(
            RunCommand(
                ralph_dir=ralph_dir,
                iterations=iterations,
                prompt=prompt,
                branch=branch,
                resume=resume,
                reset=reset,
                skip_preflight=skip_preflight,
                max_cost=max_cost,
                dry_run=dry_run,
                no_plugins=no_plugins,
                verbose=verbose,
            ),
            echo=click.echo,
            ask_api_key=_ask_api_key if sys.stdin.isatty() else None,
            ask_resume=_ask_resume if sys.stdin.isatty() else None,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Run did not complete.")


@ralph.command("preflight")
@_RALPH_DIR_OPTION
def preflight(ralph_dir: Path | None) -> None:
    """Check agent CLI, API key, git repository, PRD and CLAUDE.md."""

    result = _invoke(
        lambda: ORCHESTRATOR_CONTROLLER.preflight(PreflightCommand(ralph_dir=ralph_dir)),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Preflight checks failed.")


@ralph.command("tasks")
@_RALPH_DIR_OPTION
@click.option("--remaining", is_flag=True, help="Only list tasks that are not completed.")
def tasks(ralph_dir: Path | None, remaining: bool) -> None:
    """List tasks parsed from PRD.md."""

    result = _invoke(
        lambda: ORCHESTRATOR_CONTROLLER.tasks(
            TasksCommand(ralph_dir=ralph_dir, remaining_only=remaining),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Could not read tasks.")


@ralph.group()
def session() -> None:
    """Session file commands."""


@session.command("show")
@_RALPH_DIR_OPTION
@click.option("--output", "show_output", is_flag=True, help="Include a preview of agent output.")
def session_show(ralph_dir: Path | None, show_output: bool) -> None:
    """Show the saved session, its iterations and checkpoint."""

    result = _invoke(
        lambda: ORCHESTRATOR_CONTROLLER.session_show(
            SessionShowCommand(ralph_dir=ralph_dir, show_output=show_output),
        ),
    )
    _emit_lines(result.lines)


@session.command("reset")
@_RALPH_DIR_OPTION
@click.option("--clear-progress", is_flag=True, help="Also truncate progress.txt.")
def session_reset(ralph_dir: Path | None, clear_progress: bool) -> None:
    """Reset session.json to an empty object."""

    result = _invoke(
        lambda: ORCHESTRATOR_CONTROLLER.session_reset(
            SessionResetCommand(ralph_dir=ralph_dir, clear_progress=clear_progress),
        ),
    )
    _emit_lines(result.lines)


@ralph.command("templates")
@_RALPH_DIR_OPTION
def templates(ralph_dir: Path | None) -> None:
    """List PRD templates."""

    result = _invoke(
        lambda: ORCHESTRATOR_CONTROLLER.templates(TemplatesCommand(ralph_dir=ralph_dir)),
    )
    _emit_lines(result.lines)


def _invoke(action) -> CommandResult:
    try:
        return action()
    except RalphError as error:
        raise click.ClickException(error.format()) from error


def _ask_api_key() -> str | None:
    value = click.prompt(
        "ANTHROPIC_API_KEY not found. Enter your API key (leave empty to abort)",
        default="",
        show_default=False,
        hide_input=True,
    )
    return value or None


def _ask_resume() -> bool:
    return click.confirm(
        "A previous session can be resumed. Resume it (no starts a new session)?",
        default=True,
    )


def _configure_logging(*, debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph()
