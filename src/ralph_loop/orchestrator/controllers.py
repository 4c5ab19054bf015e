"""Controllers for session CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.orchestrator.backend import AgentBackend, CliAgentBackend
from ralph_loop.orchestrator.costs import format_cost
from ralph_loop.orchestrator.credentials import ApiKeyStore
from ralph_loop.orchestrator.git import GitCli
from ralph_loop.orchestrator.models import CheckStatus, PreflightCheck, to_iso
from ralph_loop.orchestrator.plugins import PluginRegistry, load_plugins
from ralph_loop.orchestrator.preflight import (
    CheckKey,
    PreflightEngine,
    PreflightOutcome,
    PreflightResult,
)
from ralph_loop.orchestrator.runner import RunOptions, SessionRunner, StopReason
from ralph_loop.orchestrator.store import SessionStore
from ralph_loop.orchestrator.summary import build_summary, format_duration
from ralph_loop.orchestrator.tasks import (
    PRD_FILE,
    clear_progress,
    extract_tasks,
    list_templates,
    progress_has_content,
    read_document,
)

_STATUS_MARKS = {
    CheckStatus.PASSED: "ok",
    CheckStatus.FAILED: "FAILED",
    CheckStatus.WARNING: "warn",
    CheckStatus.PENDING: "pending",
    CheckStatus.CHECKING: "checking",
}

_STOP_MESSAGES = {
    StopReason.ITERATIONS_EXHAUSTED: "Iteration budget used up.",
    StopReason.PRD_COMPLETE: "Agent reported the PRD complete.",
    StopReason.TASKS_DONE: "All PRD tasks are checked off.",
    StopReason.COST_LIMIT: "Stopped at cost limit.",
    StopReason.RETRIES_EXHAUSTED: "Stopped after exhausting retries.",
    StopReason.INTERRUPTED: "Interrupted; completed iterations were saved. Resume with --resume.",
    StopReason.DRY_RUN: "Dry run finished; nothing was executed.",
}


@dataclass(slots=True)
class RunCommand:
    """CLI input for the iteration loop."""

    ralph_dir: Path | None
    iterations: int | None
    prompt: str | None
    branch: str | None
    resume: bool
    reset: bool
    skip_preflight: bool
    max_cost: float | None
    dry_run: bool
    no_plugins: bool
    verbose: bool


@dataclass(slots=True)
class PreflightCommand:
    """CLI input for standalone preflight checks."""

    ralph_dir: Path | None


@dataclass(slots=True)
class TasksCommand:
    """CLI input for task listing."""

    ralph_dir: Path | None
    remaining_only: bool = False


@dataclass(slots=True)
class SessionShowCommand:
    """CLI input for session inspection."""

    ralph_dir: Path | None
    show_output: bool = False


@dataclass(slots=True)
class SessionResetCommand:
    """CLI input for session reset."""

    ralph_dir: Path | None
    clear_progress: bool = False


@dataclass(slots=True)
class TemplatesCommand:
    """CLI input for template listing."""

    ralph_dir: Path | None


@dataclass(slots=True)
class CommandResult:
    """Report to render in CLI plus whether the command succeeded."""

    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Coordinates preflight, session, and iteration-loop CLI operations."""

    def __init__(
        self,
        *,
        backend_factory: Callable[[], AgentBackend] = CliAgentBackend,
        credentials_factory: Callable[[], ApiKeyStore] = ApiKeyStore,
    ) -> None:
        self.backend_factory = backend_factory
        self.credentials_factory = credentials_factory

    def run(
        self,
        command: RunCommand,
        *,
        echo: Callable[[str], None],
        ask_api_key: Callable[[], str | None] | None = None,
        ask_resume: Callable[[], bool] | None = None,
    ) -> CommandResult:
        settings = Settings.load(command.ralph_dir).with_overrides(max_cost=command.max_cost)
        settings.validate()
        git = GitCli(settings.repo_root)
        store = SessionStore(settings.ralph_dir, git=git)

        if command.reset:
            return self._reset(store, settings.ralph_dir, clear=True)

        if not command.skip_preflight:
            gate = self._gate(
                settings,
                git,
                echo=echo,
                ask_api_key=ask_api_key,
                dry_run=command.dry_run,
            )
            if gate is not None:
                return gate

        resume = command.resume
        if not resume and ask_resume is not None and store.can_resume():
            resume = ask_resume()
            if not resume:
                echo("Starting a new session; the previous one will be replaced.")

        if command.branch and not resume and not command.dry_run:
            if not git.create_branch(command.branch):
                return CommandResult(
                    lines=[f"Could not switch to branch {command.branch!r}."],
                    success=False,
                )
            echo(f"Working on branch {command.branch}")

        plugins = PluginRegistry() if command.no_plugins else load_plugins(settings.ralph_dir)
        runner = SessionRunner(
            settings=settings,
            store=store,
            backend=self.backend_factory(),
            plugins=plugins,
            echo=echo,
        )
        outcome = runner.run(
            RunOptions(
                iterations=command.iterations or settings.loop.default_iterations,
                prompt=command.prompt,
                branch=command.branch,
                resume=resume,
                dry_run=command.dry_run,
                verbose=command.verbose,
            ),
        )

        lines = [_STOP_MESSAGES[outcome.stop_reason]]
        if outcome.message:
            lines.append(outcome.message)
        if outcome.stop_reason != StopReason.DRY_RUN:
            lines.append(f"Session: {outcome.session.id}")
            lines.extend(build_summary(outcome.session, git=git).lines())
        return CommandResult(lines=lines, success=outcome.ok)

    def preflight(self, command: PreflightCommand) -> CommandResult:
        settings = Settings.load(command.ralph_dir)
        git = GitCli(settings.repo_root)
        result = self._engine(settings, git, self.credentials_factory()).run_checks()
        lines = ["Preflight checks:", *_check_lines(result)]
        lines.append(f"Outcome: {result.outcome.value}")
        return CommandResult(lines=lines, success=result.outcome == PreflightOutcome.READY)

    def tasks(self, command: TasksCommand) -> CommandResult:
        settings = Settings.load(command.ralph_dir)
        prd_path = settings.ralph_dir / PRD_FILE
        if read_document(prd_path) is None:
            return CommandResult(lines=[f"{PRD_FILE} not found at {prd_path}."], success=False)

        tasks = extract_tasks(prd_path)
        done = sum(1 for task in tasks if task.completed)
        lines: list[str] = []
        phase: str | None = None
        for task in tasks:
            if command.remaining_only and task.completed:
                continue
            if task.phase != phase:
                phase = task.phase
                if phase:
                    lines.append(f"### {phase}")
            lines.append(f"  [{'x' if task.completed else ' '}] {task.text}")
        lines.append(f"Tasks: {done}/{len(tasks)} complete")
        return CommandResult(lines=lines, success=True)

    def session_show(self, command: SessionShowCommand) -> CommandResult:
        settings = Settings.load(command.ralph_dir)
        store = SessionStore(settings.ralph_dir, git=GitCli(settings.repo_root))
        session = store.load()
        if session is None:
            return CommandResult(lines=["No session found."], success=True)

        lines = [
            f"Session: {session.id}",
            f"Branch: {session.branch}",
            f"Started: {to_iso(session.started_at)}",
            f"Start commit: {session.start_commit}",
            f"Iterations: {len(session.iterations)}",
            f"Total cost: {format_cost(session.cost_so_far)}",
        ]
        if session.checkpoint is not None:
            lines.append(
                f"Checkpoint: iteration {session.checkpoint.iteration} "
                f"at {session.checkpoint.commit} ({to_iso(session.checkpoint.timestamp)})",
            )
            lines.append(f"Resume from iteration: {session.checkpoint.iteration + 1}")
        if session.sdk_session_id:
            lines.append(f"Agent session: {session.sdk_session_id}")
        for item in session.iterations:
            line = (
                f"  #{item.iteration} {'ok' if item.success else 'failed'} "
                f"{format_duration(item.duration_seconds)} {format_cost(item.cost_usd)}"
            )
            if item.prd_complete:
                line += " prd-complete"
            if item.cost_limit_exceeded and item.cost_limit_reason is not None:
                line += f" cost-limit={item.cost_limit_reason.value}"
            lines.append(line)
            if command.show_output and item.output:
                lines.append(f"    {item.output.strip()[:200]}")
        return CommandResult(lines=lines, success=True)

    def session_reset(self, command: SessionResetCommand) -> CommandResult:
        settings = Settings.load(command.ralph_dir)
        store = SessionStore(settings.ralph_dir, git=GitCli(settings.repo_root))
        return self._reset(store, settings.ralph_dir, clear=command.clear_progress)

    def templates(self, command: TemplatesCommand) -> CommandResult:
        settings = Settings.load(command.ralph_dir)
        templates = list_templates(settings.templates_dir)
        if not templates:
            return CommandResult(
                lines=[f"No templates found in {settings.templates_dir}."],
                success=True,
            )
        lines = [f"Templates ({settings.templates_dir}):"]
        for template in templates:
            marker = " (default)" if template.name == settings.templates.default_template else ""
            description = f" - {template.description}" if template.description else ""
            lines.append(f"  {template.name}{marker}{description}")
        return CommandResult(lines=lines, success=True)

    def _gate(
        self,
        settings: Settings,
        git: GitCli,
        *,
        echo: Callable[[str], None],
        ask_api_key: Callable[[], str | None] | None,
        dry_run: bool,
    ) -> CommandResult | None:
        """Run preflight; ``None`` means the run may start."""

        credentials = self.credentials_factory()
        engine = self._engine(settings, git, credentials)
        result = engine.run_checks()
        if result.outcome == PreflightOutcome.NEEDS_CREDENTIAL and ask_api_key is not None:
            api_key = ask_api_key()
            if api_key:
                credentials.set_api_key(api_key.strip())
                engine.mark_passed(CheckKey.API_KEY, "API key provided")

        lines = ["Preflight checks:", *_check_lines(result)]
        if result.outcome != PreflightOutcome.READY:
            lines.append("Preflight failed; fix the issues above or pass --skip-preflight.")
            return CommandResult(lines=lines, success=False)
        if not result.prd_has_tasks and not dry_run:
            lines.append(f"{PRD_FILE} has no tasks; nothing to run.")
            return CommandResult(lines=lines, success=False)
        for line in lines:
            echo(line)
        return None

    def _engine(
        self,
        settings: Settings,
        git: GitCli,
        credentials: ApiKeyStore,
    ) -> PreflightEngine:
        return PreflightEngine(
            ralph_dir=settings.ralph_dir,
            git=git,
            credentials=credentials,
            repo_root=settings.repo_root,
            agent_executable=settings.agent.executable,
        )

    def _reset(self, store: SessionStore, ralph_dir: Path, *, clear: bool) -> CommandResult:
        lines = ["Reset complete"]
        if store.reset():
            lines.append("  - session.json cleared")
        else:
            lines.append("  - no session file")
        if clear and progress_has_content(ralph_dir):
            clear_progress(ralph_dir)
            lines.append("  - progress.txt cleared")
        return CommandResult(lines=lines, success=True)


def _check_lines(result: PreflightResult) -> list[str]:
    return [_check_line(check) for check in result.checks.values()]


def _check_line(check: PreflightCheck) -> str:
    detail = check.error or check.message
    suffix = f": {detail}" if detail else ""
    return f"  [{_STATUS_MARKS[check.status]}] {check.name}{suffix}"
