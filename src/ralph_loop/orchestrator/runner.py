"""Session runner: the iteration loop around the agent backend."""

from __future__ import annotations

import copy
import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.errors import BackendRunError
from ralph_loop.orchestrator.backend import AgentBackend, AgentRunRequest, AgentRunResult
from ralph_loop.orchestrator.costs import evaluate_cost_limits, format_cost, project_costs
from ralph_loop.orchestrator.keepawake import KeepAwake, keep_awake
from ralph_loop.orchestrator.models import (
    CostLimitReason,
    CostProjection,
    IterationResult,
    Session,
    utc_now,
)
from ralph_loop.orchestrator.plugins import IterationContext, PluginContext, PluginRegistry
from ralph_loop.orchestrator.prompts import build_iteration_prompt
from ralph_loop.orchestrator.store import SessionStore
from ralph_loop.orchestrator.summary import format_duration
from ralph_loop.orchestrator.tasks import PRD_FILE, extract_tasks, remaining_tasks

logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_SECONDS = 10
_PROMPT_PREVIEW_CHARS = 500


class StopReason(str, Enum):
    """Why the iteration loop ended."""

    ITERATIONS_EXHAUSTED = "iterations_exhausted"
    PRD_COMPLETE = "prd_complete"
    TASKS_DONE = "tasks_done"
    COST_LIMIT = "cost_limit"
    RETRIES_EXHAUSTED = "retries_exhausted"
    INTERRUPTED = "interrupted"
    DRY_RUN = "dry_run"


_SUCCESSFUL_STOPS = frozenset(
    {
        StopReason.ITERATIONS_EXHAUSTED,
        StopReason.PRD_COMPLETE,
        StopReason.TASKS_DONE,
        StopReason.DRY_RUN,
    },
)


@dataclass(slots=True)
class RunOptions:
    """Per-invocation choices made on the command line."""

    iterations: int
    prompt: str | None = None
    branch: str | None = None
    resume: bool = False
    dry_run: bool = False
    verbose: bool = False


@dataclass(slots=True)
class RunOutcome:
    """Final session state and the reason the loop stopped."""

    session: Session
    stop_reason: StopReason
    first_iteration: int
    last_iteration: int
    attempts: int = 0
    projection: CostProjection | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.stop_reason in _SUCCESSFUL_STOPS


class SessionRunner:
    """Runs iterations until the PRD is done or a stop condition is met.

    After every completed attempt the result is appended to the session,
    the session cost is updated and a checkpoint is written, in that order.
    An attempt interrupted by SIGINT/SIGTERM is not recorded.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        store: SessionStore,
        backend: AgentBackend,
        plugins: PluginRegistry | None = None,
        keep_awake_helper: KeepAwake | None = None,
        echo: Callable[[str], None] | None = None,
        repo_root: Path | None = None,
        graceful_shutdown_seconds: int = GRACEFUL_SHUTDOWN_SECONDS,
    ) -> None:
        self.settings = settings
        self.store = store
        self.backend = backend
        self.plugins = plugins if plugins is not None else PluginRegistry()
        self.keep_awake_helper = keep_awake_helper
        self.echo = echo or (lambda _line: None)
        self.repo_root = repo_root or settings.repo_root
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._session: Session | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "request") -> None:
        """Finish the in-flight iteration (if any) and start no new one."""

        if not self._stop_requested:
            logger.info("Stop requested (%s); no new iterations will start", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def run(self, options: RunOptions) -> RunOutcome:
        with keep_awake(self.keep_awake_helper), self._signal_handlers():
            session, first_iteration = self._start_session(options)
            last_iteration = first_iteration + options.iterations - 1
            context = self._plugin_context(session, options)
            try:
                self.plugins.before_run(context)
                outcome = self._loop(session, first_iteration, last_iteration, options)
            except Exception as error:
                self.plugins.on_error(self._plugin_context(self._latest(session), options), error)
                raise

            final_context = self._plugin_context(outcome.session, options)
            if outcome.stop_reason == StopReason.INTERRUPTED:
                interrupt = KeyboardInterrupt(self._stop_signal_name or "")
                self.plugins.on_error(final_context, interrupt)
            else:
                self.plugins.done(final_context)
            return outcome

    def _start_session(self, options: RunOptions) -> tuple[Session, int]:
        if options.resume:
            point = self.store.resume_from()
            if point is not None:
                logger.info(
                    "Resuming session %s at iteration %s",
                    point.session.id,
                    point.resume_iteration,
                )
                self.echo(
                    f"Resuming session {point.session.id} at iteration {point.resume_iteration} "
                    f"(branch {point.session.branch})",
                )
                self._session = point.session
                return point.session, point.resume_iteration
            self.echo("No resumable session found; starting a new session.")

        session = self.store.create(branch=options.branch)
        if not options.dry_run:
            self.store.save(session)
        self._session = session
        return session, 1

    def _loop(  # noqa: C901, PLR0911
        self,
        session: Session,
        first_iteration: int,
        last_iteration: int,
        options: RunOptions,
    ) -> RunOutcome:
        outcome = RunOutcome(
            session=session,
            stop_reason=StopReason.ITERATIONS_EXHAUSTED,
            first_iteration=first_iteration,
            last_iteration=last_iteration,
        )
        if options.dry_run:
            prompt = build_iteration_prompt(self.settings.ralph_dir, options.prompt)
            self.echo(f"Dry run: would run iterations {first_iteration}..{last_iteration}")
            self.echo(f"Agent command: {self.settings.agent.command_template}")
            self.echo(prompt[:_PROMPT_PREVIEW_CHARS])
            outcome.stop_reason = StopReason.DRY_RUN
            return outcome

        iteration = first_iteration
        retries = 0
        while True:
            if self._stop_requested:
                return self._stopped(outcome, session, StopReason.INTERRUPTED)

            self.plugins.before_iteration(
                IterationContext(
                    run=self._plugin_context(session, options),
                    iteration=iteration,
                    total_iterations=last_iteration,
                ),
            )
            suffix = f" (retry {retries})" if retries else ""
            self.echo(f"Iteration {iteration} of {last_iteration}{suffix}")
            outcome.attempts += 1
            attempt = self._run_iteration(session, iteration, options)
            if attempt is None:
                return self._stopped(outcome, session, StopReason.INTERRUPTED)
            result, agent_session_id = attempt

            outcome.projection = project_costs(
                usage=result.usage,
                session_cost_so_far=session.cost_so_far,
                max_cost_per_session=self.settings.costs.max_cost_per_session,
                current_iteration=iteration,
                total_iterations=last_iteration,
                previous_iterations=session.iterations,
            )
            session = self._record(session, result, agent_session_id=agent_session_id)
            self._session = session
            outcome.session = session
            self._report(result, outcome.projection, verbose=options.verbose)

            self.plugins.after_iteration(
                IterationContext(
                    run=self._plugin_context(session, options),
                    iteration=iteration,
                    total_iterations=last_iteration,
                    result=copy.deepcopy(result),
                ),
            )

            if result.cost_limit_exceeded and result.cost_limit_reason is not None:
                outcome.message = self._cost_limit_message(result, session)
                return self._stopped(outcome, session, StopReason.COST_LIMIT)
            if result.prd_complete:
                return self._stopped(outcome, session, StopReason.PRD_COMPLETE)
            if iteration >= last_iteration:
                return self._stopped(outcome, session, StopReason.ITERATIONS_EXHAUSTED)
            if not result.success:
                if retries < self.settings.loop.max_retries:
                    retries += 1
                    logger.warning(
                        "Iteration %s failed (%s); retry %s of %s",
                        iteration,
                        result.status,
                        retries,
                        self.settings.loop.max_retries,
                    )
                    continue
                outcome.message = (
                    f"Iteration {iteration} failed after {self.settings.loop.max_retries} retries."
                )
                return self._stopped(outcome, session, StopReason.RETRIES_EXHAUSTED)
            retries = 0
            if self._session_ceiling_reached(session):
                outcome.message = (
                    f"Session cost limit reached: session total {format_cost(session.cost_so_far)} "
                    f"reached limit of ${self.settings.costs.max_cost_per_session:.2f}"
                )
                return self._stopped(outcome, session, StopReason.COST_LIMIT)
            if self._all_tasks_done():
                return self._stopped(outcome, session, StopReason.TASKS_DONE)
            iteration += 1

    def _run_iteration(
        self,
        session: Session,
        iteration: int,
        options: RunOptions,
    ) -> tuple[IterationResult, str | None] | None:
        """Invoke the agent once; ``None`` when the attempt was interrupted."""

        prompt = build_iteration_prompt(self.settings.ralph_dir, options.prompt)
        request = AgentRunRequest(
            prompt=prompt,
            iteration=iteration,
            ralph_dir=self.settings.ralph_dir,
            cwd=self.repo_root,
            command_template=self.settings.agent.command_template,
            timeout_seconds=self.settings.agent.timeout_seconds,
            agent=self.settings.agent.executable,
            model=self.settings.agent.model,
            resume_session_id=session.sdk_session_id,
            output_path=self.settings.output_path(session.id, iteration),
            shutdown_requested=lambda: self._stop_requested,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )

        started_at = utc_now()
        try:
            run_result = self.backend.run(request)
        except BackendRunError as error:
            if not error.transient:
                raise
            logger.warning("Iteration %s backend error: %s", iteration, error.format())
            run_result = AgentRunResult(exit_code=1, timed_out=False, output=error.format())
        completed_at = utc_now()

        if run_result.interrupted or (self._stop_requested and not run_result.success):
            logger.info("Iteration %s interrupted; not recorded", iteration)
            return None

        result = IterationResult.from_timing(
            iteration=iteration,
            started_at=started_at,
            completed_at=completed_at,
            success=run_result.success,
            output=run_result.output,
            status=run_result.error_summary,
            usage=run_result.usage,
            prd_complete=run_result.prd_complete,
        )
        exceeded, reason = evaluate_cost_limits(
            usage=result.usage,
            session_cost_so_far=session.cost_so_far,
            max_cost_per_iteration=self.settings.costs.max_cost_per_iteration,
            max_cost_per_session=self.settings.costs.max_cost_per_session,
        )
        if exceeded:
            result.cost_limit_exceeded = True
            result.cost_limit_reason = reason
        return result, run_result.session_id

    def _record(
        self,
        session: Session,
        result: IterationResult,
        *,
        agent_session_id: str | None,
    ) -> Session:
        session = replace(
            session,
            total_cost_usd=session.cost_so_far + result.cost_usd,
            sdk_session_id=agent_session_id or session.sdk_session_id,
        )
        session = self.store.append_iteration(session, result)
        return self.store.checkpoint(session, result.iteration)

    def _report(
        self,
        result: IterationResult,
        projection: CostProjection | None,
        *,
        verbose: bool,
    ) -> None:
        state = "completed" if result.success else f"failed ({result.status})"
        line = f"  {state} in {format_duration(result.duration_seconds)}"
        if result.usage is not None:
            line += (
                f", {result.usage.input_tokens} in / {result.usage.output_tokens} out tokens"
                f", {format_cost(result.usage.total_cost_usd)}"
            )
        self.echo(line)
        if projection is not None:
            self.echo(f"  Session total: {format_cost(projection.session_total)}")
            if projection.projected_total_cost is not None:
                self.echo(f"  Projected total: {format_cost(projection.projected_total_cost)}")
            if projection.has_exceeded_limit:
                self.echo("  Session cost limit reached")
            elif projection.is_approaching_limit:
                self.echo("  Warning: approaching session cost limit")
            elif projection.projection_would_exceed_limit:
                self.echo("  Warning: projected cost would exceed the session limit")
        if verbose and result.output:
            self.echo(result.output)

    def _cost_limit_message(self, result: IterationResult, session: Session) -> str:
        costs = self.settings.costs
        if result.cost_limit_reason == CostLimitReason.ITERATION:
            return (
                f"Cost limit exceeded: iteration cost {format_cost(result.cost_usd)} "
                f"exceeds limit of ${costs.max_cost_per_iteration or 0:.2f}"
            )
        return (
            f"Cost limit exceeded: session total {format_cost(session.cost_so_far)} "
            f"exceeds limit of ${costs.max_cost_per_session or 0:.2f}"
        )

    def _session_ceiling_reached(self, session: Session) -> bool:
        ceiling = self.settings.costs.max_cost_per_session
        return ceiling is not None and session.cost_so_far >= ceiling

    def _all_tasks_done(self) -> bool:
        tasks = extract_tasks(self.settings.ralph_dir / PRD_FILE)
        return bool(tasks) and not remaining_tasks(tasks)

    def _stopped(self, outcome: RunOutcome, session: Session, reason: StopReason) -> RunOutcome:
        outcome.session = session
        outcome.stop_reason = reason
        logger.info("Run stopped: %s", reason.value)
        return outcome

    def _latest(self, fallback: Session) -> Session:
        return self._session or fallback

    def _plugin_context(self, session: Session, options: RunOptions) -> PluginContext:
        return PluginContext(
            settings=self.settings,
            session=copy.deepcopy(session),
            repo_root=self.repo_root,
            branch=session.branch,
            verbose=options.verbose,
            dry_run=options.dry_run,
        )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            original_sigint = signal.getsignal(signal.SIGINT)
            original_sigterm = signal.getsignal(signal.SIGTERM)
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
