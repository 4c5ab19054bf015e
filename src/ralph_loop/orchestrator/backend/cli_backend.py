"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from ralph_loop.errors import BackendRunError
from ralph_loop.orchestrator.backend.base import AgentRunRequest, AgentRunResult
from ralph_loop.orchestrator.pricing import estimate_cost_usd
from ralph_loop.orchestrator.usage import AgentReport, parse_agent_output

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p {prompt} --output-format json --permission-mode bypassPermissions {resume}"
)
PROMPT_FILE = "last_prompt.txt"
TIMEOUT_EXIT_CODE = 124
_POLL_INTERVAL_SECONDS = 0.1


class CliAgentBackend:
    """Execute the configured agent command template once per iteration."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        request.ralph_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = request.ralph_dir / PROMPT_FILE
        prompt_file.write_text(request.prompt, "utf-8")

        run_args = build_run_args(
            command_template=request.command_template,
            model=request.model,
            prompt=request.prompt,
            prompt_file=prompt_file,
            resume_session_id=request.resume_session_id,
        )

        env = os.environ.copy()
        env["RALPH_DIR"] = str(request.ralph_dir)
        env["RALPH_ITERATION"] = str(request.iteration)
        env["RALPH_AGENT_MODEL"] = request.model

        logger.debug("Running agent: %s", run_args[0])
        try:
            with (
                tempfile.TemporaryFile("w+", encoding="utf-8") as stdout_handle,
                tempfile.TemporaryFile("w+", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out, interrupted = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    cwd=request.cwd,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                )
                stdout_handle.seek(0)
                stdout = stdout_handle.read()
                stderr_handle.seek(0)
                stderr = stderr_handle.read()
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
                hint="install the agent CLI or set AGENT_COMMAND in .ralph/config",
            ) from error
        except OSError as error:
            raise BackendRunError(f"Agent failed to start: {error}", transient=True) from error

        report = parse_agent_output(stdout)
        _fill_estimated_cost(report, agent=request.agent, model=request.model)
        if request.output_path is not None:
            _save_output(request.output_path, stdout=stdout, stderr=stderr)

        return AgentRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            output=report.output,
            stderr=stderr,
            usage=report.usage,
            session_id=report.session_id,
            is_error=report.is_error,
            interrupted=interrupted,
        )


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    resume_session_id: str | None = None,
) -> list[str]:
    """Render the command template into argv.

    Placeholders: ``{prompt}``, ``{prompt_file}``, ``{model}`` and ``{resume}``
    (``--resume <id>`` when a previous agent session exists, otherwise nothing).
    """

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    resume = shlex.join(["--resume", resume_session_id]) if resume_session_id else ""
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            resume=resume,
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Agent command template rendered empty command.", transient=False)
    return argv


def _fill_estimated_cost(report: AgentReport, *, agent: str, model: str) -> None:
    if report.usage is None or report.cost_reported:
        return
    estimated = estimate_cost_usd(
        agent=agent,
        model=model,
        input_tokens=report.usage.input_tokens,
        output_tokens=report.usage.output_tokens,
    )
    if estimated is not None:
        report.usage.total_cost_usd = estimated


def _save_output(path: Path, *, stdout: str, stderr: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        content = stdout if not stderr else f"{stdout}\n--- stderr ---\n{stderr}"
        path.write_text(content, "utf-8")
    except OSError as error:
        logger.warning("Could not save agent output to %s: %s", path, error)


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: int | None,
) -> tuple[int, bool, bool]:
    """Return ``(exit_code, timed_out, interrupted)``."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False, shutdown_deadline is not None

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True, False

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, False, True

        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
