"""Backend interface for agent invocations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ralph_loop.orchestrator.models import UsageInfo

COMPLETION_SIGNAL = "<promise>COMPLETE</promise>"


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one iteration."""

    prompt: str
    iteration: int
    ralph_dir: Path
    cwd: Path
    command_template: str
    timeout_seconds: int
    agent: str = "claude"
    model: str = ""
    resume_session_id: str | None = None
    output_path: Path | None = None
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome reported back to the session runner."""

    exit_code: int
    timed_out: bool
    output: str
    stderr: str = ""
    usage: UsageInfo | None = None
    session_id: str | None = None
    is_error: bool = False
    interrupted: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.is_error

    @property
    def prd_complete(self) -> bool:
        return COMPLETION_SIGNAL in self.output

    @property
    def error_summary(self) -> str | None:
        if self.success:
            return None
        if self.interrupted:
            return "interrupted"
        if self.timed_out:
            return "timed out"
        if self.is_error:
            return "agent reported an error"
        return f"exited with code {self.exit_code}"


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run one iteration and return its outcome."""
