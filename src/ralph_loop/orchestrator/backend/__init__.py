"""Agent backend implementations."""

from ralph_loop.errors import BackendRunError
from ralph_loop.orchestrator.backend.base import (
    COMPLETION_SIGNAL,
    AgentBackend,
    AgentRunRequest,
    AgentRunResult,
)
from ralph_loop.orchestrator.backend.cli_backend import DEFAULT_COMMAND_TEMPLATE, CliAgentBackend

__all__ = [
    "COMPLETION_SIGNAL",
    "DEFAULT_COMMAND_TEMPLATE",
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "BackendRunError",
    "CliAgentBackend",
]
