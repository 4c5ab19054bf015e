"""Exception hierarchy shared by the session engine and CLI."""

from __future__ import annotations


class RalphError(RuntimeError):
    """Base error with an optional operator-facing hint."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint

    def format(self) -> str:
        """Render message and hint for CLI output."""

        if self.hint:
            return f"{self} ({self.hint})"
        return str(self)


class ConfigError(RalphError):
    """Invalid or inconsistent configuration."""


class SessionStoreError(RalphError):
    """Session file could not be read or written for a reason other than absence."""


class TaskDocumentError(RalphError):
    """Task document exists but could not be read."""


class PluginError(RalphError):
    """Plugin failure that must abort the run."""


class BackendRunError(RalphError):
    """Agent execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool, hint: str | None = None) -> None:
        super().__init__(message, hint=hint)
        self.transient = transient


def wrap_os_error(error: OSError, message: str, cls: type[RalphError] = RalphError) -> RalphError:
    """Wrap an ``OSError`` with context while keeping the original as ``__cause__``."""

    wrapped = cls(f"{message}: {error.strerror or error}", hint=_hint_for(error))
    wrapped.__cause__ = error
    return wrapped


def _hint_for(error: OSError) -> str | None:
    if isinstance(error, PermissionError):
        return "check file permissions"
    if isinstance(error, IsADirectoryError):
        return "expected a file, found a directory"
    return None
