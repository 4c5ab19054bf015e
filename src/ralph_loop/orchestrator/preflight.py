"""Preflight state machine validating environment prerequisites before a run."""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from ralph_loop.errors import TaskDocumentError
from ralph_loop.orchestrator.git import GitInfoProvider
from ralph_loop.orchestrator.models import CheckStatus, PreflightCheck
from ralph_loop.orchestrator.tasks import PRD_FILE, has_tasks

logger = logging.getLogger(__name__)

PROJECT_INSTRUCTIONS_FILE = "CLAUDE.md"
UNEXPECTED_FAILURE = "Check failed unexpectedly"


class CheckKey(str, Enum):
    """Stable identifiers of the preflight checks, in execution order."""

    AGENT = "agent"
    API_KEY = "api_key"
    GIT = "git"
    PRD = "prd"
    PROJECT_INSTRUCTIONS = "claude_md"


CHECK_NAMES: dict[CheckKey, str] = {
    CheckKey.AGENT: "Claude Code",
    CheckKey.API_KEY: "API Key",
    CheckKey.GIT: "Git",
    CheckKey.PRD: "PRD",
    CheckKey.PROJECT_INSTRUCTIONS: "CLAUDE.md",
}

# Checks whose unexpected crash is advisory rather than blocking.
_ADVISORY_CHECKS = frozenset({CheckKey.PROJECT_INSTRUCTIONS})


class PreflightOutcome(str, Enum):
    """Gating decision derived from the check states."""

    PENDING = "pending"
    READY = "ready"
    NEEDS_CREDENTIAL = "needs_credential"
    BLOCKED = "blocked"


class CredentialCheck(Protocol):
    def has_api_key(self) -> bool: ...


@dataclass(slots=True)
class PreflightResult:
    """Per-check states plus whether the task document has actionable work."""

    checks: dict[CheckKey, PreflightCheck] = field(
        default_factory=lambda: {
            key: PreflightCheck(name=name) for key, name in CHECK_NAMES.items()
        },
    )
    prd_has_tasks: bool = False

    def __getitem__(self, key: CheckKey) -> PreflightCheck:
        return self.checks[key]

    @property
    def finished(self) -> bool:
        return all(check.status.is_terminal for check in self.checks.values())

    @property
    def all_passed(self) -> bool:
        """Every check passed or only warned."""

        return all(
            check.status in {CheckStatus.PASSED, CheckStatus.WARNING}
            for check in self.checks.values()
        )

    @property
    def failed_keys(self) -> list[CheckKey]:
        return [key for key, check in self.checks.items() if check.status == CheckStatus.FAILED]

    @property
    def outcome(self) -> PreflightOutcome:
        if not self.finished:
            return PreflightOutcome.PENDING
        failed = self.failed_keys
        if not failed:
            return PreflightOutcome.READY
        if failed == [CheckKey.API_KEY]:
            return PreflightOutcome.NEEDS_CREDENTIAL
        return PreflightOutcome.BLOCKED


class PreflightEngine:
    """Runs each prerequisite check once: pending -> checking -> passed/failed/warning.

    Checks are independent and can be re-run one at a time. The engine itself
    never retries and applies no timeouts; collaborators own both.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        ralph_dir: Path,
        git: GitInfoProvider,
        credentials: CredentialCheck,
        repo_root: Path | None = None,
        agent_executable: str = "claude",
        probe_timeout_seconds: int = 15,
    ) -> None:
        self.ralph_dir = ralph_dir
        self.repo_root = repo_root or _default_repo_root(ralph_dir)
        self.git = git
        self.credentials = credentials
        self.agent_executable = agent_executable
        self.probe_timeout_seconds = probe_timeout_seconds
        self.result = PreflightResult()
        self._runners: dict[CheckKey, Callable[[], PreflightCheck]] = {
            CheckKey.AGENT: self._check_agent,
            CheckKey.API_KEY: self._check_api_key,
            CheckKey.GIT: self._check_git,
            CheckKey.PRD: self._check_prd,
            CheckKey.PROJECT_INSTRUCTIONS: self._check_project_instructions,
        }

    def run_checks(self) -> PreflightResult:
        """Run every check from scratch and return the final result."""

        self.reset()
        for key in CHECK_NAMES:
            self.result.checks[key] = PreflightCheck(
                name=CHECK_NAMES[key],
                status=CheckStatus.CHECKING,
            )
        for key in CHECK_NAMES:
            self.run_check(key)
        return self.result

    def run_check(self, key: CheckKey) -> PreflightCheck:
        """Run one check without touching the others."""

        name = CHECK_NAMES[key]
        self.result.checks[key] = PreflightCheck(name=name, status=CheckStatus.CHECKING)
        try:
            check = self._runners[key]()
        except Exception:  # noqa: BLE001
            logger.exception("Preflight check %s crashed", name)
            status = CheckStatus.WARNING if key in _ADVISORY_CHECKS else CheckStatus.FAILED
            check = PreflightCheck(
                name=name,
                status=status,
                message=UNEXPECTED_FAILURE if status == CheckStatus.WARNING else None,
                error=UNEXPECTED_FAILURE if status == CheckStatus.FAILED else None,
            )
            if key == CheckKey.PRD:
                self.result.prd_has_tasks = False
        self.result.checks[key] = check
        logger.debug("Preflight %s -> %s", name, check.status.value)
        return check

    def mark_passed(self, key: CheckKey, message: str | None = None) -> PreflightCheck:
        """Flip a single check to passed after out-of-band remediation."""

        check = PreflightCheck(
            name=CHECK_NAMES[key],
            status=CheckStatus.PASSED,
            message=message or self.result.checks[key].message,
        )
        self.result.checks[key] = check
        return check

    def reset(self) -> None:
        self.result = PreflightResult()

    def _check_agent(self) -> PreflightCheck:
        name = CHECK_NAMES[CheckKey.AGENT]
        ok, detail = probe_executable(
            self.agent_executable,
            timeout_seconds=self.probe_timeout_seconds,
        )
        if ok:
            return _passed(name, f"{name} installed" + (f" ({detail})" if detail else ""))
        return _failed(
            name,
            f"{name} not available: {detail}. "
            "Install it with: npm install -g @anthropic-ai/claude-code",
        )

    def _check_api_key(self) -> PreflightCheck:
        name = CHECK_NAMES[CheckKey.API_KEY]
        if self.credentials.has_api_key():
            return _passed(name, "ANTHROPIC_API_KEY is set")
        return _failed(name, "ANTHROPIC_API_KEY not found. Enter it when prompted.")

    def _check_git(self) -> PreflightCheck:
        name = CHECK_NAMES[CheckKey.GIT]
        if self.git.is_repo():
            return _passed(name, "Inside git repository")
        return _failed(name, "Not inside a git repository. Run 'git init' first.")

    def _check_prd(self) -> PreflightCheck:
        name = CHECK_NAMES[CheckKey.PRD]
        prd_path = self.ralph_dir / PRD_FILE
        self.result.prd_has_tasks = False
        if not prd_path.is_file():
            return _failed(
                name,
                f"{PRD_FILE} not found at {prd_path}. "
                "Create it from a template ('ralph templates').",
            )
        try:
            found = has_tasks(prd_path)
        except TaskDocumentError as error:
            return _failed(name, error.format())
        self.result.prd_has_tasks = found
        if found:
            return _passed(name, f"{PRD_FILE} found with tasks")
        return _warning(name, f"{PRD_FILE} exists but has no tasks. Pick a template first.")

    def _check_project_instructions(self) -> PreflightCheck:
        name = CHECK_NAMES[CheckKey.PROJECT_INSTRUCTIONS]
        if (self.repo_root / PROJECT_INSTRUCTIONS_FILE).is_file():
            return _passed(name, "Project instructions found")
        return _warning(
            name,
            f"{PROJECT_INSTRUCTIONS_FILE} not found. Consider adding project instructions.",
        )


def probe_executable(executable: str, *, timeout_seconds: int) -> tuple[bool, str | None]:
    """Resolve ``executable`` on PATH and confirm it answers ``--version``.

    Returns ``(ok, detail)`` where detail is the version line or the failure reason.
    """

    resolved = shutil.which(executable)
    if resolved is None:
        return False, f"executable not found in PATH: {executable}"
    try:
        completed = subprocess.run(  # noqa: S603
            [resolved, "--version"],
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return False, "version probe timed out"
    except OSError as error:
        return False, f"version probe failed to start: {error}"
    if completed.returncode != 0:
        return False, f"version probe exited with {completed.returncode}"
    lines = completed.stdout.strip().splitlines()
    return True, lines[0] if lines else None


def _default_repo_root(ralph_dir: Path) -> Path:
    return ralph_dir.resolve().parent if ralph_dir.name == ".ralph" else Path.cwd()


def _passed(name: str, message: str) -> PreflightCheck:
    return PreflightCheck(name=name, status=CheckStatus.PASSED, message=message)


def _failed(name: str, error: str) -> PreflightCheck:
    return PreflightCheck(name=name, status=CheckStatus.FAILED, error=error)


def _warning(name: str, message: str) -> PreflightCheck:
    return PreflightCheck(name=name, status=CheckStatus.WARNING, message=message)
