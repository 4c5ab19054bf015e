"""Git metadata provider used for session identity, checkpoints and summaries."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol

from ralph_loop.orchestrator.models import CommitInfo, DiffStat

logger = logging.getLogger(__name__)

DIFF_STATUSES = frozenset({"M", "A", "D", "R", "C", "U"})
_LOG_FORMAT = "%H%x1f%h%x1f%s%x1f%an%x1f%aI"
_FIELD_SEPARATOR = "\x1f"


class GitInfoProvider(Protocol):
    """Read-only view of the repository the agent works in."""

    def is_repo(self) -> bool: ...

    def repo_root(self) -> Path | None: ...

    def current_branch(self) -> str | None: ...

    def current_commit(self) -> str | None: ...

    def diff_stats(self, since_commit: str) -> list[DiffStat]: ...

    def commits_since(self, since_commit: str) -> list[CommitInfo]: ...


class GitCli:
    """``GitInfoProvider`` backed by the ``git`` executable.

    Every query degrades to ``None``/empty when git is unavailable or the
    command fails; callers decide what a missing value means.
    """

    def __init__(self, cwd: Path | None = None, *, timeout_seconds: int = 15) -> None:
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    def is_repo(self) -> bool:
        return self._run("rev-parse", "--git-dir") is not None

    def repo_root(self) -> Path | None:
        output = self._run("rev-parse", "--show-toplevel")
        return Path(output.strip()) if output else None

    def current_branch(self) -> str | None:
        output = self._run("branch", "--show-current")
        return _stripped_or_none(output)

    def current_commit(self) -> str | None:
        output = self._run("rev-parse", "HEAD")
        return _stripped_or_none(output)

    def commits_since(self, since_commit: str) -> list[CommitInfo]:
        output = self._run("log", f"{since_commit}..HEAD", f"--format={_LOG_FORMAT}")
        if not output or not output.strip():
            return []
        return [parse_commit_line(line) for line in output.strip().splitlines() if line]

    def diff_stats(self, since_commit: str) -> list[DiffStat]:
        name_status = self._run("diff", "--name-status", f"{since_commit}..HEAD")
        if not name_status or not name_status.strip():
            return []
        numstat = self._run("diff", "--numstat", f"{since_commit}..HEAD") or ""
        return parse_diff_stats(name_status=name_status, numstat=numstat)

    def create_branch(self, name: str) -> bool:
        """Switch to ``name``, creating it when it does not exist yet."""

        if self._run("checkout", "-b", name) is not None:
            return True
        return self._run("checkout", name) is not None

    def _run(self, *args: str) -> str | None:
        try:
            completed = subprocess.run(  # noqa: S603
                ["git", *args],  # noqa: S607
                cwd=self.cwd,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            logger.warning("git %s timed out after %ss", " ".join(args), self.timeout_seconds)
            return None
        except OSError as error:
            logger.debug("git %s failed to start: %s", " ".join(args), error)
            return None
        if completed.returncode != 0:
            logger.debug(
                "git %s exited with %s: %s",
                " ".join(args),
                completed.returncode,
                completed.stderr.strip(),
            )
            return None
        return completed.stdout


def parse_commit_line(line: str) -> CommitInfo:
    parts = line.split(_FIELD_SEPARATOR)
    parts += [""] * (5 - len(parts))
    return CommitInfo(
        sha=parts[0],
        short_sha=parts[1],
        message=parts[2],
        author=parts[3],
        timestamp=parts[4],
    )


def parse_diff_stats(*, name_status: str, numstat: str) -> list[DiffStat]:
    """Join ``--name-status`` and ``--numstat`` output into per-file stats."""

    statuses: dict[str, str] = {}
    for line in name_status.strip().splitlines():
        if not line:
            continue
        status, _, path = line.partition("\t")
        if not status:
            continue
        # Renames and copies list "old\tnew"; numstat keys on the new path.
        file = path.split("\t")[-1]
        code = status[0]
        statuses[file] = code if code in DIFF_STATUSES else "M"

    stats: list[DiffStat] = []
    for line in numstat.strip().splitlines():
        if not line:
            continue
        parts = line.split("\t")
        if len(parts) < 3:  # noqa: PLR2004
            continue
        additions, deletions, file = parts[0], parts[1], parts[-1]
        stats.append(
            DiffStat(
                file=file,
                status=statuses.get(file, "M"),
                additions=_count(additions),
                deletions=_count(deletions),
            ),
        )
    return stats


def _stripped_or_none(output: str | None) -> str | None:
    if output is None:
        return None
    return output.strip() or None


def _count(raw: str) -> int:
    # Binary files report "-".
    return int(raw) if raw.isdigit() else 0
