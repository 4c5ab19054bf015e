"""End-of-run session summary."""

from __future__ import annotations

from dataclasses import dataclass, field

from ralph_loop.orchestrator.costs import format_cost
from ralph_loop.orchestrator.git import GitInfoProvider
from ralph_loop.orchestrator.models import CommitInfo, DiffStat, Session
from ralph_loop.orchestrator.store import UNKNOWN


@dataclass(slots=True)
class SessionSummary:
    """Totals for a finished run plus what changed in the repository."""

    total_iterations: int
    total_duration_seconds: int
    total_cost_usd: float | None
    prd_complete: bool
    commits: list[CommitInfo] = field(default_factory=list)
    files_changed: list[DiffStat] = field(default_factory=list)

    @property
    def total_additions(self) -> int:
        return sum(item.additions for item in self.files_changed)

    @property
    def total_deletions(self) -> int:
        return sum(item.deletions for item in self.files_changed)

    def lines(self) -> list[str]:
        """Plain text rendering for CLI output."""

        rows = [
            f"Iterations: {self.total_iterations}",
            f"Duration: {format_duration(self.total_duration_seconds)}",
        ]
        if self.total_cost_usd is not None:
            rows.append(f"Cost: {format_cost(self.total_cost_usd)}")
        rows.append(f"PRD complete: {'yes' if self.prd_complete else 'no'}")
        rows.append(f"Commits: {len(self.commits)}")
        rows.extend(f"  {commit.short_sha} {commit.message}" for commit in self.commits)
        if self.files_changed:
            rows.append(
                f"Files changed: {len(self.files_changed)} "
                f"(+{self.total_additions} -{self.total_deletions})",
            )
            rows.extend(
                f"  {item.status} {item.file} (+{item.additions} -{item.deletions})"
                for item in self.files_changed
            )
        return rows


def build_summary(session: Session, *, git: GitInfoProvider | None = None) -> SessionSummary:
    """Summarize a session; repository changes are skipped without a known start commit."""

    commits: list[CommitInfo] = []
    files_changed: list[DiffStat] = []
    if git is not None and session.start_commit and session.start_commit != UNKNOWN:
        commits = git.commits_since(session.start_commit)
        files_changed = git.diff_stats(session.start_commit)

    has_usage = any(item.usage is not None for item in session.iterations)
    total_cost = session.total_cost_usd
    if total_cost is None and has_usage:
        total_cost = sum(item.cost_usd for item in session.iterations)

    return SessionSummary(
        total_iterations=len(session.iterations),
        total_duration_seconds=sum(item.duration_seconds for item in session.iterations),
        total_cost_usd=total_cost,
        prd_complete=any(item.prd_complete for item in session.iterations),
        commits=commits,
        files_changed=files_changed,
    )


def format_duration(seconds: int) -> str:
    """``45s``, ``5m 30s`` or ``1h 30m 45s``."""

    seconds = max(0, int(seconds))
    if seconds >= 3600:  # noqa: PLR2004
        hours, remainder = divmod(seconds, 3600)
        minutes, secs = divmod(remainder, 60)
        return f"{hours}h {minutes}m {secs}s"
    if seconds >= 60:  # noqa: PLR2004
        minutes, secs = divmod(seconds, 60)
        return f"{minutes}m {secs}s"
    return f"{seconds}s"
