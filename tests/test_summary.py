from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from ralph_loop.orchestrator.models import (
    CommitInfo,
    DiffStat,
    IterationResult,
    Session,
    UsageInfo,
)
from ralph_loop.orchestrator.summary import build_summary, format_duration

pytestmark = [
    allure.epic("Session Engine"),
    allure.feature("Run Summary"),
]

_T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _session(start_commit: str = "abc123", **kwargs) -> Session:
    return Session(
        id="s1",
        started_at=_T0,
        start_commit=start_commit,
        branch="main",
        **kwargs,
    )


def _iteration(number: int, seconds: int, cost: float | None, *, complete: bool = False):
    return IterationResult(
        iteration=number,
        started_at=_T0,
        completed_at=_T0,
        duration_seconds=seconds,
        success=True,
        usage=UsageInfo(total_cost_usd=cost) if cost is not None else None,
        prd_complete=complete,
    )


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(0, "0s"), (45, "45s"), (330, "5m 30s"), (5445, "1h 30m 45s"), (-3, "0s")],
)
def test_format_duration(seconds: int, expected: str) -> None:
    assert format_duration(seconds) == expected


def test_build_summary_totals_and_git_changes(fake_git) -> None:
    fake_git.commits = [CommitInfo("a" * 40, "aaaaaaa", "Add login", "Dev", "2026-01-01")]
    fake_git.diffs = [
        DiffStat(file="app.py", status="M", additions=10, deletions=2),
        DiffStat(file="login.py", status="A", additions=30, deletions=0),
    ]
    session = _session(
        iterations=[_iteration(1, 60, 0.5), _iteration(2, 30, 0.25, complete=True)],
    )

    summary = build_summary(session, git=fake_git)

    assert summary.total_iterations == 2
    assert summary.total_duration_seconds == 90
    assert summary.total_cost_usd == pytest.approx(0.75)
    assert summary.prd_complete is True
    assert summary.total_additions == 40
    assert summary.total_deletions == 2
    lines = summary.lines()
    assert "Duration: 1m 30s" in lines
    assert "Cost: $0.7500" in lines
    assert "  aaaaaaa Add login" in lines
    assert "Files changed: 2 (+40 -2)" in lines


def test_build_summary_prefers_recorded_session_cost(fake_git) -> None:
    session = _session(iterations=[_iteration(1, 5, 0.5)], total_cost_usd=2.0)

    assert build_summary(session, git=fake_git).total_cost_usd == 2.0


def test_build_summary_skips_git_for_unknown_start(fake_git) -> None:
    fake_git.commits = [CommitInfo("a", "a", "x", "y", "z")]
    session = _session(start_commit="unknown", iterations=[_iteration(1, 5, None)])

    summary = build_summary(session, git=fake_git)

    assert summary.commits == []
    assert summary.total_cost_usd is None
    assert "Commits: 0" in summary.lines()
