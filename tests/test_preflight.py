from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest

from ralph_loop.orchestrator.models import CheckStatus
from ralph_loop.orchestrator.preflight import (
    CheckKey,
    PreflightEngine,
    PreflightOutcome,
    PreflightResult,
    probe_executable,
)

pytestmark = [
    allure.epic("Preflight"),
    allure.feature("Environment Checks"),
]


class _Credentials:
    def __init__(self, available: bool) -> None:
        self.available = available
        self.calls = 0

    def has_api_key(self) -> bool:
        self.calls += 1
        return self.available


class _ExplodingCredentials:
    def has_api_key(self) -> bool:
        raise RuntimeError("keychain locked")


def _engine(
    ralph_dir: Path,
    fake_git,
    *,
    credentials=None,
    with_instructions: bool = True,
    executable: str = sys.executable,
) -> PreflightEngine:
    repo_root = ralph_dir.parent
    if with_instructions:
        (repo_root / "CLAUDE.md").write_text("# Project\n", "utf-8")
    return PreflightEngine(
        ralph_dir=ralph_dir,
        git=fake_git,
        credentials=credentials or _Credentials(True),
        repo_root=repo_root,
        agent_executable=executable,
    )


def test_all_checks_pass(ralph_dir: Path, fake_git) -> None:
    result = _engine(ralph_dir, fake_git).run_checks()

    assert result.finished
    assert result.all_passed
    assert result.prd_has_tasks is True
    assert result.outcome == PreflightOutcome.READY
    assert {check.status for check in result.checks.values()} == {CheckStatus.PASSED}


def test_missing_credential_needs_mark_passed(ralph_dir: Path, fake_git) -> None:
    credentials = _Credentials(False)
    engine = _engine(ralph_dir, fake_git, credentials=credentials)

    result = engine.run_checks()

    assert result[CheckKey.API_KEY].status == CheckStatus.FAILED
    assert result.failed_keys == [CheckKey.API_KEY]
    assert result.outcome == PreflightOutcome.NEEDS_CREDENTIAL
    assert not result.all_passed

    engine.mark_passed(CheckKey.API_KEY, "API key provided")

    assert engine.result.outcome == PreflightOutcome.READY
    assert engine.result.all_passed
    assert engine.result[CheckKey.API_KEY].message == "API key provided"
    assert credentials.calls == 1


def test_missing_git_repository_blocks(ralph_dir: Path, fake_git) -> None:
    fake_git.repo = False

    result = _engine(ralph_dir, fake_git, credentials=_Credentials(False)).run_checks()

    assert set(result.failed_keys) == {CheckKey.GIT, CheckKey.API_KEY}
    assert result.outcome == PreflightOutcome.BLOCKED
    assert "git init" in (result[CheckKey.GIT].error or "")


def test_missing_agent_blocks(ralph_dir: Path, fake_git) -> None:
    result = _engine(ralph_dir, fake_git, executable="definitely-not-installed-agent").run_checks()

    assert result[CheckKey.AGENT].status == CheckStatus.FAILED
    assert "not found in PATH" in (result[CheckKey.AGENT].error or "")
    assert result.outcome == PreflightOutcome.BLOCKED


def test_missing_project_instructions_only_warns(ralph_dir: Path, fake_git) -> None:
    result = _engine(ralph_dir, fake_git, with_instructions=False).run_checks()

    assert result[CheckKey.PROJECT_INSTRUCTIONS].status == CheckStatus.WARNING
    assert result.all_passed
    assert result.outcome == PreflightOutcome.READY


def test_prd_missing_fails(tmp_path: Path, fake_git) -> None:
    ralph_dir = tmp_path / ".ralph"
    ralph_dir.mkdir()

    result = _engine(ralph_dir, fake_git).run_checks()

    assert result[CheckKey.PRD].status == CheckStatus.FAILED
    assert result.prd_has_tasks is False
    assert result.outcome == PreflightOutcome.BLOCKED


def test_prd_without_tasks_warns(ralph_dir: Path, fake_git) -> None:
    (ralph_dir / "PRD.md").write_text("# Project\n\n- ...\n", "utf-8")

    result = _engine(ralph_dir, fake_git).run_checks()

    assert result[CheckKey.PRD].status == CheckStatus.WARNING
    assert result.prd_has_tasks is False
    assert result.outcome == PreflightOutcome.READY


def test_unreadable_prd_fails(tmp_path: Path, fake_git) -> None:
    ralph_dir = tmp_path / ".ralph"
    (ralph_dir / "PRD.md").mkdir(parents=True)

    result = _engine(ralph_dir, fake_git).run_checks()

    assert result[CheckKey.PRD].status == CheckStatus.FAILED


def test_crashing_check_fails_with_generic_error(ralph_dir: Path, fake_git) -> None:
    result = _engine(ralph_dir, fake_git, credentials=_ExplodingCredentials()).run_checks()

    assert result[CheckKey.API_KEY].status == CheckStatus.FAILED
    assert result[CheckKey.API_KEY].error == "Check failed unexpectedly"
    assert result[CheckKey.GIT].status == CheckStatus.PASSED


def test_crashing_advisory_check_only_warns(
    ralph_dir: Path,
    fake_git,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    engine = _engine(ralph_dir, fake_git)

    def _boom():
        raise OSError("disk gone")

    monkeypatch.setitem(engine._runners, CheckKey.PROJECT_INSTRUCTIONS, _boom)

    result = engine.run_checks()

    assert result[CheckKey.PROJECT_INSTRUCTIONS].status == CheckStatus.WARNING
    assert result.outcome == PreflightOutcome.READY


def test_run_check_reruns_single_check(ralph_dir: Path, fake_git) -> None:
    fake_git.repo = False
    engine = _engine(ralph_dir, fake_git)
    engine.run_checks()
    assert engine.result.outcome == PreflightOutcome.BLOCKED

    fake_git.repo = True
    check = engine.run_check(CheckKey.GIT)

    assert check.status == CheckStatus.PASSED
    assert engine.result.outcome == PreflightOutcome.READY


def test_fresh_result_is_pending() -> None:
    result = PreflightResult()

    assert not result.finished
    assert result.outcome == PreflightOutcome.PENDING
    assert all(check.status == CheckStatus.PENDING for check in result.checks.values())


def test_probe_executable_reports_version() -> None:
    ok, detail = probe_executable(sys.executable, timeout_seconds=15)

    assert ok is True
    assert detail is not None
    assert detail.startswith("Python")


def test_probe_executable_missing() -> None:
    ok, detail = probe_executable("definitely-not-installed-agent", timeout_seconds=1)

    assert ok is False
    assert "not found" in (detail or "")
