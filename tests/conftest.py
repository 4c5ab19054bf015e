"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from ralph_loop.orchestrator.models import CommitInfo, DiffStat

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m ralph_loop.orchestrator.backend.echo_agent --prompt-file {{prompt_file}}"
)

PRD_WITH_TASKS = """# Todo app

### Phase 1
- [x] scaffold project
- [ ] implement login

### Phase 2
- [ ] add logout
"""


@dataclass
class FakeGit:
    """In-memory ``GitInfoProvider``."""

    repo: bool = True
    branch: str | None = "main"
    commit: str | None = "abc123"
    commits: list[CommitInfo] = field(default_factory=list)
    diffs: list[DiffStat] = field(default_factory=list)
    created_branches: list[str] = field(default_factory=list)

    def is_repo(self) -> bool:
        return self.repo

    def repo_root(self) -> Path | None:
        return None

    def current_branch(self) -> str | None:
        return self.branch

    def current_commit(self) -> str | None:
        return self.commit

    def diff_stats(self, since_commit: str) -> list[DiffStat]:
        return list(self.diffs)

    def commits_since(self, since_commit: str) -> list[CommitInfo]:
        return list(self.commits)

    def create_branch(self, name: str) -> bool:
        self.created_branches.append(name)
        self.branch = name
        return True


@pytest.fixture()
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture()
def ralph_dir(tmp_path: Path) -> Path:
    """A ``.ralph`` directory with a PRD that still has open tasks."""

    path = tmp_path / ".ralph"
    path.mkdir()
    (path / "PRD.md").write_text(PRD_WITH_TASKS, "utf-8")
    return path


@pytest.fixture()
def echo_agent(monkeypatch) -> str:
    """Command template running the local echo agent; the subprocess can import ``ralph_loop``."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        f"{SRC_DIR}{os.pathsep}{existing}" if existing else str(SRC_DIR),
    )
    monkeypatch.delenv("RALPH_LLM_PRICING", raising=False)
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("RALPH_"):
            monkeypatch.delenv(key, raising=False)
