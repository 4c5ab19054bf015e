from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from ralph_loop.orchestrator.controllers import OrchestratorCliController, RunCommand

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Run Controller"),
]


def _command(ralph_dir: Path, **overrides) -> RunCommand:
    values = {
        "ralph_dir": ralph_dir,
        "iterations": 1,
        "prompt": None,
        "branch": None,
        "resume": False,
        "reset": False,
        "skip_preflight": True,
        "max_cost": None,
        "dry_run": False,
        "no_plugins": True,
        "verbose": False,
    }
    values.update(overrides)
    return RunCommand(**values)


def _stored(ralph_dir: Path) -> dict:
    return json.loads((ralph_dir / "session.json").read_text("utf-8"))


class _Answers:
    def __init__(self, answer: bool) -> None:
        self.answer = answer
        self.asked = 0

    def __call__(self) -> bool:
        self.asked += 1
        return self.answer


@pytest.fixture
def seeded(ralph_dir: Path, echo_agent: str, monkeypatch) -> dict:
    monkeypatch.setenv("RALPH_AGENT_COMMAND", f"{echo_agent} --cost 0.01")
    first = OrchestratorCliController().run(
        _command(ralph_dir),
        echo=lambda _line: None,
        ask_resume=_Answers(True),
    )
    assert first.success
    return _stored(ralph_dir)


def test_new_run_does_not_ask_without_resumable_session(
    ralph_dir: Path,
    echo_agent: str,
    monkeypatch,
) -> None:
    monkeypatch.setenv("RALPH_AGENT_COMMAND", echo_agent)
    ask = _Answers(True)

    result = OrchestratorCliController().run(
        _command(ralph_dir),
        echo=lambda _line: None,
        ask_resume=ask,
    )

    assert result.success
    assert ask.asked == 0


def test_accepting_resume_continues_previous_session(ralph_dir: Path, seeded: dict) -> None:
    ask = _Answers(True)
    lines: list[str] = []

    result = OrchestratorCliController().run(_command(ralph_dir), echo=lines.append, ask_resume=ask)

    assert result.success
    assert ask.asked == 1
    session = _stored(ralph_dir)
    assert session["id"] == seeded["id"]
    assert [item["iteration"] for item in session["iterations"]] == [1, 2]
    assert session["checkpoint"]["iteration"] == 2
    assert any(line.startswith("Resuming session") for line in lines)


def test_declining_resume_starts_new_session(ralph_dir: Path, seeded: dict) -> None:
    ask = _Answers(False)
    lines: list[str] = []

    result = OrchestratorCliController().run(_command(ralph_dir), echo=lines.append, ask_resume=ask)

    assert result.success
    assert ask.asked == 1
    session = _stored(ralph_dir)
    assert session["id"] != seeded["id"]
    assert [item["iteration"] for item in session["iterations"]] == [1]
    assert "Starting a new session; the previous one will be replaced." in lines


def test_explicit_resume_skips_question(ralph_dir: Path, seeded: dict) -> None:
    ask = _Answers(False)

    result = OrchestratorCliController().run(
        _command(ralph_dir, resume=True),
        echo=lambda _line: None,
        ask_resume=ask,
    )

    assert result.success
    assert ask.asked == 0
    assert _stored(ralph_dir)["id"] == seeded["id"]
