from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from ralph_loop.orchestrator.models import (
    CheckStatus,
    CostLimitReason,
    IterationResult,
    Session,
    UsageInfo,
    from_iso,
    to_iso,
)

pytestmark = [
    allure.epic("Session Engine"),
    allure.feature("Session Model"),
]


def test_usage_rejects_negative_values() -> None:
    with pytest.raises(ValueError, match="input_tokens"):
        UsageInfo(input_tokens=-1)
    with pytest.raises(ValueError, match="total_cost_usd"):
        UsageInfo(total_cost_usd=-0.01)


def test_usage_optional_cache_fields_are_omitted() -> None:
    assert UsageInfo(input_tokens=10, output_tokens=2, total_cost_usd=0.5).to_dict() == {
        "inputTokens": 10,
        "outputTokens": 2,
        "totalCostUsd": 0.5,
    }
    assert UsageInfo(cache_read_input_tokens=7).to_dict()["cacheReadInputTokens"] == 7


def test_iteration_result_duration_from_timestamps() -> None:
    start = datetime(2026, 1, 1, tzinfo=UTC)

    result = IterationResult.from_timing(
        iteration=2,
        started_at=start,
        completed_at=start + timedelta(seconds=90, milliseconds=700),
        success=True,
    )

    assert result.duration_seconds == 90
    assert result.cost_usd == 0.0


def test_iteration_result_rejects_invalid_numbers() -> None:
    start = datetime(2026, 1, 1, tzinfo=UTC)
    with pytest.raises(ValueError):
        IterationResult(
            iteration=0,
            started_at=start,
            completed_at=start,
            duration_seconds=0,
            success=True,
        )
    with pytest.raises(ValueError):
        IterationResult(
            iteration=1,
            started_at=start,
            completed_at=start,
            duration_seconds=-1,
            success=True,
        )


def test_iteration_result_reads_camel_case_payload() -> None:
    result = IterationResult.from_dict(
        {
            "iteration": 3,
            "startedAt": "2026-01-01T10:00:00.000Z",
            "completedAt": "2026-01-01T10:05:00.000Z",
            "durationSeconds": 300,
            "success": False,
            "output": "boom",
            "usage": {"inputTokens": 5, "outputTokens": 1, "totalCostUsd": 1.5},
            "prdComplete": False,
            "costLimitExceeded": True,
            "costLimitReason": "session",
        },
    )

    assert result.iteration == 3
    assert result.started_at == datetime(2026, 1, 1, 10, tzinfo=UTC)
    assert result.usage == UsageInfo(input_tokens=5, output_tokens=1, total_cost_usd=1.5)
    assert result.cost_limit_reason is CostLimitReason.SESSION
    assert result.to_dict()["costLimitReason"] == "session"


def test_session_omits_unset_optional_keys() -> None:
    session = Session(
        id="s1",
        started_at=datetime(2026, 1, 1, tzinfo=UTC),
        start_commit="abc",
        branch="main",
    )

    payload = session.to_dict()

    assert payload == {
        "id": "s1",
        "startedAt": "2026-01-01T00:00:00.000Z",
        "startCommit": "abc",
        "branch": "main",
        "iterations": [],
    }
    assert session.cost_so_far == 0.0


def test_session_from_dict_requires_identity() -> None:
    with pytest.raises(ValueError):
        Session.from_dict({"id": "", "startedAt": "2026-01-01T00:00:00Z", "branch": "main"})


def test_iso_helpers_treat_naive_timestamps_as_utc() -> None:
    parsed = from_iso("2026-01-01T00:00:00")

    assert parsed.tzinfo is not None
    assert to_iso(parsed) == "2026-01-01T00:00:00.000Z"


def test_check_status_terminal_states() -> None:
    assert not CheckStatus.PENDING.is_terminal
    assert not CheckStatus.CHECKING.is_terminal
    assert CheckStatus.PASSED.is_terminal
    assert CheckStatus.FAILED.is_terminal
    assert CheckStatus.WARNING.is_terminal
