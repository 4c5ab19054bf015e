from __future__ import annotations

import allure
import pytest

from ralph_loop.orchestrator.pricing import estimate_cost_usd, lookup_pricing, parse_pricing

pytestmark = [
    allure.epic("LLM Runtime"),
    allure.feature("Cost Estimation"),
]


def test_estimate_cost_usd_uses_input_and_output_tokens(monkeypatch) -> None:
    monkeypatch.setenv("RALPH_LLM_PRICING", "claude:sonnet:3.0:15.0")

    cost = estimate_cost_usd(
        agent="claude",
        model="sonnet",
        input_tokens=1_000_000,
        output_tokens=100_000,
    )

    assert cost == pytest.approx(4.5)


def test_estimate_cost_usd_without_pricing_is_none(monkeypatch) -> None:
    monkeypatch.delenv("RALPH_LLM_PRICING", raising=False)

    assert estimate_cost_usd(agent="claude", model="", input_tokens=10, output_tokens=10) is None


def test_lookup_prefers_most_specific_entry() -> None:
    raw = "*:*:9.0:9.0,claude:*:2.0:4.0,claude:opus:15.0:75.0"

    exact = lookup_pricing(agent="claude", model="opus", raw=raw)
    agent_wide = lookup_pricing(agent="Claude", model="haiku", raw=raw)
    fallback = lookup_pricing(agent="codex", model="gpt", raw=raw)

    assert exact is not None and exact.input_per_1m == 15.0
    assert agent_wide is not None and agent_wide.output_per_1m == 4.0
    assert fallback is not None and fallback.input_per_1m == 9.0


def test_parse_pricing_skips_malformed_entries(caplog) -> None:
    parsed = parse_pricing("claude:sonnet:3:15, bad-entry ,claude:opus:x:1,")

    assert list(parsed) == [("claude", "sonnet")]
    assert "malformed" in caplog.text
    assert "non-numeric" in caplog.text
