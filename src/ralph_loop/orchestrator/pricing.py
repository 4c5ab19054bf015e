"""Token cost estimation for agents that do not report spend themselves."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PRICING_ENV = "RALPH_LLM_PRICING"


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float

    def cost(self, *, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1_000_000) * self.input_per_1m + (
            output_tokens / 1_000_000
        ) * self.output_per_1m


def estimate_cost_usd(
    *,
    agent: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> float | None:
    """Estimate cost in USD from token counts; ``None`` when no price is configured."""

    pricing = lookup_pricing(agent=agent, model=model)
    if pricing is None:
        return None
    return pricing.cost(input_tokens=input_tokens, output_tokens=output_tokens)


def lookup_pricing(*, agent: str, model: str, raw: str | None = None) -> ModelPricing | None:
    """Most specific match wins: exact, then any model of the agent, then ``*:*``."""

    mapping = parse_pricing(os.getenv(PRICING_ENV, "") if raw is None else raw)
    agent_key = agent.strip().lower()
    for key in ((agent_key, model.strip()), (agent_key, "*"), ("*", "*")):
        pricing = mapping.get(key)
        if pricing is not None:
            return pricing
    return None


def parse_pricing(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse ``agent:model:input_per_1m:output_per_1m`` entries separated by ``,``.

    ``*`` is accepted as agent or model wildcard. Malformed entries are skipped.
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:  # noqa: PLR2004
            logger.warning("Ignoring malformed %s entry: %s", PRICING_ENV, value)
            continue
        agent, model, input_price, output_price = parts
        try:
            pricing = ModelPricing(
                input_per_1m=float(input_price),
                output_per_1m=float(output_price),
            )
        except ValueError:
            logger.warning("Ignoring %s entry with non-numeric price: %s", PRICING_ENV, value)
            continue
        parsed[(agent.lower(), model)] = pricing
    return parsed
