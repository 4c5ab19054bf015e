"""Running and projected session cost against configured spending limits."""

from __future__ import annotations

from collections.abc import Sequence

from ralph_loop.orchestrator.models import (
    CostLimitReason,
    CostProjection,
    IterationResult,
    UsageInfo,
)

APPROACHING_LIMIT_RATIO = 0.8


def project_costs(  # noqa: PLR0913
    *,
    usage: UsageInfo | None,
    session_cost_so_far: float | None = None,
    max_cost_per_session: float | None = None,
    current_iteration: int,
    total_iterations: int,
    previous_iterations: Sequence[IterationResult] | None = None,
) -> CostProjection | None:
    """Compute spend/limit state for the current iteration.

    Returns ``None`` when the iteration reported no usage. The approaching and
    exceeded flags reflect actual spend; ``projection_would_exceed_limit`` is a
    linear extrapolation from the average positive cost of prior iterations.
    """

    if usage is None:
        return None

    iteration_cost = usage.total_cost_usd or 0.0
    session_total = (session_cost_so_far or 0.0) + iteration_cost

    limit = max_cost_per_session
    is_approaching_limit = limit is not None and session_total >= limit * APPROACHING_LIMIT_RATIO
    has_exceeded_limit = limit is not None and session_total >= limit

    projection = CostProjection(
        iteration_cost=iteration_cost,
        session_total=session_total,
        is_approaching_limit=is_approaching_limit,
        has_exceeded_limit=has_exceeded_limit,
    )

    prior_costs = [
        item.cost_usd for item in (previous_iterations or ()) if item.cost_usd > 0
    ]
    if not prior_costs:
        return projection

    average = sum(prior_costs) / len(prior_costs)
    remaining = average * (total_iterations - current_iteration)
    projected_total = session_total + remaining
    projection.avg_cost_per_iteration = average
    projection.projected_remaining_cost = remaining
    projection.projected_total_cost = projected_total
    projection.projection_would_exceed_limit = limit is not None and projected_total > limit
    return projection


def evaluate_cost_limits(
    *,
    usage: UsageInfo | None,
    session_cost_so_far: float,
    max_cost_per_iteration: float | None,
    max_cost_per_session: float | None,
) -> tuple[bool, CostLimitReason | None]:
    """Flag an iteration whose own cost or resulting session total breaches a limit.

    Session breach takes precedence when both limits are exceeded.
    """

    iteration_cost = usage.total_cost_usd if usage is not None else 0.0
    session_total = session_cost_so_far + iteration_cost

    reason: CostLimitReason | None = None
    if max_cost_per_iteration is not None and iteration_cost > max_cost_per_iteration:
        reason = CostLimitReason.ITERATION
    if max_cost_per_session is not None and session_total > max_cost_per_session:
        reason = CostLimitReason.SESSION
    return reason is not None, reason


def format_cost(value: float) -> str:
    return f"${value:.4f}"
