"""Usage extraction helpers for agent CLI output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from ralph_loop.orchestrator.models import UsageInfo

_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_CACHE_READ_TOKENS = re.compile(
    r"cache[_ ]read[_ ]input[_ ]tokens?\s*[:=]\s*([\d,]+)",
    re.IGNORECASE,
)
_CACHE_CREATION_TOKENS = re.compile(
    r"cache[_ ]creation[_ ]input[_ ]tokens?\s*[:=]\s*([\d,]+)",
    re.IGNORECASE,
)
_TOTAL_COST = re.compile(r"total[_ ]cost(?:[_ ]usd)?\s*[:=]\s*\$?\s*([\d.]+)", re.IGNORECASE)


@dataclass(slots=True)
class AgentReport:
    """What the agent said about one run: final text, usage and identity."""

    output: str
    usage: UsageInfo | None
    session_id: str | None
    is_error: bool
    usage_source: str
    cost_reported: bool = False


def parse_agent_output(stdout: str) -> AgentReport:
    """Parse ``claude -p --output-format json`` output, falling back to plain text.

    Accepts a single result object, a JSON array of messages or newline
    delimited messages; the last ``result`` message wins.
    """

    payload = _find_result_message(stdout)
    if payload is not None:
        usage, cost_reported = _usage_from_message(payload)
        session_id = payload.get("session_id")
        result = payload.get("result")
        return AgentReport(
            output=result if isinstance(result, str) else stdout,
            usage=usage,
            session_id=session_id if isinstance(session_id, str) and session_id else None,
            is_error=bool(payload.get("is_error", False)),
            usage_source="json",
            cost_reported=cost_reported,
        )

    usage, cost_reported = _usage_from_text(stdout)
    return AgentReport(
        output=stdout,
        usage=usage,
        session_id=None,
        is_error=False,
        usage_source="text" if usage is not None else "none",
        cost_reported=cost_reported,
    )


def _find_result_message(stdout: str) -> dict[str, Any] | None:
    text = stdout.strip()
    if not text:
        return None

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        decoded = None
    if isinstance(decoded, dict):
        return decoded if _is_result(decoded) or "usage" in decoded else None
    if isinstance(decoded, list):
        return _last_result(decoded)

    messages: list[Any] = []
    for line in text.splitlines():
        candidate = line.strip()
        if not candidate.startswith("{"):
            continue
        try:
            messages.append(json.loads(candidate))
        except json.JSONDecodeError:
            continue
    return _last_result(messages)


def _last_result(messages: list[Any]) -> dict[str, Any] | None:
    for message in reversed(messages):
        if isinstance(message, dict) and _is_result(message):
            return message
    return None


def _is_result(message: dict[str, Any]) -> bool:
    return message.get("type") == "result"


def _usage_from_message(message: dict[str, Any]) -> tuple[UsageInfo | None, bool]:
    raw_usage = message.get("usage")
    if not isinstance(raw_usage, dict):
        raw_usage = {}
    # Older agent builds nest the cost inside ``usage``.
    raw_cost = message.get("total_cost_usd", raw_usage.get("total_cost_usd"))
    if not raw_usage and raw_cost is None:
        return None, False

    cost = _non_negative_float(raw_cost)
    usage = UsageInfo(
        input_tokens=_non_negative_int(raw_usage.get("input_tokens")) or 0,
        output_tokens=_non_negative_int(raw_usage.get("output_tokens")) or 0,
        total_cost_usd=cost or 0.0,
        cache_read_input_tokens=_non_negative_int(raw_usage.get("cache_read_input_tokens")),
        cache_creation_input_tokens=_non_negative_int(
            raw_usage.get("cache_creation_input_tokens"),
        ),
    )
    return usage, cost is not None


def _usage_from_text(text: str) -> tuple[UsageInfo | None, bool]:
    input_tokens = _extract_int(_INPUT_TOKENS, text)
    output_tokens = _extract_int(_OUTPUT_TOKENS, text)
    cost = _extract_float(_TOTAL_COST, text)
    if input_tokens is None and output_tokens is None and cost is None:
        return None, False
    usage = UsageInfo(
        input_tokens=input_tokens or 0,
        output_tokens=output_tokens or 0,
        total_cost_usd=cost or 0.0,
        cache_read_input_tokens=_extract_int(_CACHE_READ_TOKENS, text),
        cache_creation_input_tokens=_extract_int(_CACHE_CREATION_TOKENS, text),
    )
    return usage, cost is not None


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    return int(raw) if raw.isdigit() else None


def _extract_float(pattern: re.Pattern[str], text: str) -> float | None:
    match = pattern.search(text)
    if match is None:
        return None
    return _non_negative_float(match.group(1).rstrip("."))


def _non_negative_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value) if value >= 0 else None


def _non_negative_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 0 else None
