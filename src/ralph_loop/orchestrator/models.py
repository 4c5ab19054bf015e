"""Domain models for iteration sessions, usage accounting and preflight."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def to_iso(value: datetime) -> str:
    """Render a timestamp the way session files store it."""

    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CostLimitReason(str, Enum):
    """Which configured ceiling an iteration breached."""

    ITERATION = "iteration"
    SESSION = "session"


class CheckStatus(str, Enum):
    """Preflight check lifecycle states."""

    PENDING = "pending"
    CHECKING = "checking"
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"

    @property
    def is_terminal(self) -> bool:
        return self in {CheckStatus.PASSED, CheckStatus.FAILED, CheckStatus.WARNING}


@dataclass(slots=True)
class UsageInfo:
    """Token usage and cost reported for one agent invocation."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_cost_usd: float = 0.0
    cache_read_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None

    def __post_init__(self) -> None:
        for name in (
            "input_tokens",
            "output_tokens",
            "total_cost_usd",
            "cache_read_input_tokens",
            "cache_creation_input_tokens",
        ):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"usage.{name} must be >= 0, got {value!r}")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalCostUsd": self.total_cost_usd,
        }
        if self.cache_read_input_tokens is not None:
            payload["cacheReadInputTokens"] = self.cache_read_input_tokens
        if self.cache_creation_input_tokens is not None:
            payload["cacheCreationInputTokens"] = self.cache_creation_input_tokens
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> UsageInfo:
        return cls(
            input_tokens=int(raw.get("inputTokens", 0)),
            output_tokens=int(raw.get("outputTokens", 0)),
            total_cost_usd=float(raw.get("totalCostUsd", 0.0)),
            cache_read_input_tokens=_optional_int(raw.get("cacheReadInputTokens")),
            cache_creation_input_tokens=_optional_int(raw.get("cacheCreationInputTokens")),
        )


@dataclass(slots=True)
class IterationResult:
    """Outcome of one agent invocation within a session."""

    iteration: int
    started_at: datetime
    completed_at: datetime
    duration_seconds: int
    success: bool
    output: str = ""
    status: str | None = None
    usage: UsageInfo | None = None
    prd_complete: bool = False
    cost_limit_exceeded: bool | None = None
    cost_limit_reason: CostLimitReason | None = None

    def __post_init__(self) -> None:
        if self.iteration < 1:
            raise ValueError(f"iteration must be >= 1, got {self.iteration}")
        if self.duration_seconds < 0:
            raise ValueError(f"duration_seconds must be >= 0, got {self.duration_seconds}")

    @classmethod
    def from_timing(  # noqa: PLR0913
        cls,
        *,
        iteration: int,
        started_at: datetime,
        completed_at: datetime,
        success: bool,
        output: str = "",
        status: str | None = None,
        usage: UsageInfo | None = None,
        prd_complete: bool = False,
    ) -> IterationResult:
        """Build a result whose duration is derived from its timestamps."""

        elapsed = int((completed_at - started_at).total_seconds())
        return cls(
            iteration=iteration,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=max(0, elapsed),
            success=success,
            output=output,
            status=status,
            usage=usage,
            prd_complete=prd_complete,
        )

    @property
    def cost_usd(self) -> float:
        return self.usage.total_cost_usd if self.usage is not None else 0.0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iteration": self.iteration,
            "startedAt": to_iso(self.started_at),
            "completedAt": to_iso(self.completed_at),
            "durationSeconds": self.duration_seconds,
            "success": self.success,
            "output": self.output,
            "prdComplete": self.prd_complete,
        }
        if self.status is not None:
            payload["status"] = self.status
        if self.usage is not None:
            payload["usage"] = self.usage.to_dict()
        if self.cost_limit_exceeded is not None:
            payload["costLimitExceeded"] = self.cost_limit_exceeded
        if self.cost_limit_reason is not None:
            payload["costLimitReason"] = self.cost_limit_reason.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> IterationResult:
        usage_raw = raw.get("usage")
        if usage_raw is not None and not isinstance(usage_raw, dict):
            raise TypeError("iteration.usage must be an object")
        reason_raw = raw.get("costLimitReason")
        return cls(
            iteration=int(raw["iteration"]),
            started_at=from_iso(str(raw["startedAt"])),
            completed_at=from_iso(str(raw["completedAt"])),
            duration_seconds=int(raw.get("durationSeconds", 0)),
            success=bool(raw.get("success", False)),
            output=str(raw.get("output", "")),
            status=raw.get("status"),
            usage=UsageInfo.from_dict(usage_raw) if usage_raw is not None else None,
            prd_complete=bool(raw.get("prdComplete", False)),
            cost_limit_exceeded=raw.get("costLimitExceeded"),
            cost_limit_reason=CostLimitReason(reason_raw) if reason_raw else None,
        )


@dataclass(slots=True)
class Checkpoint:
    """Resume marker written after an iteration completes."""

    iteration: int
    timestamp: datetime
    commit: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "timestamp": to_iso(self.timestamp),
            "commit": self.commit,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Checkpoint:
        return cls(
            iteration=int(raw["iteration"]),
            timestamp=from_iso(str(raw["timestamp"])),
            commit=str(raw.get("commit", "unknown")),
        )


@dataclass(slots=True)
class Session:
    """Durable record of one run-series, persisted as ``session.json``."""

    id: str
    started_at: datetime
    start_commit: str
    branch: str
    iterations: list[IterationResult] = field(default_factory=list)
    checkpoint: Checkpoint | None = None
    sdk_session_id: str | None = None
    total_cost_usd: float | None = None

    @property
    def cost_so_far(self) -> float:
        return self.total_cost_usd or 0.0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "startedAt": to_iso(self.started_at),
            "startCommit": self.start_commit,
            "branch": self.branch,
            "iterations": [item.to_dict() for item in self.iterations],
        }
        if self.checkpoint is not None:
            payload["checkpoint"] = self.checkpoint.to_dict()
        if self.sdk_session_id is not None:
            payload["sdkSessionId"] = self.sdk_session_id
        if self.total_cost_usd is not None:
            payload["totalCostUsd"] = self.total_cost_usd
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Session:
        """Deserialize a session payload.

        Raises ``ValueError`` when identity fields are missing or empty and
        ``TypeError``/``KeyError`` for structurally invalid nested entries.
        """

        session_id = raw.get("id")
        started_at = raw.get("startedAt")
        branch = raw.get("branch")
        if not session_id or not started_at or not branch:
            raise ValueError("Session is missing one of: id, startedAt, branch")

        raw_iterations = raw.get("iterations", [])
        if not isinstance(raw_iterations, list):
            raise TypeError("session.iterations must be an array")
        raw_checkpoint = raw.get("checkpoint")
        if raw_checkpoint is not None and not isinstance(raw_checkpoint, dict):
            raise TypeError("session.checkpoint must be an object")
        total_cost = raw.get("totalCostUsd")

        return cls(
            id=str(session_id),
            started_at=from_iso(str(started_at)),
            start_commit=str(raw.get("startCommit", "unknown")),
            branch=str(branch),
            iterations=[IterationResult.from_dict(item) for item in raw_iterations],
            checkpoint=Checkpoint.from_dict(raw_checkpoint) if raw_checkpoint else None,
            sdk_session_id=raw.get("sdkSessionId"),
            total_cost_usd=float(total_cost) if total_cost is not None else None,
        )


@dataclass(slots=True)
class CostProjection:
    """Derived spend/limit state for the current iteration. Not persisted."""

    iteration_cost: float
    session_total: float
    avg_cost_per_iteration: float | None = None
    projected_total_cost: float | None = None
    projected_remaining_cost: float | None = None
    projection_would_exceed_limit: bool = False
    is_approaching_limit: bool = False
    has_exceeded_limit: bool = False


@dataclass(slots=True)
class PreflightCheck:
    """One preflight prerequisite and its current state."""

    name: str
    status: CheckStatus = CheckStatus.PENDING
    message: str | None = None
    error: str | None = None

    @property
    def blocking(self) -> bool:
        return self.status == CheckStatus.FAILED


@dataclass(slots=True)
class Task:
    """One task line parsed from the task document."""

    text: str
    completed: bool
    phase: str | None = None


@dataclass(slots=True)
class PrdTemplate:
    """Task document template available for a fresh project."""

    name: str
    path: str
    description: str | None = None


@dataclass(slots=True)
class DiffStat:
    """Per-file change statistics between two commits."""

    file: str
    status: str
    additions: int
    deletions: int


@dataclass(slots=True)
class CommitInfo:
    """Commit metadata for the session summary."""

    sha: str
    short_sha: str
    message: str
    author: str
    timestamp: str


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)  # type: ignore[call-overload]
