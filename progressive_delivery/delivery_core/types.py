from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RolloutStatus(str, Enum):
    PENDING = "pending"
    ADVANCING = "advancing"
    HOLDING = "holding"
    ROLLING_BACK = "rolling_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {RolloutStatus.SUCCEEDED, RolloutStatus.FAILED}


class DecisionKind(str, Enum):
    ADVANCE = "advance"
    HOLD = "hold"
    ROLLBACK = "rollback"
    COMPLETE = "complete"


class Operator(str, Enum):
    LE = "<="
    LT = "<"
    GE = ">="
    GT = ">"

    def holds(self, value: float, limit: float) -> bool:
        if self is Operator.LE:
            return value <= limit
        if self is Operator.LT:
            return value < limit
        if self is Operator.GE:
            return value >= limit
        return value > limit


@dataclass(slots=True, frozen=True)
class MetricSample:
    metric_name: str
    variant: str
    value: float
    observed_at: datetime


@dataclass(slots=True, frozen=True)
class TransitionRecord:
    at: datetime
    from_status: RolloutStatus
    to_status: RolloutStatus
    reason: str
    stage_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "from": self.from_status.value,
            "to": self.to_status.value,
            "reason": self.reason,
            "stage_index": self.stage_index,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "TransitionRecord":
        return cls(
            at=datetime.fromisoformat(str(row["at"])),
            from_status=RolloutStatus(str(row["from"])),
            to_status=RolloutStatus(str(row["to"])),
            reason=str(row.get("reason") or ""),
            stage_index=int(row.get("stage_index") or 0),
        )


@dataclass(slots=True)
class CheckResult:
    ok: bool
    failed_checks: list[str] = field(default_factory=list)
    checks: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class Decision:
    kind: DecisionKind
    stage_index: int
    weight_percent: int | None = None
    reason: str = ""
    failed_metrics: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class RolloutEvent:
    rollout_id: str
    from_status: RolloutStatus
    to_status: RolloutStatus
    stage_index: int
    reason: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "rollout_id": self.rollout_id,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "stage_index": self.stage_index,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }
