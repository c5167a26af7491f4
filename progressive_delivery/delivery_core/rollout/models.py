from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from delivery_core.errors import InvalidState
from delivery_core.rollout.catalog import StageCatalog
from delivery_core.types import RolloutStatus, TransitionRecord


ROLLOUT_STATES: tuple[RolloutStatus, ...] = tuple(RolloutStatus)

TERMINAL_STATES: frozenset[RolloutStatus] = frozenset({RolloutStatus.SUCCEEDED, RolloutStatus.FAILED})

ALLOWED_TRANSITIONS: dict[RolloutStatus, set[RolloutStatus]] = {
    # PENDING -> ROLLING_BACK only for operator abort
    RolloutStatus.PENDING: {RolloutStatus.ADVANCING, RolloutStatus.ROLLING_BACK},
    RolloutStatus.ADVANCING: {
        RolloutStatus.ADVANCING,
        RolloutStatus.HOLDING,
        RolloutStatus.ROLLING_BACK,
        RolloutStatus.SUCCEEDED,
    },
    RolloutStatus.HOLDING: {RolloutStatus.ADVANCING, RolloutStatus.ROLLING_BACK, RolloutStatus.SUCCEEDED},
    RolloutStatus.ROLLING_BACK: {RolloutStatus.ROLLING_BACK, RolloutStatus.FAILED},
    RolloutStatus.SUCCEEDED: set(),
    RolloutStatus.FAILED: set(),
}


@dataclass(slots=True)
class Rollout:
    id: str
    stable_variant: str
    candidate_variant: str
    catalog: StageCatalog
    created_at: datetime
    status: RolloutStatus = RolloutStatus.PENDING
    current_stage_index: int = 0
    stage_entered_at: datetime | None = None
    last_applied_weight_percent: int = 0
    pending_stage_index: int | None = None
    advance_requested_at: datetime | None = None
    abort_requested: bool = False
    abort_reason: str | None = None
    updated_at: datetime | None = None
    history: list[TransitionRecord] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def ensure_mutable(self) -> None:
        if self.is_terminal:
            raise InvalidState(f"Rollout {self.id} is terminal ({self.status.value})")

    def transition(self, new_status: RolloutStatus, *, at: datetime, reason: str) -> TransitionRecord:
        self.ensure_mutable()
        old_status = self.status
        if new_status not in ALLOWED_TRANSITIONS[old_status]:
            raise InvalidState(f"Invalid rollout transition {old_status.value} -> {new_status.value}")
        record = TransitionRecord(
            at=at,
            from_status=old_status,
            to_status=new_status,
            reason=reason,
            stage_index=self.current_stage_index,
        )
        self.status = new_status
        self.history.append(record)
        self.updated_at = at
        return record

    def weights(self, candidate_pct: int) -> dict[str, int]:
        return {self.candidate_variant: candidate_pct, self.stable_variant: 100 - candidate_pct}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stable_variant": self.stable_variant,
            "candidate_variant": self.candidate_variant,
            "catalog": self.catalog.to_rows(),
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "current_stage_index": self.current_stage_index,
            "stage_entered_at": self.stage_entered_at.isoformat() if self.stage_entered_at else None,
            "last_applied_weight_percent": self.last_applied_weight_percent,
            "pending_stage_index": self.pending_stage_index,
            "advance_requested_at": self.advance_requested_at.isoformat() if self.advance_requested_at else None,
            "abort_requested": self.abort_requested,
            "abort_reason": self.abort_reason,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "history": [row.to_dict() for row in self.history],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Rollout":
        def _ts(value: Any) -> datetime | None:
            return datetime.fromisoformat(str(value)) if value else None

        pending = payload.get("pending_stage_index")
        return cls(
            id=str(payload["id"]),
            stable_variant=str(payload["stable_variant"]),
            candidate_variant=str(payload["candidate_variant"]),
            catalog=StageCatalog.from_rows(payload.get("catalog") or []),
            created_at=datetime.fromisoformat(str(payload["created_at"])),
            status=RolloutStatus(str(payload.get("status") or RolloutStatus.PENDING.value)),
            current_stage_index=int(payload.get("current_stage_index") or 0),
            stage_entered_at=_ts(payload.get("stage_entered_at")),
            last_applied_weight_percent=int(payload.get("last_applied_weight_percent") or 0),
            pending_stage_index=int(pending) if pending is not None else None,
            advance_requested_at=_ts(payload.get("advance_requested_at")),
            abort_requested=bool(payload.get("abort_requested")),
            abort_reason=payload.get("abort_reason"),
            updated_at=_ts(payload.get("updated_at")),
            history=[TransitionRecord.from_dict(row) for row in payload.get("history") or []],
        )
