from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from delivery_core.adapters.router import TrafficRouter
from delivery_core.errors import InvalidState, RouterError
from delivery_core.log import get_logger
from delivery_core.rollout.models import Rollout
from delivery_core.types import RolloutStatus


logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class RollbackResult:
    applied: bool
    weights: dict[str, int]
    error: str | None = None
    already_terminal: bool = False


class RollbackExecutor:
    """Full revert to the stable variant. Never a partial step back."""

    def __init__(self, router: TrafficRouter) -> None:
        self.router = router

    @staticmethod
    def restoration_target(rollout: Rollout) -> dict[str, int]:
        return {rollout.stable_variant: 100, rollout.candidate_variant: 0}

    def execute(self, rollout: Rollout, now: datetime) -> RollbackResult:
        target = self.restoration_target(rollout)
        if rollout.status is RolloutStatus.FAILED:
            return RollbackResult(applied=True, weights=target, already_terminal=True)
        if rollout.status is not RolloutStatus.ROLLING_BACK:
            raise InvalidState(f"Rollout {rollout.id} is {rollout.status.value}, expected rolling_back")

        try:
            self.router.set_weights(target)
        except RouterError as exc:
            # stays ROLLING_BACK: the candidate weight may still be live
            rollout.transition(RolloutStatus.ROLLING_BACK, at=now, reason=f"rollback router error: {exc}")
            logger.error("rollback_router_failed", rollout_id=rollout.id, error=str(exc))
            return RollbackResult(applied=False, weights=target, error=str(exc))

        previous_weight = rollout.last_applied_weight_percent
        rollout.last_applied_weight_percent = 0
        rollout.pending_stage_index = None
        rollout.advance_requested_at = None
        rollout.transition(
            RolloutStatus.FAILED,
            at=now,
            reason=f"traffic restored to {rollout.stable_variant} (candidate was {previous_weight}%)",
        )
        logger.info("rollback_applied", rollout_id=rollout.id, weights=target, previous_weight=previous_weight)
        return RollbackResult(applied=True, weights=target)
