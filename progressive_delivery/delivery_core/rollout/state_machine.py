from __future__ import annotations

from datetime import datetime
from typing import Iterable

from delivery_core.errors import InvalidState
from delivery_core.log import get_logger
from delivery_core.rollout.gates import ThresholdEvaluator
from delivery_core.rollout.models import Rollout
from delivery_core.types import Decision, DecisionKind, MetricSample, RolloutStatus


logger = get_logger(__name__)


class RolloutStateMachine:
    """Decides the next action for a rollout on each tick.

    ``evaluate`` only records *intent* for an advance (status ``ADVANCING`` plus
    ``pending_stage_index``). The stage index, applied weight and soak clock move
    in ``commit_advance``, which callers invoke only after the router accepted the
    new weights. A failed apply therefore leaves the rollout at its previous
    stage and the next tick re-issues the same advance.
    """

    def __init__(
        self,
        *,
        evaluator: ThresholdEvaluator | None = None,
        advance_budget_seconds: float | None = None,
    ) -> None:
        self.evaluator = evaluator or ThresholdEvaluator()
        self.advance_budget_seconds = advance_budget_seconds

    def evaluate(self, rollout: Rollout, samples: Iterable[MetricSample], now: datetime) -> Decision:
        status = rollout.status
        if status is RolloutStatus.SUCCEEDED:
            return Decision(
                DecisionKind.COMPLETE,
                stage_index=rollout.current_stage_index,
                weight_percent=rollout.last_applied_weight_percent,
                reason="already succeeded",
            )
        if status is RolloutStatus.FAILED:
            raise InvalidState(f"Rollout {rollout.id} already failed; evaluation on a terminal rollout")
        if status is RolloutStatus.ROLLING_BACK:
            return Decision(
                DecisionKind.ROLLBACK,
                stage_index=rollout.current_stage_index,
                weight_percent=0,
                reason="rollback pending",
            )
        if rollout.abort_requested:
            return self._begin_rollback(rollout, now, rollout.abort_reason or "operator abort")
        if status is RolloutStatus.PENDING:
            return self._request_advance(rollout, 0, now, reason="rollout started")
        if status is RolloutStatus.ADVANCING:
            return self._resume_advance(rollout, samples, now)
        return self._evaluate_holding(rollout, samples, now)

    def commit_advance(self, rollout: Rollout, decision: Decision, now: datetime) -> None:
        if decision.kind is not DecisionKind.ADVANCE or decision.weight_percent is None:
            raise InvalidState(f"Cannot commit {decision.kind.value} decision as an advance")
        if rollout.status is not RolloutStatus.ADVANCING or rollout.pending_stage_index != decision.stage_index:
            raise InvalidState(
                f"Rollout {rollout.id} has no pending advance to stage {decision.stage_index} "
                f"(status={rollout.status.value}, pending={rollout.pending_stage_index})"
            )
        if decision.stage_index < rollout.current_stage_index:
            raise InvalidState(f"Stage index may not decrease ({rollout.current_stage_index} -> {decision.stage_index})")
        rollout.current_stage_index = decision.stage_index
        rollout.last_applied_weight_percent = decision.weight_percent
        rollout.stage_entered_at = now
        rollout.pending_stage_index = None
        rollout.advance_requested_at = None
        rollout.transition(
            RolloutStatus.HOLDING,
            at=now,
            reason=f"stage {decision.stage_index} live at {decision.weight_percent}%",
        )

    def record_advance_failure(self, rollout: Rollout, decision: Decision, now: datetime, error: str) -> None:
        rollout.transition(
            RolloutStatus.ADVANCING,
            at=now,
            reason=f"router error applying stage {decision.stage_index} ({decision.weight_percent}%): {error}",
        )

    def _request_advance(self, rollout: Rollout, stage_index: int, now: datetime, *, reason: str) -> Decision:
        stage = rollout.catalog.stage_at(stage_index)
        rollout.pending_stage_index = stage_index
        rollout.advance_requested_at = now
        rollout.transition(RolloutStatus.ADVANCING, at=now, reason=f"{reason}: stage {stage_index} -> {stage.target_weight_percent}%")
        return Decision(
            DecisionKind.ADVANCE,
            stage_index=stage_index,
            weight_percent=stage.target_weight_percent,
            reason=reason,
        )

    def _begin_rollback(
        self,
        rollout: Rollout,
        now: datetime,
        reason: str,
        failed_metrics: tuple[str, ...] = (),
    ) -> Decision:
        rollout.transition(RolloutStatus.ROLLING_BACK, at=now, reason=reason)
        logger.warning(
            "rollback_requested",
            rollout_id=rollout.id,
            stage_index=rollout.current_stage_index,
            reason=reason,
        )
        return Decision(
            DecisionKind.ROLLBACK,
            stage_index=rollout.current_stage_index,
            weight_percent=0,
            reason=reason,
            failed_metrics=failed_metrics,
        )

    def _check_live_stage(self, rollout: Rollout, samples: Iterable[MetricSample], now: datetime) -> Decision | None:
        stage = rollout.catalog.stage_at(rollout.current_stage_index)
        result = self.evaluator.evaluate(stage, samples, variant=rollout.candidate_variant, now=now)
        if result.ok:
            return None
        failed = tuple(result.failed_checks)
        return self._begin_rollback(rollout, now, f"thresholds failed: {', '.join(failed)}", failed)

    def _resume_advance(self, rollout: Rollout, samples: Iterable[MetricSample], now: datetime) -> Decision:
        target = rollout.pending_stage_index
        if target is None:
            raise InvalidState(f"Rollout {rollout.id} is advancing without a pending stage")
        if rollout.stage_entered_at is not None:
            failed = self._check_live_stage(rollout, samples, now)
            if failed is not None:
                return failed
        if self.advance_budget_seconds is not None and rollout.advance_requested_at is not None:
            waited = (now - rollout.advance_requested_at).total_seconds()
            if waited >= self.advance_budget_seconds:
                return self._begin_rollback(
                    rollout,
                    now,
                    f"advance retry budget exhausted after {round(waited, 3)}s (stage {target})",
                )
        stage = rollout.catalog.stage_at(target)
        return Decision(
            DecisionKind.ADVANCE,
            stage_index=target,
            weight_percent=stage.target_weight_percent,
            reason=f"retrying advance to stage {target}",
        )

    def _evaluate_holding(self, rollout: Rollout, samples: Iterable[MetricSample], now: datetime) -> Decision:
        failed = self._check_live_stage(rollout, samples, now)
        if failed is not None:
            return failed

        index = rollout.current_stage_index
        stage = rollout.catalog.stage_at(index)
        entered = rollout.stage_entered_at or now
        elapsed = (now - entered).total_seconds()
        if elapsed < stage.min_soak_seconds:
            return Decision(
                DecisionKind.HOLD,
                stage_index=index,
                weight_percent=rollout.last_applied_weight_percent,
                reason=f"soaking {round(elapsed, 3)}/{stage.min_soak_seconds}s",
            )
        if rollout.catalog.is_last_stage(index):
            rollout.transition(RolloutStatus.SUCCEEDED, at=now, reason="all stages passed")
            return Decision(
                DecisionKind.COMPLETE,
                stage_index=index,
                weight_percent=rollout.last_applied_weight_percent,
                reason="all stages passed",
            )
        return self._request_advance(rollout, index + 1, now, reason=f"stage {index} soak passed")
