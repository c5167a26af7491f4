from __future__ import annotations

import secrets
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from delivery_core.adapters.events import EventSink, LogEventSink
from delivery_core.adapters.metrics import MetricSource
from delivery_core.adapters.router import RetryingTrafficRouter, TrafficRouter
from delivery_core.errors import InvalidCatalog, RouterError, Unavailable
from delivery_core.log import get_logger
from delivery_core.rollout.catalog import StageCatalog
from delivery_core.rollout.gates import ThresholdEvaluator
from delivery_core.rollout.models import Rollout
from delivery_core.rollout.rollback import RollbackExecutor
from delivery_core.rollout.state_machine import RolloutStateMachine
from delivery_core.state_store import RolloutStore
from delivery_core.types import Decision, DecisionKind, MetricSample, RolloutEvent, RolloutStatus, TransitionRecord


logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class TickResult:
    rollout_id: str
    outcome: str
    status: RolloutStatus
    decision: Decision | None = None
    stage_index: int = 0
    weight_percent: int = 0
    error: str | None = None


class Orchestrator:
    def __init__(
        self,
        *,
        store: RolloutStore,
        metric_source: MetricSource,
        router: TrafficRouter,
        events: EventSink | None = None,
        tick_interval_seconds: float = 10.0,
        freshness_window_seconds: float = 60.0,
        call_timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        advance_budget_seconds: float | None = None,
        max_consecutive_metric_timeouts: int = 3,
        max_workers: int = 8,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.metric_source = metric_source
        self.events = events or LogEventSink()
        self.tick_interval_seconds = float(tick_interval_seconds)
        self.freshness_window_seconds = float(freshness_window_seconds)
        self.call_timeout_seconds = float(call_timeout_seconds)
        self.max_consecutive_metric_timeouts = max(1, int(max_consecutive_metric_timeouts))
        self.clock = clock
        self.sleep = sleep
        # blocking collaborator calls run here so they can be abandoned on timeout
        self._io = ThreadPoolExecutor(max_workers=max(2, int(max_workers)), thread_name_prefix="delivery-io")
        self.router = RetryingTrafficRouter(
            router,
            executor=self._io,
            timeout_seconds=call_timeout_seconds,
            max_attempts=max_attempts,
            backoff_base_seconds=backoff_base_seconds,
            backoff_max_seconds=backoff_max_seconds,
            sleep=sleep,
        )
        self.state_machine = RolloutStateMachine(
            evaluator=ThresholdEvaluator(freshness_window_seconds=freshness_window_seconds),
            advance_budget_seconds=advance_budget_seconds,
        )
        self.rollback_executor = RollbackExecutor(self.router)
        self.max_workers = max(1, int(max_workers))
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # consecutive metric timeouts per rollout, only touched under that rollout's lock
        self._metric_timeouts: dict[str, int] = {}

    def close(self) -> None:
        self._io.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _lock_for(self, rollout_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(rollout_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[rollout_id] = lock
            return lock

    def _forget(self, rollout_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(rollout_id, None)
        self._metric_timeouts.pop(rollout_id, None)

    def start_rollout(
        self,
        stable_variant: str,
        candidate_variant: str,
        catalog: StageCatalog,
        *,
        rollout_id: str | None = None,
    ) -> Rollout:
        if not stable_variant or not candidate_variant or stable_variant == candidate_variant:
            raise ValueError(f"Need two distinct variants, got {stable_variant!r} / {candidate_variant!r}")
        catalog.validate()
        smallest_soak = catalog.min_positive_soak_seconds()
        if smallest_soak is not None and self.tick_interval_seconds >= smallest_soak:
            raise InvalidCatalog(
                [f"tick interval {self.tick_interval_seconds}s must be < smallest min_soak_seconds {smallest_soak}s"]
            )
        now = self.clock()
        rollout = Rollout(
            id=rollout_id or f"rlt_{secrets.token_hex(6)}",
            stable_variant=stable_variant,
            candidate_variant=candidate_variant,
            catalog=catalog,
            created_at=now,
            updated_at=now,
        )
        stored = self.store.create(rollout)
        logger.info(
            "rollout_created",
            rollout_id=rollout.id,
            stable=stable_variant,
            candidate=candidate_variant,
            stages=[s.target_weight_percent for s in catalog],
        )
        return stored.rollout

    def get(self, rollout_id: str) -> Rollout:
        return self.store.load(rollout_id).rollout

    def abort(self, rollout_id: str, *, reason: str = "operator abort", actor: str = "operator") -> Rollout:
        """Mark a rollout for cancellation; the next tick rolls it back."""
        with self._lock_for(rollout_id):
            stored = self.store.load(rollout_id)
            rollout = stored.rollout
            rollout.ensure_mutable()
            if not rollout.abort_requested:
                rollout.abort_requested = True
                rollout.abort_reason = f"{reason} (by {actor})"
                rollout.updated_at = self.clock()
                stored = self.store.save(rollout, expected_version=stored.version)
            logger.warning("rollout_abort_requested", rollout_id=rollout_id, reason=reason, actor=actor)
            return stored.rollout

    def _fetch_samples(self, rollout: Rollout, now: datetime) -> list[MetricSample]:
        # only a live stage (weight applied, soak clock running) is evaluated
        if rollout.abort_requested:
            return []
        if rollout.status not in {RolloutStatus.ADVANCING, RolloutStatus.HOLDING} or rollout.stage_entered_at is None:
            return []
        names = rollout.catalog.stage_at(rollout.current_stage_index).metric_names
        if not names:
            return []
        since = now - timedelta(seconds=self.freshness_window_seconds)
        future = self._io.submit(self.metric_source.query, rollout.candidate_variant, names, since)
        try:
            return list(future.result(timeout=self.call_timeout_seconds))
        except Unavailable as exc:
            logger.warning("metrics_unavailable", rollout_id=rollout.id, error=str(exc))
            return []

    def tick(self, rollout_id: str) -> TickResult:
        with self._lock_for(rollout_id):
            stored = self.store.load(rollout_id)
            rollout = stored.rollout
            if rollout.is_terminal:
                self._forget(rollout_id)
                return TickResult(
                    rollout_id=rollout_id,
                    outcome="terminal",
                    status=rollout.status,
                    stage_index=rollout.current_stage_index,
                    weight_percent=rollout.last_applied_weight_percent,
                )

            now = self.clock()
            try:
                samples = self._fetch_samples(rollout, now)
            except FutureTimeout:
                timeouts = self._metric_timeouts.get(rollout_id, 0) + 1
                if timeouts <= self.max_consecutive_metric_timeouts:
                    self._metric_timeouts[rollout_id] = timeouts
                    logger.warning(
                        "metrics_query_timeout",
                        rollout_id=rollout_id,
                        timeout=self.call_timeout_seconds,
                        consecutive=timeouts,
                    )
                    return TickResult(
                        rollout_id=rollout_id,
                        outcome="timeout",
                        status=rollout.status,
                        stage_index=rollout.current_stage_index,
                        weight_percent=rollout.last_applied_weight_percent,
                        error="metric query timed out",
                    )
                # stuck backend: evaluate with no samples so thresholds fail closed
                logger.error("metrics_timeout_fail_closed", rollout_id=rollout_id, consecutive=timeouts)
                samples = []
            self._metric_timeouts.pop(rollout_id, None)

            history_mark = len(rollout.history)
            decision = self.state_machine.evaluate(rollout, samples, now)
            outcome = decision.kind.value
            error: str | None = None

            if decision.kind is DecisionKind.ADVANCE:
                try:
                    self.router.set_weights(rollout.weights(int(decision.weight_percent or 0)))
                except RouterError as exc:
                    error = str(exc)
                    outcome = "advance_failed"
                    self.state_machine.record_advance_failure(rollout, decision, self.clock(), error)
                    logger.error(
                        "router_apply_failed",
                        rollout_id=rollout_id,
                        stage_index=decision.stage_index,
                        weight=decision.weight_percent,
                        error=error,
                    )
                else:
                    self.state_machine.commit_advance(rollout, decision, self.clock())
            elif decision.kind is DecisionKind.ROLLBACK:
                result = self.rollback_executor.execute(rollout, self.clock())
                if not result.applied:
                    error = result.error
                    outcome = "rollback_failed"

            # every mutation appends history; HOLD ticks skip the write
            if len(rollout.history) > history_mark:
                self.store.save(rollout, expected_version=stored.version)
                self._emit(rollout, rollout.history[history_mark:])
            if rollout.is_terminal:
                self._forget(rollout_id)

            logger.info(
                "tick_decision",
                rollout_id=rollout_id,
                decision=decision.kind.value,
                outcome=outcome,
                status=rollout.status.value,
                stage_index=rollout.current_stage_index,
                weight=rollout.last_applied_weight_percent,
                reason=decision.reason,
            )
            return TickResult(
                rollout_id=rollout_id,
                outcome=outcome,
                status=rollout.status,
                decision=decision,
                stage_index=rollout.current_stage_index,
                weight_percent=rollout.last_applied_weight_percent,
                error=error,
            )

    def _emit(self, rollout: Rollout, records: list[TransitionRecord]) -> None:
        for record in records:
            event = RolloutEvent(
                rollout_id=rollout.id,
                from_status=record.from_status,
                to_status=record.to_status,
                stage_index=record.stage_index,
                reason=record.reason,
                timestamp=record.at,
            )
            try:
                self.events.emit(event)
            except Exception as exc:
                logger.warning("event_emit_failed", rollout_id=rollout.id, error=str(exc))

    def run(self, rollout_id: str, *, max_ticks: int | None = None) -> Rollout:
        """Tick on a fixed cadence until the rollout is terminal (or ``max_ticks`` ran)."""
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            result = self.tick(rollout_id)
            ticks += 1
            if result.status.is_terminal:
                break
            self.sleep(self.tick_interval_seconds)
        return self.get(rollout_id)

    def run_many(self, rollout_ids: list[str], *, max_ticks: int | None = None) -> dict[str, Rollout]:
        """Drive several rollouts in parallel; each one stays serialized behind its own lock."""
        if not rollout_ids:
            return {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(rollout_ids)), thread_name_prefix="delivery-tick") as pool:
            futures = {rid: pool.submit(self.run, rid, max_ticks=max_ticks) for rid in rollout_ids}
            return {rid: fut.result() for rid, fut in futures.items()}

    def run_active(self, *, max_ticks: int | None = None) -> dict[str, Rollout]:
        return self.run_many(self.store.list_active_ids(), max_ticks=max_ticks)
