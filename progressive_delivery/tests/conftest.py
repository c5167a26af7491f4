from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from delivery_core.adapters import InMemoryTrafficRouter, MemoryEventSink, StaticMetricSource
from delivery_core.rollout import Orchestrator, Rollout, StageCatalog
from delivery_core.state_store import InMemoryRolloutStore


T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class ManualClock:
    def __init__(self, start: datetime = T0) -> None:
        self.current = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.current

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.current = self.current + timedelta(seconds=seconds)


def make_catalog(*stages: tuple[int, float, dict[str, Any] | None]) -> StageCatalog:
    rows = []
    for weight, soak, thresholds in stages:
        rows.append({"target_weight_percent": weight, "min_soak_seconds": soak, "thresholds": thresholds or []})
    return StageCatalog.from_rows(rows)


def canary_catalog() -> StageCatalog:
    return make_catalog(
        (10, 60, {"error_rate": ["<=", 0.01]}),
        (100, 120, {"error_rate": ["<=", 0.01]}),
    )


def make_rollout(catalog: StageCatalog, clock: ManualClock, rollout_id: str = "rlt_test") -> Rollout:
    return Rollout(
        id=rollout_id,
        stable_variant="blue",
        candidate_variant="green",
        catalog=catalog,
        created_at=clock(),
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def metrics() -> StaticMetricSource:
    return StaticMetricSource()


@pytest.fixture
def router() -> InMemoryTrafficRouter:
    return InMemoryTrafficRouter({"blue": 100, "green": 0})


@pytest.fixture
def events() -> MemoryEventSink:
    return MemoryEventSink()


@pytest.fixture
def store() -> InMemoryRolloutStore:
    return InMemoryRolloutStore()


@pytest.fixture
def orchestrator(store, metrics, router, events, clock):
    orch = Orchestrator(
        store=store,
        metric_source=metrics,
        router=router,
        events=events,
        tick_interval_seconds=10,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
        clock=clock,
        sleep=lambda _seconds: None,
    )
    yield orch
    orch.close()
