from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from delivery_core.adapters.events import EventSink, FanoutEventSink, LogEventSink, WebhookEventSink
from delivery_core.adapters.metrics import MetricSource, PrometheusMetricSource, StaticMetricSource
from delivery_core.adapters.router import HttpTrafficRouter, InMemoryTrafficRouter, TrafficRouter
from delivery_core.config import ControllerConfig
from delivery_core.log import configure_logging
from delivery_core.rollout.orchestrator import Orchestrator
from delivery_core.state_store import InMemoryRolloutStore, RolloutStore, SqliteRolloutStore


def build_store(cfg: ControllerConfig, *, base_dir: Path | None = None) -> RolloutStore:
    if cfg.store.backend == "sqlite":
        path = Path(cfg.store.path)
        if base_dir is not None and not path.is_absolute():
            path = base_dir / path
        return SqliteRolloutStore(path)
    return InMemoryRolloutStore()


def build_metric_source(cfg: ControllerConfig) -> MetricSource:
    if cfg.metrics.backend == "prometheus":
        return PrometheusMetricSource(
            str(cfg.metrics.base_url),
            query_templates=cfg.metrics.query_templates,
            timeout_seconds=cfg.controller.call_timeout_seconds,
        )
    return StaticMetricSource()


def build_router(cfg: ControllerConfig) -> TrafficRouter:
    if cfg.router.backend == "http":
        return HttpTrafficRouter(
            str(cfg.router.endpoint),
            timeout_seconds=cfg.controller.call_timeout_seconds,
            headers=cfg.router.headers,
        )
    return InMemoryTrafficRouter()


def build_event_sink(cfg: ControllerConfig) -> EventSink:
    sinks: list[EventSink] = []
    if cfg.notifications.log_events:
        sinks.append(LogEventSink())
    if cfg.notifications.webhook_enabled and cfg.notifications.webhook_url:
        sinks.append(WebhookEventSink(cfg.notifications.webhook_url, timeout_seconds=cfg.notifications.timeout_seconds))
    return FanoutEventSink(sinks)


def build_orchestrator(
    cfg: ControllerConfig,
    *,
    store: RolloutStore | None = None,
    metric_source: MetricSource | None = None,
    router: TrafficRouter | None = None,
    events: EventSink | None = None,
    base_dir: Path | None = None,
    clock: Callable[[], datetime] | None = None,
    sleep: Callable[[float], None] | None = None,
    setup_logging: bool = False,
) -> Orchestrator:
    if setup_logging:
        configure_logging(cfg.logging.level, cfg.logging.json_format, cfg.logging.log_file)
    return Orchestrator(
        store=store or build_store(cfg, base_dir=base_dir),
        metric_source=metric_source or build_metric_source(cfg),
        router=router or build_router(cfg),
        events=events or build_event_sink(cfg),
        tick_interval_seconds=cfg.controller.tick_interval_seconds,
        freshness_window_seconds=cfg.controller.freshness_window_seconds,
        call_timeout_seconds=cfg.controller.call_timeout_seconds,
        max_attempts=cfg.retry.max_attempts,
        backoff_base_seconds=cfg.retry.backoff_base_seconds,
        backoff_max_seconds=cfg.retry.backoff_max_seconds,
        advance_budget_seconds=cfg.retry.advance_budget_seconds,
        max_consecutive_metric_timeouts=cfg.controller.max_consecutive_metric_timeouts,
        max_workers=cfg.controller.max_workers,
        clock=clock or (lambda: datetime.now(timezone.utc)),
        sleep=sleep or time.sleep,
    )
