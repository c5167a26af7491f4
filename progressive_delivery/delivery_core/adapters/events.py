from __future__ import annotations

import threading
from typing import Iterable, Protocol

import requests

from delivery_core.log import get_logger
from delivery_core.types import RolloutEvent


logger = get_logger(__name__)


class EventSink(Protocol):
    def emit(self, event: RolloutEvent) -> None: ...


class LogEventSink:
    def emit(self, event: RolloutEvent) -> None:
        logger.info("rollout_transition", **event.to_dict())


class MemoryEventSink:
    def __init__(self) -> None:
        self.events: list[RolloutEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: RolloutEvent) -> None:
        with self._lock:
            self.events.append(event)


class WebhookEventSink:
    """Best-effort JSON POST per event. Delivery errors are logged, never raised."""

    def __init__(self, url: str, *, timeout_seconds: float = 5.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout_seconds = float(timeout_seconds)
        self.session = session or requests.Session()

    def emit(self, event: RolloutEvent) -> None:
        try:
            self.session.post(self.url, json=event.to_dict(), timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            logger.warning("webhook_error", url=self.url, rollout_id=event.rollout_id, error=str(exc))


class FanoutEventSink:
    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, event: RolloutEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as exc:
                logger.warning("event_emit_failed", sink=type(sink).__name__, rollout_id=event.rollout_id, error=str(exc))
