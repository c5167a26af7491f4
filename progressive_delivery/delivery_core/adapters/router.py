from __future__ import annotations

import itertools
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from delivery_core.errors import RouterError
from delivery_core.log import get_logger


logger = get_logger(__name__)


class TrafficRouter(Protocol):
    def set_weights(self, weights: dict[str, int]) -> None:
        """Apply the full weight map atomically; raise RouterError on failure."""


def validate_weights(weights: dict[str, int]) -> dict[str, int]:
    if len(weights) < 2:
        raise ValueError(f"Weight map must name every variant, got {weights}")
    clean: dict[str, int] = {}
    for variant, pct in weights.items():
        value = int(pct)
        if not 0 <= value <= 100:
            raise ValueError(f"Weight for {variant} outside [0,100]: {pct}")
        clean[str(variant)] = value
    if sum(clean.values()) != 100:
        raise ValueError(f"Weights must sum to 100, got {sum(clean.values())}: {weights}")
    return clean


class InMemoryTrafficRouter:
    """Router double: records every applied map, fails on demand."""

    def __init__(self, initial: dict[str, int] | None = None) -> None:
        self.current: dict[str, int] = dict(initial or {})
        self.calls: list[dict[str, int]] = []
        self.fail_next = 0
        self.fail_always = False

    def set_weights(self, weights: dict[str, int]) -> None:
        clean = validate_weights(weights)
        self.calls.append(clean)
        if self.fail_always or self.fail_next > 0:
            if self.fail_next > 0:
                self.fail_next -= 1
            raise RouterError(f"router rejected {clean}")
        self.current = clean


class HttpTrafficRouter:
    """PUTs the complete weight map to a routing control endpoint.

    Payload: ``{"weights": {"blue": 90, "green": 10}, "applied_at": "..."}``;
    any non-2xx answer is a RouterError.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_seconds: float = 5.0,
        headers: dict[str, str] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout_seconds = float(timeout_seconds)
        self.headers = dict(headers or {})
        self.session = session or requests.Session()

    def set_weights(self, weights: dict[str, int]) -> None:
        clean = validate_weights(weights)
        payload: dict[str, Any] = {"weights": clean, "applied_at": datetime.now(timezone.utc).isoformat()}
        try:
            resp = self.session.put(self.endpoint, json=payload, headers=self.headers, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise RouterError(f"router unreachable: {exc}") from exc
        if resp.status_code >= 300:
            raise RouterError(f"router answered {resp.status_code}: {resp.text[:200]}")


class RetryingTrafficRouter:
    """Wraps a router with a per-call timeout and exponential backoff.

    Retries are bounded per ``set_weights`` call; callers decide whether to try
    again on a later tick.

    A timed-out attempt keeps running in the executor, so applies are fenced:
    every map gets a sequence number per variant pair, the inner router is
    called one map at a time, and a map superseded before it reached the
    router is dropped. A late advance therefore cannot land after a rollback.
    """

    def __init__(
        self,
        inner: TrafficRouter,
        *,
        executor: ThreadPoolExecutor,
        timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.inner = inner
        self.executor = executor
        self.timeout_seconds = float(timeout_seconds)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_seconds = float(backoff_base_seconds)
        self.backoff_max_seconds = float(backoff_max_seconds)
        self.sleep = sleep
        self._apply_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._latest: dict[frozenset[str], int] = {}

    def _register(self, weights: dict[str, int]) -> tuple[frozenset[str], int]:
        key = frozenset(weights)
        with self._state_lock:
            seq = next(self._sequence)
            self._latest[key] = seq
        return key, seq

    def _apply(self, key: frozenset[str], seq: int, weights: dict[str, int]) -> None:
        with self._apply_lock:
            with self._state_lock:
                latest = self._latest.get(key, seq)
            if latest > seq:
                logger.info("router_apply_superseded", seq=seq, latest=latest, weights=weights)
                raise RouterError(f"weight map #{seq} superseded by #{latest}")
            self.inner.set_weights(weights)

    def _attempt(self, weights: dict[str, int]) -> None:
        key, seq = self._register(weights)
        future = self.executor.submit(self._apply, key, seq, weights)
        try:
            future.result(timeout=self.timeout_seconds)
        except FutureTimeout as exc:
            future.cancel()
            raise RouterError(f"router call timed out after {self.timeout_seconds}s") from exc

    def _before_sleep(self, retry_state: Any) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "router_retry",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            error=str(exc),
        )

    def set_weights(self, weights: dict[str, int]) -> None:
        clean = validate_weights(weights)
        kwargs: dict[str, Any] = {}
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception_type(RouterError),
            before_sleep=self._before_sleep,
            reraise=True,
            **kwargs,
        )
        for attempt in retrying:
            with attempt:
                self._attempt(clean)
