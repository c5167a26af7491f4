from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
import requests

from delivery_core.adapters import (
    FanoutEventSink,
    HttpTrafficRouter,
    InMemoryTrafficRouter,
    MemoryEventSink,
    PrometheusMetricSource,
    RetryingTrafficRouter,
    StaticMetricSource,
    WebhookEventSink,
    validate_weights,
)
from delivery_core.errors import RouterError, Unavailable
from delivery_core.types import RolloutEvent, RolloutStatus

from conftest import T0


T0_EPOCH = 1767225600.0


class _FakeResponse:
    def __init__(self, status_code: int = 200, payload: object = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> object:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class _FakeSession:
    def __init__(self, response: _FakeResponse | None = None, error: Exception | None = None) -> None:
        self.response = response or _FakeResponse()
        self.error = error
        self.calls: list[tuple[str, str, dict]] = []

    def _send(self, method: str, url: str, **kwargs) -> _FakeResponse:
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def get(self, url: str, **kwargs) -> _FakeResponse:
        return self._send("GET", url, **kwargs)

    def put(self, url: str, **kwargs) -> _FakeResponse:
        return self._send("PUT", url, **kwargs)

    def post(self, url: str, **kwargs) -> _FakeResponse:
        return self._send("POST", url, **kwargs)


def _event() -> RolloutEvent:
    return RolloutEvent(
        rollout_id="rlt_test",
        from_status=RolloutStatus.HOLDING,
        to_status=RolloutStatus.ROLLING_BACK,
        stage_index=0,
        reason="thresholds failed: error_rate",
        timestamp=T0,
    )


@pytest.mark.parametrize(
    "weights",
    [{"green": 100}, {"blue": 90, "green": 20}, {"blue": 110, "green": -10}],
)
def test_validate_weights_rejects_bad_maps(weights) -> None:
    with pytest.raises(ValueError):
        validate_weights(weights)


def test_http_router_puts_full_weight_map() -> None:
    session = _FakeSession(_FakeResponse(204))
    router = HttpTrafficRouter("http://mesh/weights", headers={"Authorization": "Bearer t"}, session=session)
    router.set_weights({"blue": 90, "green": 10})
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("PUT", "http://mesh/weights")
    assert kwargs["json"]["weights"] == {"blue": 90, "green": 10}
    assert kwargs["headers"] == {"Authorization": "Bearer t"}


@pytest.mark.parametrize(
    "session",
    [
        _FakeSession(_FakeResponse(503, text="unavailable")),
        _FakeSession(error=requests.ConnectionError("refused")),
    ],
)
def test_http_router_errors_become_router_error(session) -> None:
    with pytest.raises(RouterError):
        HttpTrafficRouter("http://mesh/weights", session=session).set_weights({"blue": 100, "green": 0})


def test_prometheus_source_parses_vector() -> None:
    payload = {
        "status": "success",
        "data": {"resultType": "vector", "result": [{"metric": {}, "value": [T0_EPOCH, "0.004"]}]},
    }
    session = _FakeSession(_FakeResponse(200, payload))
    source = PrometheusMetricSource("http://prometheus:9090/", session=session)
    samples = source.query("green", ["error_rate"], T0 - timedelta(seconds=60))
    assert len(samples) == 1
    assert samples[0].value == pytest.approx(0.004)
    assert samples[0].observed_at == T0
    assert samples[0].variant == "green"
    _, url, kwargs = session.calls[0]
    assert url == "http://prometheus:9090/api/v1/query"
    assert 'variant="green"' in kwargs["params"]["query"]


def test_prometheus_source_skips_nan_old_and_unknown() -> None:
    payload = {
        "status": "success",
        "data": {
            "result": [
                {"value": [T0_EPOCH, "NaN"]},
                {"value": [T0_EPOCH - 600, "0.001"]},
            ]
        },
    }
    session = _FakeSession(_FakeResponse(200, payload))
    source = PrometheusMetricSource("http://prometheus:9090", session=session)
    assert source.query("green", ["error_rate", "not_a_metric"], T0 - timedelta(seconds=60)) == []
    assert len(session.calls) == 1


@pytest.mark.parametrize(
    "session",
    [
        _FakeSession(error=requests.Timeout("slow")),
        _FakeSession(_FakeResponse(500)),
        _FakeSession(_FakeResponse(200, {"status": "error", "error": "bad query"})),
        _FakeSession(_FakeResponse(200, ValueError("not json"))),
    ],
)
def test_prometheus_source_failures_are_unavailable(session) -> None:
    with pytest.raises(Unavailable):
        PrometheusMetricSource("http://prometheus:9090", session=session).query("green", ["error_rate"], T0)


def test_static_source_filters_by_variant_and_time() -> None:
    source = StaticMetricSource()
    source.record("error_rate", "green", 0.1, T0 - timedelta(seconds=120))
    source.record("error_rate", "green", 0.2, T0)
    source.record("error_rate", "blue", 0.3, T0)
    rows = source.query("green", ["error_rate"], T0 - timedelta(seconds=60))
    assert [r.value for r in rows] == [0.2]
    source.unavailable = True
    with pytest.raises(Unavailable):
        source.query("green", ["error_rate"], T0)


@pytest.fixture
def io_pool():
    pool = ThreadPoolExecutor(max_workers=4)
    yield pool
    pool.shutdown(wait=False, cancel_futures=True)


def test_retrying_router_recovers_within_attempts(io_pool) -> None:
    inner = InMemoryTrafficRouter()
    inner.fail_next = 2
    sleeps: list[float] = []
    router = RetryingTrafficRouter(inner, executor=io_pool, max_attempts=3, backoff_base_seconds=0.5, sleep=sleeps.append)
    router.set_weights({"blue": 50, "green": 50})
    assert len(inner.calls) == 3
    assert inner.current == {"blue": 50, "green": 50}
    assert len(sleeps) == 2


def test_retrying_router_gives_up(io_pool) -> None:
    inner = InMemoryTrafficRouter()
    inner.fail_next = 5
    router = RetryingTrafficRouter(inner, executor=io_pool, max_attempts=3, sleep=lambda _seconds: None)
    with pytest.raises(RouterError):
        router.set_weights({"blue": 50, "green": 50})
    assert len(inner.calls) == 3


class _SlowRouter:
    def __init__(self) -> None:
        self.release = threading.Event()

    def set_weights(self, weights: dict[str, int]) -> None:
        self.release.wait(5)


def test_retrying_router_times_out_slow_calls(io_pool) -> None:
    inner = _SlowRouter()
    router = RetryingTrafficRouter(inner, executor=io_pool, timeout_seconds=0.05, max_attempts=1)
    started = time.monotonic()
    try:
        with pytest.raises(RouterError, match="timed out"):
            router.set_weights({"blue": 100, "green": 0})
    finally:
        inner.release.set()
    assert time.monotonic() - started < 2


def test_webhook_sink_swallows_delivery_errors() -> None:
    session = _FakeSession(error=requests.ConnectionError("refused"))
    WebhookEventSink("http://hooks/rollouts", session=session).emit(_event())
    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert kwargs["json"]["to_status"] == "rolling_back"


class _BrokenSink:
    def emit(self, event: RolloutEvent) -> None:
        raise RuntimeError("boom")


def test_fanout_sink_isolates_failures() -> None:
    memory = MemoryEventSink()
    FanoutEventSink([_BrokenSink(), memory]).emit(_event())
    assert len(memory.events) == 1


class _GateRouter(InMemoryTrafficRouter):
    def __init__(self) -> None:
        super().__init__({"blue": 100, "green": 0})
        self.gate = threading.Event()

    def set_weights(self, weights: dict[str, int]) -> None:
        if weights["green"] == 100:
            self.gate.wait(5)
        super().set_weights(weights)


def test_retrying_router_drops_superseded_maps() -> None:
    pool = ThreadPoolExecutor(max_workers=4)
    inner = _GateRouter()
    router = RetryingTrafficRouter(inner, executor=pool, timeout_seconds=0.05, max_attempts=1)
    try:
        # first apply is stuck inside the router, second is queued behind it
        for weights in ({"blue": 0, "green": 100}, {"blue": 0, "green": 100}, {"blue": 100, "green": 0}):
            with pytest.raises(RouterError, match="timed out"):
                router.set_weights(weights)
    finally:
        inner.gate.set()
        pool.shutdown(wait=True)
    assert inner.calls == [{"blue": 0, "green": 100}, {"blue": 100, "green": 0}]
    assert inner.current == {"blue": 100, "green": 0}
