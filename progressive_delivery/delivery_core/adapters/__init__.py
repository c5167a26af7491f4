from .events import EventSink, FanoutEventSink, LogEventSink, MemoryEventSink, WebhookEventSink
from .metrics import MetricSource, PrometheusMetricSource, StaticMetricSource
from .router import HttpTrafficRouter, InMemoryTrafficRouter, RetryingTrafficRouter, TrafficRouter, validate_weights

__all__ = [
    "EventSink",
    "FanoutEventSink",
    "HttpTrafficRouter",
    "InMemoryTrafficRouter",
    "LogEventSink",
    "MemoryEventSink",
    "MetricSource",
    "PrometheusMetricSource",
    "RetryingTrafficRouter",
    "StaticMetricSource",
    "TrafficRouter",
    "WebhookEventSink",
    "validate_weights",
]
