from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

import requests

from delivery_core.errors import Unavailable
from delivery_core.types import MetricSample


DEFAULT_QUERY_TEMPLATES: dict[str, str] = {
    "error_rate": 'sum(rate(http_requests_total{{variant="{variant}",code=~"5.."}}[1m])) / sum(rate(http_requests_total{{variant="{variant}"}}[1m]))',
    "latency_p99_ms": 'histogram_quantile(0.99, sum(rate(http_request_duration_seconds_bucket{{variant="{variant}"}}[1m])) by (le)) * 1000',
    "cpu_utilization": 'avg(rate(container_cpu_usage_seconds_total{{variant="{variant}"}}[1m]))',
    "throughput_rps": 'sum(rate(http_requests_total{{variant="{variant}"}}[1m]))',
}


class MetricSource(Protocol):
    def query(self, variant: str, metric_names: list[str], since: datetime) -> list[MetricSample]:
        """Samples for ``variant`` observed at or after ``since``; raise Unavailable when unreachable."""


class StaticMetricSource:
    """In-memory metric store fed by tests and simulations."""

    def __init__(self, samples: Iterable[MetricSample] | None = None) -> None:
        self.samples: list[MetricSample] = list(samples or [])
        self.unavailable = False
        self.queries: list[tuple[str, tuple[str, ...], datetime]] = []

    def record(self, metric_name: str, variant: str, value: float, observed_at: datetime) -> MetricSample:
        sample = MetricSample(metric_name=metric_name, variant=variant, value=float(value), observed_at=observed_at)
        self.samples.append(sample)
        return sample

    def query(self, variant: str, metric_names: list[str], since: datetime) -> list[MetricSample]:
        self.queries.append((variant, tuple(metric_names), since))
        if self.unavailable:
            raise Unavailable("static metric source marked unavailable")
        wanted = set(metric_names)
        return [s for s in self.samples if s.variant == variant and s.metric_name in wanted and s.observed_at >= since]


class PrometheusMetricSource:
    """Instant queries against a Prometheus-compatible HTTP API.

    Each metric name maps to a PromQL template with a ``{variant}`` placeholder.
    An empty result vector yields no sample (the gate then fails closed).
    """

    def __init__(
        self,
        base_url: str,
        *,
        query_templates: dict[str, str] | None = None,
        timeout_seconds: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.query_templates = {**DEFAULT_QUERY_TEMPLATES, **(query_templates or {})}
        self.timeout_seconds = float(timeout_seconds)
        self.session = session or requests.Session()

    def _instant(self, promql: str) -> list[dict[str, Any]]:
        try:
            resp = self.session.get(
                f"{self.base_url}/api/v1/query",
                params={"query": promql},
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise Unavailable(f"metrics backend error: {exc}") from exc
        if not isinstance(data, dict) or data.get("status") != "success":
            raise Unavailable(f"metrics backend returned status {data.get('status') if isinstance(data, dict) else data!r}")
        result = (data.get("data") or {}).get("result")
        return result if isinstance(result, list) else []

    def query(self, variant: str, metric_names: list[str], since: datetime) -> list[MetricSample]:
        samples: list[MetricSample] = []
        for name in metric_names:
            template = self.query_templates.get(name)
            if template is None:
                continue
            for row in self._instant(template.format(variant=variant)):
                value = row.get("value") if isinstance(row, dict) else None
                if not isinstance(value, (list, tuple)) or len(value) != 2:
                    continue
                try:
                    observed_at = datetime.fromtimestamp(float(value[0]), tz=timezone.utc)
                    number = float(value[1])
                except (TypeError, ValueError):
                    continue
                if number != number:  # NaN from 0/0 ratios
                    continue
                if observed_at >= since:
                    samples.append(MetricSample(metric_name=name, variant=variant, value=number, observed_at=observed_at))
        return samples
