from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable

from delivery_core.rollout.catalog import Stage
from delivery_core.types import CheckResult, MetricSample


DEFAULT_FRESHNESS_WINDOW_SECONDS = 60.0


def latest_samples(
    samples: Iterable[MetricSample],
    *,
    variant: str,
    now: datetime,
    freshness_window_seconds: float,
) -> dict[str, MetricSample]:
    """Newest sample per metric for ``variant`` observed inside the window."""
    oldest = now - timedelta(seconds=freshness_window_seconds)
    latest: dict[str, MetricSample] = {}
    for sample in samples:
        if sample.variant != variant:
            continue
        if sample.observed_at < oldest:
            continue
        current = latest.get(sample.metric_name)
        if current is None or sample.observed_at > current.observed_at:
            latest[sample.metric_name] = sample
    return latest


class ThresholdEvaluator:
    def __init__(self, *, freshness_window_seconds: float = DEFAULT_FRESHNESS_WINDOW_SECONDS) -> None:
        self.freshness_window_seconds = float(freshness_window_seconds)

    def evaluate(self, stage: Stage, samples: Iterable[MetricSample], *, variant: str, now: datetime) -> CheckResult:
        fresh = latest_samples(samples, variant=variant, now=now, freshness_window_seconds=self.freshness_window_seconds)
        checks: list[dict[str, Any]] = []

        def check(check_id: str, ok: bool, reason: str, **details: Any) -> None:
            checks.append({"id": check_id, "ok": bool(ok), "reason": reason, "details": details})

        for threshold in stage.thresholds:
            sample = fresh.get(threshold.metric)
            if sample is None:
                # fail-closed
                check(
                    threshold.metric,
                    False,
                    "no fresh sample",
                    operator=threshold.operator.value,
                    limit=threshold.limit,
                    window_seconds=self.freshness_window_seconds,
                )
                continue
            check(
                threshold.metric,
                threshold.operator.holds(sample.value, threshold.limit),
                f"{sample.value} {threshold.operator.value} {threshold.limit}",
                value=sample.value,
                operator=threshold.operator.value,
                limit=threshold.limit,
                observed_at=sample.observed_at.isoformat(),
            )

        failed: list[str] = []
        for row in checks:
            if not row["ok"] and row["id"] not in failed:
                failed.append(row["id"])
        return CheckResult(ok=not failed, failed_checks=failed, checks=checks)
