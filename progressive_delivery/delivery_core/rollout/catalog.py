from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable

from delivery_core.errors import InvalidCatalog, StageOutOfRange
from delivery_core.types import Operator


@dataclass(slots=True, frozen=True)
class Threshold:
    metric: str
    operator: Operator
    limit: float

    def to_dict(self) -> dict[str, Any]:
        return {"metric": self.metric, "operator": self.operator.value, "limit": self.limit}

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "Threshold":
        return cls(metric=str(row["metric"]), operator=Operator(str(row["operator"])), limit=float(row["limit"]))


@dataclass(slots=True, frozen=True)
class Stage:
    index: int
    target_weight_percent: int
    min_soak_seconds: float
    thresholds: tuple[Threshold, ...] = field(default_factory=tuple)

    @property
    def metric_names(self) -> list[str]:
        return sorted({t.metric for t in self.thresholds})

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "target_weight_percent": self.target_weight_percent,
            "min_soak_seconds": self.min_soak_seconds,
            "thresholds": [t.to_dict() for t in self.thresholds],
        }


class StageCatalog:
    """Ordered rollout plan. Built once, never mutated; validate before use."""

    __slots__ = ("_stages",)

    def __init__(self, stages: Iterable[Stage]) -> None:
        self._stages: tuple[Stage, ...] = tuple(stages)

    @classmethod
    def from_rows(cls, rows: Iterable[dict[str, Any]]) -> "StageCatalog":
        stages: list[Stage] = []
        for idx, row in enumerate(rows):
            raw_thresholds = row.get("thresholds") or []
            try:
                if isinstance(raw_thresholds, dict):
                    # {"error_rate": ["<=", 0.01]} shorthand
                    raw_thresholds = [
                        {"metric": name, "operator": rule[0], "limit": rule[1]} for name, rule in raw_thresholds.items()
                    ]
                thresholds = tuple(Threshold.from_dict(t) for t in raw_thresholds)
                stage = Stage(
                    index=int(row.get("index", idx)),
                    target_weight_percent=int(row["target_weight_percent"]),
                    min_soak_seconds=float(row.get("min_soak_seconds", 0)),
                    thresholds=thresholds,
                )
            except (IndexError, KeyError, TypeError, ValueError) as exc:
                raise InvalidCatalog([f"stage {idx}: {exc}"]) from exc
            stages.append(stage)
        return cls(stages)

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self):
        return iter(self._stages)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, StageCatalog) and self._stages == other._stages

    def __hash__(self) -> int:
        return hash(self._stages)

    def __repr__(self) -> str:
        weights = ",".join(str(s.target_weight_percent) for s in self._stages)
        return f"StageCatalog([{weights}])"

    def validate(self) -> None:
        problems: list[str] = []
        if not self._stages:
            raise InvalidCatalog(["catalog has no stages"])
        prev_weight = 0
        for pos, stage in enumerate(self._stages):
            if stage.index != pos:
                problems.append(f"stage at position {pos} has index {stage.index}")
            if not 0 <= stage.target_weight_percent <= 100:
                problems.append(f"stage {pos} weight {stage.target_weight_percent} outside [0,100]")
            if stage.target_weight_percent < prev_weight:
                problems.append(f"stage {pos} weight {stage.target_weight_percent} decreases from {prev_weight}")
            if not math.isfinite(stage.min_soak_seconds):
                problems.append(f"stage {pos} min_soak_seconds {stage.min_soak_seconds} is not finite")
            elif stage.min_soak_seconds < 0:
                problems.append(f"stage {pos} min_soak_seconds {stage.min_soak_seconds} is negative")
            for threshold in stage.thresholds:
                if not math.isfinite(threshold.limit):
                    problems.append(f"stage {pos} threshold {threshold.metric} limit {threshold.limit} is not finite")
            prev_weight = max(prev_weight, stage.target_weight_percent)
        if self._stages[-1].target_weight_percent != 100:
            problems.append(f"final stage weight is {self._stages[-1].target_weight_percent}, expected 100")
        if problems:
            raise InvalidCatalog(problems)

    def stage_at(self, index: int) -> Stage:
        if index < 0 or index >= len(self._stages):
            raise StageOutOfRange(f"stage index {index} out of range (0..{len(self._stages) - 1})")
        return self._stages[index]

    def is_last_stage(self, index: int) -> bool:
        return index == len(self._stages) - 1

    def min_positive_soak_seconds(self) -> float | None:
        soaks = [s.min_soak_seconds for s in self._stages if s.min_soak_seconds > 0]
        return min(soaks) if soaks else None

    def to_rows(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._stages]
