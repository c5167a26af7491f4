from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from delivery_core.rollout.catalog import StageCatalog


OperatorLiteral = Literal["<=", "<", ">=", ">"]


class ControllerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tick_interval_seconds: float = Field(default=10.0, gt=0)
    freshness_window_seconds: float = Field(default=60.0, gt=0)
    call_timeout_seconds: float = Field(default=5.0, gt=0)
    max_consecutive_metric_timeouts: int = Field(default=3, ge=1, le=100)
    max_workers: int = Field(default=8, ge=1, le=64)


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=20)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=8.0, ge=0)
    advance_budget_seconds: float | None = Field(default=None, gt=0)


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: Literal["memory", "sqlite"] = "memory"
    path: str = "user_data/rollouts.sqlite3"


class MetricsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: Literal["static", "prometheus"] = "static"
    base_url: str | None = None
    query_templates: dict[str, str] = Field(default_factory=dict)


class RouterConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: Literal["memory", "http"] = "memory"
    endpoint: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)


class NotificationsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_events: bool = True
    webhook_enabled: bool = False
    webhook_url: str | None = None
    timeout_seconds: float = Field(default=5.0, gt=0)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_format: bool = True
    log_file: str | None = None


class ThresholdConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    metric: str
    operator: OperatorLiteral
    limit: float


class StageConfig(BaseModel):
    # weight/soak ranges are left to StageCatalog.validate so InvalidCatalog stays the one authority
    model_config = ConfigDict(extra="forbid")

    target_weight_percent: int
    min_soak_seconds: float = 0.0
    thresholds: list[ThresholdConfig] = Field(default_factory=list)


class ControllerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    controller: ControllerSettings = Field(default_factory=ControllerSettings)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    stages: list[StageConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_guardrails(self) -> "ControllerConfig":
        if self.controller.tick_interval_seconds >= self.controller.freshness_window_seconds:
            raise ValueError("tick_interval_seconds must be < freshness_window_seconds")
        if self.retry.backoff_max_seconds < self.retry.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        if self.notifications.webhook_enabled and not self.notifications.webhook_url:
            raise ValueError("webhook_url is required when webhook_enabled")
        if self.router.backend == "http" and not self.router.endpoint:
            raise ValueError("router.endpoint is required when router.backend is http")
        if self.metrics.backend == "prometheus" and not self.metrics.base_url:
            raise ValueError("metrics.base_url is required when metrics.backend is prometheus")
        return self

    def catalog(self) -> StageCatalog:
        catalog = StageCatalog.from_rows([row.model_dump() for row in self.stages])
        catalog.validate()
        return catalog


def _expand_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, str):
        expanded = os.path.expandvars(value)
        # an unset ${VAR} is left untouched by expandvars; treat it as unset
        if expanded.startswith("${") and expanded.endswith("}"):
            return None
        return expanded
    return value


def load_config(path: str | Path) -> ControllerConfig:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    payload = _expand_env(payload)
    try:
        return ControllerConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid controller config: {exc}") from exc
