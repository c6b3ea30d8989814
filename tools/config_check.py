"""Configuration loading and validation for hedgekeeper.

Usage:
    python -m tools.config_check                        # validate config/app.yaml
    python -m tools.config_check --file config/prod.yaml
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.clock import QuietWindow, parse_hhmm
from core.exceptions import ConfigurationError
from strategy.rebalance import RebalancePolicy

DEFAULT_CONFIG_PATH = "config/app.yaml"

# ---------------------------------------------------------------------------
# Pydantic models describing config/app.yaml. Unknown keys are tolerated so
# that deployments can carry extra annotations; every field has the
# reference default so an empty file is a valid DRY_RUN config.
# ---------------------------------------------------------------------------


class AppMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(default="hedgekeeper", min_length=1)
    mode: Literal["DRY_RUN", "PAPER", "LIVE"] = "DRY_RUN"
    namespace: str = Field(default="hedgekeeper", min_length=1, description="Key prefix in the shared store")


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    backend: Literal["memory", "redis"] = "memory"
    url: Optional[str] = None
    socket_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("url")
    @classmethod
    def _unset_placeholder(cls, v: Optional[str]) -> Optional[str]:
        # ${VAR} left unexpanded means the variable is not set
        if not v or "${" in v:
            return None
        return v

    @model_validator(mode="after")
    def _require_url_for_redis(self) -> "StoreConfig":
        if self.backend == "redis" and not self.url:
            raise ValueError("store.url is required when backend is redis")
        return self


class LockConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(default="hedge-bot", min_length=1)
    ttl_seconds: float = Field(default=30.0, gt=0, description="Lease length")
    renewal_seconds: float = Field(default=10.0, gt=0, description="Renewal period, shorter than the lease")

    @model_validator(mode="after")
    def _renewal_inside_lease(self) -> "LockConfig":
        if self.renewal_seconds >= self.ttl_seconds:
            raise ValueError(
                f"lock.renewal_seconds ({self.renewal_seconds}) must be < lock.ttl_seconds ({self.ttl_seconds})"
            )
        return self


class LoopConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    interval_seconds: float = Field(default=10.0, gt=0)
    failure_threshold: int = Field(default=5, ge=1, description="Consecutive failures before ERROR_RECOVERY")
    trading_hours_only: bool = False
    dispatch_on_degraded_inputs: bool = False
    shutdown_timeout_seconds: float = Field(default=30.0, gt=0)


class BackoffConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    initial_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=60.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.25, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _max_not_below_initial(self) -> "BackoffConfig":
        if self.max_delay < self.initial_delay:
            raise ValueError("backoff.max_delay must be >= backoff.initial_delay")
        return self


class StrategyConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    drift_threshold: float = Field(default=0.05, gt=0, description="Net delta / leg A delta that triggers")
    max_out_of_range_seconds: float = Field(default=3600.0, ge=0)
    max_estimated_cost: float = Field(default=0.05, ge=0)
    quiet_hours_start: Optional[str] = "14:30"
    quiet_hours_end: Optional[str] = "15:15"

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def _valid_hhmm(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        parse_hhmm(v)
        return v

    @model_validator(mode="after")
    def _quiet_window_bounds(self) -> "StrategyConfig":
        if (self.quiet_hours_start is None) != (self.quiet_hours_end is None):
            raise ValueError("strategy.quiet_hours_start and quiet_hours_end must both be set or both be null")
        return self

    def quiet_window(self) -> Optional[QuietWindow]:
        if self.quiet_hours_start is None or self.quiet_hours_end is None:
            return None
        return QuietWindow.from_strings(self.quiet_hours_start, self.quiet_hours_end)

    def to_policy(self) -> RebalancePolicy:
        return RebalancePolicy(
            drift_threshold=self.drift_threshold,
            max_out_of_range_seconds=self.max_out_of_range_seconds,
            max_estimated_cost=self.max_estimated_cost,
            quiet_window=self.quiet_window(),
        )


class PriceConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    max_confidence_pct: float = Field(default=0.01, gt=0, description="Widest confidence as a fraction of price")
    max_age_seconds: float = Field(default=60.0, gt=0)


class WatchdogConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    max_heartbeat_age_seconds: float = Field(default=120.0, gt=0)
    check_interval_seconds: float = Field(default=30.0, gt=0)
    failure_alert_threshold: int = Field(default=5, ge=1, description="At most loop.failure_threshold")


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: str = "logs/hedgekeeper.log"


class AlertsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = True
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: Literal["info", "warning", "critical"] = "info"
    dry_run: Optional[bool] = None
    timeout_seconds: float = Field(default=5.0, gt=0)
    rate_limit_seconds: float = Field(default=300.0, ge=0)
    escalation_seconds: float = Field(default=900.0, gt=0)


class MonitoringConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, ge=0)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


class CollaboratorsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    factory: Optional[str] = Field(default=None, description="module:callable returning Collaborators")
    paper: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("factory")
    @classmethod
    def _factory_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        module, _, attr = v.partition(":")
        if not module or not attr:
            raise ValueError(f"collaborators.factory must look like 'package.module:callable', got {v!r}")
        return v


class BotConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    app: AppMetadata = Field(default_factory=AppMetadata)
    store: StoreConfig = Field(default_factory=StoreConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    price: PriceConfig = Field(default_factory=PriceConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    collaborators: CollaboratorsConfig = Field(default_factory=CollaboratorsConfig)

    @model_validator(mode="after")
    def _live_needs_factory(self) -> "BotConfig":
        if self.app.mode == "LIVE" and not self.collaborators.factory:
            raise ValueError("LIVE mode requires collaborators.factory")
        return self

    @model_validator(mode="after")
    def _watchdog_threshold_reachable(self) -> "BotConfig":
        # The loop parks in ERROR_RECOVERY at loop.failure_threshold and stops counting
        if self.watchdog.failure_alert_threshold > self.loop.failure_threshold:
            raise ValueError(
                f"watchdog.failure_alert_threshold ({self.watchdog.failure_alert_threshold}) "
                f"must not exceed loop.failure_threshold ({self.loop.failure_threshold})"
            )
        return self

    @property
    def dry_run(self) -> bool:
        return self.app.mode != "LIVE"


def _expand_env(value: Any) -> Any:
    """Expand ${VAR} references in every string of a parsed YAML tree."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_yaml(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise TypeError(f"Expected mapping at root of {path}, got {type(data).__name__}")
    return data


def _format_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    ]


def parse_config(data: Dict[str, Any]) -> BotConfig:
    """Validate an already-parsed mapping. Raises ConfigurationError."""
    try:
        return BotConfig.model_validate(_expand_env(data))
    except ValidationError as exc:
        errors = _format_errors(exc)
        raise ConfigurationError(f"Invalid configuration: {len(errors)} error(s)", errors) from exc


def load_config(path: str | Path = DEFAULT_CONFIG_PATH) -> BotConfig:
    """
    Load and validate a YAML config file.

    Raises:
        ConfigurationError: file missing, malformed YAML or failed validation
    """
    path = Path(path)
    try:
        data = load_yaml(path)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Malformed YAML in {path}: {exc}") from exc
    except TypeError as exc:
        raise ConfigurationError(str(exc)) from exc
    return parse_config(data)


def validate_file(path: Path) -> list[str]:
    try:
        load_config(path)
    except ConfigurationError as exc:
        return [f"✖ {path}: {exc}"] + [f"  - {line}" for line in exc.errors]
    return [f"✓ {path} valid"]


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate hedgekeeper configuration files")
    parser.add_argument("--file", dest="files", action="append", help="Config file to validate (repeatable)")
    args = parser.parse_args(list(argv) if argv is not None else None)

    targets = args.files or [DEFAULT_CONFIG_PATH]

    exit_code = 0
    for target in targets:
        messages = validate_file(Path(target))
        for line in messages:
            print(line)
        if messages[0].startswith("✖"):
            exit_code = 1

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
