"""Prometheus-backed metrics hooks for the rebalance loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

# Ordinal encoding for the bot state gauge
STATE_CODES = {
    "IDLE": 0,
    "OPENING_LEG_A": 1,
    "HEDGING": 2,
    "REBALANCING": 3,
    "CLOSING_LEG_A": 4,
    "CLOSING_HEDGE": 5,
    "ERROR_RECOVERY": 6,
    "SHUTTING_DOWN": 7,
}


@dataclass
class CycleStats:
    status: str
    reason: Optional[str]
    dispatched: bool
    duration_seconds: float
    degraded_sources: List[str] = field(default_factory=list)


class MetricsRecorder:
    """
    Expose loop stats via Prometheus.

    Every recorder owns its own CollectorRegistry, so several instances can
    live in one process (tests, watchdog next to the bot). Recording calls
    are always safe; the HTTP exporter only runs when enabled and started.
    """

    def __init__(self, enabled: bool = True, port: int = 9100, prefix: str = "hedgekeeper") -> None:
        self._enabled = bool(enabled)
        self._port = int(port)
        self._started = False
        self.registry = CollectorRegistry()

        self._last_cycle_stats: Optional[CycleStats] = None
        self._last_decision_reason: Optional[str] = None

        p = prefix
        self._cycle_summary = Summary(
            f"{p}_cycle_duration_seconds",
            "Duration of a full control cycle",
            registry=self.registry,
        )
        self._cycle_counter = Counter(
            f"{p}_cycles_total",
            "Control cycles by status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._decision_counter = Counter(
            f"{p}_decisions_total",
            "Rebalance decisions by reason",
            labelnames=("reason", "blocked"),
            registry=self.registry,
        )
        self._rebalance_counter = Counter(
            f"{p}_rebalances_total",
            "Dispatched rebalance actions",
            labelnames=("reason", "status"),
            registry=self.registry,
        )
        self._degraded_counter = Counter(
            f"{p}_degraded_sources_total",
            "Exposure sources that failed and were degraded to zero",
            labelnames=("source",),
            registry=self.registry,
        )
        self._state_gauge = Gauge(
            f"{p}_state",
            "Current bot state (encoded as integer)",
            registry=self.registry,
        )
        self._delta_gauge = Gauge(
            f"{p}_net_delta",
            "Net delta exposure (leg A + leg B)",
            registry=self.registry,
        )
        self._drift_gauge = Gauge(
            f"{p}_drift_ratio",
            "Absolute net delta as a fraction of leg A exposure",
            registry=self.registry,
        )
        self._failures_gauge = Gauge(
            f"{p}_consecutive_failures",
            "Consecutive failed cycles",
            registry=self.registry,
        )
        self._lock_gauge = Gauge(
            f"{p}_lock_held",
            "Controller lock held by this instance (1=held)",
            registry=self.registry,
        )
        self._heartbeat_gauge = Gauge(
            f"{p}_heartbeat_timestamp_seconds",
            "Epoch seconds of the last heartbeat written",
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        self._cycle_summary.observe(stats.duration_seconds)
        self._cycle_counter.labels(status=stats.status).inc()
        for source in stats.degraded_sources:
            self._degraded_counter.labels(source=source).inc()
        self._last_cycle_stats = stats

    def record_decision(self, reason: str, blocked: bool, net_delta: float, drift: float) -> None:
        self._last_decision_reason = reason
        self._decision_counter.labels(reason=reason, blocked=str(bool(blocked)).lower()).inc()
        self._delta_gauge.set(net_delta)
        self._drift_gauge.set(drift)

    def record_rebalance(self, reason: str, status: str) -> None:
        self._rebalance_counter.labels(reason=reason, status=status).inc()

    def record_state(self, state_name: str, consecutive_failures: int) -> None:
        self._state_gauge.set(STATE_CODES.get(state_name, -1))
        self._failures_gauge.set(max(int(consecutive_failures), 0))

    def record_lock(self, held: bool) -> None:
        self._lock_gauge.set(1 if held else 0)

    def record_heartbeat(self, timestamp: float) -> None:
        self._heartbeat_gauge.set(timestamp)

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def last_decision_reason(self) -> Optional[str]:
        return self._last_decision_reason

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read a sample value back from the registry (diagnostics and tests)."""
        return self.registry.get_sample_value(name, labels or {})

    def snapshot(self) -> Dict[str, object]:
        stats = self._last_cycle_stats
        return {
            "last_cycle_status": stats.status if stats else None,
            "last_cycle_seconds": stats.duration_seconds if stats else None,
            "last_decision_reason": self._last_decision_reason,
            "at": datetime.now(timezone.utc).isoformat(),
        }


__all__ = ["CycleStats", "MetricsRecorder", "STATE_CODES"]
