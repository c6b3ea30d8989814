"""
External watchdog.

Runs as a separate process next to the bot and only reads the shared store:
store reachability, the heartbeat age and the persisted bot state. It never
takes the controller lock and never acts on positions; it raises alerts.

    python -m runner.watchdog --config config/app.yaml
"""

import argparse
import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from core.clock import is_stale
from core.exceptions import ConfigurationError
from core.state_machine import BotState, BotStateSnapshot
from infra.alerting import AlertService, AlertSeverity
from infra.kv_store import create_kv_store_from_config
from infra.state_store import StateStore
from tools.config_check import DEFAULT_CONFIG_PATH, load_config

logger = logging.getLogger(__name__)


@dataclass
class WatchdogStatus:
    bot_healthy: bool = True
    last_heartbeat: Optional[float] = None
    heartbeat_age_seconds: Optional[float] = None
    current_state: Optional[str] = None
    consecutive_failures: Optional[int] = None
    alerts: List[str] = field(default_factory=list)
    checked_at: float = 0.0


class Watchdog:
    """Periodic health checks against the shared store."""

    def __init__(
        self,
        state_store: StateStore,
        alerts: AlertService,
        max_heartbeat_age: float = 120.0,
        check_interval: float = 30.0,
        failure_alert_threshold: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.state_store = state_store
        self.alerts = alerts
        self.max_heartbeat_age = float(max_heartbeat_age)
        self.check_interval = float(check_interval)
        self.failure_alert_threshold = int(failure_alert_threshold)
        self._clock = clock
        self.status = WatchdogStatus()
        self.alerts_sent = 0

    def run_check(self) -> WatchdogStatus:
        """
        One pass over store health, heartbeat and bot state.

        The first two checks stop the pass when they fail: without a
        reachable store or a live bot the persisted state says nothing.
        """
        now = self._clock()
        status = WatchdogStatus(checked_at=now)
        self.status = status

        if not self.state_store.ping():
            status.bot_healthy = False
            self._alert(status, AlertSeverity.CRITICAL, "STORE_UNHEALTHY", "Shared store is not responding")
            return status
        self.alerts.resolve("STORE_UNHEALTHY")

        heartbeat = self.state_store.read_heartbeat()
        status.last_heartbeat = heartbeat
        if heartbeat is not None:
            status.heartbeat_age_seconds = now - heartbeat
        if is_stale(heartbeat, self.max_heartbeat_age, now=now):
            status.bot_healthy = False
            if heartbeat is None:
                message = "No heartbeat found"
            else:
                message = f"Heartbeat is {status.heartbeat_age_seconds:.0f}s old (max {self.max_heartbeat_age:.0f}s)"
            self._alert(
                status,
                AlertSeverity.CRITICAL,
                "BOT_UNRESPONSIVE",
                message,
                {"last_heartbeat": heartbeat},
            )
            return status
        self.alerts.resolve("BOT_UNRESPONSIVE")

        state = self._read_state()
        if state is not None:
            status.current_state = state.current_state.value
            status.consecutive_failures = state.consecutive_failures
            self._check_state_health(status, state)

        return status

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        logger.info(
            f"Watchdog started (interval={self.check_interval:.0f}s, max heartbeat age={self.max_heartbeat_age:.0f}s)"
        )
        while not stop_event.is_set():
            try:
                status = self.run_check()
                if status.bot_healthy:
                    logger.debug(f"Bot healthy (state={status.current_state})")
            except Exception as exc:
                self.status.bot_healthy = False
                logger.error(f"Watchdog check failed: {exc}", exc_info=True)
            stop_event.wait(self.check_interval)
        logger.info("Watchdog stopped")

    def _read_state(self) -> Optional[BotStateSnapshot]:
        data = self.state_store.load()
        if data is None:
            return None
        return BotStateSnapshot.from_dict(data)

    def _check_state_health(self, status: WatchdogStatus, state: BotStateSnapshot) -> None:
        if state.current_state == BotState.ERROR_RECOVERY:
            self._alert(
                status,
                AlertSeverity.WARNING,
                "BOT_ERROR_STATE",
                "Bot is in ERROR_RECOVERY state",
                {"consecutive_failures": state.consecutive_failures, "last_error": state.last_error},
            )
        else:
            self.alerts.resolve("BOT_ERROR_STATE")

        if state.consecutive_failures >= self.failure_alert_threshold:
            self._alert(
                status,
                AlertSeverity.CRITICAL,
                "HIGH_FAILURE_COUNT",
                f"Bot has {state.consecutive_failures} consecutive failures",
                {"last_error": state.last_error},
            )

    def _alert(
        self,
        status: WatchdogStatus,
        severity: AlertSeverity,
        alert_type: str,
        message: str,
        context: Optional[dict] = None,
    ) -> None:
        status.alerts.append(alert_type)
        if self.alerts.notify(severity, alert_type, message, context):
            self.alerts_sent += 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="hedgekeeper watchdog")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to app.yaml")
    parser.add_argument("--once", action="store_true", help="Run one check and exit")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, config.logging.level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if config.store.backend == "memory":
        logger.warning("Watchdog is using the in-memory store; it cannot see a bot in another process")

    state_store = StateStore(create_kv_store_from_config(config.store.model_dump()), namespace=config.app.namespace)
    alerts = AlertService.from_config(
        {**config.monitoring.alerts.model_dump(exclude_none=True), "source": f"{config.app.name}-watchdog"},
        dry_run=config.dry_run,
    )
    watchdog = Watchdog(
        state_store,
        alerts,
        max_heartbeat_age=config.watchdog.max_heartbeat_age_seconds,
        check_interval=config.watchdog.check_interval_seconds,
        failure_alert_threshold=config.watchdog.failure_alert_threshold,
    )

    if args.once:
        status = watchdog.run_check()
        print(status)
        state_store.close()
        return 0 if status.bot_healthy else 1

    stop_event = threading.Event()

    def _handle_stop(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, stopping watchdog")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_stop)
    signal.signal(signal.SIGTERM, _handle_stop)

    try:
        watchdog.run_forever(stop_event)
    finally:
        state_store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
