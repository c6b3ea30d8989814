"""
hedgekeeper Runner: Main Loop

Keeps a liquidity position (Leg A) and its directional hedge (Leg B)
delta-neutral, one cycle at a time.

Flow per cycle:
1. Confirm the controller lock is still ours
2. Write the heartbeat
3. Gate on state (ERROR_RECOVERY / SHUTTING_DOWN skip) and market hours
4. Pull price, Leg A and Leg B exposure, estimated cost (each source may degrade)
5. Persist observations (deltas, out-of-range timer)
6. Evaluate the rebalance decision and report it
7. Dispatch the hedge adjustment when the decision is actionable
8. Record success

Failures escaping a cycle are counted; five in a row park the bot in
ERROR_RECOVERY until an operator resets it (tools/state_admin.py).
"""

import argparse
import importlib
import logging
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.backoff import Backoff
from core.clock import is_us_market_open
from core.collaborators import Collaborators, CostEstimator, LegClient, PriceOracle, zero_cost
from core.exceptions import ConfigurationError, FatalCondition, LockContention, LockLost
from core.paper_legs import build_paper_collaborators
from core.state_machine import IN_FLIGHT_STATES, BotState, BotStateSnapshot, StateMachine
from infra.alerting import AlertService, AlertSeverity
from infra.distributed_lock import DistributedLock
from infra.kv_store import create_kv_store_from_config
from infra.metrics import CycleStats, MetricsRecorder
from infra.state_store import StateStore
from runner.shutdown import ShutdownCoordinator
from strategy.price_checks import check_price_quality
from strategy.rebalance import REASON_OUT_OF_RANGE, RebalanceDecision, RebalancePolicy, evaluate_rebalance
from tools.config_check import DEFAULT_CONFIG_PATH, BotConfig, LoggingConfig, load_config

logger = logging.getLogger(__name__)


@dataclass
class LoopSettings:
    mode: str = "DRY_RUN"
    interval_seconds: float = 10.0
    trading_hours_only: bool = False
    dispatch_on_degraded_inputs: bool = False
    price_max_confidence_pct: float = 0.01
    price_max_age_seconds: float = 60.0


@dataclass
class ExposureSnapshot:
    """Inputs gathered for one decision."""
    price: float = 0.0
    leg_a_delta: float = 0.0
    leg_b_delta: float = 0.0
    leg_a_in_range: bool = True
    estimated_cost: float = 0.0
    leg_b_positions: List[Any] = field(default_factory=list)
    degraded_sources: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_sources)


@dataclass
class CycleResult:
    status: str  # "ok" | "skipped" | "degraded"
    reason: Optional[str] = None
    decision: Optional[RebalanceDecision] = None
    dispatched: bool = False
    dispatch_ok: Optional[bool] = None
    degraded_sources: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


class RebalanceLoop:
    """
    Main control loop orchestrator.

    Responsibilities:
    - Own the controller lock for the lifetime of the process
    - Run periodic cycles, pacing retries with backoff after failures
    - Coordinate collaborators, decision engine and state machine
    - Leave the persisted state consistent on shutdown
    """

    def __init__(
        self,
        lock: DistributedLock,
        state_machine: StateMachine,
        state_store: StateStore,
        leg_a: LegClient,
        leg_b: LegClient,
        oracle: PriceOracle,
        policy: RebalancePolicy,
        settings: LoopSettings,
        alerts: AlertService,
        metrics: MetricsRecorder,
        cost_estimator: Optional[CostEstimator] = None,
        clock: Callable[[], float] = time.time,
        backoff: Optional[Backoff] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.lock = lock
        self.state_machine = state_machine
        self.state_store = state_store
        self.leg_a = leg_a
        self.leg_b = leg_b
        self.oracle = oracle
        self.policy = policy
        self.settings = settings
        self.alerts = alerts
        self.metrics = metrics
        self.cost_estimator = cost_estimator or zero_cost
        self._clock = clock
        self.backoff = backoff or Backoff()
        self._stop_event = stop_event or threading.Event()

        self._state: Optional[BotStateSnapshot] = None
        self._cycle_count = 0
        self._last_result: Optional[CycleResult] = None
        self._last_price: Optional[float] = None
        self._shutdown_done = False
        self._started = False

        if self.lock.on_lost is None:
            self.lock.on_lost = self.handle_lock_lost
        if self.state_machine.guard is None:
            self.state_machine.guard = self.lock.ensure_held

    @property
    def state(self) -> Optional[BotStateSnapshot]:
        return self._state

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> BotStateSnapshot:
        """
        Acquire the lock, load and normalize state.

        Raises:
            LockContention: another instance holds the lock
        """
        logger.info("=" * 80)
        logger.info(f"STARTING hedgekeeper (mode={self.settings.mode}, lock={self.lock.key})")
        logger.info("=" * 80)

        if not self.lock.acquire():
            logger.error("=" * 80)
            logger.error("ANOTHER INSTANCE HOLDS THE CONTROLLER LOCK")
            logger.error("=" * 80)
            logger.error("Cannot start - only ONE instance may manage the position to prevent:")
            logger.error("  - Conflicting hedge adjustments")
            logger.error("  - State corruption (concurrent writes)")
            logger.error(f"The lock expires on its own {self.lock.ttl_seconds:.0f}s after its holder dies.")
            logger.error("=" * 80)
            raise LockContention(self.lock.key)
        self._started = True
        self.metrics.record_lock(True)

        state = self.state_machine.load()
        if self.state_machine.last_load_error:
            self.alerts.notify(
                AlertSeverity.WARNING,
                "STATE_UNREADABLE",
                "Persisted state could not be read; starting from defaults",
                {"error": self.state_machine.last_load_error},
            )

        previous = state.current_state
        self._state = self.state_machine.recover_on_startup(state)
        if previous in IN_FLIGHT_STATES:
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "STATE_INTERRUPTED",
                f"Previous run stopped during {previous}; operator must reconcile positions",
                {"state": previous.value},
            )
        if self._state.current_state == BotState.ERROR_RECOVERY:
            logger.warning(
                "Bot is in ERROR_RECOVERY (%s). Cycles will be skipped until "
                "`python -m tools.state_admin reset` is run.",
                self._state.last_error,
            )

        self.alerts.bot_started(self.settings.mode, {"state": self._state.current_state.value})
        logger.info(f"Started in state {self._state.current_state}")
        return self._state

    def request_shutdown(self, reason: str = "requested") -> None:
        if self._stop_event.is_set():
            return
        logger.warning(f"Shutdown requested: {reason}")
        self._stop_event.set()

    def handle_lock_lost(self, error: LockLost) -> None:
        """Lock renewal callback (runs on the renewal thread)."""
        self.metrics.record_lock(False)
        self.alerts.notify(
            AlertSeverity.CRITICAL,
            "LOCK_LOST",
            "Controller lock lost; this instance stops acting",
            {"key": error.key, "reason": error.reason},
        )
        self.request_shutdown("lock lost")

    def shutdown(self, reason: str = "graceful_shutdown") -> None:
        """
        Leave the persisted state consistent and release resources.

        Every step is attempted even if an earlier one failed.
        """
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self._stop_event.set()

        if not self._started:
            # Lock never acquired: nothing of ours to flush, release or announce
            logger.info(f"Stopping before start ({reason}); closing store only")
            try:
                self.state_store.close()
            except Exception as exc:
                logger.error(f"Failed to close store: {exc}", exc_info=True)
            return

        logger.warning("=" * 80)
        logger.warning(f"SHUTTING DOWN ({reason})")
        logger.warning("=" * 80)

        summary = {"state_flushed": False, "lock_released": False, "store_closed": False}

        # Step 1: persist final state (only while we still own the lock)
        if self._state is not None and self.lock.held:
            try:
                if self.state_machine.can_operate(self._state):
                    self._state = self.state_machine.transition(self._state, BotState.SHUTTING_DOWN)
                else:
                    self._state = self.state_machine.save(self._state)
                summary["state_flushed"] = True
            except Exception as exc:
                logger.error(f"Failed to persist final state: {exc}", exc_info=True)
        elif self._state is not None:
            logger.warning("Lock not held; leaving persisted state untouched")

        # Step 2: release the lock
        try:
            summary["lock_released"] = self.lock.release()
            self.metrics.record_lock(False)
        except Exception as exc:
            logger.error(f"Failed to release lock: {exc}", exc_info=True)

        # Step 3: close the store
        try:
            self.state_store.close()
            summary["store_closed"] = True
        except Exception as exc:
            logger.error(f"Failed to close store: {exc}", exc_info=True)

        try:
            self.alerts.bot_stopped(reason)
        except Exception as exc:
            logger.error(f"Failed to send stop alert: {exc}")

        logger.warning("=" * 80)
        logger.warning("SHUTDOWN COMPLETE")
        logger.warning(f"  State flushed: {summary['state_flushed']}")
        logger.warning(f"  Lock released: {summary['lock_released']}")
        logger.warning(f"  Store closed: {summary['store_closed']}")
        logger.warning("=" * 80)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> CycleResult:
        """
        Run one control cycle.

        Raises:
            LockLost: lock ownership lost (never counted as a cycle failure)
            Exception: anything else escaping the cycle body; run_forever
                records it as a failure
        """
        started = time.monotonic()
        self._cycle_count += 1
        self.lock.ensure_held()
        self._write_heartbeat()

        state = self._require_state()
        if not self.state_machine.can_operate(state):
            logger.info(f"Cycle {self._cycle_count} skipped: state is {state.current_state}")
            return self._finish(CycleResult(status="skipped", reason=f"state_{state.current_state.value.lower()}"), started)

        now = self._clock()
        if self.settings.trading_hours_only and not is_us_market_open(now):
            logger.debug(f"Cycle {self._cycle_count} skipped: market closed")
            return self._finish(CycleResult(status="skipped", reason="market_closed"), started)

        inputs = self._gather_inputs(now)
        state = self._persist_observations(state, inputs, now)

        decision = evaluate_rebalance(
            state,
            inputs.leg_a_delta,
            inputs.leg_b_delta,
            inputs.estimated_cost,
            inputs.leg_a_in_range,
            self.policy,
            now=now,
        )
        self._report_decision(decision, inputs)

        result = CycleResult(
            status="degraded" if inputs.degraded else "ok",
            reason=decision.reason,
            decision=decision,
            degraded_sources=list(inputs.degraded_sources),
        )
        if decision.actionable:
            if inputs.degraded and not self.settings.dispatch_on_degraded_inputs:
                logger.warning(
                    f"Rebalance ({decision.reason}) suppressed: degraded inputs {inputs.degraded_sources}"
                )
                self.metrics.record_rebalance(decision.reason, "suppressed")
            else:
                result.dispatch_ok = self._dispatch(decision, inputs, now)
                result.dispatched = result.dispatch_ok is not None

        self._state = self.state_machine.record_success(self._state)
        return self._finish(result, started)

    def run_forever(self) -> None:
        """
        Run cycles until shutdown is requested.

        Raises:
            FatalCondition: lock lost (the caller terminates the process)
        """
        interval = max(float(self.settings.interval_seconds), 0.0)
        logger.info(f"Starting continuous loop (interval={interval}s)")

        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_cycle()
            except FatalCondition:
                raise
            except Exception as exc:
                self._handle_cycle_failure(exc, started)
                delay = self.backoff.wait(self._stop_event)
                logger.info(f"Backed off {delay:.2f}s after failure")
                continue

            self.backoff.reset()
            elapsed = time.monotonic() - started
            sleep_for = max(0.0, interval - elapsed)
            logger.debug(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
            self._stop_event.wait(sleep_for)

        if self.lock.lost:
            # Lost while sleeping: the stop came from handle_lock_lost
            self.lock.ensure_held()
        logger.info("Control loop stopped cleanly.")

    def health_snapshot(self) -> Dict[str, Any]:
        state = self._state
        last = self._last_result
        return {
            "mode": self.settings.mode,
            "state": state.current_state.value if state else None,
            "consecutive_failures": state.consecutive_failures if state else None,
            "last_error": state.last_error if state else None,
            "lock": self.lock.status(),
            "cycle_count": self._cycle_count,
            "stop_requested": self._stop_event.is_set(),
            "last_cycle": {
                "status": last.status,
                "reason": last.reason,
                "dispatched": last.dispatched,
                "degraded_sources": last.degraded_sources,
                "duration_seconds": round(last.duration_seconds, 4),
            } if last else None,
            "metrics": self.metrics.snapshot(),
        }

    # ------------------------------------------------------------------
    # Cycle helpers
    # ------------------------------------------------------------------

    def _require_state(self) -> BotStateSnapshot:
        if self._state is None:
            self._state = self.state_machine.load()
        return self._state

    def _write_heartbeat(self) -> None:
        try:
            ts = self.state_store.write_heartbeat(self._clock())
            self.metrics.record_heartbeat(ts)
        except Exception as exc:
            logger.warning(f"Heartbeat write failed: {exc}")

    def _gather_inputs(self, now: float) -> ExposureSnapshot:
        """Fetch every source independently; a failed source degrades to zero."""
        inputs = ExposureSnapshot()

        try:
            quote = self.oracle.get_price()
            check = check_price_quality(
                quote,
                now,
                max_confidence_pct=self.settings.price_max_confidence_pct,
                max_age_seconds=self.settings.price_max_age_seconds,
            )
            if check.ok:
                inputs.price = quote.price
                self._last_price = quote.price
            else:
                logger.warning(f"Price rejected: {check.reason}")
                inputs.degraded_sources.append("price")
        except Exception as exc:
            logger.warning(f"Price fetch failed: {exc}")
            inputs.degraded_sources.append("price")

        # Deltas still need a price; fall back to the last good one
        price = inputs.price or self._last_price or 0.0

        try:
            positions = self.leg_a.fetch_positions()
            inputs.leg_a_delta = sum(self.leg_a.calculate_delta(p, price) for p in positions)
            inputs.leg_a_in_range = all(self.leg_a.is_in_range(p) for p in positions)
        except Exception as exc:
            logger.warning(f"Leg A fetch failed: {exc}")
            inputs.leg_a_delta = 0.0
            inputs.leg_a_in_range = True
            inputs.degraded_sources.append("leg_a")

        try:
            positions = self.leg_b.fetch_positions()
            inputs.leg_b_delta = sum(self.leg_b.calculate_delta(p, price) for p in positions)
            inputs.leg_b_positions = list(positions)
        except Exception as exc:
            logger.warning(f"Leg B fetch failed: {exc}")
            inputs.leg_b_delta = 0.0
            inputs.leg_b_positions = []
            inputs.degraded_sources.append("leg_b")

        try:
            inputs.estimated_cost = float(self.cost_estimator())
        except Exception as exc:
            logger.warning(f"Cost estimate failed: {exc}")
            inputs.estimated_cost = 0.0
            inputs.degraded_sources.append("cost")

        return inputs

    def _persist_observations(
        self, state: BotStateSnapshot, inputs: ExposureSnapshot, now: float
    ) -> BotStateSnapshot:
        updates: Dict[str, Any] = {}
        if "leg_a" not in inputs.degraded_sources:
            updates["last_leg_a_delta"] = inputs.leg_a_delta
            if inputs.leg_a_in_range:
                if state.out_of_range_since is not None:
                    logger.info("Leg A back in range")
                updates["out_of_range_since"] = None
            elif state.out_of_range_since is None:
                logger.warning("Leg A went out of range")
                updates["out_of_range_since"] = now
        if "leg_b" not in inputs.degraded_sources:
            updates["last_leg_b_delta"] = inputs.leg_b_delta

        if not updates:
            return state
        self._state = self.state_machine.transition(state, state.current_state, **updates)
        return self._state

    def _report_decision(self, decision: RebalanceDecision, inputs: ExposureSnapshot) -> None:
        self.metrics.record_decision(
            decision.reason,
            decision.blocked,
            decision.current_delta,
            decision.drift_pct,
        )
        summary = (
            f"decision={decision.reason} net={decision.current_delta:+.4f} "
            f"drift={decision.drift_pct:.2%} leg_a={inputs.leg_a_delta:+.4f} "
            f"leg_b={inputs.leg_b_delta:+.4f} cost={decision.estimated_cost:.6f}"
        )
        if decision.blocked:
            logger.info(f"{summary} blocked: {decision.block_reason}")
        elif decision.should_rebalance:
            logger.info(f"{summary} size_to_adjust={decision.size_to_adjust:+.4f}")
        else:
            logger.debug(summary)

    def _dispatch(self, decision: RebalanceDecision, inputs: ExposureSnapshot, now: float) -> Optional[bool]:
        """
        Execute the hedge adjustment.

        Returns:
            True on success, False if a collaborator reported failure,
            None if there was nothing to do
        """
        if decision.reason == REASON_OUT_OF_RANGE and not inputs.leg_b_positions:
            logger.info("Leg A out of range but hedge already unwound; nothing to close")
            return None

        self.lock.ensure_held()
        self._state = self.state_machine.transition(self._state, BotState.REBALANCING)

        try:
            if decision.reason == REASON_OUT_OF_RANGE:
                logger.warning(f"Unwinding hedge: closing {len(inputs.leg_b_positions)} Leg B position(s)")
                results = [self.leg_b.close(self.leg_b.position_id(p)) for p in inputs.leg_b_positions]
                ok = all(r is not None for r in results)
                leg_b_id = None
            else:
                params = {"reason": decision.reason, "reduce_only": decision.size_to_adjust < 0}
                logger.info(f"Adjusting hedge by {decision.size_to_adjust:+.4f} ({params})")
                result = self.leg_b.open(decision.size_to_adjust, params)
                ok = result is not None
                leg_b_id = (result or {}).get("position_id") or self._state.leg_b_position_id
        except Exception:
            self.metrics.record_rebalance(decision.reason, "error")
            try:
                self._state = self.state_machine.transition(self._state, BotState.IDLE)
            except Exception as exc:
                logger.error(f"Could not return to IDLE after dispatch error: {exc}")
            raise

        if ok:
            self._state = self.state_machine.transition(
                self._state,
                BotState.IDLE,
                last_rebalance_time=now,
                leg_b_position_id=leg_b_id,
            )
            self.metrics.record_rebalance(decision.reason, "success")
            logger.info(f"Rebalance complete ({decision.reason})")
            return True

        self._state = self.state_machine.transition(self._state, BotState.IDLE)
        self.metrics.record_rebalance(decision.reason, "failed")
        self.alerts.notify(
            AlertSeverity.WARNING,
            "DISPATCH_FAILED",
            f"Rebalance action returned no result ({decision.reason})",
            {"size_to_adjust": decision.size_to_adjust, "net_delta": decision.current_delta},
        )
        return False

    def _handle_cycle_failure(self, exc: Exception, started: float) -> None:
        error_text = f"{type(exc).__name__}: {exc}"
        logger.error(f"Cycle {self._cycle_count} failed: {error_text}", exc_info=True)
        self.metrics.observe_cycle(
            CycleStats(
                status="error",
                reason=type(exc).__name__,
                dispatched=False,
                duration_seconds=time.monotonic() - started,
            )
        )

        state = self._require_state()
        try:
            updated = self.state_machine.record_failure(state, error_text)
        except FatalCondition:
            raise
        except Exception as record_exc:
            logger.error(f"Could not record failure: {record_exc}")
            return
        self._state = updated

        if (
            updated.current_state == BotState.ERROR_RECOVERY
            and state.current_state != BotState.ERROR_RECOVERY
        ):
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "ERROR_RECOVERY",
                f"{updated.consecutive_failures} consecutive failures; bot parked until operator reset",
                {"last_error": error_text},
            )

    def _finish(self, result: CycleResult, started: float) -> CycleResult:
        result.duration_seconds = time.monotonic() - started
        self.metrics.observe_cycle(
            CycleStats(
                status=result.status,
                reason=result.reason,
                dispatched=result.dispatched,
                duration_seconds=result.duration_seconds,
                degraded_sources=list(result.degraded_sources),
            )
        )
        self._last_result = result
        return result


# ----------------------------------------------------------------------
# Composition root
# ----------------------------------------------------------------------


def configure_logging(cfg: Optional[LoggingConfig] = None) -> None:
    cfg = cfg or LoggingConfig()
    log_path = Path(cfg.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, cfg.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
        force=True,
    )


def load_collaborators(config: BotConfig) -> Collaborators:
    """
    Paper book for DRY_RUN/PAPER, otherwise the configured factory.

    Raises:
        ConfigurationError: factory cannot be imported or returns the wrong type
    """
    factory_path = config.collaborators.factory
    if config.dry_run and not factory_path:
        return build_paper_collaborators(config.collaborators.paper)
    if not factory_path:
        raise ConfigurationError("collaborators.factory is required in LIVE mode")

    module_name, _, attr = factory_path.partition(":")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"Cannot load collaborators.factory {factory_path!r}: {exc}") from exc

    collaborators = factory(config)
    if not isinstance(collaborators, Collaborators):
        raise ConfigurationError(
            f"collaborators.factory {factory_path!r} returned {type(collaborators).__name__}, expected Collaborators"
        )
    return collaborators


def build_loop(config: BotConfig, stop_event: Optional[threading.Event] = None) -> RebalanceLoop:
    """Construct every component from config and wire them together."""
    kv_store = create_kv_store_from_config(config.store.model_dump())
    state_store = StateStore(kv_store, namespace=config.app.namespace)
    metrics = MetricsRecorder(
        enabled=config.monitoring.metrics_enabled,
        port=config.monitoring.metrics_port,
    )
    alerts = AlertService.from_config(
        config.monitoring.alerts.model_dump(exclude_none=True),
        dry_run=config.dry_run,
    )
    lock = DistributedLock(
        kv_store,
        config.lock.name,
        ttl_seconds=config.lock.ttl_seconds,
        renewal_seconds=config.lock.renewal_seconds,
        namespace=config.app.namespace,
    )
    state_machine = StateMachine(
        state_store,
        failure_threshold=config.loop.failure_threshold,
        metrics=metrics,
        guard=lock.ensure_held,
    )
    collaborators = load_collaborators(config)
    settings = LoopSettings(
        mode=config.app.mode,
        interval_seconds=config.loop.interval_seconds,
        trading_hours_only=config.loop.trading_hours_only,
        dispatch_on_degraded_inputs=config.loop.dispatch_on_degraded_inputs,
        price_max_confidence_pct=config.price.max_confidence_pct,
        price_max_age_seconds=config.price.max_age_seconds,
    )
    return RebalanceLoop(
        lock=lock,
        state_machine=state_machine,
        state_store=state_store,
        leg_a=collaborators.leg_a,
        leg_b=collaborators.leg_b,
        oracle=collaborators.oracle,
        policy=config.strategy.to_policy(),
        settings=settings,
        alerts=alerts,
        metrics=metrics,
        cost_estimator=collaborators.cost_estimator,
        backoff=Backoff(**config.backoff.model_dump(include={"initial_delay", "max_delay", "multiplier", "jitter"})),
        stop_event=stop_event,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="hedgekeeper delta-neutral control loop")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to app.yaml")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles (overrides config)")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        for line in exc.errors:
            print(f"  - {line}", file=sys.stderr)
        return 2

    configure_logging(config.logging)
    coordinator = ShutdownCoordinator(timeout_seconds=config.loop.shutdown_timeout_seconds)

    try:
        loop = build_loop(config, stop_event=coordinator.stop_event)
    except ConfigurationError as exc:
        logger.error(f"Configuration error: {exc}")
        return 2

    if args.interval is not None:
        loop.settings.interval_seconds = args.interval

    coordinator.register(lambda: loop.shutdown(coordinator.reason or "graceful_shutdown"), name="loop.shutdown")
    coordinator.install()

    exit_code = 0
    try:
        loop.start()
        loop.metrics.start()
        if args.once:
            result = loop.run_cycle()
            logger.info(f"Single cycle finished: {result.status} ({result.reason})")
        else:
            loop.run_forever()
    except LockContention as exc:
        logger.error(str(exc))
        exit_code = exc.exit_code
    except FatalCondition as exc:
        logger.critical(f"Fatal: {exc}")
        loop.alerts.notify(AlertSeverity.CRITICAL, "FATAL_ERROR", str(exc))
        exit_code = exc.exit_code
        coordinator.request(type(exc).__name__)
    except KeyboardInterrupt:
        coordinator.request("KeyboardInterrupt")
    except Exception as exc:
        logger.exception(f"Unhandled error: {exc}")
        loop.alerts.notify(AlertSeverity.CRITICAL, "FATAL_ERROR", f"{type(exc).__name__}: {exc}")
        exit_code = 1
        coordinator.request(f"unhandled {type(exc).__name__}")
    finally:
        coordinator.run_handlers()
        coordinator.uninstall()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
