"""
Tests for the rebalance loop orchestrator.

Scenarios:
A. 1000 long / -950 short book: one cycle detects 5% drift, dispatches the
   hedge adjustment, returns to IDLE with no failures
B. Dispatch throwing every cycle: five failures escalate to ERROR_RECOVERY,
   after which cycles are skipped and no further actions are attempted
Plus pacing, degraded inputs, out-of-range unwinding, lock loss, startup
recovery and shutdown.
"""

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from core.backoff import Backoff
from core.clock import QuietWindow
from core.exceptions import LockContention, LockLost
from core.paper_legs import PaperLegClient, StaticPriceOracle
from core.state_machine import BotState, BotStateSnapshot, StateMachine
from infra.alerting import AlertService, AlertSeverity
from infra.distributed_lock import DistributedLock
from runner.main_loop import LoopSettings, RebalanceLoop, build_loop, main
from strategy.rebalance import RebalancePolicy
from tests.helpers import FakeClock, RecordingEvent
from tools.config_check import parse_config


def ts(day, hour, minute=0):
    return datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc).timestamp()


NOON = ts(10, 12)  # Wednesday


@pytest.fixture
def wall_clock():
    return FakeClock(start=NOON)


@pytest.fixture
def book(wall_clock):
    leg_a = PaperLegClient("leg_a", direction=1)
    leg_a.add_position(1000, lower_price=200, upper_price=300)
    leg_b = PaperLegClient("leg_b", direction=-1)
    leg_b.add_position(950)
    oracle = StaticPriceOracle(250.0, confidence=0.05, clock=wall_clock)
    return leg_a, leg_b, oracle


@pytest.fixture
def make_loop(kv_store, fake_clock, state_machine, state_store, metrics, alerts, wall_clock, book):
    created = []

    def _make(**overrides):
        leg_a, leg_b, oracle = book
        params = dict(
            lock=DistributedLock(kv_store, "bot", ttl_seconds=30, renewal_seconds=10, namespace="test", clock=fake_clock),
            state_machine=state_machine,
            state_store=state_store,
            leg_a=leg_a,
            leg_b=leg_b,
            oracle=oracle,
            policy=RebalancePolicy(quiet_window=QuietWindow.from_strings("14:30", "15:15")),
            settings=LoopSettings(interval_seconds=10.0),
            alerts=alerts,
            metrics=metrics,
            cost_estimator=lambda: 0.001,
            clock=wall_clock,
            backoff=Backoff(jitter=0.0),
        )
        params.update(overrides)
        loop = RebalanceLoop(**params)
        created.append(loop)
        return loop

    yield _make
    for loop in created:
        loop.lock.release()


class TestScenarioA:

    def test_drift_dispatches_and_returns_idle(self, make_loop, book, state_store):
        _, leg_b, _ = book
        loop = make_loop()
        loop.start()

        result = loop.run_cycle()

        assert result.status == "ok"
        assert result.decision.reason == "delta_drift"
        assert result.decision.size_to_adjust == 50
        assert result.dispatched is True
        assert result.dispatch_ok is True
        assert leg_b.net_delta() == -1000
        assert leg_b.actions[-1]["reason"] == "delta_drift"

        state = loop.state
        assert state.current_state == BotState.IDLE
        assert state.consecutive_failures == 0
        assert state.last_rebalance_time == NOON
        assert state.leg_b_position_id == "paper-leg_b-1"
        assert state_store.load()["current_state"] == "IDLE"

    def test_second_cycle_is_within_threshold(self, make_loop, book):
        _, leg_b, _ = book
        loop = make_loop()
        loop.start()
        loop.run_cycle()

        result = loop.run_cycle()
        assert result.decision.reason == "within_threshold"
        assert result.dispatched is False
        assert len(leg_b.actions) == 1

    def test_observations_persisted(self, make_loop, state_store):
        loop = make_loop()
        loop.start()
        loop.run_cycle()
        persisted = state_store.load()
        assert persisted["last_leg_a_delta"] == 1000
        assert persisted["last_leg_b_delta"] == -950
        assert persisted["out_of_range_since"] is None

    def test_heartbeat_written(self, make_loop, state_store, metrics):
        loop = make_loop()
        loop.start()
        loop.run_cycle()
        assert state_store.read_heartbeat() == NOON
        assert metrics.sample("test_heartbeat_timestamp_seconds") == NOON

    def test_reduce_only_when_over_hedged(self, make_loop, book):
        _, leg_b, _ = book
        leg_b.open(150, {})  # 1100 short
        loop = make_loop()
        loop.start()
        result = loop.run_cycle()
        assert result.decision.size_to_adjust == -100
        assert leg_b.net_delta() == -1000

    def test_reduce_only_flag_passed(self, make_loop, book):
        _, paper_b, _ = book
        leg_b = Mock(wraps=paper_b)
        paper_b.open(150, {})
        loop = make_loop(leg_b=leg_b)
        loop.start()
        loop.run_cycle()
        leg_b.open.assert_called_once_with(-100, {"reason": "delta_drift", "reduce_only": True})


class TestScenarioB:

    def test_five_failures_escalate_then_no_actions(self, make_loop, book, alerts):
        _, paper_b, _ = book
        leg_b = Mock(wraps=paper_b)
        leg_b.open.side_effect = RuntimeError("venue down")
        alerts = Mock(spec=AlertService)
        stop = RecordingEvent(stop_after=6)
        loop = make_loop(leg_b=leg_b, alerts=alerts, stop_event=stop)
        loop.start()

        loop.run_forever()

        assert leg_b.open.call_count == 5
        state = loop.state
        assert state.current_state == BotState.ERROR_RECOVERY
        assert state.consecutive_failures == 5
        assert "venue down" in state.last_error
        # backoff pacing after each failure, then one regular sleep after the skipped cycle
        assert stop.waits[:5] == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert 9.0 < stop.waits[5] <= 10.0

        alert_types = [c.args[1] for c in alerts.notify.call_args_list]
        assert alert_types.count("ERROR_RECOVERY") == 1

    def test_failed_dispatch_returns_to_idle_before_counting(self, make_loop, book, state_store):
        _, paper_b, _ = book
        leg_b = Mock(wraps=paper_b)
        leg_b.open.side_effect = RuntimeError("venue down")
        loop = make_loop(leg_b=leg_b, stop_event=RecordingEvent(stop_after=1))
        loop.start()
        loop.run_forever()
        assert loop.state.current_state == BotState.IDLE
        assert loop.state.consecutive_failures == 1
        assert state_store.load()["current_state"] == "IDLE"

    def test_error_recovery_skips_without_touching_legs(self, make_loop, state_machine):
        state_machine.transition(BotStateSnapshot(), BotState.ERROR_RECOVERY, consecutive_failures=5)
        leg_a = Mock()
        loop = make_loop(leg_a=leg_a)
        loop.start()
        result = loop.run_cycle()
        assert result.status == "skipped"
        leg_a.fetch_positions.assert_not_called()

    def test_success_resets_counter(self, make_loop, state_machine):
        state_machine.transition(BotStateSnapshot(), BotState.IDLE, consecutive_failures=3, last_error="x")
        loop = make_loop()
        loop.start()
        loop.run_cycle()
        assert loop.state.consecutive_failures == 0
        assert loop.state.last_error is None


class TestPacing:

    def test_sleeps_interval_minus_elapsed(self, make_loop):
        stop = RecordingEvent(stop_after=1)
        loop = make_loop(stop_event=stop)
        loop.start()
        loop.run_forever()
        assert len(stop.waits) == 1
        assert 9.0 < stop.waits[0] <= 10.0

    def test_backoff_reset_after_success(self, make_loop, book):
        _, paper_b, _ = book
        leg_b = Mock(wraps=paper_b)
        leg_b.open.side_effect = [RuntimeError("once"), {"position_id": "p"}]
        stop = RecordingEvent(stop_after=2)
        loop = make_loop(leg_b=leg_b, stop_event=stop)
        loop.start()
        loop.run_forever()
        assert stop.waits[0] == 1.0
        assert loop.backoff.current_delay == 1.0
        assert loop.state.consecutive_failures == 0

    def test_stop_before_start_runs_no_cycle(self, make_loop):
        stop = RecordingEvent()
        stop.set()
        loop = make_loop(stop_event=stop)
        loop.start()
        loop.run_forever()
        assert loop.cycle_count == 0

    def test_request_shutdown_is_idempotent(self, make_loop):
        loop = make_loop()
        loop.request_shutdown("test")
        loop.request_shutdown("again")
        assert loop.stop_requested


class TestDegradedInputs:

    def test_price_failure_suppresses_dispatch(self, make_loop, book, metrics):
        _, leg_b, _ = book
        oracle = Mock()
        oracle.get_price.side_effect = TimeoutError("oracle down")
        loop = make_loop(oracle=oracle)
        loop.start()
        result = loop.run_cycle()
        assert result.status == "degraded"
        assert result.degraded_sources == ["price"]
        assert result.decision.reason == "delta_drift"
        assert result.dispatched is False
        assert leg_b.actions == []
        assert metrics.sample("test_degraded_sources_total", {"source": "price"}) == 1.0

    def test_leg_a_failure_degrades_to_zero(self, make_loop, book, state_store):
        _, leg_b, _ = book
        leg_a = Mock()
        leg_a.fetch_positions.side_effect = ConnectionError("rpc")
        loop = make_loop(leg_a=leg_a)
        loop.start()
        result = loop.run_cycle()
        # Net is -950 against a zero leg A; the dispatch must not happen
        assert result.decision.current_delta == -950
        assert result.decision.should_rebalance is True
        assert result.dispatched is False
        assert leg_b.actions == []
        assert state_store.load()["last_leg_a_delta"] == 0.0

    def test_stale_quote_counts_as_unavailable(self, make_loop, book, wall_clock):
        oracle = StaticPriceOracle(250.0, clock=lambda: NOON - 600)
        loop = make_loop(oracle=oracle)
        loop.start()
        assert loop.run_cycle().degraded_sources == ["price"]

    def test_cost_estimator_failure(self, make_loop):
        def broken():
            raise RuntimeError("no gas oracle")
        loop = make_loop(cost_estimator=broken)
        loop.start()
        result = loop.run_cycle()
        assert result.degraded_sources == ["cost"]
        assert result.dispatched is False

    def test_dispatch_allowed_when_configured(self, make_loop, book):
        _, leg_b, _ = book
        oracle = Mock()
        oracle.get_price.return_value = None
        loop = make_loop(oracle=oracle, settings=LoopSettings(dispatch_on_degraded_inputs=True))
        loop.start()
        result = loop.run_cycle()
        assert result.dispatched is True
        assert leg_b.net_delta() == -1000


class TestDispatchOutcomes:

    def test_none_result_is_failed_dispatch_not_failure(self, make_loop, book):
        _, paper_b, _ = book
        leg_b = Mock(wraps=paper_b)
        leg_b.open.side_effect = None
        leg_b.open.return_value = None
        alerts = Mock(spec=AlertService)
        loop = make_loop(leg_b=leg_b, alerts=alerts)
        loop.start()
        result = loop.run_cycle()
        assert result.dispatched is True
        assert result.dispatch_ok is False
        assert loop.state.current_state == BotState.IDLE
        assert loop.state.consecutive_failures == 0
        assert loop.state.last_rebalance_time == 0.0
        alerts.notify.assert_any_call(
            AlertSeverity.WARNING,
            "DISPATCH_FAILED",
            "Rebalance action returned no result (delta_drift)",
            {"size_to_adjust": 50, "net_delta": 50},
        )

    def test_quiet_hours_blocks_dispatch(self, make_loop, book, wall_clock, metrics):
        _, leg_b, _ = book
        wall_clock.now = ts(10, 14, 45)
        loop = make_loop()
        loop.start()
        result = loop.run_cycle()
        assert result.decision.reason == "quiet_hours"
        assert result.dispatched is False
        assert leg_b.actions == []
        assert metrics.sample("test_decisions_total", {"reason": "quiet_hours", "blocked": "true"}) == 1.0

    def test_trading_hours_only_skips_on_weekend(self, make_loop, book, wall_clock):
        wall_clock.now = ts(13, 16)  # Saturday
        leg_a = Mock()
        loop = make_loop(leg_a=leg_a, settings=LoopSettings(trading_hours_only=True))
        loop.start()
        result = loop.run_cycle()
        assert result.status == "skipped"
        assert result.reason == "market_closed"
        leg_a.fetch_positions.assert_not_called()


class TestOutOfRange:

    def test_unwinds_hedge_after_limit(self, make_loop, book, wall_clock, state_store):
        leg_a, leg_b, oracle = book
        leg_b.open(50, {})  # balanced book: 1000 / -1000
        oracle.set_price(350.0)
        loop = make_loop()
        loop.start()

        first = loop.run_cycle()
        assert first.decision.reason == "within_threshold"
        assert loop.state.out_of_range_since == NOON

        wall_clock.advance(3601)
        second = loop.run_cycle()
        assert second.decision.reason == "out_of_range_too_long"
        assert second.dispatch_ok is True
        assert leg_b.fetch_positions() == []
        assert loop.state.leg_b_position_id is None

        third = loop.run_cycle()
        assert third.decision.reason == "out_of_range_too_long"
        assert third.dispatched is False

        oracle.set_price(250.0)
        loop.run_cycle()
        assert loop.state.out_of_range_since is None
        assert state_store.load()["out_of_range_since"] is None


class TestLockHandling:

    def test_start_fails_when_lock_held(self, make_loop, kv_store):
        kv_store.set("test:lock:bot", "someone-else", ttl_seconds=30)
        loop = make_loop()
        with pytest.raises(LockContention):
            loop.start()

    def test_lock_lost_stops_loop_without_counting_failure(self, make_loop, kv_store, book):
        _, leg_b, _ = book
        alerts = Mock(spec=AlertService)
        loop = make_loop(alerts=alerts)
        loop.start()

        kv_store.set("test:lock:bot", "usurper", ttl_seconds=30)
        loop.lock.renew()

        assert loop.stop_requested
        alerts.notify.assert_any_call(
            AlertSeverity.CRITICAL,
            "LOCK_LOST",
            "Controller lock lost; this instance stops acting",
            {"key": "test:lock:bot", "reason": "ownership mismatch during renewal"},
        )
        with pytest.raises(LockLost):
            loop.run_cycle()
        assert loop.state.consecutive_failures == 0
        assert leg_b.actions == []

    def test_run_forever_propagates_lock_lost(self, make_loop):
        lock = Mock()
        lock.on_lost = None
        lock.acquire.return_value = True
        lock.ensure_held.side_effect = LockLost("test:lock:bot")
        loop = make_loop(lock=lock, stop_event=RecordingEvent(stop_after=10))
        loop.start()
        with pytest.raises(LockLost):
            loop.run_forever()
        assert loop.state.consecutive_failures == 0

    def test_lock_taken_over_mid_cycle_leaves_new_holder_state(self, make_loop, book, kv_store, state_store):
        paper_a, leg_b, _ = book
        leg_a = Mock(wraps=paper_a)
        loop = make_loop(leg_a=leg_a)
        loop.start()

        def taken_over():
            kv_store.set("test:lock:bot", "usurper", ttl_seconds=30)
            loop.lock.renew()
            state_store.save(BotStateSnapshot(current_state=BotState.HEDGING).to_dict())
            return paper_a.fetch_positions()

        leg_a.fetch_positions.side_effect = taken_over

        with pytest.raises(LockLost):
            loop.run_cycle()
        assert state_store.load()["current_state"] == "HEDGING"
        assert leg_b.actions == []

    def test_failure_after_takeover_is_not_recorded(self, make_loop, book, kv_store, state_store):
        _, paper_b, _ = book
        leg_b = Mock(wraps=paper_b)
        loop = make_loop(leg_b=leg_b, stop_event=RecordingEvent(stop_after=10))
        loop.start()

        def taken_over(size, params):
            kv_store.set("test:lock:bot", "usurper", ttl_seconds=30)
            loop.lock.renew()
            state_store.save(BotStateSnapshot(current_state=BotState.HEDGING).to_dict())
            raise RuntimeError("venue down")

        leg_b.open.side_effect = taken_over

        with pytest.raises(LockLost):
            loop.run_forever()
        stored = state_store.load()
        assert stored["current_state"] == "HEDGING"
        assert stored["consecutive_failures"] == 0

    def test_lock_lost_while_sleeping_is_fatal(self, make_loop, kv_store):
        class TakenOverDuringSleep(RecordingEvent):
            def wait(self, timeout=None):
                kv_store.set("test:lock:bot", "usurper", ttl_seconds=30)
                loop.lock.renew()
                return super().wait(timeout)

        loop = make_loop(stop_event=TakenOverDuringSleep(stop_after=10))
        loop.start()

        with pytest.raises(LockLost):
            loop.run_forever()
        assert loop.cycle_count == 1
        assert loop.lock.lost


class TestStartupAndShutdown:

    def test_interrupted_rebalance_escalates_on_startup(self, make_loop, state_machine):
        state_machine.transition(BotStateSnapshot(), BotState.REBALANCING)
        alerts = Mock(spec=AlertService)
        loop = make_loop(alerts=alerts)
        state = loop.start()
        assert state.current_state == BotState.ERROR_RECOVERY
        assert "STATE_INTERRUPTED" in [c.args[1] for c in alerts.notify.call_args_list]
        alerts.bot_started.assert_called_once()

    def test_shutdown_after_failed_start_sends_no_stop_alert(self, make_loop, kv_store):
        kv_store.set("test:lock:bot", "someone-else", ttl_seconds=30)
        alerts = Mock(spec=AlertService)
        loop = make_loop(alerts=alerts)
        with pytest.raises(LockContention):
            loop.start()

        loop.shutdown()

        alerts.bot_stopped.assert_not_called()
        assert kv_store.get("test:lock:bot") == "someone-else"

    def test_unreadable_state_alerts(self, make_loop, kv_store):
        kv_store.set("test:state", "not json")
        alerts = Mock(spec=AlertService)
        loop = make_loop(alerts=alerts)
        state = loop.start()
        assert state == BotStateSnapshot()
        assert "STATE_UNREADABLE" in [c.args[1] for c in alerts.notify.call_args_list]

    def test_shutdown_persists_and_releases(self, make_loop, kv_store, state_store):
        alerts = Mock(spec=AlertService)
        loop = make_loop(alerts=alerts)
        loop.start()
        loop.run_cycle()

        loop.shutdown("test")

        assert state_store.load()["current_state"] == "SHUTTING_DOWN"
        assert kv_store.get("test:lock:bot") is None
        alerts.bot_stopped.assert_called_once_with("test")
        # Second call is a no-op
        loop.shutdown("again")
        alerts.bot_stopped.assert_called_once()

    def test_restart_after_graceful_shutdown_resumes(self, make_loop, state_store, metrics):
        first = make_loop()
        first.start()
        first.shutdown()

        # A new process builds its own state machine, guarded by its own lock
        second = make_loop(state_machine=StateMachine(state_store, metrics=metrics))
        assert second.start().current_state == BotState.IDLE

    def test_shutdown_in_error_recovery_keeps_state(self, make_loop, state_machine, state_store):
        state_machine.transition(BotStateSnapshot(), BotState.ERROR_RECOVERY, consecutive_failures=5)
        loop = make_loop()
        loop.start()
        loop.shutdown()
        assert state_store.load()["current_state"] == "ERROR_RECOVERY"

    def test_shutdown_continues_after_step_failure(self, make_loop, kv_store):
        state_store = Mock()
        state_store.close.side_effect = RuntimeError("close failed")
        alerts = Mock(spec=AlertService)
        loop = make_loop(alerts=alerts, state_store=state_store)
        loop.start()
        loop.shutdown()
        assert kv_store.get("test:lock:bot") is None
        alerts.bot_stopped.assert_called_once()

    def test_health_snapshot(self, make_loop):
        loop = make_loop()
        loop.start()
        loop.run_cycle()
        health = loop.health_snapshot()
        assert health["state"] == "IDLE"
        assert health["cycle_count"] == 1
        assert health["lock"]["held"] is True
        assert health["last_cycle"]["status"] == "ok"


class TestCompositionRoot:

    def test_build_loop_from_default_config(self):
        config = parse_config({"strategy": {"quiet_hours_start": None, "quiet_hours_end": None}})
        loop = build_loop(config)
        try:
            loop.start()
            result = loop.run_cycle()
            assert result.decision.reason == "delta_drift"
            assert result.dispatch_ok is True
        finally:
            loop.shutdown()

    def test_main_config_error_exits_2(self, tmp_path):
        assert main(["--config", str(tmp_path / "missing.yaml")]) == 2

    @patch("runner.main_loop.configure_logging")
    def test_main_once(self, _logging, tmp_path):
        config_file = tmp_path / "app.yaml"
        config_file.write_text(
            "strategy:\n  quiet_hours_start: null\n  quiet_hours_end: null\n"
            "monitoring:\n  metrics_enabled: false\n"
        )
        assert main(["--once", "--config", str(config_file)]) == 0

    @patch("runner.main_loop.configure_logging")
    def test_main_lock_contention_exits_1(self, _logging, tmp_path, make_loop, kv_store):
        config_file = tmp_path / "app.yaml"
        config_file.write_text("{}\n")
        kv_store.set("test:lock:bot", "someone-else", ttl_seconds=30)
        alerts = Mock(spec=AlertService)
        loop = make_loop(alerts=alerts)
        with patch("runner.main_loop.build_loop", return_value=loop):
            assert main(["--once", "--config", str(config_file)]) == 1
        assert kv_store.get("test:lock:bot") == "someone-else"
        alerts.bot_stopped.assert_not_called()

    @patch("runner.main_loop.configure_logging")
    def test_main_lock_lost_between_cycles_exits_1(self, _logging, tmp_path, make_loop, kv_store):
        config_file = tmp_path / "app.yaml"
        config_file.write_text("{}\n")

        class TakenOverDuringSleep(RecordingEvent):
            def wait(self, timeout=None):
                kv_store.set("test:lock:bot", "usurper", ttl_seconds=30)
                loop.lock.renew()
                return super().wait(timeout)

        alerts = Mock(spec=AlertService)
        loop = make_loop(alerts=alerts, stop_event=TakenOverDuringSleep(stop_after=10))
        with patch("runner.main_loop.build_loop", return_value=loop):
            assert main(["--config", str(config_file)]) == 1
        assert kv_store.get("test:lock:bot") == "usurper"
        assert "FATAL_ERROR" in [c.args[1] for c in alerts.notify.call_args_list]
