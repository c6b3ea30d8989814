"""
Tests for the persistent state machine.

Verifies:
1. Default snapshot when nothing (or garbage) is stored
2. transition() builds a new snapshot, persists it whole, leaves input untouched;
   a failing write guard blocks the write
3. Five consecutive failures escalate to ERROR_RECOVERY
4. record_success() resets counters and is a no-op when already clean
5. can_operate() gate
6. Startup recovery of SHUTTING_DOWN and in-flight states
"""

import json
from unittest.mock import Mock

import pytest

from core.exceptions import LockLost, TransientExternalError
from core.state_machine import BotState, BotStateSnapshot, StateMachine, can_operate


class TestSnapshot:

    def test_defaults(self):
        state = BotStateSnapshot()
        assert state.current_state == BotState.IDLE
        assert state.leg_a_position_id is None
        assert state.leg_b_position_id is None
        assert state.last_leg_a_delta == 0.0
        assert state.last_leg_b_delta == 0.0
        assert state.last_rebalance_time == 0.0
        assert state.out_of_range_since is None
        assert state.consecutive_failures == 0
        assert state.last_error is None

    def test_from_dict_ignores_unknown_and_fills_missing(self):
        state = BotStateSnapshot.from_dict({"current_state": "HEDGING", "unknown": 1, "last_leg_a_delta": "12.5"})
        assert state.current_state == BotState.HEDGING
        assert state.last_leg_a_delta == 12.5
        assert state.consecutive_failures == 0

    def test_from_dict_rejects_unknown_state(self):
        with pytest.raises(ValueError):
            BotStateSnapshot.from_dict({"current_state": "DANCING"})

    def test_to_dict_is_json_ready(self):
        data = BotStateSnapshot(current_state=BotState.REBALANCING).to_dict()
        assert json.loads(json.dumps(data))["current_state"] == "REBALANCING"


class TestLoad:

    def test_load_default_when_absent(self, state_machine):
        state = state_machine.load()
        assert state == BotStateSnapshot()
        assert state_machine.last_load_error is None

    def test_load_persisted(self, state_machine, state_store):
        state_store.save(BotStateSnapshot(current_state=BotState.ERROR_RECOVERY, consecutive_failures=5).to_dict())
        state = state_machine.load()
        assert state.current_state == BotState.ERROR_RECOVERY
        assert state.consecutive_failures == 5

    def test_load_corrupt_falls_back_to_default(self, state_machine, kv_store):
        kv_store.set("test:state", "{oops")
        state = state_machine.load()
        assert state == BotStateSnapshot()
        assert "StateDecodeError" in state_machine.last_load_error

    def test_load_store_error_falls_back_to_default(self):
        store = Mock()
        store.load.side_effect = TransientExternalError("redis.get")
        machine = StateMachine(store)
        assert machine.load() == BotStateSnapshot()
        assert machine.last_load_error is not None


class TestTransition:

    def test_transition_returns_new_snapshot_and_persists(self, state_machine, state_store):
        original = BotStateSnapshot()
        updated = state_machine.transition(original, BotState.REBALANCING, last_leg_a_delta=10.0)

        assert original.current_state == BotState.IDLE
        assert original.last_leg_a_delta == 0.0
        assert updated.current_state == BotState.REBALANCING
        assert updated.last_leg_a_delta == 10.0
        assert state_store.load() == updated.to_dict()

    def test_transition_unknown_field(self, state_machine):
        with pytest.raises(TypeError):
            state_machine.transition(BotStateSnapshot(), BotState.IDLE, not_a_field=1)

    def test_store_failure_propagates(self):
        store = Mock()
        store.save.side_effect = TransientExternalError("redis.set")
        machine = StateMachine(store)
        with pytest.raises(TransientExternalError):
            machine.transition(BotStateSnapshot(), BotState.REBALANCING)

    def test_guard_blocks_every_write(self, state_store):
        state_store.save(BotStateSnapshot(current_state=BotState.HEDGING).to_dict())
        guard = Mock(side_effect=LockLost("test:lock:bot"))
        machine = StateMachine(state_store, guard=guard)

        with pytest.raises(LockLost):
            machine.transition(BotStateSnapshot(), BotState.REBALANCING)
        with pytest.raises(LockLost):
            machine.save(BotStateSnapshot(current_state=BotState.SHUTTING_DOWN))
        with pytest.raises(LockLost):
            machine.record_failure(BotStateSnapshot(), "venue down")

        assert guard.call_count == 3
        assert state_store.load()["current_state"] == "HEDGING"

    def test_guard_passes_when_allowed(self, state_store):
        guard = Mock(return_value=None)
        machine = StateMachine(state_store, guard=guard)
        machine.transition(BotStateSnapshot(), BotState.REBALANCING)
        guard.assert_called_once_with()
        assert state_store.load()["current_state"] == "REBALANCING"

    def test_transition_updates_state_gauge(self, state_machine, metrics):
        state_machine.transition(BotStateSnapshot(), BotState.ERROR_RECOVERY, consecutive_failures=5)
        assert metrics.sample("test_state") == 6.0
        assert metrics.sample("test_consecutive_failures") == 5.0


class TestFailureAccounting:

    def test_escalates_after_five_failures(self, state_machine):
        state = BotStateSnapshot()
        for i in range(1, 5):
            state = state_machine.record_failure(state, f"error {i}")
            assert state.current_state == BotState.IDLE
            assert state.consecutive_failures == i

        state = state_machine.record_failure(state, "error 5")
        assert state.current_state == BotState.ERROR_RECOVERY
        assert state.consecutive_failures == 5
        assert state.last_error == "error 5"
        assert state_machine.can_operate(state) is False

    def test_record_success_resets(self, state_machine):
        state = state_machine.record_failure(BotStateSnapshot(), "boom")
        state = state_machine.record_success(state)
        assert state.consecutive_failures == 0
        assert state.last_error is None
        assert state.current_state == BotState.IDLE

    def test_record_success_noop_when_clean(self):
        store = Mock()
        machine = StateMachine(store)
        state = BotStateSnapshot()
        assert machine.record_success(state) is state
        store.save.assert_not_called()

    def test_threshold_validation(self, state_store):
        with pytest.raises(ValueError):
            StateMachine(state_store, failure_threshold=0)


class TestOperability:

    @pytest.mark.parametrize("state", list(BotState))
    def test_can_operate(self, state):
        expected = state not in (BotState.ERROR_RECOVERY, BotState.SHUTTING_DOWN)
        assert can_operate(BotStateSnapshot(current_state=state)) is expected


class TestStartupRecovery:

    def test_shutting_down_resumes_idle(self, state_machine):
        state = state_machine.recover_on_startup(BotStateSnapshot(current_state=BotState.SHUTTING_DOWN))
        assert state.current_state == BotState.IDLE

    @pytest.mark.parametrize(
        "interrupted",
        [BotState.OPENING_LEG_A, BotState.HEDGING, BotState.REBALANCING, BotState.CLOSING_LEG_A, BotState.CLOSING_HEDGE],
    )
    def test_in_flight_escalates(self, state_machine, interrupted):
        state = state_machine.recover_on_startup(BotStateSnapshot(current_state=interrupted))
        assert state.current_state == BotState.ERROR_RECOVERY
        assert interrupted.value in state.last_error

    @pytest.mark.parametrize("kept", [BotState.IDLE, BotState.ERROR_RECOVERY])
    def test_stable_states_kept(self, kept):
        store = Mock()
        machine = StateMachine(store)
        original = BotStateSnapshot(current_state=kept)
        assert machine.recover_on_startup(original) is original
        store.save.assert_not_called()

    def test_clear(self, state_machine, state_store):
        state_machine.transition(BotStateSnapshot(), BotState.ERROR_RECOVERY)
        state_machine.clear()
        assert state_store.load() is None
