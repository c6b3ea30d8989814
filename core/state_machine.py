"""
hedgekeeper Core: Persistent State Machine

The bot's operating state lives in one snapshot that is replaced as a whole
on every transition. All mutations go through StateMachine.transition(),
and callers must hold the controller lock while transitioning.

States:
    IDLE            nothing in flight, decisions may trigger actions
    OPENING_LEG_A   opening the liquidity leg
    HEDGING         opening the hedge leg
    REBALANCING     adjusting the hedge leg
    CLOSING_LEG_A   closing the liquidity leg
    CLOSING_HEDGE   closing the hedge leg
    ERROR_RECOVERY  escalated after repeated failures, needs an operator
    SHUTTING_DOWN   graceful stop in progress
"""

import logging
from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional

from infra.metrics import MetricsRecorder
from infra.state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5


class BotState(str, Enum):
    IDLE = "IDLE"
    OPENING_LEG_A = "OPENING_LEG_A"
    HEDGING = "HEDGING"
    REBALANCING = "REBALANCING"
    CLOSING_LEG_A = "CLOSING_LEG_A"
    CLOSING_HEDGE = "CLOSING_HEDGE"
    ERROR_RECOVERY = "ERROR_RECOVERY"
    SHUTTING_DOWN = "SHUTTING_DOWN"

    def __str__(self) -> str:
        return self.value


NON_OPERATING_STATES = frozenset({BotState.ERROR_RECOVERY, BotState.SHUTTING_DOWN})

# States that only exist while an action is in flight
IN_FLIGHT_STATES = frozenset({
    BotState.OPENING_LEG_A,
    BotState.HEDGING,
    BotState.REBALANCING,
    BotState.CLOSING_LEG_A,
    BotState.CLOSING_HEDGE,
})


@dataclass(frozen=True)
class BotStateSnapshot:
    """Persisted operating state. Immutable: transitions build a new snapshot."""
    current_state: BotState = BotState.IDLE
    leg_a_position_id: Optional[str] = None
    leg_b_position_id: Optional[str] = None
    last_leg_a_delta: float = 0.0
    last_leg_b_delta: float = 0.0
    last_rebalance_time: float = 0.0
    out_of_range_since: Optional[float] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["current_state"] = self.current_state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotStateSnapshot":
        """
        Build a snapshot from stored data.

        Unknown keys are ignored and missing keys take defaults.

        Raises:
            ValueError: current_state is not a known state or a numeric
                field cannot be converted
        """
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if "current_state" in values:
            values["current_state"] = BotState(values["current_state"])
        for name in ("last_leg_a_delta", "last_leg_b_delta", "last_rebalance_time"):
            if values.get(name) is None:
                values.pop(name, None)
            else:
                values[name] = float(values[name])
        if values.get("out_of_range_since") is not None:
            values["out_of_range_since"] = float(values["out_of_range_since"])
        if values.get("consecutive_failures") is None:
            values.pop("consecutive_failures", None)
        else:
            values["consecutive_failures"] = max(0, int(values["consecutive_failures"]))
        return cls(**values)

    @property
    def is_clean(self) -> bool:
        return self.consecutive_failures == 0 and self.last_error is None


def can_operate(state: BotStateSnapshot) -> bool:
    """False in ERROR_RECOVERY or SHUTTING_DOWN; every cycle checks this first."""
    return state.current_state not in NON_OPERATING_STATES


class StateMachine:
    """Load, transition and persist the bot state snapshot."""

    def __init__(
        self,
        store: StateStore,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        metrics: Optional[MetricsRecorder] = None,
        guard: Optional[Callable[[], None]] = None,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._store = store
        self.failure_threshold = int(failure_threshold)
        self._metrics = metrics
        # Raises (e.g. LockLost) when this process may no longer write
        self.guard = guard
        self.last_load_error: Optional[str] = None

    def load(self) -> BotStateSnapshot:
        """
        Return the persisted snapshot, or a default IDLE snapshot.

        A read or parse failure is treated exactly like an empty store; the
        error is kept in `last_load_error` so the caller can raise an alert.
        """
        self.last_load_error = None
        try:
            data = self._store.load()
            if data is None:
                logger.info("No existing state, using defaults")
                state = BotStateSnapshot()
            else:
                state = BotStateSnapshot.from_dict(data)
                logger.info(f"Loaded state: {state.current_state} (failures={state.consecutive_failures})")
        except Exception as exc:
            self.last_load_error = f"{type(exc).__name__}: {exc}"
            logger.error(f"Failed to load state, using defaults: {self.last_load_error}")
            state = BotStateSnapshot()
        self._observe(state)
        return state

    def save(self, state: BotStateSnapshot) -> BotStateSnapshot:
        """Persist a snapshot as is (used to flush on shutdown)."""
        self._check_guard()
        self._store.save(state.to_dict())
        self._observe(state)
        return state

    def transition(self, current: BotStateSnapshot, new_state: BotState, **updates: Any) -> BotStateSnapshot:
        """
        Build {current, updates, current_state=new_state}, persist it whole and return it.

        Raises:
            TypeError: unknown field in updates
            TransientExternalError: store write failed (nothing is returned
                and the caller keeps its previous snapshot)
            LockLost: the guard reports the controller lock is gone; nothing
                is written
        """
        updated = replace(current, **updates, current_state=BotState(new_state))
        self._check_guard()
        self._store.save(updated.to_dict())
        self._observe(updated)

        if current.current_state != updated.current_state:
            logger.info(
                "State transition %s -> %s (updates=%s)",
                current.current_state,
                updated.current_state,
                sorted(updates),
            )
        else:
            logger.debug("State updated in %s (updates=%s)", updated.current_state, sorted(updates))
        return updated

    def record_failure(self, state: BotStateSnapshot, error: str) -> BotStateSnapshot:
        """Count a failed cycle; escalate to ERROR_RECOVERY at the threshold."""
        failures = state.consecutive_failures + 1
        if failures >= self.failure_threshold:
            logger.error(
                f"Failure {failures}/{self.failure_threshold} reached, entering ERROR_RECOVERY: {error}"
            )
            return self.transition(
                state,
                BotState.ERROR_RECOVERY,
                consecutive_failures=failures,
                last_error=error,
            )
        logger.warning(f"Failure {failures}/{self.failure_threshold}: {error}")
        return self.transition(
            state,
            state.current_state,
            consecutive_failures=failures,
            last_error=error,
        )

    def record_success(self, state: BotStateSnapshot) -> BotStateSnapshot:
        if state.is_clean:
            return state
        logger.info(f"Recovered after {state.consecutive_failures} failure(s)")
        return self.transition(
            state,
            state.current_state,
            consecutive_failures=0,
            last_error=None,
        )

    def can_operate(self, state: BotStateSnapshot) -> bool:
        return can_operate(state)

    def recover_on_startup(self, state: BotStateSnapshot) -> BotStateSnapshot:
        """
        Normalize a snapshot left behind by the previous process.

        SHUTTING_DOWN came from a graceful stop and resumes as IDLE. An
        in-flight state means the previous process died mid-action and the
        collaborator-side outcome is unknown, so it escalates to
        ERROR_RECOVERY for an operator to reconcile.
        """
        if state.current_state == BotState.SHUTTING_DOWN:
            logger.info("Previous run shut down gracefully, resuming as IDLE")
            return self.transition(state, BotState.IDLE)
        if state.current_state in IN_FLIGHT_STATES:
            message = f"Interrupted during {state.current_state}; verify positions before resuming"
            logger.error(message)
            return self.transition(state, BotState.ERROR_RECOVERY, last_error=message)
        return state

    def clear(self) -> None:
        """Delete the persisted snapshot (operator action only)."""
        self._store.clear()

    def _check_guard(self) -> None:
        if self.guard is not None:
            self.guard()

    def _observe(self, state: BotStateSnapshot) -> None:
        if self._metrics is not None:
            self._metrics.record_state(state.current_state.value, state.consecutive_failures)


__all__ = [
    "BotState",
    "BotStateSnapshot",
    "DEFAULT_FAILURE_THRESHOLD",
    "IN_FLIGHT_STATES",
    "NON_OPERATING_STATES",
    "StateMachine",
    "can_operate",
]
