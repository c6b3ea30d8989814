"""
Rebalance decision engine.

Pure evaluation of whether the hedge needs adjusting. No I/O, logging or
metrics here: the loop reports the returned decision.

Precedence (first match wins):
    1. not_idle              another action is in flight (blocked)
    2. quiet_hours           inside the configured quiet window (blocked)
    3. gas_too_high          estimated cost above the cap (blocked)
    4. out_of_range_too_long Leg A out of range past the limit: unwind the hedge
    5. delta_drift           |net| / max(|leg A|, 1) at or above the threshold
    6. within_threshold      nothing to do
"""

import time
from dataclasses import dataclass
from typing import Optional

from core.clock import QuietWindow
from core.state_machine import BotState, BotStateSnapshot

REASON_NOT_IDLE = "not_idle"
REASON_QUIET_HOURS = "quiet_hours"
REASON_GAS_TOO_HIGH = "gas_too_high"
REASON_OUT_OF_RANGE = "out_of_range_too_long"
REASON_DELTA_DRIFT = "delta_drift"
REASON_WITHIN_THRESHOLD = "within_threshold"


@dataclass(frozen=True)
class RebalancePolicy:
    drift_threshold: float = 0.05
    max_out_of_range_seconds: float = 3600.0
    max_estimated_cost: float = 0.05
    quiet_window: Optional[QuietWindow] = None


@dataclass(frozen=True)
class RebalanceDecision:
    should_rebalance: bool
    reason: str
    current_delta: float
    size_to_adjust: float
    blocked: bool = False
    block_reason: Optional[str] = None
    drift_pct: float = 0.0
    estimated_cost: float = 0.0

    @property
    def actionable(self) -> bool:
        return self.should_rebalance and not self.blocked


def evaluate_rebalance(
    state: BotStateSnapshot,
    leg_a_delta: float,
    leg_b_delta: float,
    estimated_cost: float,
    leg_a_in_range: bool,
    policy: RebalancePolicy,
    now: Optional[float] = None,
) -> RebalanceDecision:
    """Decide whether (and by how much) to adjust Leg B."""
    now = time.time() if now is None else now
    net_delta = leg_a_delta + leg_b_delta
    drift_pct = abs(net_delta) / max(abs(leg_a_delta), 1.0)

    def blocked(reason: str, block_reason: str) -> RebalanceDecision:
        return RebalanceDecision(
            should_rebalance=False,
            reason=reason,
            current_delta=net_delta,
            size_to_adjust=0.0,
            blocked=True,
            block_reason=block_reason,
            drift_pct=drift_pct,
            estimated_cost=estimated_cost,
        )

    if state.current_state != BotState.IDLE:
        return blocked(REASON_NOT_IDLE, f"Current state is {state.current_state.value}")

    if policy.quiet_window is not None and policy.quiet_window.contains(now):
        return blocked(REASON_QUIET_HOURS, f"Inside quiet window {policy.quiet_window}")

    if estimated_cost > policy.max_estimated_cost:
        return blocked(
            REASON_GAS_TOO_HIGH,
            f"Estimated cost {estimated_cost:.6f} exceeds {policy.max_estimated_cost:.6f}",
        )

    if (
        not leg_a_in_range
        and state.out_of_range_since is not None
        and now - state.out_of_range_since > policy.max_out_of_range_seconds
    ):
        return RebalanceDecision(
            should_rebalance=True,
            reason=REASON_OUT_OF_RANGE,
            current_delta=net_delta,
            size_to_adjust=-leg_b_delta,
            drift_pct=drift_pct,
            estimated_cost=estimated_cost,
        )

    if drift_pct >= policy.drift_threshold:
        return RebalanceDecision(
            should_rebalance=True,
            reason=REASON_DELTA_DRIFT,
            current_delta=net_delta,
            size_to_adjust=net_delta,
            drift_pct=drift_pct,
            estimated_cost=estimated_cost,
        )

    return RebalanceDecision(
        should_rebalance=False,
        reason=REASON_WITHIN_THRESHOLD,
        current_delta=net_delta,
        size_to_adjust=0.0,
        drift_pct=drift_pct,
        estimated_cost=estimated_cost,
    )


__all__ = [
    "REASON_DELTA_DRIFT",
    "REASON_GAS_TOO_HIGH",
    "REASON_NOT_IDLE",
    "REASON_OUT_OF_RANGE",
    "REASON_QUIET_HOURS",
    "REASON_WITHIN_THRESHOLD",
    "RebalanceDecision",
    "RebalancePolicy",
    "evaluate_rebalance",
]
