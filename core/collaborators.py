"""
Interfaces of the external collaborators the control loop consumes.

Protocol clients (liquidity positions, perpetual hedges, price oracles) live
outside this package. The loop only needs a signed delta per leg, the range
status of Leg A and a way to open/close hedge size.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class PriceQuote:
    """Oracle price with its confidence interval (same units) and epoch publish time."""
    price: float
    confidence: float
    publish_time: float


@runtime_checkable
class LegClient(Protocol):
    """One side of the hedged book."""

    def fetch_positions(self) -> List[Any]:
        ...

    def calculate_delta(self, position: Any, price: float) -> float:
        """Signed exposure of `position` in base units at `price`."""
        ...

    def is_in_range(self, position: Any) -> bool:
        ...

    def open(self, size: float, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Add signed size. None means the action did not go through."""
        ...

    def close(self, position_id: str) -> Optional[Dict[str, Any]]:
        ...

    def position_id(self, position: Any) -> str:
        ...


@runtime_checkable
class PriceOracle(Protocol):
    def get_price(self) -> Optional[PriceQuote]:
        ...


# Returns the estimated cost of one rebalance action (same units as strategy.max_estimated_cost)
CostEstimator = Callable[[], float]


def zero_cost() -> float:
    return 0.0


@dataclass
class Collaborators:
    """Bundle returned by a collaborator factory (see collaborators.factory in config)."""
    leg_a: LegClient
    leg_b: LegClient
    oracle: PriceOracle
    cost_estimator: Optional[CostEstimator] = None


__all__ = [
    "Collaborators",
    "CostEstimator",
    "LegClient",
    "PriceOracle",
    "PriceQuote",
    "zero_cost",
]
