"""
Paper collaborators for DRY_RUN mode.

A PaperLegClient keeps a small in-memory book of positions. Sizes are in
base units and always positive; the leg's `direction` (+1 long, -1 short)
gives the sign of the exposure. Opening positive size grows exposure in the
leg's direction, negative size shrinks it (reduce-only).

Default DRY_RUN book: Leg A long 1000, Leg B short 950, so the first cycle
sees a 5% drift and exercises the full dispatch path without touching any
venue.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from core.collaborators import Collaborators, PriceQuote

logger = logging.getLogger(__name__)


@dataclass
class PaperPosition:
    position_id: str
    size: float
    lower_price: Optional[float] = None
    upper_price: Optional[float] = None


class PaperLegClient:
    """In-memory leg. Thread-safe, no I/O."""

    def __init__(self, name: str, direction: int = 1, mark_price: Optional[float] = None):
        if direction not in (1, -1):
            raise ValueError("direction must be +1 or -1")
        self.name = name
        self.direction = direction
        self.mark_price = mark_price
        self._positions: Dict[str, PaperPosition] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.actions: List[Dict[str, Any]] = []

    def add_position(
        self,
        size: float,
        lower_price: Optional[float] = None,
        upper_price: Optional[float] = None,
    ) -> PaperPosition:
        with self._lock:
            position = PaperPosition(
                position_id=f"paper-{self.name}-{next(self._ids)}",
                size=float(size),
                lower_price=lower_price,
                upper_price=upper_price,
            )
            self._positions[position.position_id] = position
            return position

    def fetch_positions(self) -> List[PaperPosition]:
        with self._lock:
            return list(self._positions.values())

    def calculate_delta(self, position: PaperPosition, price: float) -> float:
        if price > 0:
            self.mark_price = price
        return self.direction * position.size

    def is_in_range(self, position: PaperPosition) -> bool:
        if self.mark_price is None:
            return True
        if position.lower_price is not None and self.mark_price < position.lower_price:
            return False
        if position.upper_price is not None and self.mark_price > position.upper_price:
            return False
        return True

    def open(self, size: float, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Adjust the book by `size`; folds into the first open position.

        Returns None if a reduce-only request has nothing to reduce.
        """
        reduce_only = bool(params.get("reduce_only", False))
        with self._lock:
            position = next(iter(self._positions.values()), None)
            if position is None:
                if reduce_only or size <= 0:
                    logger.warning(f"[PAPER:{self.name}] nothing to reduce (size={size:+.4f})")
                    return None
                position = PaperPosition(position_id=f"paper-{self.name}-{next(self._ids)}", size=0.0)
                self._positions[position.position_id] = position
            position.size = max(0.0, position.size + float(size))
            result = {
                "position_id": position.position_id,
                "size": position.size,
                "filled": float(size),
                "reason": params.get("reason"),
            }
            self.actions.append({"action": "open", **result})
        logger.info(
            f"[PAPER:{self.name}] adjusted {position.position_id} by {size:+.4f} -> {result['size']:.4f}"
        )
        return result

    def close(self, position_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            position = self._positions.pop(position_id, None)
            if position is None:
                logger.warning(f"[PAPER:{self.name}] unknown position {position_id}")
                return None
            result = {"position_id": position_id, "closed_size": position.size}
            self.actions.append({"action": "close", **result})
        logger.info(f"[PAPER:{self.name}] closed {position_id} ({position.size:.4f})")
        return result

    def position_id(self, position: PaperPosition) -> str:
        return position.position_id

    def net_delta(self) -> float:
        with self._lock:
            return self.direction * sum(p.size for p in self._positions.values())


class StaticPriceOracle:
    """Oracle returning a fixed price, stamped with the current time."""

    def __init__(self, price: float, confidence: float = 0.0, clock: Callable[[], float] = time.time):
        self.price = float(price)
        self.confidence = float(confidence)
        self._clock = clock

    def set_price(self, price: float) -> None:
        self.price = float(price)

    def get_price(self) -> Optional[PriceQuote]:
        return PriceQuote(price=self.price, confidence=self.confidence, publish_time=self._clock())


def build_paper_collaborators(cfg: Optional[Mapping[str, Any]] = None) -> Collaborators:
    """
    Wire the DRY_RUN book from the `collaborators.paper` config section.

    {"price": 250.0, "confidence": 0.05,
     "leg_a": {"size": 1000, "lower_price": 200, "upper_price": 300},
     "leg_b": {"size": 950},
     "estimated_cost": 0.001}
    """
    cfg = dict(cfg or {})
    leg_a_cfg = dict(cfg.get("leg_a") or {})
    leg_b_cfg = dict(cfg.get("leg_b") or {})
    price = float(cfg.get("price", 250.0))
    estimated_cost = float(cfg.get("estimated_cost", 0.001))

    leg_a = PaperLegClient("leg_a", direction=1, mark_price=price)
    leg_a.add_position(
        float(leg_a_cfg.get("size", 1000.0)),
        lower_price=leg_a_cfg.get("lower_price"),
        upper_price=leg_a_cfg.get("upper_price"),
    )
    leg_b = PaperLegClient("leg_b", direction=-1, mark_price=price)
    leg_b.add_position(float(leg_b_cfg.get("size", 950.0)))

    oracle = StaticPriceOracle(price, confidence=float(cfg.get("confidence", 0.0)))
    logger.info(
        "Paper book: leg_a=%+.2f leg_b=%+.2f @ %.4f",
        leg_a.net_delta(),
        leg_b.net_delta(),
        price,
    )
    return Collaborators(leg_a=leg_a, leg_b=leg_b, oracle=oracle, cost_estimator=lambda: estimated_cost)


__all__ = [
    "PaperLegClient",
    "PaperPosition",
    "StaticPriceOracle",
    "build_paper_collaborators",
]
