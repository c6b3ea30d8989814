"""Oracle quote sanity checks run before a price is used for deltas."""

import time
from dataclasses import dataclass
from typing import Optional

from core.collaborators import PriceQuote


@dataclass(frozen=True)
class PriceCheck:
    ok: bool
    reason: Optional[str] = None


def check_price_quality(
    quote: Optional[PriceQuote],
    now: Optional[float] = None,
    max_confidence_pct: float = 0.01,
    max_age_seconds: float = 60.0,
) -> PriceCheck:
    """
    Reject quotes that should not drive a decision.

    Args:
        quote: Oracle quote (None if the oracle had nothing)
        now: Epoch seconds (defaults to time.time())
        max_confidence_pct: Widest acceptable confidence as a fraction of price
        max_age_seconds: Oldest acceptable publish time
    """
    if quote is None:
        return PriceCheck(False, "no_quote")
    if quote.price <= 0:
        return PriceCheck(False, f"non_positive_price ({quote.price})")

    confidence_pct = abs(quote.confidence) / quote.price
    if confidence_pct > max_confidence_pct:
        return PriceCheck(
            False,
            f"confidence_too_wide ({confidence_pct:.4%} > {max_confidence_pct:.4%})",
        )

    current = time.time() if now is None else now
    age = current - quote.publish_time
    if age > max_age_seconds:
        return PriceCheck(False, f"stale_quote ({age:.1f}s > {max_age_seconds:.0f}s)")

    return PriceCheck(True)


__all__ = ["PriceCheck", "check_price_quality"]
