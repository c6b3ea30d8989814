"""
Exponential backoff with symmetric jitter.

Used by the main loop to pace cycles after a failure and by with_retry()
for wrapping individual calls.

    backoff = Backoff(initial_delay=1.0, max_delay=60.0, multiplier=2.0)
    backoff.wait(stop_event)   # ~1s, then ~2s, ~4s ... capped at ~60s
    backoff.reset()            # back to ~1s after a clean cycle
"""

import logging
import random
import threading
import time
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Backoff:
    """
    Exponential delay generator.

    The running delay grows by `multiplier` on every emission and is capped
    at `max_delay`. Jitter (+/- `jitter` fraction) is applied to the emitted
    value only, never stored in the running delay.
    """

    def __init__(
        self,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter: float = 0.25,
    ):
        if initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        self.initial_delay = float(initial_delay)
        self.max_delay = float(max_delay)
        self.multiplier = float(multiplier)
        self.jitter = max(0.0, min(float(jitter), 1.0))
        self._current = self.initial_delay

    @property
    def current_delay(self) -> float:
        return self._current

    def next_delay(self) -> float:
        """Return the next delay in seconds (with jitter) and advance."""
        base = self._current
        spread = base * self.jitter
        delay = max(0.0, base + random.uniform(-spread, spread))
        self._current = min(self._current * self.multiplier, self.max_delay)
        return delay

    def reset(self) -> None:
        """Restore the initial delay (call after a success)."""
        self._current = self.initial_delay

    def wait(self, stop_event: Optional[threading.Event] = None) -> float:
        """
        Sleep for the next delay.

        If `stop_event` is given the sleep ends early once it is set.

        Returns:
            The delay that was scheduled (seconds)
        """
        delay = self.next_delay()
        logger.debug("Backing off %.2fs (next base %.2fs)", delay, self._current)
        if stop_event is not None:
            stop_event.wait(delay)
        else:
            time.sleep(delay)
        return delay

    def state(self) -> dict:
        return {"current_delay": self._current, "max_delay": self.max_delay}


def with_retry(
    fn: Callable[[], T],
    max_attempts: int = 5,
    backoff: Optional[Backoff] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception, float], Any]] = None,
) -> T:
    """
    Call `fn` until it succeeds or `max_attempts` is exhausted.

    Args:
        fn: Zero-argument callable to invoke
        max_attempts: Total attempts including the first call
        backoff: Backoff policy (a fresh default policy if omitted)
        should_retry: Predicate deciding whether an error is retryable
            (default: retry everything)
        on_retry: Called as on_retry(attempt, error, delay) before each sleep

    Returns:
        Result of the first successful call

    Raises:
        The last error once attempts run out or the error is not retryable
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    policy = backoff or Backoff()

    attempt = 1
    while True:
        try:
            result = fn()
        except Exception as exc:
            if attempt >= max_attempts or (should_retry is not None and not should_retry(exc)):
                raise
            delay = policy.next_delay()
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            else:
                logger.warning(
                    "Attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt,
                    max_attempts,
                    exc,
                    delay,
                )
            time.sleep(delay)
            attempt += 1
            continue
        policy.reset()
        return result


__all__ = ["Backoff", "with_retry"]
