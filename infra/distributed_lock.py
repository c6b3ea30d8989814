"""
Distributed Lock - One Active Controller Per Resource

Lease-based mutual exclusion over the shared key-value store, preventing:
- Two controllers acting on the same external position (split-brain)
- State corruption from concurrent snapshot writes

The lock record holds a token unique to this instance and a TTL. While
held, a background thread extends the TTL well before it expires. The
token comparison inside the store's atomic operations is the only guard
against interference from other processes.

If renewal finds another token (or cannot confirm ownership for a full TTL)
the lock is lost. That is fatal for this instance: the lock records a
LockLost error, calls `on_lost`, and every later ensure_held() raises. The
lock never exits the process itself.

Usage:
    lock = DistributedLock(store, "hedge-bot", ttl_seconds=30, renewal_seconds=10,
                           on_lost=handle_loss)
    if not lock.acquire():
        raise LockContention(lock.key)
    ...
    lock.ensure_held()   # before every mutating action
    ...
    lock.release()
"""

import logging
import os
import secrets
import threading
import time
from typing import Callable, Dict, Optional

from core.exceptions import LockContention, LockLost
from infra.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


def make_token() -> str:
    """Holder token: pid, epoch millis and a random suffix."""
    return f"{os.getpid()}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


class DistributedLock:
    """Lease lock with background renewal and compare-and-act release."""

    def __init__(
        self,
        store: KeyValueStore,
        name: str,
        ttl_seconds: float = 30.0,
        renewal_seconds: float = 10.0,
        namespace: str = "hedgekeeper",
        on_lost: Optional[Callable[[LockLost], None]] = None,
        token: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if not 0 < renewal_seconds < ttl_seconds:
            raise ValueError("renewal_seconds must be positive and shorter than ttl_seconds")
        self._store = store
        self.name = name
        self.key = f"{namespace}:lock:{name}"
        self.token = token or make_token()
        self.ttl_seconds = float(ttl_seconds)
        self.renewal_seconds = float(renewal_seconds)
        self.on_lost = on_lost
        self._clock = clock

        # Guards _held/_lost_error; renewal holds it across compare-and-extend
        self._flag_lock = threading.Lock()
        self._held = False
        self._lost_error: Optional[LockLost] = None
        self._last_confirmed: Optional[float] = None

        self._stop_renewal = threading.Event()
        self._renewal_thread: Optional[threading.Thread] = None

    @property
    def held(self) -> bool:
        return self._held

    @property
    def lost(self) -> bool:
        return self._lost_error is not None

    def acquire(self) -> bool:
        """
        Try to take the lock once.

        Returns:
            True if this instance now holds the lock, False if another live
            holder exists
        """
        with self._flag_lock:
            if self._held:
                logger.warning(f"Lock {self.key} already held by this instance")
                return True
            if self._lost_error is not None:
                logger.error(f"Lock {self.key} was lost earlier; refusing to re-acquire")
                return False
            acquired = self._store.set_if_absent(self.key, self.token, self.ttl_seconds)
            if not acquired:
                logger.error(f"Lock {self.key} is held by another instance")
                return False
            self._held = True
            self._last_confirmed = self._clock()

        logger.info(f"Lock acquired ({self.key}, token={self.token}, ttl={self.ttl_seconds:.0f}s)")
        self._start_renewal()
        return True

    def release(self) -> bool:
        """
        Release the lock if this instance still owns it.

        Returns:
            True if the record was deleted, False if it was not held or
            another holder had already taken over
        """
        with self._flag_lock:
            if not self._held:
                return False
            self._held = False
        self._stop_renewal_thread()

        released = self._store.compare_and_delete(self.key, self.token)
        if released:
            logger.info(f"Lock released ({self.key})")
        else:
            logger.warning(f"Lock {self.key} was no longer ours at release")
        return released

    def renew(self) -> bool:
        """
        Extend the lease once (called by the renewal thread).

        Returns:
            True if ownership was confirmed, False otherwise
        """
        with self._flag_lock:
            if not self._held:
                return False
            try:
                confirmed = self._store.compare_and_extend(self.key, self.token, self.ttl_seconds)
            except Exception as exc:
                unconfirmed_for = self._clock() - (self._last_confirmed or 0.0)
                if unconfirmed_for >= self.ttl_seconds:
                    loss = self._mark_lost(f"renewal failing for {unconfirmed_for:.1f}s: {exc}")
                else:
                    logger.error(f"Lock renewal error for {self.key} (will retry): {exc}")
                    return False
            else:
                if confirmed:
                    self._last_confirmed = self._clock()
                    logger.debug(f"Lock renewed ({self.key})")
                    return True
                loss = self._mark_lost("ownership mismatch during renewal")

        self._notify_lost(loss)
        return False

    def ensure_held(self) -> None:
        """
        Raise unless this instance still owns the lock.

        Raises:
            LockLost: ownership was lost, or the lock was never acquired
        """
        if self._lost_error is not None:
            raise self._lost_error
        if not self._held:
            raise LockLost(self.key, "lock not held")

    def check_if_held(self) -> bool:
        """Read-only comparison against the store. Diagnostics only."""
        try:
            return self._store.get(self.key) == self.token
        except Exception as exc:
            logger.warning(f"Could not read lock {self.key}: {exc}")
            return False

    def status(self) -> Dict[str, object]:
        return {
            "held": self._held,
            "lost": self.lost,
            "key": self.key,
            "token": self.token,
        }

    def _mark_lost(self, reason: str) -> LockLost:
        # Caller holds _flag_lock
        self._held = False
        self._lost_error = LockLost(self.key, reason)
        self._stop_renewal.set()
        logger.critical("=" * 80)
        logger.critical(f"LOCK LOST: {self.key} ({reason})")
        logger.critical("Another instance may be controlling the position. Stopping all actions.")
        logger.critical("=" * 80)
        return self._lost_error

    def _notify_lost(self, error: LockLost) -> None:
        if self.on_lost is None:
            return
        try:
            self.on_lost(error)
        except Exception as exc:
            logger.error(f"on_lost handler failed: {exc}", exc_info=True)

    def _start_renewal(self) -> None:
        self._stop_renewal.clear()
        self._renewal_thread = threading.Thread(
            target=self._renewal_loop,
            name=f"LockRenewal[{self.name}]",
            daemon=True,
        )
        self._renewal_thread.start()

    def _renewal_loop(self) -> None:
        while not self._stop_renewal.wait(self.renewal_seconds):
            if not self._held:
                return
            self.renew()

    def _stop_renewal_thread(self) -> None:
        self._stop_renewal.set()
        thread = self._renewal_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.renewal_seconds + 1.0)
        self._renewal_thread = None

    def __enter__(self):
        if not self.acquire():
            raise LockContention(self.key)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


__all__ = ["DistributedLock", "make_token"]
