"""
Shutdown coordination for the bot process.

SIGINT/SIGTERM, uncaught exceptions on the main thread and uncaught
exceptions in worker threads all end up in request(): the stop event is set
(the loop finishes its current cycle and exits) and a hard-timeout timer is
armed. Cleanup handlers then run once, newest first, from the main thread.
If cleanup has not finished when the timer fires the process is killed.
"""

import logging
import os
import signal
import sys
import threading
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 30.0


class ShutdownCoordinator:
    """Route every stop trigger to one graceful-shutdown path."""

    def __init__(
        self,
        stop_event: Optional[threading.Event] = None,
        timeout_seconds: float = DEFAULT_SHUTDOWN_TIMEOUT,
        exit_fn: Callable[[int], None] = os._exit,
    ):
        self.stop_event = stop_event or threading.Event()
        self.timeout_seconds = float(timeout_seconds)
        self._exit_fn = exit_fn
        self._handlers: List[Tuple[str, Callable[[], None]]] = []
        self._mutex = threading.Lock()
        self._requested = False
        self._handlers_ran = False
        self._timer: Optional[threading.Timer] = None
        self.reason: Optional[str] = None

        self._previous_signal_handlers = {}
        self._previous_excepthook = None
        self._previous_thread_excepthook = None

    @property
    def in_progress(self) -> bool:
        return self._requested

    def register(self, handler: Callable[[], None], name: Optional[str] = None) -> None:
        """Add a cleanup handler. Handlers run in reverse registration order."""
        self._handlers.insert(0, (name or getattr(handler, "__name__", "handler"), handler))

    def install(self) -> None:
        """Install signal handlers and exception hooks. Call once from the main thread."""
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                self._previous_signal_handlers[signum] = signal.signal(signum, self._handle_signal)
        else:
            logger.warning("Not on the main thread; signal handlers not installed")
        self._previous_excepthook = sys.excepthook
        self._previous_thread_excepthook = threading.excepthook
        sys.excepthook = self._handle_uncaught
        threading.excepthook = self._handle_thread_exception
        logger.info("Shutdown handlers installed")

    def uninstall(self) -> None:
        for signum, previous in self._previous_signal_handlers.items():
            signal.signal(signum, previous)
        self._previous_signal_handlers = {}
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None
        if self._previous_thread_excepthook is not None:
            threading.excepthook = self._previous_thread_excepthook
            self._previous_thread_excepthook = None

    def request(self, reason: str) -> bool:
        """
        Start the graceful shutdown. Later calls are ignored.

        Returns:
            True for the call that started the shutdown
        """
        with self._mutex:
            if self._requested:
                logger.info(f"Already shutting down, ignoring {reason}")
                return False
            self._requested = True
            self.reason = reason

        logger.warning("=" * 80)
        logger.warning(f"SHUTDOWN REQUESTED ({reason}) - finishing current cycle")
        logger.warning("=" * 80)
        self._arm_timer()
        self.stop_event.set()
        return True

    def run_handlers(self) -> List[str]:
        """
        Run the cleanup handlers once.

        A failing handler is logged and the rest still run.

        Returns:
            Names of the handlers that failed
        """
        with self._mutex:
            if self._handlers_ran:
                return []
            self._handlers_ran = True
        self._arm_timer()

        failures = []
        for name, handler in self._handlers:
            try:
                handler()
            except Exception as exc:
                failures.append(name)
                logger.error(f"Shutdown handler '{name}' failed: {exc}", exc_info=True)

        self._cancel_timer()
        if failures:
            logger.warning(f"Shutdown finished with {len(failures)} failed handler(s): {failures}")
        else:
            logger.info("Graceful shutdown complete")
        return failures

    def _handle_signal(self, signum, frame) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        self.request(name)

    def _handle_uncaught(self, exc_type, exc, tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            self.request("KeyboardInterrupt")
        else:
            logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))
            self.request(f"uncaught exception: {exc_type.__name__}")
        self.run_handlers()

    def _handle_thread_exception(self, args) -> None:
        thread_name = args.thread.name if args.thread is not None else "unknown"
        logger.critical(
            f"Uncaught exception in thread {thread_name}",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        self.request(f"uncaught exception in thread {thread_name}")

    def _arm_timer(self) -> None:
        with self._mutex:
            if self._timer is not None:
                return
            self._timer = threading.Timer(self.timeout_seconds, self._force_exit)
            self._timer.daemon = True
            self._timer.start()

    def _cancel_timer(self) -> None:
        with self._mutex:
            if self._timer is not None:
                self._timer.cancel()

    def _force_exit(self) -> None:
        logger.critical(f"Shutdown did not finish within {self.timeout_seconds:.0f}s, forcing exit")
        for handler in logging.getLogger().handlers:
            try:
                handler.flush()
            except Exception:
                pass
        self._exit_fn(1)


__all__ = ["DEFAULT_SHUTDOWN_TIMEOUT", "ShutdownCoordinator"]
