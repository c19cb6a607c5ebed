"""Teardown guarantee: one action per run, fired at most once on any exit path."""

from __future__ import annotations

import atexit
import logging
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class TeardownRegistry:
    """Holds the single teardown action of a run.

    fire() is safe to call from the main flow, signal handlers, atexit and
    the excepthook alike; the action itself runs at most once.
    """

    def __init__(self) -> None:
        self._action: Callable[[], None] | None = None
        self._fired = False
        self._lock = threading.RLock()

    @property
    def armed(self) -> bool:
        return self._action is not None

    @property
    def fired(self) -> bool:
        return self._fired

    def arm(self, action: Callable[[], None]) -> None:
        with self._lock:
            if self._action is not None:
                raise RuntimeError("teardown already armed for this run")
            self._action = action

    def fire(self) -> bool:
        """Run the teardown action if armed and not yet run. Returns whether it ran."""
        with self._lock:
            if self._fired or self._action is None:
                return False
            self._fired = True
            action = self._action
        logger.debug("firing teardown")
        action()
        return True


@contextmanager
def exit_handlers(registry: TeardownRegistry) -> Iterator[TeardownRegistry]:
    """Route atexit, SIGINT, SIGTERM and uncaught exceptions to registry.fire().

    Signal handlers fire the teardown and exit with status 1. Previous
    signal handlers and the excepthook are restored when the block exits;
    the atexit registration stays for the life of the process, where fire()
    is a no-op once the teardown has run.
    """

    def _on_signal(signum: int, _frame: object) -> None:
        logger.warning("received signal %d, cleaning up", signum)
        registry.fire()
        sys.exit(1)

    previous_hook = sys.excepthook

    def _on_uncaught(exc_type, exc, tb) -> None:
        registry.fire()
        previous_hook(exc_type, exc, tb)

    previous_signals = {sig: signal.getsignal(sig) for sig in HANDLED_SIGNALS}
    for sig in HANDLED_SIGNALS:
        signal.signal(sig, _on_signal)
    sys.excepthook = _on_uncaught
    atexit.register(registry.fire)
    try:
        yield registry
    finally:
        for sig, handler in previous_signals.items():
            signal.signal(sig, handler)
        sys.excepthook = previous_hook
