"""Draining of webhook traffic on process exit.

A chat update that is half dispatched can leave an order ``pending``
with keys already created on the key server, so the process waits for
running updates before it stops the expiration worker.

::

    coordinator = ShutdownCoordinator(graceful_timeout=30)
    coordinator.on_drained(worker.stop)

    with coordinator.track("webhook_update"):
        dispatcher.dispatch(update)

    coordinator.initiate()
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections import Counter
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

log = logging.getLogger(__name__)


class ShutdownCoordinator:
    """Counts running units of work by kind and drains them on exit.

    Hooks registered with :meth:`on_drained` run once, after the drain
    finished or timed out, in registration order.
    """

    def __init__(self, graceful_timeout: int = 30) -> None:
        self._graceful_timeout = graceful_timeout
        self._stopping = threading.Event()
        self._running: Counter[str] = Counter()
        self._cond = threading.Condition()
        self._hooks: list[Callable[[], object]] = []

    @property
    def is_shutting_down(self) -> bool:
        return self._stopping.is_set()

    @property
    def in_flight_count(self) -> int:
        with self._cond:
            return sum(self._running.values())

    def in_flight(self) -> dict[str, int]:
        """Snapshot of running work, keyed by kind."""
        with self._cond:
            return {kind: n for kind, n in self._running.items() if n}

    def on_drained(self, hook: Callable[[], object]) -> None:
        self._hooks.append(hook)

    @contextmanager
    def track(self, kind: str) -> Iterator[None]:
        """Count one unit of *kind* while the block runs.

        Updates that arrive after shutdown started are still processed,
        since the chat platform would otherwise redeliver them to a
        process that is going away.
        """
        if self._stopping.is_set():
            log.warning("Update of kind '%s' starting during shutdown", kind)

        with self._cond:
            self._running[kind] += 1
        try:
            yield
        finally:
            with self._cond:
                self._running[kind] -= 1
                if not any(self._running.values()):
                    self._cond.notify_all()

    def initiate(self) -> None:
        """Stop, wait up to ``graceful_timeout`` seconds, then run hooks."""
        if self._stopping.is_set():
            return
        self._stopping.set()
        log.info("Shutting down, draining webhook updates")

        deadline = time.monotonic() + self._graceful_timeout
        with self._cond:
            drained = self._cond.wait_for(
                lambda: not any(self._running.values()),
                timeout=max(deadline - time.monotonic(), 0),
            )
            leftover = {kind: n for kind, n in self._running.items() if n}

        if drained:
            log.info("Webhook updates drained")
        else:
            log.warning(
                "Shutdown timeout expired with %d operations in flight: %s",
                sum(leftover.values()),
                ", ".join(f"{kind}={n}" for kind, n in sorted(leftover.items())),
            )

        for hook in self._hooks:
            try:
                hook()
            except Exception:
                log.exception("Shutdown hook %r failed", hook)

    def register_signals(self) -> None:
        """Drain and exit on SIGTERM or SIGINT (main thread only).

        gunicorn installs its own worker handlers; this is for the
        development server.
        """
        try:
            for signum in (signal.SIGTERM, signal.SIGINT):
                signal.signal(signum, self._signal_handler)
        except (ValueError, OSError):
            log.debug("Signal handlers not installed outside the main thread")

    def _signal_handler(self, signum: int, frame) -> None:  # noqa: ARG002
        log.info("Received %s", signal.Signals(signum).name)
        self.initiate()
        raise SystemExit(128 + signum)
