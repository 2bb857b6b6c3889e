from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

from config_controller.src.metrics import METRICS


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Timer(Protocol):
    """Schedules a callback after a delay; injected so tests need not sleep."""

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> Cancellable: ...


class ThreadingTimer:
    """:class:`Timer` backed by daemon :class:`threading.Timer` threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: set[threading.Timer] = set()

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> threading.Timer:
        def _run() -> None:
            with self._lock:
                self._timers.discard(handle)
            callback()

        handle = threading.Timer(delay_seconds, _run)
        handle.daemon = True
        with self._lock:
            self._timers.add(handle)
        handle.start()
        return handle

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for handle in timers:
            handle.cancel()


class PeriodicTask:
    """Runs ``callback`` every ``interval_seconds`` on a :class:`Timer` until stopped."""

    def __init__(self, timer: Timer, interval_seconds: float, callback: Callable[[], None]) -> None:
        self.timer = timer
        self.interval_seconds = interval_seconds
        self.callback = callback
        self._lock = threading.Lock()
        self._handle: Cancellable | None = None
        self._stopped = True

    def start(self) -> None:
        with self._lock:
            self._stopped = False
            self._schedule()

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    def _schedule(self) -> None:
        self._handle = self.timer.call_later(self.interval_seconds, self._fire)

    def _fire(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._schedule()
        self.callback()


class SyncScheduler:
    """Serializes reconcile passes and folds concurrent triggers into one re-run.

    ``trigger()`` runs a pass on the calling thread unless one is already in
    flight, in which case it only marks a re-run as pending and returns.  Any
    number of triggers arriving during a pass produce exactly one extra pass.
    Until :meth:`start` is called triggers are only recorded, so the first pass
    sees the cache populated by the initial watch lists.
    """

    def __init__(
        self,
        run_pass: Callable[[], Any],
        logger: logging.Logger | None = None,
    ) -> None:
        self._run_pass = run_pass
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._started = False
        self._busy = False
        self._pending = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def pending(self) -> bool:
        return self._pending

    def start(self) -> bool:
        """Allow passes to run and immediately run the first one."""
        with self._lock:
            self._started = True
        return self.trigger()

    def trigger(self) -> bool:
        """Request a pass. Returns ``True`` if this call ran it, ``False`` if coalesced."""
        with self._lock:
            if not self._started or self._busy:
                if self._busy:
                    METRICS.coalesced_triggers_total.inc()
                self._pending = True
                return False
            self._busy = True
            self._pending = False

        while True:
            try:
                self._run_pass()
            except Exception:
                self.logger.exception("Failed to sync secrets")
            with self._lock:
                if not self._pending:
                    self._busy = False
                    return True
                self._pending = False
