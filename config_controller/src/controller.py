from __future__ import annotations

import logging
import os
import queue
import threading
import time
from collections.abc import Callable
from functools import partial
from typing import Any

from kubernetes import watch
from kubernetes.client import CoreV1Api

from config_controller.src.cache import CONFIG_MAP, SECRET, PairCache, ResourceEvent
from config_controller.src.envcontent import parse_env_content
from config_controller.src.errors import WatchTransportError
from config_controller.src.kube import list_function
from config_controller.src.labels import DEFAULT_LABEL_PREFIX, ResourceLabels
from config_controller.src.materializer import EnvParser, SecretMaterializer
from config_controller.src.metrics import METRICS
from config_controller.src.reconciler import Reconciler
from config_controller.src.scheduler import PeriodicTask, SyncScheduler, ThreadingTimer, Timer
from config_controller.src.watch import ResourceWatch

_RESYNC = object()
_WAKE = object()


class SecretSyncController:
    """Keeps one generated Secret per labelled ConfigMap.

    Two watches (ConfigMaps carrying the ``target-secret`` label, Secrets
    carrying the ``source-configmap`` label) push :class:`ResourceEvent`
    messages onto a single queue.  :meth:`run_forever` is the only consumer:
    it applies each message to the :class:`PairCache` and asks the
    :class:`SyncScheduler` for a reconcile pass, so cache mutation and
    reconciliation never run concurrently.

    Timing:
        * the first pass runs ``startup_delay_seconds`` after both watches
          registered, so the initial lists are fully cached first;
        * a resync message is queued every ``resync_interval_seconds``;
        * a watch that fails is re-registered after ``watch_retry_seconds``.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        *,
        labels: ResourceLabels | None = None,
        namespace: str | None = None,
        resync_interval_seconds: float = 30,
        startup_delay_seconds: float = 5,
        watch_retry_seconds: float = 1,
        watch_timeout_seconds: int = 300,
        timer: Timer | None = None,
        parse_env: EnvParser = parse_env_content,
        watch_factory: Callable[[], Any] = watch.Watch,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.labels = labels or ResourceLabels()
        self.namespace = namespace
        self.startup_delay_seconds = startup_delay_seconds
        self.watch_retry_seconds = watch_retry_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.events: queue.Queue[Any] = queue.Queue()
        self.cache = PairCache(self.labels)
        self.materializer = SecretMaterializer(core_api, labels=self.labels, parse_env=parse_env)
        self.reconciler = Reconciler(self.cache, self.materializer, labels=self.labels)
        self.scheduler = SyncScheduler(self._reconcile)
        self.timer = timer or ThreadingTimer()
        self.resync = PeriodicTask(self.timer, resync_interval_seconds, self.request_resync)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self.watches: dict[str, ResourceWatch] = {
            kind: ResourceWatch(
                kind,
                list_function(core_api, kind, namespace),
                selector,
                on_event=partial(self._enqueue, kind),
                on_error=self._on_watch_error,
                namespace=namespace,
                timeout_seconds=watch_timeout_seconds,
                watch_factory=watch_factory,
            )
            for kind, selector in (
                (CONFIG_MAP, self.labels.config_map_selector),
                (SECRET, self.labels.secret_selector),
            )
        }

    def _enqueue(self, kind: str, event_type: str, obj: Any) -> None:
        self.events.put(ResourceEvent(kind=kind, event_type=event_type, obj=obj))

    def request_resync(self) -> None:
        """Queue a full reconcile pass regardless of watch activity."""
        self.events.put(_RESYNC)

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt the watch streams."""
        self._external_stop.set()
        self.events.put(_WAKE)
        self.resync.stop()
        for resource_watch in self.watches.values():
            resource_watch.stop()
        if isinstance(self.timer, ThreadingTimer):
            self.timer.cancel_all()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _reconcile(self) -> None:
        self.reconciler.run_pass()
        self.ready.set()

    def _on_watch_error(self, error: WatchTransportError) -> None:
        METRICS.watch_errors_total.labels(kind=error.kind).inc()
        if self._external_stop.is_set():
            return
        self.logger.warning(
            "Failed to watch %ss: %s; retrying in %.1fs", error.kind, error, self.watch_retry_seconds
        )
        self.timer.call_later(self.watch_retry_seconds, partial(self._restart_watch, error.kind))

    def _restart_watch(self, kind: str) -> None:
        if self._external_stop.is_set():
            return
        METRICS.watch_reconnects_total.labels(kind=kind).inc()
        try:
            self.watches[kind].start()
        except WatchTransportError as exc:
            self._on_watch_error(exc)

    def _register_watches(self, stop: threading.Event) -> bool:
        """Start both watches, retrying each until its initial list succeeds."""
        for kind, resource_watch in self.watches.items():
            while not self._should_stop(stop):
                try:
                    resource_watch.start()
                    break
                except WatchTransportError as exc:
                    METRICS.watch_errors_total.labels(kind=kind).inc()
                    self.logger.warning(
                        "Initial %s watch registration failed: %s; retrying in %.1fs",
                        kind,
                        exc,
                        self.watch_retry_seconds,
                    )
                    stop.wait(timeout=self.watch_retry_seconds)
        return not self._should_stop(stop)

    def _apply(self, message: Any) -> bool:
        """Apply one queued message; returns whether it calls for a pass."""
        if message is _RESYNC:
            return True
        if not isinstance(message, ResourceEvent):
            return False
        self.logger.info(
            "%s %s/%s %s",
            message.kind,
            message.obj.metadata.namespace,
            message.obj.metadata.name,
            message.event_type,
        )
        self.cache.apply(message)
        METRICS.cache_entries.set(len(self.cache))
        return True

    def process_events(self, timeout: float | None) -> bool:
        """Apply the queued messages and trigger one pass for the batch.

        Blocks up to ``timeout`` seconds for the first message, then takes
        only what was already queued so a busy producer cannot hold the pass
        back.  Returns ``False`` when nothing arrived.
        """
        try:
            message = self.events.get(timeout=timeout)
        except queue.Empty:
            return False
        needs_pass = self._apply(message)
        for _ in range(self.events.qsize()):
            try:
                message = self.events.get_nowait()
            except queue.Empty:
                break
            needs_pass = self._apply(message) or needs_pass
        if needs_pass:
            self.scheduler.trigger()
        return True

    def _drain_queued(self, limit: int) -> None:
        """Apply at most ``limit`` already queued messages without triggering a pass."""
        for _ in range(limit):
            try:
                message = self.events.get_nowait()
            except queue.Empty:
                return
            self._apply(message)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Register watches, wait for the initial snapshot, then reconcile until stopped."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        if not self._register_watches(stop):
            return

        self.logger.info(
            "Watches registered; first sync in %.1fs", float(self.startup_delay_seconds)
        )
        deadline = time.monotonic() + self.startup_delay_seconds
        while not self._should_stop(stop):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self.process_events(timeout=min(remaining, 1.0))
        self._drain_queued(self.events.qsize())

        if not self._should_stop(stop):
            self.scheduler.start()
            self.resync.start()

        while not self._should_stop(stop):
            self.process_events(timeout=1.0)

        self.request_stop()
        self.ready.clear()


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_controller_from_env(core_api: CoreV1Api) -> SecretSyncController:
    """Construct a :class:`SecretSyncController` from environment variables.

    Environment variables (with defaults):
        ``LABEL_PREFIX``             Prefix of every label read or written (``config.s24.dev``).
        ``WATCH_NAMESPACE``          Restrict both watches to one namespace (all namespaces).
        ``RESYNC_INTERVAL_SECONDS``  Period of the safety-net full resync (``30``).
        ``STARTUP_DELAY_SECONDS``    Delay between watch registration and the first pass (``5``).
        ``WATCH_RETRY_SECONDS``      Delay before re-registering a failed watch (``1``).
        ``WATCH_TIMEOUT_SECONDS``    Server-side timeout of one watch request (``300``).
    """
    label_prefix = os.getenv("LABEL_PREFIX", DEFAULT_LABEL_PREFIX).strip().rstrip("/")
    if not label_prefix:
        raise ValueError("LABEL_PREFIX must be a non-empty string")

    namespace = os.getenv("WATCH_NAMESPACE", "").strip() or None

    return SecretSyncController(
        core_api=core_api,
        labels=ResourceLabels(prefix=label_prefix),
        namespace=namespace,
        resync_interval_seconds=env_int("RESYNC_INTERVAL_SECONDS", 30, minimum=1),
        startup_delay_seconds=env_int("STARTUP_DELAY_SECONDS", 5, minimum=0),
        watch_retry_seconds=env_int("WATCH_RETRY_SECONDS", 1, minimum=1),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 300, minimum=1),
    )
