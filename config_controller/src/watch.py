from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError

from config_controller.src.errors import WatchTransportError

EventCallback = Callable[[str, Any], None]
ErrorCallback = Callable[[WatchTransportError], None]


def _object_key(obj: Any) -> tuple[str, str]:
    return obj.metadata.namespace, obj.metadata.name


class ResourceWatch:
    """List-then-watch subscription for one resource kind.

    :meth:`start` lists the matching objects, reports each as ``ADDED`` and
    then follows changes from the list's ``resourceVersion`` on a daemon
    thread.  A stream that ends on its server-side timeout is resumed from the
    last seen version.  Any other failure ends the subscription and is reported
    once through ``on_error``; re-registering is the caller's job.

    Objects reported by an earlier registration that are missing from a fresh
    list are reported as ``DELETED``, so deletions that happened while the
    watch was down are not lost.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        label_selector: str,
        on_event: EventCallback,
        on_error: ErrorCallback,
        *,
        namespace: str | None = None,
        timeout_seconds: int = 300,
        watch_factory: Callable[[], Any] = watch.Watch,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.label_selector = label_selector
        self.on_event = on_event
        self.on_error = on_error
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self.watch_factory = watch_factory
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._known: dict[tuple[str, str], Any] = {}
        self._active_watcher: Any = None
        self._stream_stop: threading.Event | None = None
        self._thread: threading.Thread | None = None

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"label_selector": self.label_selector}
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs

    def start(self) -> None:
        """Register the watch, blocking until the initial list is accepted.

        Raises :class:`WatchTransportError` when the API server cannot be
        listed; no stream thread is started in that case.
        """
        self.stop()
        self.logger.info("Starting %s watch with selector %s", self.kind, self.label_selector)
        try:
            listing = self.list_fn(**self._list_kwargs())
        except (ApiException, HTTPError) as exc:
            raise WatchTransportError(self.kind, str(exc), status=getattr(exc, "status", None)) from exc

        items = list(listing.items or [])
        current = {_object_key(obj): obj for obj in items}
        with self._lock:
            vanished = [obj for key, obj in self._known.items() if key not in current]
            self._known = current

        for obj in vanished:
            self.on_event("DELETED", obj)
        for obj in items:
            self.on_event("ADDED", obj)

        resource_version = getattr(listing.metadata, "resource_version", None)
        stop = threading.Event()
        watcher = self.watch_factory()
        thread = threading.Thread(
            target=self._stream,
            args=(watcher, resource_version, stop),
            name=f"{self.kind.lower()}-watch",
            daemon=True,
        )
        with self._lock:
            self._stream_stop = stop
            self._active_watcher = watcher
            self._thread = thread
        thread.start()

    def stop(self) -> None:
        """Interrupt the active stream, if any, without reporting an error."""
        with self._lock:
            stop, self._stream_stop = self._stream_stop, None
            watcher = self._active_watcher
        if stop is not None:
            stop.set()
        if watcher is not None:
            watcher.stop()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def _remember(self, event_type: str, obj: Any) -> None:
        key = _object_key(obj)
        with self._lock:
            if event_type == "DELETED":
                self._known.pop(key, None)
            else:
                self._known[key] = obj

    def _stream(self, watcher: Any, resource_version: str | None, stop: threading.Event) -> None:
        try:
            while not stop.is_set():
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.timeout_seconds,
                    **self._list_kwargs(),
                )
                for event in stream:
                    if stop.is_set():
                        break
                    event_type = str(event.get("type", ""))
                    if event_type == "ERROR":
                        raw = event.get("raw_object") or {}
                        raise WatchTransportError(
                            self.kind,
                            str(raw.get("message", "error event")),
                            status=raw.get("code"),
                        )

                    obj = event.get("object")
                    metadata = getattr(obj, "metadata", None)
                    if metadata is None:
                        continue
                    if metadata.resource_version:
                        resource_version = metadata.resource_version
                    if event_type == "BOOKMARK":
                        continue

                    self._remember(event_type, obj)
                    self.on_event(event_type, obj)
        except Exception as exc:
            if stop.is_set():
                return
            if isinstance(exc, WatchTransportError):
                error = exc
            else:
                error = WatchTransportError(self.kind, str(exc), status=getattr(exc, "status", None))
            self.on_error(error)
        finally:
            watcher.stop()
            with self._lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None
