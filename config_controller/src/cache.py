from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, NamedTuple

from config_controller.src.labels import ResourceLabels

LOGGER = logging.getLogger(__name__)

CONFIG_MAP = "ConfigMap"
SECRET = "Secret"


class PairKey(NamedTuple):
    """Identity of one reconciliation unit: the Secret a ConfigMap produces."""

    namespace: str
    secret_name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.secret_name}"


@dataclass
class CacheEntry:
    config_map: Any = None
    secret: Any = None

    @property
    def is_empty(self) -> bool:
        return self.config_map is None and self.secret is None


@dataclass(frozen=True)
class ResourceEvent:
    """A watch notification queued for the controller loop."""

    kind: str
    event_type: str
    obj: Any


class PairCache:
    """Last observed ConfigMap and Secret for every :class:`PairKey`.

    Not thread-safe: only the controller loop mutates it.
    """

    def __init__(self, labels: ResourceLabels | None = None) -> None:
        self.labels = labels or ResourceLabels()
        self._entries: dict[PairKey, CacheEntry] = {}
        self._config_map_index: dict[tuple[str, str], PairKey] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: PairKey) -> CacheEntry | None:
        return self._entries.get(key)

    def keys(self) -> list[PairKey]:
        """Snapshot of the current keys in insertion order."""
        return list(self._entries)

    def items(self) -> Iterator[tuple[PairKey, CacheEntry]]:
        return iter(list(self._entries.items()))

    def remove(self, key: PairKey) -> None:
        self._entries.pop(key, None)

    def _entry(self, key: PairKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry()
            self._entries[key] = entry
        return entry

    def config_map_key(self, config_map: Any) -> PairKey | None:
        metadata = config_map.metadata
        target = (metadata.labels or {}).get(self.labels.target_secret)
        if not target:
            return None
        return PairKey(metadata.namespace, target)

    @staticmethod
    def secret_key(secret: Any) -> PairKey:
        return PairKey(secret.metadata.namespace, secret.metadata.name)

    def _forget_config_map(self, key: PairKey) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.config_map = None

    def apply_config_map_event(self, event_type: str, config_map: Any) -> PairKey | None:
        """Record a ConfigMap event under the Secret it targets.

        The key a ConfigMap was last recorded under is remembered, so a
        deletion reported without the target label (the label was removed)
        and a change of the target label both release the old entry.
        """
        identity = (config_map.metadata.namespace, config_map.metadata.name)
        previous = self._config_map_index.get(identity)
        key = self.config_map_key(config_map)

        if event_type == "DELETED" or key is None:
            self._config_map_index.pop(identity, None)
            key = previous or key
            if key is None:
                LOGGER.warning(
                    "Ignoring ConfigMap %s/%s without a %s label",
                    config_map.metadata.namespace,
                    config_map.metadata.name,
                    self.labels.target_secret,
                )
                return None
            self._forget_config_map(key)
            return key

        if previous is not None and previous != key:
            LOGGER.info(
                "ConfigMap %s/%s now targets secret %s instead of %s",
                identity[0],
                identity[1],
                key.secret_name,
                previous.secret_name,
            )
            self._forget_config_map(previous)
        self._config_map_index[identity] = key
        self._entry(key).config_map = config_map
        return key

    def apply_secret_event(self, event_type: str, secret: Any) -> PairKey:
        key = self.secret_key(secret)
        entry = self._entry(key)
        entry.secret = None if event_type == "DELETED" else secret
        return key

    def apply(self, event: ResourceEvent) -> PairKey | None:
        """Record ``event`` and return the key it touched, if any."""
        if event.kind == CONFIG_MAP:
            return self.apply_config_map_event(event.event_type, event.obj)
        if event.kind == SECRET:
            return self.apply_secret_event(event.event_type, event.obj)
        raise ValueError(f"Unsupported resource kind: {event.kind}")
