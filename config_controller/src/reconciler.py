from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from config_controller.src.cache import CacheEntry, PairCache, PairKey
from config_controller.src.errors import SecretSyncError
from config_controller.src.kube import delete_secret
from config_controller.src.labels import ResourceLabels
from config_controller.src.materializer import SecretMaterializer
from config_controller.src.metrics import METRICS


@dataclass
class ReconcileResult:
    """Outcome counters for one reconcile pass."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    collected: int = 0
    unchanged: int = 0
    failed: int = 0


class Reconciler:
    """Drives every cache entry toward "one Secret per ConfigMap, same version".

    Each pass walks a snapshot of the cache keys and applies the first
    matching rule per entry:

    1. neither half present: drop the entry;
    2. only the Secret present: it is an orphan, delete it;
    3. only the ConfigMap present: create the Secret;
    4. both present with differing versions: replace the Secret;
    5. both present with equal versions: nothing to do.

    A failing entry is logged and left untouched so the next pass retries it;
    it never stops the remaining entries from being processed.
    """

    def __init__(
        self,
        cache: PairCache,
        materializer: SecretMaterializer,
        labels: ResourceLabels | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cache = cache
        self.materializer = materializer
        self.labels = labels or ResourceLabels()
        self.logger = logger or logging.getLogger(__name__)

    def secret_version(self, secret: Any) -> str | None:
        labels = getattr(secret.metadata, "labels", None) or {}
        return labels.get(self.labels.source_configmap_version)

    def run_pass(self) -> ReconcileResult:
        result = ReconcileResult()
        with METRICS.reconcile_duration_seconds.time():
            for key in self.cache.keys():
                entry = self.cache.get(key)
                if entry is None:
                    continue
                self._reconcile_entry(key, entry, result)
        METRICS.reconcile_passes_total.inc()
        METRICS.cache_entries.set(len(self.cache))
        changed = result.created + result.updated + result.deleted + result.failed
        self.logger.log(
            logging.INFO if changed else logging.DEBUG,
            "Secrets synced: created=%d updated=%d deleted=%d collected=%d failed=%d",
            result.created,
            result.updated,
            result.deleted,
            result.collected,
            result.failed,
        )
        return result

    def _reconcile_entry(self, key: PairKey, entry: CacheEntry, result: ReconcileResult) -> None:
        if entry.is_empty:
            self.cache.remove(key)
            result.collected += 1
            return

        if entry.config_map is None:
            self._delete_orphan(key, entry, result)
            return

        if entry.secret is None:
            self.logger.info("Secret for %s does not exist. Creating secret.", key)
            try:
                entry.secret = self.materializer.materialize(entry.config_map)
            except Exception as exc:
                self._record_failure("create", key, exc, result)
                return
            METRICS.secrets_created_total.inc()
            result.created += 1
            return

        if self.secret_version(entry.secret) == entry.config_map.metadata.resource_version:
            result.unchanged += 1
            return

        self.logger.info("ConfigMap for %s updated. Updating secret.", key)
        try:
            entry.secret = self.materializer.materialize(entry.config_map, existing_secret=entry.secret)
        except Exception as exc:
            self._record_failure("update", key, exc, result)
            return
        METRICS.secrets_updated_total.inc()
        result.updated += 1

    def _delete_orphan(self, key: PairKey, entry: CacheEntry, result: ReconcileResult) -> None:
        self.logger.info("ConfigMap for %s not found. Deleting secret.", key)
        metadata = entry.secret.metadata
        try:
            existed = delete_secret(
                self.materializer.core_api, name=metadata.name, namespace=metadata.namespace
            )
        except Exception as exc:
            self._record_failure("delete", key, exc, result)
            return
        if not existed:
            self.logger.info("Secret %s was already deleted", key)
        self.cache.remove(key)
        METRICS.secrets_deleted_total.inc()
        result.deleted += 1

    def _record_failure(
        self, action: str, key: PairKey, exc: Exception, result: ReconcileResult
    ) -> None:
        METRICS.sync_errors_total.labels(action=action).inc()
        result.failed += 1
        if isinstance(exc, SecretSyncError):
            self.logger.error("Failed to %s secret %s: %s", action, key, exc)
        else:
            self.logger.exception("Unexpected error while trying to %s secret %s", action, key)
