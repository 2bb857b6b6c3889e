from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Failure counters carry an ``action`` label (``create``, ``update``,
    ``delete``) so a stuck decryption key can be told apart from RBAC
    problems on delete.
    """

    secrets_created_total: Counter = field(
        default_factory=lambda: Counter(
            "config_secret_sync_secrets_created_total",
            "Total Secrets created from ConfigMaps",
        )
    )
    secrets_updated_total: Counter = field(
        default_factory=lambda: Counter(
            "config_secret_sync_secrets_updated_total",
            "Total Secrets replaced after a ConfigMap version change",
        )
    )
    secrets_deleted_total: Counter = field(
        default_factory=lambda: Counter(
            "config_secret_sync_secrets_deleted_total",
            "Total orphaned Secrets deleted",
        )
    )
    sync_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_secret_sync_errors_total",
            "Total failed reconcile actions",
            ["action"],
        )
    )
    reconcile_passes_total: Counter = field(
        default_factory=lambda: Counter(
            "config_secret_sync_reconcile_passes_total",
            "Total completed reconcile passes",
        )
    )
    coalesced_triggers_total: Counter = field(
        default_factory=lambda: Counter(
            "config_secret_sync_coalesced_triggers_total",
            "Total sync triggers folded into a pending pass",
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "config_secret_sync_reconcile_duration_seconds",
            "Duration of a full reconcile pass",
        )
    )
    cache_entries: Gauge = field(
        default_factory=lambda: Gauge(
            "config_secret_sync_cache_entries",
            "Number of ConfigMap/Secret pairs tracked in the cache",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_secret_sync_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "config_secret_sync_watch_reconnects_total",
            "Total watch re-registrations after a transport error",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "config_secret_sync",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
