from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile counters carry a ``kind`` label (``Ingress``, ``Gateway``,
    ``Settings``) so ingress and gateway error budgets can be tracked apart.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "accessgate_reconciles_total",
            "Total object reconciliations by kind and outcome",
            ["kind", "outcome"],
        )
    )
    commits_total: Counter = field(
        default_factory=lambda: Counter(
            "accessgate_config_commits_total",
            "Configuration commit attempts by result (changed, unchanged)",
            ["result"],
        )
    )
    validation_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "accessgate_config_validation_failures_total",
            "Configurations rejected by the validator before commit",
        )
    )
    skipped_sources_total: Counter = field(
        default_factory=lambda: Counter(
            "accessgate_bulk_sync_skipped_sources_total",
            "Source objects skipped during a full resync because they failed synthesis or validation",
        )
    )
    store_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "accessgate_config_store_errors_total",
            "Errors reading or writing the configuration record",
            ["operation"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "accessgate_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "accessgate_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    lock_wait_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "accessgate_sync_lock_wait_seconds",
            "Seconds spent waiting for the configuration sync lock",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, float("inf")),
        )
    )
    routes: Gauge = field(
        default_factory=lambda: Gauge(
            "accessgate_config_routes",
            "Number of routes in the last committed configuration",
        )
    )
    certificates: Gauge = field(
        default_factory=lambda: Gauge(
            "accessgate_config_certificates",
            "Number of certificates in the last committed configuration",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "accessgate_ingress_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
