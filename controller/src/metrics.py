from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Campaign outcomes carry an ``outcome`` label (``done``, ``aborted``,
    ``cancelled``) so operators can alert on health-gate timeouts separately
    from normal completions.
    """

    config_changes_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_restarter_observations_total",
            "ConfigMap observations by change-detector outcome",
            ["outcome"],
        )
    )
    campaigns_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_restarter_campaigns_total",
            "Restart campaigns finished, by outcome",
            ["outcome"],
        )
    )
    pods_deleted_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_restarter_pods_deleted_total",
            "Pods deleted to pick up a changed ConfigMap",
            ["namespace"],
        )
    )
    pod_delete_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_restarter_pod_delete_errors_total",
            "Pod deletions that failed and were skipped",
            ["namespace"],
        )
    )
    pods_denied_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_restarter_pods_denied_total",
            "Pods left running because a PodDisruptionBudget denied their deletion",
            ["namespace"],
        )
    )
    active_campaigns: Gauge = field(
        default_factory=lambda: Gauge(
            "configmap_restarter_active_campaigns",
            "Restart campaigns currently running",
        )
    )
    tracked_sources: Gauge = field(
        default_factory=lambda: Gauge(
            "configmap_restarter_tracked_configmaps",
            "ConfigMaps whose version is currently tracked",
        )
    )
    campaign_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "configmap_restarter_campaign_duration_seconds",
            "Wall time of restart campaigns including health gating",
            buckets=(0.5, 1, 5, 10, 30, 60, 90, 120, 300, float("inf")),
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_restarter_reconcile_errors_total",
            "Reconciliations that failed before or outside a campaign",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_restarter_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_restarter_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    dropped_reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_restarter_dropped_reconciles_total",
            "Queued reconciliations dropped on shutdown before they started",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "configmap_restarter",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
