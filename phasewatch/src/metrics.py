from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class WatcherMetrics:
    """Prometheus metrics exported by the watcher on ``/metrics``.

    Per-shard series use a ``shard`` label holding the watched namespace
    (``all`` for a cluster-wide watch) so a stuck shard is visible on its own.
    """

    transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "pod_phase_transitions_total",
            "Total Pod phase transitions detected",
            ["shard", "phase"],
        )
    )
    malformed_events_total: Counter = field(
        default_factory=lambda: Counter(
            "pod_phase_malformed_events_total",
            "Total watch events skipped because the payload could not be decoded",
            ["shard"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "pod_phase_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["shard"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "pod_phase_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["shard"],
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "pod_phase_resyncs_total",
            "Total full re-list reconciliations",
            ["shard"],
        )
    )
    evictions_total: Counter = field(
        default_factory=lambda: Counter(
            "pod_phase_cache_evictions_total",
            "Total cache entries removed",
            ["shard", "cause"],
        )
    )
    notify_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "pod_phase_notify_errors_total",
            "Total transition notifications a sink failed to deliver",
            ["notifier"],
        )
    )
    cached_pods: Gauge = field(
        default_factory=lambda: Gauge(
            "pod_phase_cached_pods",
            "Current number of Pods held in the phase cache",
            ["shard"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "pod_phase_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "pod_phase_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "pod_phase_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "pod_phase_watcher",
            "Build information for the watcher",
        )
    )


METRICS = WatcherMetrics()
