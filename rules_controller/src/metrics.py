from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    GCCollector,
    Histogram,
    Info,
    PlatformCollector,
    ProcessCollector,
)


class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Every instance owns its collectors and registers them on the registry it
    is given, so the entrypoint wires one sink into the reconciler, the
    leader elector and the watch cache, and tests can build isolated ones.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        # Process, interpreter and GC series, as the default registry would carry.
        ProcessCollector(registry=self.registry)
        PlatformCollector(registry=self.registry)
        GCCollector(registry=self.registry)

        self.sync_total = Counter(
            "mimir_rules_controller_sync_total",
            "Total number of syncs",
            registry=self.registry,
        )
        self.sync_errors_total = Counter(
            "mimir_rules_controller_sync_errors_total",
            "Total number of sync errors",
            registry=self.registry,
        )
        self.sync_duration_seconds = Histogram(
            "mimir_rules_controller_sync_duration_seconds",
            "Sync duration in seconds",
            registry=self.registry,
        )
        self.requeues_total = Counter(
            "mimir_rules_controller_requeues_total",
            "Total keys requeued with backoff after a failed sync",
            registry=self.registry,
        )
        self.watch_errors_total = Counter(
            "mimir_rules_controller_watch_errors_total",
            "Total Kubernetes watch errors",
            registry=self.registry,
        )
        self.watch_reconnects_total = Counter(
            "mimir_rules_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            registry=self.registry,
        )
        self.cached_rules = Gauge(
            "mimir_rules_controller_cached_rules",
            "Number of MimirRule objects in the local watch cache",
            registry=self.registry,
        )
        self.leader_transitions_total = Counter(
            "mimir_rules_controller_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
            registry=self.registry,
        )
        self.leader_state = Gauge(
            "mimir_rules_controller_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
            registry=self.registry,
        )
        self.leader_acquire_latency_seconds = Histogram(
            "mimir_rules_controller_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
            registry=self.registry,
        )
        self.build_info = Info(
            "mimir_rules_controller",
            "Build information for the controller",
            registry=self.registry,
        )

    def observe_sync(self, duration_seconds: float, failed: bool) -> None:
        self.sync_total.inc()
        self.sync_duration_seconds.observe(duration_seconds)
        if failed:
            self.sync_errors_total.inc()
