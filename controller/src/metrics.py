from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the rollout controller on ``/metrics``."""

    triggers_total: Counter = field(
        default_factory=lambda: Counter(
            "argoos_triggers_total",
            "Rollout trigger requests by outcome (accepted, coalesced, rejected)",
            ["outcome"],
        )
    )
    patches_total: Counter = field(
        default_factory=lambda: Counter(
            "argoos_patches_total",
            "Deployment patch requests by final result (success, failed, abandoned)",
            ["result"],
        )
    )
    patch_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "argoos_patch_retries_total",
            "Total patch retry attempts scheduled after failed patch calls",
        )
    )
    in_flight_rollouts: Gauge = field(
        default_factory=lambda: Gauge(
            "argoos_in_flight_rollouts",
            "Workloads with a rollout patch currently in flight",
        )
    )
    snapshot_version: Gauge = field(
        default_factory=lambda: Gauge(
            "argoos_snapshot_version",
            "Version of the current workload snapshot",
        )
    )
    snapshot_workloads: Gauge = field(
        default_factory=lambda: Gauge(
            "argoos_snapshot_workloads",
            "Number of workloads in the current snapshot",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "argoos_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "argoos_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "argoos_build",
            "Build information for argoos",
        )
    )


METRICS = ControllerMetrics()
