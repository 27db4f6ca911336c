from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Histogram, Info


@dataclass(frozen=True)
class RolloutMetrics:
    """Prometheus metrics recorded by every rollout controller in the process.

    All series carry a ``kind`` label so operators can tell a stalled
    DaemonSet rollout from a failing Job without reading logs.
    """

    operations_total: Counter = field(
        default_factory=lambda: Counter(
            "rollout_operations_total",
            "Total upsert/status/delete operations by outcome",
            ["operation", "kind", "outcome"],
        )
    )
    status_attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "rollout_status_attempts_total",
            "Total convergence checks evaluated while polling rollout status",
            ["kind"],
        )
    )
    status_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "rollout_status_duration_seconds",
            "Seconds spent waiting for a rollout to converge",
            ["kind"],
            buckets=(1, 5, 10, 30, 60, 120, 300, 600, float("inf")),
        )
    )
    pods_deleted_total: Counter = field(
        default_factory=lambda: Counter(
            "rollout_pods_deleted_total",
            "Total owned pods deleted after their controller was removed",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "rollout_build",
            "Build information for the rollout controller",
        )
    )


METRICS = RolloutMetrics()
