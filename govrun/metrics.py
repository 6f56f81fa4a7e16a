"""Prometheus counters for reconciliation and run budgets."""

from __future__ import annotations

from collections import Counter as _Tally

from prometheus_client import CollectorRegistry, Counter, Histogram


class GovrunMetrics:
    """Metrics collector with a per-instance registry and in-memory mirrors.

    Each instance owns its own :class:`CollectorRegistry` so several
    reconcilers or launchers in one process never collide on metric names.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self.reconcile_counts: _Tally[str] = _Tally()
        self.retry_counts: _Tally[str] = _Tally()
        self.abort_counts: _Tally[str] = _Tally()
        self.run_counts: _Tally[str] = _Tally()

        self.reconcile_total = Counter(
            "govrun_reconcile_total",
            "Schedule reconciliations by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.store_retries_total = Counter(
            "govrun_store_retries_total",
            "Retried schedule store calls by operation",
            ["operation"],
            registry=self.registry,
        )
        self.guard_aborts_total = Counter(
            "govrun_guard_aborts_total",
            "Runs aborted by the budget guard by ceiling",
            ["ceiling"],
            registry=self.registry,
        )
        self.run_results_total = Counter(
            "govrun_run_results_total",
            "Launched runs by terminal status",
            ["status"],
            registry=self.registry,
        )
        self.sweep_duration_seconds = Histogram(
            "govrun_sweep_duration_seconds",
            "Wall time of one reconciliation sweep",
            registry=self.registry,
        )

    def record_reconcile(self, outcome: str) -> None:
        self.reconcile_counts[outcome] += 1
        self.reconcile_total.labels(outcome=outcome).inc()

    def record_retry(self, operation: str) -> None:
        self.retry_counts[operation] += 1
        self.store_retries_total.labels(operation=operation).inc()

    def record_abort(self, ceiling: str) -> None:
        self.abort_counts[ceiling] += 1
        self.guard_aborts_total.labels(ceiling=ceiling).inc()

    def record_run(self, status: str) -> None:
        self.run_counts[status] += 1
        self.run_results_total.labels(status=status).inc()

    def record_sweep_duration(self, seconds: float) -> None:
        self.sweep_duration_seconds.observe(max(0.0, seconds))

    def snapshot(self) -> dict[str, dict[str, int]]:
        """Return the in-memory counters as plain dicts."""
        return {
            "reconcile": dict(self.reconcile_counts),
            "store_retries": dict(self.retry_counts),
            "guard_aborts": dict(self.abort_counts),
            "run_results": dict(self.run_counts),
        }
