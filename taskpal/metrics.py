# FILE: taskpal/metrics.py
# Prometheus instruments for the ledger core.
#
# - Label sets are small and fixed: no user ids, no accessory ids beyond the
#   catalog (bounded), no task ids.
# - Instruments can be registered on a private CollectorRegistry so several
#   apps (tests) can live in one process without duplicate-name errors.
# - Disabled metrics degrade to no-ops; callers never branch on them.

from __future__ import annotations

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class LedgerMetrics:
    """
    Thin wrapper over Prometheus instruments.

        metrics = LedgerMetrics(registry=CollectorRegistry())
        metrics.record_sync("credited", newly_counted=2, points=20)
    """

    def __init__(
        self,
        *,
        registry: Optional[CollectorRegistry] = None,
        enabled: bool = True,
        version: str = "dev",
    ) -> None:
        self.enabled = bool(enabled)
        self.registry = registry if registry is not None else REGISTRY
        if not self.enabled:
            return

        reg = self.registry
        self._info = Gauge(
            "taskpal_build_info",
            "Build information",
            ["version"],
            registry=reg,
        )
        self._info.labels(version=version).set(1)

        self._sync_counter = Counter(
            "taskpal_sync_total",
            "Reconciliation runs by outcome",
            ["outcome"],
            registry=reg,
        )
        self._tasks_credited = Counter(
            "taskpal_tasks_credited_total",
            "External tasks converted to points",
            registry=reg,
        )
        self._points_credited = Counter(
            "taskpal_points_credited_total",
            "Points credited by reconciliation",
            registry=reg,
        )
        self._points_spent = Counter(
            "taskpal_points_spent_total",
            "Points debited by purchases",
            registry=reg,
        )
        self._inventory_counter = Counter(
            "taskpal_inventory_ops_total",
            "Inventory operations by operation and outcome",
            ["op", "outcome"],
            registry=reg,
        )
        self._persist_fail = Counter(
            "taskpal_persistence_failures_total",
            "Ledger writes that failed to reach durable storage",
            registry=reg,
        )
        self._source_latency = Histogram(
            "taskpal_source_fetch_seconds",
            "Latency of fetching completed tasks from the external source",
            registry=reg,
        )
        self._http_requests = Counter(
            "taskpal_http_requests_total",
            "HTTP requests",
            ["route", "status"],
            registry=reg,
        )
        self._http_latency = Histogram(
            "taskpal_http_request_latency_seconds",
            "HTTP request latency in seconds",
            ["route"],
            registry=reg,
        )

    # -----------------------------------------------------------------------
    # Recording
    # -----------------------------------------------------------------------

    def record_sync(self, outcome: str, *, newly_counted: int = 0, points: int = 0) -> None:
        if not self.enabled:
            return
        self._sync_counter.labels(outcome=outcome).inc()
        if newly_counted > 0:
            self._tasks_credited.inc(newly_counted)
        if points > 0:
            self._points_credited.inc(points)

    def record_inventory(self, op: str, outcome: str, *, spent: int = 0) -> None:
        if not self.enabled:
            return
        self._inventory_counter.labels(op=op, outcome=outcome).inc()
        if spent > 0:
            self._points_spent.inc(spent)

    def record_persistence_failure(self) -> None:
        if not self.enabled:
            return
        self._persist_fail.inc()

    def observe_source_latency(self, seconds: float) -> None:
        if not self.enabled:
            return
        self._source_latency.observe(max(0.0, seconds))

    def observe_http(self, route: str, status_code: int, seconds: float) -> None:
        if not self.enabled:
            return
        self._http_requests.labels(route=route, status=str(status_code)).inc()
        self._http_latency.labels(route=route).observe(max(0.0, seconds))

    # -----------------------------------------------------------------------
    # Exposition
    # -----------------------------------------------------------------------

    def render(self) -> bytes:
        return generate_latest(self.registry)

    content_type = CONTENT_TYPE_LATEST


__all__ = ["LedgerMetrics"]
