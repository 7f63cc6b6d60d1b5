"""Prometheus metrics for the service.

Each Metrics instance owns its own CollectorRegistry, so several instances
(one per test, for example) never collide on metric names.
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


class Metrics:
    """Collectors for rule state, API traffic and Cloudflare latency."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.toggles_total = Counter(
            "cf_switch_toggles_total",
            "Total number of rule toggles",
            ["enabled"],
            registry=self.registry,
        )
        self.api_requests_total = Counter(
            "cf_switch_api_requests_total",
            "Total number of API requests",
            ["method", "path", "status"],
            registry=self.registry,
        )
        self.rule_enabled = Gauge(
            "cf_switch_rule_enabled",
            "Whether the Cloudflare rule is currently enabled (1) or disabled (0)",
            registry=self.registry,
        )
        self.cloudflare_api_duration = Histogram(
            "cf_switch_cloudflare_api_duration_seconds",
            "Duration of Cloudflare API calls",
            ["method", "endpoint"],
            registry=self.registry,
        )
        self.reconcile_total = Counter(
            "cf_switch_reconcile_total",
            "Total number of reconciliation passes",
            ["result"],
            registry=self.registry,
        )

    def set_rule_enabled(self, enabled: bool) -> None:
        self.rule_enabled.set(1 if enabled else 0)

    def record_toggle(self, enabled: bool) -> None:
        self.toggles_total.labels(enabled=str(enabled).lower()).inc()

    def record_api_request(self, method: str, path: str, status: int) -> None:
        self.api_requests_total.labels(method=method, path=path, status=str(status)).inc()

    def observe_cloudflare_call(self, method: str, endpoint: str, seconds: float) -> None:
        self.cloudflare_api_duration.labels(method=method, endpoint=endpoint).observe(seconds)

    def record_reconcile(self, success: bool) -> None:
        self.reconcile_total.labels(result="success" if success else "failure").inc()

    def render(self) -> bytes:
        """Render all collectors in the Prometheus text format."""
        return generate_latest(self.registry)
