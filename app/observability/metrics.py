"""
Metrics Collection with Prometheus.

Exposes ledger and query proxy metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    TIER = "tier"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the ledger and query proxy.

    Covers:
    - HTTP requests (rate, duration)
    - Credit checks and consumes (rate, outcome)
    - Subscription lifecycle operations
    - Proxied queries (rate, outcome, duration)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "ledger_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.credit_checks_total = Counter(
            "ledger_credit_checks_total",
            "Total credit checks performed",
            ["allowed"],
        )

        self.credit_consumes_total = Counter(
            "ledger_credit_consumes_total",
            "Total consume attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.units_consumed_total = Counter(
            "ledger_units_consumed_total",
            "Total usage units consumed",
        )

        # ====================================================================
        # Subscription Metrics
        # ====================================================================
        self.subscription_operations_total = Counter(
            "ledger_subscription_operations_total",
            "Subscription lifecycle operations",
            [MetricLabels.OPERATION, MetricLabels.TIER],
        )

        self.accounts_created_total = Counter(
            "ledger_accounts_created_total",
            "Total accounts created",
            [MetricLabels.TIER],
        )

        # ====================================================================
        # Query Proxy Metrics
        # ====================================================================
        self.proxy_queries_total = Counter(
            "ledger_proxy_queries_total",
            "Proxied queries by operation and outcome",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.proxy_query_duration_seconds = Histogram(
            "ledger_proxy_query_duration_seconds",
            "Provider round trip duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.proxy_validation_failures_total = Counter(
            "ledger_proxy_validation_failures_total",
            "Query requests rejected before execution",
            [MetricLabels.ERROR_TYPE],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "ledger_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_credit_check(self, allowed: bool) -> None:
        """Record credit check metrics."""
        self.credit_checks_total.labels(allowed=str(allowed)).inc()

    def record_consume(self, outcome: str, units: int = 0) -> None:
        """Record a consume attempt (success, insufficient, not_found, storage_error)."""
        self.credit_consumes_total.labels(outcome=outcome).inc()
        if units:
            self.units_consumed_total.inc(units)

    def record_subscription_operation(self, operation: str, tier: str) -> None:
        """Record a lifecycle operation and the resulting tier."""
        self.subscription_operations_total.labels(operation=operation, tier=tier).inc()

    def record_proxy_query(self, operation: str, outcome: str, duration: float) -> None:
        """Record a proxied query round trip."""
        self.proxy_queries_total.labels(operation=operation, outcome=outcome).inc()
        self.proxy_query_duration_seconds.labels(operation=operation).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
