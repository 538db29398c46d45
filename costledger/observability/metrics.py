"""
Metrics Collection with Prometheus.

Exposes ledger, token broker and gateway metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from costledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PROVIDER = "provider"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the Cost Ledger API.

    Covers:
    - HTTP requests (rate, duration)
    - Ledger operations (consume/refund/reset/adjust, success/failure)
    - Token refreshes (outcome, coalesced waiters)
    - Outbound gateway calls and local rate-limit rejections
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info("ledger_service", "Service information")
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
        # Ledger Metrics
        # ====================================================================
        self.ledger_operations_total = Counter(
            "ledger_operations_total",
            "Total ledger operations",
            [MetricLabels.OPERATION, "success"],
        )

        self.credits_consumed = Histogram(
            "ledger_credits_consumed",
            "Credits consumed per successful consume",
            buckets=(1, 2, 3, 4, 5, 10, 25),
        )

        self.refund_failures_total = Counter(
            "ledger_refund_failures_total",
            "Refunds that failed and need manual reconciliation",
        )

        # ====================================================================
        # Token Broker Metrics
        # ====================================================================
        self.token_refreshes_total = Counter(
            "ledger_token_refreshes_total",
            "Outbound token refresh calls",
            [MetricLabels.PROVIDER, MetricLabels.OUTCOME],
        )

        self.token_refresh_waiters_total = Counter(
            "ledger_token_refresh_waiters_total",
            "Callers that awaited an in-flight refresh instead of starting one",
            [MetricLabels.PROVIDER],
        )

        # ====================================================================
        # Gateway Metrics
        # ====================================================================
        self.gateway_requests_total = Counter(
            "ledger_gateway_requests_total",
            "Outbound provider resource calls",
            [MetricLabels.PROVIDER, MetricLabels.OUTCOME],
        )

        self.rate_limit_rejections_total = Counter(
            "ledger_rate_limit_rejections_total",
            "Calls rejected by the local rate limiter",
            [MetricLabels.PROVIDER],
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

    def record_ledger_operation(self, operation: str, success: bool, amount: int = 0) -> None:
        """Record a ledger mutation."""
        self.ledger_operations_total.labels(operation=operation, success=str(success)).inc()
        if success and operation == "consume":
            self.credits_consumed.observe(amount)

    def record_token_refresh(self, provider: str, outcome: str) -> None:
        """Record a token refresh outcome (success, terminal, retryable, timeout)."""
        self.token_refreshes_total.labels(provider=provider, outcome=outcome).inc()

    def record_gateway_request(self, provider: str, outcome: str) -> None:
        """Record an outbound resource call outcome."""
        self.gateway_requests_total.labels(provider=provider, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
