"""
Metrics Collection with Prometheus.

Exposes checkout, entitlement and verification metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Histogram, Info

from purple_api.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TRANSACTION_TYPE = "transaction_type"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class PurpleMetrics:
    """
    Centralized metrics for the Purple API.

    - HTTP requests (rate, duration, errors)
    - Checkouts (created, invoices issued, payments confirmed)
    - Entitlement grants by source
    - Receipt verification outcomes and truncated history walks
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "purple_service",
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
            "purple_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "purple_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Checkout Metrics
        # ====================================================================
        self.checkouts_created_total = Counter(
            "purple_checkouts_created_total",
            "Total checkouts created",
            ["product"],
        )

        self.invoices_issued_total = Counter(
            "purple_invoices_issued_total",
            "Total Lightning invoices issued",
            ["product"],
        )

        self.payments_confirmed_total = Counter(
            "purple_payments_confirmed_total",
            "Total Lightning payments observed as paid",
            ["product"],
        )

        # ====================================================================
        # Entitlement Metrics
        # ====================================================================
        self.entitlement_grants_total = Counter(
            "purple_entitlement_grants_total",
            "Total entitlement grants applied",
            [MetricLabels.TRANSACTION_TYPE],
        )

        self.accounts_created_total = Counter(
            "purple_accounts_created_total",
            "Total accounts created by a first grant",
        )

        # ====================================================================
        # Verification Metrics
        # ====================================================================
        self.receipt_verifications_total = Counter(
            "purple_receipt_verifications_total",
            "Receipt and transaction verifications by outcome",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.history_truncated_total = Counter(
            "purple_history_truncated_total",
            "Transaction history walks stopped by a failed page",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "purple_errors_total",
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

    def record_verification(self, operation: str, outcome: str) -> None:
        """Record a verification outcome (entitled, no_entitlement, failed)."""
        self.receipt_verifications_total.labels(operation=operation, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = PurpleMetrics()
