"""
Metrics Collection with Prometheus.

Exposes ledger, task pipeline and AI provider metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from riresume.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    TASK_TYPE = "task_type"
    PROVIDER = "provider"


class BackendMetrics:
    """
    Centralized metrics for the RiResume backend.

    - HTTP requests (rate, duration, errors)
    - Ledger debits and credits (rate, amount, duplicates)
    - Task transitions (per type and status)
    - AI provider calls (per provider and outcome)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "riresume_service",
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
            "riresume_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "riresume_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "riresume_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.debits_total = Counter(
            "riresume_debits_total",
            "Total token debits attempted",
            ["success", MetricLabels.ERROR_TYPE],
        )

        self.debit_amount = Histogram(
            "riresume_debit_amount_tokens",
            "Debited token amounts",
            buckets=(1, 5, 10, 20, 30, 50, 100, 250),
        )

        self.credits_total = Counter(
            "riresume_credits_total",
            "Total token credits by outcome (credited, duplicate)",
            ["outcome"],
        )

        self.credit_amount = Histogram(
            "riresume_credit_amount_tokens",
            "Credited token amounts",
            buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000),
        )

        # ====================================================================
        # Task Metrics
        # ====================================================================
        self.task_transitions_total = Counter(
            "riresume_task_transitions_total",
            "Task status transitions",
            [MetricLabels.TASK_TYPE, "status"],
        )

        self.task_duration_seconds = Histogram(
            "riresume_task_duration_seconds",
            "Wall time from claim to terminal state",
            [MetricLabels.TASK_TYPE],
            buckets=(1, 5, 10, 30, 60, 120, 240, 480),
        )

        self.generation_lock_total = Counter(
            "riresume_generation_lock_total",
            "Generation lock acquisitions by outcome (acquired, cached, in_progress)",
            ["outcome"],
        )

        # ====================================================================
        # AI Provider Metrics
        # ====================================================================
        self.ai_calls_total = Counter(
            "riresume_ai_calls_total",
            "AI provider calls by outcome (success, rate_limited, error)",
            [MetricLabels.PROVIDER, "outcome"],
        )

        self.ai_call_duration_seconds = Histogram(
            "riresume_ai_call_duration_seconds",
            "AI provider call duration in seconds",
            [MetricLabels.PROVIDER],
            buckets=(0.5, 1, 2.5, 5, 10, 20, 40, 60, 90),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "riresume_errors_total",
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

    def record_debit(self, success: bool, amount: int, error_type: str | None = None) -> None:
        """Record debit metrics."""
        self.debits_total.labels(success=str(success), error_type=error_type or "none").inc()
        if success:
            self.debit_amount.observe(amount)

    def record_credit(self, duplicate: bool, amount: int) -> None:
        """Record credit metrics."""
        self.credits_total.labels(outcome="duplicate" if duplicate else "credited").inc()
        if not duplicate:
            self.credit_amount.observe(amount)

    def record_task_transition(self, task_type: str, status: str) -> None:
        """Record a task status transition."""
        self.task_transitions_total.labels(task_type=task_type, status=status).inc()

    def record_ai_call(self, provider: str, outcome: str, duration: float) -> None:
        """Record a single AI provider call."""
        self.ai_calls_total.labels(provider=provider, outcome=outcome).inc()
        self.ai_call_duration_seconds.labels(provider=provider).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BackendMetrics()
