"""
Metrics Collection with Prometheus.

Exposes ledger and system metrics for monitoring.
"""

from decimal import Decimal

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels:
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    ENTRY_POINT = "entry_point"
    OWNER = "owner"
    SWEEP = "sweep"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the credit ledger.

    Minimum viable metrics covering:
    - HTTP requests (rate, duration, errors)
    - Generations (admission outcome per front door, queue depth)
    - Settlement (outcome, refunds in money and credits)
    - Wallet primitives (debits, credits, idempotent replays)
    - Sweeps and payment confirmations
    - Farm API calls
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
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
        # Generation / Admission Metrics
        # ====================================================================
        self.generations_total = Counter(
            "ledger_generations_total",
            "Generation requests by front door and admission outcome",
            [MetricLabels.ENTRY_POINT, MetricLabels.OUTCOME],
        )

        self.dequeues_total = Counter(
            "ledger_dequeues_total",
            "Queue dequeue attempts",
            [MetricLabels.OUTCOME],
        )

        self.active_generations = Gauge(
            "ledger_active_generations",
            "Ghost-filtered active generations at last admission check",
        )

        self.queue_depth = Gauge(
            "ledger_queue_depth",
            "Queued generations at last admission check",
        )

        # ====================================================================
        # Settlement Metrics
        # ====================================================================
        self.settlements_total = Counter(
            "ledger_settlements_total",
            "Settlement attempts by outcome",
            [MetricLabels.OUTCOME, MetricLabels.OWNER],
        )

        self.refund_amount_total = Counter(
            "ledger_refund_amount_total",
            "Money refunded to wallets (currency units)",
        )

        self.refunded_credits_total = Counter(
            "ledger_refunded_credits_total",
            "Credits returned to client tokens",
        )

        # ====================================================================
        # Wallet Metrics
        # ====================================================================
        self.wallet_operations_total = Counter(
            "ledger_wallet_operations_total",
            "Wallet primitive calls by result",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.wallet_amount = Histogram(
            "ledger_wallet_amount",
            "Wallet movement amounts (currency units)",
            [MetricLabels.OPERATION],
            buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000),
        )

        # ====================================================================
        # Sweep / Payment Metrics
        # ====================================================================
        self.sweep_runs_total = Counter(
            "ledger_sweep_runs_total",
            "Sweep executions",
            [MetricLabels.SWEEP],
        )

        self.sweep_items_total = Counter(
            "ledger_sweep_items_total",
            "Items processed by sweeps",
            [MetricLabels.SWEEP, MetricLabels.OUTCOME],
        )

        self.sweep_duration_seconds = Histogram(
            "ledger_sweep_duration_seconds",
            "Sweep duration in seconds",
            [MetricLabels.SWEEP],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        self.payments_confirmed_total = Counter(
            "ledger_payments_confirmed_total",
            "Orders transitioned to paid",
            ["source", "order_type"],
        )

        # ====================================================================
        # Farm API Metrics
        # ====================================================================
        self.farm_requests_total = Counter(
            "ledger_farm_requests_total",
            "Calls to the external farm API",
            [MetricLabels.OPERATION, "success"],
        )

        self.farm_request_duration_seconds = Histogram(
            "ledger_farm_request_duration_seconds",
            "Farm API call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0),
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

    def record_generation(self, entry_point: str, outcome: str) -> None:
        """Record a front-door generation request."""
        self.generations_total.labels(entry_point=entry_point, outcome=outcome).inc()

    def record_capacity(self, active: int, queued: int) -> None:
        """Record the latest admission snapshot."""
        self.active_generations.set(active)
        self.queue_depth.set(queued)

    def record_settlement(
        self,
        outcome: str,
        owner: str,
        refund_amount: Decimal = Decimal("0"),
        refunded_credits: int = 0,
    ) -> None:
        """Record a settlement attempt and any refund it issued."""
        self.settlements_total.labels(outcome=outcome, owner=owner).inc()
        if refund_amount > 0:
            self.refund_amount_total.inc(float(refund_amount))
        if refunded_credits > 0:
            self.refunded_credits_total.inc(refunded_credits)

    def record_wallet_operation(
        self, operation: str, outcome: str, amount: Decimal | None = None
    ) -> None:
        """Record a debit/credit primitive call."""
        self.wallet_operations_total.labels(operation=operation, outcome=outcome).inc()
        if amount is not None and outcome == "success":
            self.wallet_amount.labels(operation=operation).observe(float(amount))

    def record_sweep(self, sweep: str, duration: float, **items: int) -> None:
        """Record a sweep run and per-outcome item counts."""
        self.sweep_runs_total.labels(sweep=sweep).inc()
        self.sweep_duration_seconds.labels(sweep=sweep).observe(duration)
        for outcome, count in items.items():
            if count:
                self.sweep_items_total.labels(sweep=sweep, outcome=outcome).inc(count)

    def record_payment_confirmed(self, source: str, order_type: str) -> None:
        """Record an order transitioning to paid."""
        self.payments_confirmed_total.labels(source=source, order_type=order_type).inc()

    def record_farm_request(self, operation: str, success: bool, duration: float) -> None:
        """Record a farm API call."""
        self.farm_requests_total.labels(operation=operation, success=str(success)).inc()
        self.farm_request_duration_seconds.labels(operation=operation).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
