"""
Prometheus metrics for settlement monitoring.

Tracks:
- Job runs and durations
- Escrow releases and released amounts
- Payout outcomes
- Reconciliation checks and issues
- Stripe API calls and errors
- HTTP requests by route
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Job metrics
job_runs_total = Counter(
    "settlement_job_runs_total",
    "Total settlement job runs",
    ["job", "status"],  # status: success, error
)

job_duration_seconds = Histogram(
    "settlement_job_duration_seconds",
    "Settlement job duration in seconds",
    ["job"],
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, 600),
)

job_last_success_timestamp = Gauge(
    "settlement_job_last_success_timestamp",
    "Timestamp of the last successful run per job",
    ["job"],
)

# Escrow metrics
escrow_releases_total = Counter(
    "escrow_releases_total",
    "Total escrow release attempts",
    ["outcome"],  # released, failed
)

escrow_released_amount_minor = Counter(
    "escrow_released_amount_minor_total",
    "Net amount credited to sellers by escrow release (minor units)",
)

# Payout metrics
payouts_total = Counter(
    "payouts_total",
    "Total payout requests handled by the batch job",
    ["outcome"],  # completed, failed, skipped
)

payout_amount_minor = Histogram(
    "payout_amount_minor",
    "Completed payout amounts (minor units)",
    buckets=(100_000, 500_000, 1_000_000, 5_000_000, 10_000_000, 50_000_000, 100_000_000),
)

# Reconciliation metrics
reconciliation_payments_checked = Gauge(
    "reconciliation_payments_checked",
    "Payments checked by the last reconciliation run",
)

reconciliation_issues_found = Gauge(
    "reconciliation_issues_found",
    "New discrepancies found by the last reconciliation run",
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# HTTP metrics
http_requests_total = Counter(
    "settlement_http_requests_total",
    "HTTP requests served",
    ["method", "route", "status_code"],
)

http_request_duration_seconds = Histogram(
    "settlement_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["route"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_job_run(job: str, status: str, duration_seconds: float) -> None:
        """Record a settlement job run."""
        job_runs_total.labels(job=job, status=status).inc()
        job_duration_seconds.labels(job=job).observe(duration_seconds)
        if status == "success":
            job_last_success_timestamp.labels(job=job).set(time.time())

    @staticmethod
    def record_escrow_release(net_minor: int) -> None:
        """Record a released order."""
        escrow_releases_total.labels(outcome="released").inc()
        escrow_released_amount_minor.inc(net_minor)

    @staticmethod
    def record_escrow_failure() -> None:
        """Record an order that failed to release."""
        escrow_releases_total.labels(outcome="failed").inc()

    @staticmethod
    def record_payout(outcome: str, amount_minor: int = 0) -> None:
        """Record a payout outcome."""
        payouts_total.labels(outcome=outcome).inc()
        if outcome == "completed" and amount_minor > 0:
            payout_amount_minor.observe(amount_minor)

    @staticmethod
    def set_reconciliation_metrics(checked: int, issues_found: int) -> None:
        """Set reconciliation metrics."""
        reconciliation_payments_checked.set(checked)
        reconciliation_issues_found.set(issues_found)

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_http_request(
        method: str, route: str, status_code: int, duration_seconds: float
    ) -> None:
        """Record a served request, labelled by route template rather than raw path."""
        http_requests_total.labels(method=method, route=route, status_code=str(status_code)).inc()
        http_request_duration_seconds.labels(route=route).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
