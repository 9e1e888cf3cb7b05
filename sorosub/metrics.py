"""
Prometheus Metrics for the SoroSub payment service.

This module defines all metrics exposed at the /metrics endpoint.
Metrics are categorized into:

1. Business Impact Metrics - For Product/Finance teams
   - Collection outcomes, BNPL usage, repayments

2. Technical Metrics - For Engineering/SRE teams
   - Latencies, ledger errors, outbox depth
"""
from prometheus_client import Counter, Gauge, Histogram, Info

# =============================================================================
# SERVICE INFO
# =============================================================================

SERVICE_INFO = Info(
    "sorosub_service",
    "Service information"
)
SERVICE_INFO.info({
    "version": "0.1.0",
    "service": "sorosub-gateway",
})

# =============================================================================
# BUSINESS IMPACT METRICS
# =============================================================================

# Counter: Successful collections by branch
COLLECTION_TOTAL = Counter(
    "sorosub_collection_total",
    "Successful payment collections",
    ["branch"]  # direct, bnpl
)

# Counter: Failed collections by error code
COLLECTION_FAILURES = Counter(
    "sorosub_collection_failures_total",
    "Payment collections that were rejected or failed",
    ["error_code"]  # interval_not_elapsed, insufficient_funds_and_credit, ...
)

# Counter: Amount moved to merchants by branch (token base units)
COLLECTED_AMOUNT = Counter(
    "sorosub_collected_amount_total",
    "Total amount transferred to merchants",
    ["branch"]
)

# Gauge: Share of recent collections that needed BNPL
BNPL_RATE = Gauge(
    "sorosub_bnpl_rate",
    "Rolling share of collections financed by the liquidity pool (0.0 to 1.0)"
)

# Counter: Debt repayments
REPAYMENT_TOTAL = Counter(
    "sorosub_repayment_total",
    "Debt repayments",
    ["outcome"]  # partial, cleared
)

REPAID_AMOUNT = Counter(
    "sorosub_repaid_amount_total",
    "Total amount repaid to the liquidity pool"
)

# =============================================================================
# TECHNICAL METRICS
# =============================================================================

# Histogram: Collection latency (end-to-end)
COLLECTION_LATENCY = Histogram(
    "sorosub_collection_latency_seconds",
    "Time to collect a payment (end-to-end)",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Histogram: Token ledger call latency
LEDGER_LATENCY = Histogram(
    "sorosub_token_ledger_latency_seconds",
    "Time to complete a token ledger call",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Counter: Token ledger failures
LEDGER_FAILURES = Counter(
    "sorosub_token_ledger_failures_total",
    "Total token ledger call failures",
    ["operation", "error_type"]  # declined, timeout, connection_error, http_error
)

# Counter: Events written to the outbox
EVENTS_PUBLISHED = Counter(
    "sorosub_events_published_total",
    "Events staged in the outbox",
    ["topic"]
)

# Counter: Event delivery outcomes
EVENT_DELIVERY = Counter(
    "sorosub_event_delivery_total",
    "Event delivery attempts",
    ["status"]  # success, failed
)

# Counter: Event retries
EVENT_RETRY = Counter(
    "sorosub_event_retry_total",
    "Total event delivery retry attempts"
)

# Gauge: Outbox depth (pending events)
EVENT_QUEUE_DEPTH = Gauge(
    "sorosub_event_queue_depth",
    "Number of events pending delivery"
)

# =============================================================================
# HTTP METRICS (Standard)
# =============================================================================

HTTP_REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

HTTP_REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

# Track recent branches for the rolling BNPL rate
_recent_branches: list[bool] = []
_max_collections_tracked = 1000


def record_collection(branch: str, amount: int, latency_seconds: float) -> None:
    """
    Record all metrics for one successful collection.

    Args:
        branch: "direct" or "bnpl"
        amount: Amount transferred to the merchant
        latency_seconds: Time taken to collect
    """
    COLLECTION_TOTAL.labels(branch=branch).inc()
    COLLECTED_AMOUNT.labels(branch=branch).inc(amount)
    COLLECTION_LATENCY.observe(latency_seconds)

    _recent_branches.append(branch == "bnpl")
    if len(_recent_branches) > _max_collections_tracked:
        _recent_branches.pop(0)

    BNPL_RATE.set(sum(_recent_branches) / len(_recent_branches))


def record_collection_failure(error_code: str) -> None:
    COLLECTION_FAILURES.labels(error_code=error_code).inc()


def record_repayment(amount: int, cleared: bool) -> None:
    """Record a debt repayment."""
    REPAYMENT_TOTAL.labels(outcome="cleared" if cleared else "partial").inc()
    REPAID_AMOUNT.inc(amount)


def record_ledger_call(
    operation: str, success: bool, latency_seconds: float, error_type: str = None
) -> None:
    """Record token ledger call metrics."""
    LEDGER_LATENCY.labels(operation=operation).observe(latency_seconds)

    if not success:
        LEDGER_FAILURES.labels(operation=operation, error_type=error_type or "unknown").inc()


def record_event_delivery(success: bool, is_retry: bool = False) -> None:
    """Record event delivery metrics."""
    status = "success" if success else "failed"
    EVENT_DELIVERY.labels(status=status).inc()

    if is_retry:
        EVENT_RETRY.inc()


def set_event_queue_depth(depth: int) -> None:
    """Update the outbox depth gauge."""
    EVENT_QUEUE_DEPTH.set(depth)


def record_http_request(method: str, endpoint: str, status: int, latency_seconds: float) -> None:
    HTTP_REQUESTS.labels(method=method, endpoint=endpoint, status=status).inc()
    HTTP_REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(latency_seconds)
