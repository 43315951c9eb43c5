"""Prometheus metrics for offer resolution, cascades, accountability and notifications"""

from prometheus_client import Counter, Histogram

# Offer metrics
offer_resolution_counter = Counter(
    "peerloan_offer_resolution_total",
    "Offers leaving the pending state",
    ["outcome"],  # accepted | auto_accepted | declined | expired | skipped
)

cascade_counter = Counter(
    "peerloan_cascade_total",
    "Cascade advances by result",
    ["trigger", "result"],  # trigger: decline | sweep | start; result: presented | auto_accepted | no_match
)

sweep_error_counter = Counter(
    "peerloan_sweep_errors_total",
    "Loans whose cascade failed during a sweep",
)

# Accountability metrics
backer_consequence_counter = Counter(
    "peerloan_backer_consequence_total",
    "Backings updated by loan outcome",
    ["event"],  # started | completed | defaulted | default_resolved
)

backer_lock_counter = Counter(
    "peerloan_backer_lock_total",
    "Backer lock state changes",
    ["change"],  # locked | unlocked
)

# Notification metrics
notification_latency_histogram = Histogram(
    "notification_latency_seconds",
    "Notification service response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

notification_failure_counter = Counter(
    "notification_failures_total",
    "Failed notification delivery attempts",
    ["kind"],
)

notification_dropped_counter = Counter(
    "notification_dropped_total",
    "Notifications dropped because the outbox was full",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_offer_resolution(status: str, count: int = 1) -> None:
    """Record offers leaving pending for monitoring acceptance and expiry rates"""
    if count > 0:
        offer_resolution_counter.labels(outcome=status).inc(count)


def record_cascade(trigger: str, result: str) -> None:
    cascade_counter.labels(trigger=trigger, result=result).inc()
