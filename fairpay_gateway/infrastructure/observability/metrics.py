"""Prometheus metrics for webhook reconciliation, payment retries and HTTP latency"""

from prometheus_client import Counter, Histogram

# Webhook metrics
webhook_event_counter = Counter(
    "fairpay_webhook_events_total",
    "Stripe webhook events received",
    ["event_type", "outcome"],  # handled | duplicate | ignored | failed
)

webhook_signature_failure_counter = Counter(
    "fairpay_webhook_signature_failures_total",
    "Webhook deliveries rejected for a missing or invalid signature",
    ["reason"],  # missing | invalid
)

malformed_metadata_counter = Counter(
    "fairpay_malformed_metadata_total",
    "Events whose metadata envelope could not be decoded",
    ["event_type"],
)

side_effect_failure_counter = Counter(
    "fairpay_reconciliation_side_effect_failures_total",
    "Best-effort reconciliation steps that failed after the primary commit",
    ["step"],  # invoice | subscription | procedure
)

procedure_transition_counter = Counter(
    "fairpay_procedure_transitions_total",
    "Procedure status changes applied by reconciliation",
    ["status"],
)

# Payment initiation metrics
payment_retry_counter = Counter(
    "fairpay_payment_retries_total",
    "Payment retries initiated by users",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_webhook_event(event_type: str, outcome: str) -> None:
    webhook_event_counter.labels(event_type=event_type, outcome=outcome).inc()


def record_procedure_transition(status) -> None:
    """Count a procedure reaching status (enum or plain string)"""
    procedure_transition_counter.labels(status=getattr(status, "value", status)).inc()
