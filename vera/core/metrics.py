"""
Prometheus metrics for the ticketing core
"""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "vera_requests_total",
    "Total requests",
    ["method", "endpoint", "status"]
)

REQUEST_DURATION = Histogram(
    "vera_request_duration_seconds",
    "Request duration",
    ["method", "endpoint"]
)

TICKET_RESERVATIONS = Counter(
    "vera_ticket_reservations_total",
    "Ticket reservation attempts by outcome",
    ["outcome"]
)

PAYMENT_RECONCILIATIONS = Counter(
    "vera_payment_reconciliations_total",
    "Payment reconciliation calls by kind and outcome",
    ["kind", "outcome"]
)

CHECKOUTS = Counter(
    "vera_checkouts_total",
    "Gateway checkout initializations by kind and outcome",
    ["kind", "outcome"]
)

WEBHOOK_EVENTS = Counter(
    "vera_webhook_events_total",
    "Inbound gateway webhooks by logged status",
    ["status"]
)

RESALE_TRANSITIONS = Counter(
    "vera_resale_transitions_total",
    "Resale state transitions",
    ["action"]
)

RESALE_OFFERS_EXPIRED = Counter(
    "vera_resale_offers_expired_total",
    "Accepted resale offers released by expiry",
    ["source"]
)

GATEWAY_LATENCY = Histogram(
    "vera_gateway_request_seconds",
    "Payment gateway request latency",
    ["operation"]
)
