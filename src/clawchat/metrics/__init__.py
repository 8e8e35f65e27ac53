"""Prometheus metrics for ClawChat."""

from prometheus_client import Counter, Gauge, Histogram

# API request counter
# Labels: method (HTTP method), endpoint (route path), status (HTTP status code)
api_request_counter = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
)

# API latency histogram
api_latency_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Open WebSocket sessions in this process
websocket_connections_gauge = Gauge(
    "clawchat_websocket_connections_active",
    "Number of authenticated WebSocket connections",
)

# Users with at least one open connection
online_users_gauge = Gauge(
    "clawchat_online_users",
    "Number of distinct online users",
)

# Frames enqueued for delivery
# Labels: event (wire event type)
event_deliveries_counter = Counter(
    "clawchat_event_deliveries_total",
    "Realtime frames handed to connection outboxes",
    ["event"],
)

# Per-recipient delivery failures
# Labels: reason (queue_full, send_timeout, send_error)
delivery_failures_counter = Counter(
    "clawchat_delivery_failures_total",
    "Realtime frames dropped for a single recipient",
    ["reason"],
)

# Rejected connection attempts
# Labels: code (authentication error code)
auth_failures_counter = Counter(
    "clawchat_auth_failures_total",
    "WebSocket authentication failures",
    ["code"],
)

__all__ = [
    "api_request_counter",
    "api_latency_histogram",
    "websocket_connections_gauge",
    "online_users_gauge",
    "event_deliveries_counter",
    "delivery_failures_counter",
    "auth_failures_counter",
]
