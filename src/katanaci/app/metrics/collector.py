"""Prometheus metrics definitions."""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets
# =============================================================================

# FAST: HTTP handling, DB queries (1ms ~ 10s)
_BUCKETS_FAST = (
    0.001, 0.002, 0.005, 0.01, 0.02,
    0.05, 0.1, 0.2, 0.5, 1,
    2, 5, 10,
)

# SLOW: Docker operations including image pulls (100ms ~ 180s)
_BUCKETS_SLOW = (
    0.1, 0.2, 0.39, 0.77, 1.5,
    3, 6, 12, 23, 46,
    91, 180,
)

# =============================================================================
# HTTP
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "katanaci_http_requests_total",
    "HTTP requests by method, endpoint template and status",
    ["method", "endpoint", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "katanaci_http_request_duration_seconds",
    "HTTP request duration (until response headers are sent)",
    ["method", "endpoint"],
    buckets=_BUCKETS_FAST,
)

# =============================================================================
# Lifecycle
# =============================================================================

LIFECYCLE_OPERATIONS_TOTAL = Counter(
    "katanaci_lifecycle_operations_total",
    "Instance lifecycle operations by operation and result",
    ["operation", "result"],
)

LIFECYCLE_OPERATION_DURATION = Histogram(
    "katanaci_lifecycle_operation_duration_seconds",
    "Instance lifecycle operation duration",
    ["operation"],
    buckets=_BUCKETS_SLOW,
)

INSTANCES_LIVE = Gauge(
    "katanaci_instances_live",
    "Instances in the registry as of the last change or reconcile",
)

ROLLBACKS_TOTAL = Counter(
    "katanaci_rollbacks_total",
    "Container rollbacks after a failed start, by result",
    ["result"],
)

# =============================================================================
# Proxy / Reconciler
# =============================================================================

PROXY_UPSTREAM_ERRORS_TOTAL = Counter(
    "katanaci_proxy_upstream_errors_total",
    "Upstream failures while proxying, by error type",
    ["error_type"],
)

RECONCILE_REMOVED_TOTAL = Counter(
    "katanaci_reconcile_removed_total",
    "Objects removed by reconciliation, by kind (row or container)",
    ["kind"],
)

PROXY_WS_ACTIVE_CONNECTIONS = Gauge(
    "katanaci_proxy_ws_active_connections",
    "WebSocket connections currently relayed to instances",
)
