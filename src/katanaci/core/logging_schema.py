"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (katana-ci)
- component: Component name (API, PROXY, LIFECYCLE, RECONCILER)
- event: Event type (instance_started, rollback_failed, etc.)
- trace_id: Request trace ID (X-Trace-ID header or generated)
- duration_ms: Duration in milliseconds

High cardinality fields (OK in logs, NOT in metric labels):
- instance: Instance name
- container_id: Container ID (short form)
- tenant: Tenant name
- key_prefix: First characters of the API key, never the full key
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types.

    Use these event types in the 'event' extra field for consistent
    log filtering and analysis.
    """

    # Lifecycle events
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"
    TENANTS_SEEDED = "tenants_seeded"

    # Instance events
    INSTANCE_STARTED = "instance_started"
    INSTANCE_STOPPED = "instance_stopped"
    INSTANCE_STALE = "instance_stale"
    ROLLBACK_COMPLETE = "rollback_complete"
    ROLLBACK_FAILED = "rollback_failed"
    OPERATION_FAILED = "operation_failed"

    # Reconciler events
    RECONCILE_COMPLETE = "reconcile_complete"
    ORPHAN_REMOVED = "orphan_removed"

    # API events
    REQUEST_COMPLETE = "request_complete"
    REQUEST_SLOW = "request_slow"
    REQUEST_FAILED = "request_failed"
    AUTH_FAILED = "auth_failed"

    # Proxy events
    UPSTREAM_FAILED = "upstream_failed"
    WS_CLOSED = "ws_closed"


class ErrorClass(StrEnum):
    """Error classification for structured error logging.

    Use these in the 'error_class' extra field to enable
    filtering by error type and setting up alerts.
    """

    TRANSIENT = "transient"  # Retryable (network timeout, temp failure)
    PERMANENT = "permanent"  # Not retryable (invalid input, not found)
    TIMEOUT = "timeout"
    RESOURCE = "resource"  # Port or name space exhausted


class Component(StrEnum):
    """Component identifiers for log filtering."""

    API = "api"
    PROXY = "proxy"
    LIFECYCLE = "lifecycle"
    RECONCILER = "reconciler"
