"""Per-request log line, HTTP metrics and X-Trace-ID propagation."""

import logging
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from katanaci.app.config import get_settings
from katanaci.app.logging import clear_trace_context, set_trace_id
from katanaci.app.metrics.collector import HTTP_REQUEST_DURATION, HTTP_REQUESTS_TOTAL
from katanaci.core.logging_schema import Component, LogEvent

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"

# Instance names are unbounded; metric labels use route templates instead
_LIFECYCLE_ROUTE = re.compile(r"^/[^/]+/(stop|logs)$")
_PROXY_ROUTE = re.compile(r"^/(?!(?:start|health|metrics)$)[^/]+(?:/.*)?$")

_UNLOGGED_PATHS = frozenset({"/health", "/metrics"})


def _normalize_path(path: str) -> str:
    """Route template of path, or "other" for anything unrouted."""
    if path == "/start":
        return path
    if match := _LIFECYCLE_ROUTE.match(path):
        return f"/:name/{match.group(1)}"
    if _PROXY_ROUTE.match(path):
        return "/:name/*"
    return "other"


class LoggingMiddleware(BaseHTTPMiddleware):
    """One canonical log line per request.

    The trace id comes from X-Trace-ID when the client sends one and is
    echoed back on the response. Durations stop when response headers are
    ready: streamed proxy and log bodies keep flowing after that.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        trace_id = set_trace_id(request.headers.get(TRACE_HEADER))
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "Request failed: %s %s",
                request.method,
                request.url.path,
                extra=self._extra(request, started, LogEvent.REQUEST_FAILED),
            )
            raise
        finally:
            clear_trace_context()

        if request.url.path not in _UNLOGGED_PATHS:
            self._observe(request, response, started, trace_id)
        response.headers[TRACE_HEADER] = trace_id
        return response

    @staticmethod
    def _extra(request: Request, started: float, event: LogEvent) -> dict:
        return {
            "event": event,
            "component": Component.API,
            "method": request.method,
            "path": request.url.path,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    def _observe(
        self, request: Request, response: Response, started: float, trace_id: str
    ) -> None:
        elapsed = time.perf_counter() - started
        endpoint = _normalize_path(request.url.path)
        HTTP_REQUESTS_TOTAL.labels(
            method=request.method, endpoint=endpoint, status=str(response.status_code)
        ).inc()
        HTTP_REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(
            elapsed
        )

        extra = self._extra(request, started, LogEvent.REQUEST_COMPLETE)
        extra.update(status=response.status_code, trace_id=trace_id)
        logger.info(
            "%s %s %d", request.method, request.url.path, response.status_code, extra=extra
        )

        threshold_ms = get_settings().logging.slow_threshold_ms
        if extra["duration_ms"] > threshold_ms:
            logger.warning(
                "Slow request: %s %s took %.0fms",
                request.method,
                request.url.path,
                extra["duration_ms"],
                extra={**extra, "event": LogEvent.REQUEST_SLOW, "threshold_ms": threshold_ms},
            )
