"""Process-wide logging: JSON lines on stdout, trace ids, log-storm protection."""

import logging
import sys
import time
from collections import deque
from collections.abc import Callable
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pythonjsonlogger.json import JsonFormatter

from katanaci.app.config import get_settings

# Request-scoped trace id, propagated via the X-Trace-ID header
trace_id_ctx: ContextVar[str | None] = ContextVar("trace_id", default=None)

KEY_PREFIX_LENGTH = 4


def get_trace_id() -> str | None:
    return trace_id_ctx.get()


def set_trace_id(trace_id: str | None = None) -> str:
    """Bind a trace id to the current request context.

    An incoming X-Trace-ID is kept as is; otherwise a uuid4 is minted.
    """
    trace_id = trace_id or uuid4().hex
    trace_id_ctx.set(trace_id)
    return trace_id


def clear_trace_context() -> None:
    trace_id_ctx.set(None)


def key_prefix(api_key: str) -> str:
    """Loggable form of an API key: never log more than its first characters."""
    return f"{api_key[:KEY_PREFIX_LENGTH]}..."


class RateLimitFilter(logging.Filter):
    """Caps how often one call site may emit the same message.

    Records are keyed by (logger, line, message template) over a sliding
    one-minute window. The first record over the cap is let through with a
    ``[RATE LIMITED]`` marker; later ones are dropped and counted, and the
    count is attached as ``suppressed`` to the next record that passes.
    ERROR and above always pass.
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        rate_per_minute: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self.rate_per_minute = rate_per_minute
        self._clock = clock
        self._recent: dict[tuple[str, int, str], deque[float]] = {}
        self._suppressed: dict[tuple[str, int, str], int] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            return True

        key = (record.name, record.lineno, str(record.msg))
        now = self._clock()
        recent = self._recent.setdefault(key, deque())
        while recent and now - recent[0] >= self.WINDOW_SECONDS:
            recent.popleft()

        if len(recent) < self.rate_per_minute:
            recent.append(now)
            if dropped := self._suppressed.pop(key, 0):
                record.suppressed = dropped
            return True

        if key not in self._suppressed:
            self._suppressed[key] = 0
            record.msg = f"[RATE LIMITED] {record.msg} (max {self.rate_per_minute}/min)"
            return True

        self._suppressed[key] += 1
        return False


class CustomJsonFormatter(JsonFormatter):
    """One JSON object per line: level, logger, message, service and trace id."""

    def __init__(self, **kwargs: Any) -> None:
        config = get_settings().logging
        super().__init__(
            "%(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger"},
            static_fields={
                "schema_version": config.schema_version,
                "service": config.service_name,
            },
            **kwargs,
        )

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=UTC).isoformat()
        if trace_id := get_trace_id():
            log_record["trace_id"] = trace_id
        # uvicorn duplicates the message with ANSI colors
        log_record.pop("color_message", None)


# Chatty third-party loggers: only warnings and above
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "websockets")


def _build_handler() -> logging.Handler:
    config = get_settings().logging
    handler = logging.StreamHandler(sys.stdout)
    if config.json_output:
        handler.setFormatter(CustomJsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
        )
    handler.addFilter(RateLimitFilter(config.rate_limit_per_minute))
    return handler


def setup_logging(level: int | None = None) -> None:
    """Route all logging (ours and uvicorn's) through one stdout handler.

    Args:
        level: Log level. If None, uses KATANACI_LOGGING__LEVEL.
    """
    if level is None:
        level = logging.getLevelName(get_settings().logging.level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = _build_handler()
    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(level)

    for name in ("uvicorn", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers[:] = [handler]
        uv_logger.propagate = False

    # LoggingMiddleware writes the per-request line
    logging.getLogger("uvicorn.access").disabled = True

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
