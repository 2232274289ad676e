"""HTTP and WebSocket transport to instance containers.

Configuration via ProxyConfig (KATANACI_PROXY__ env prefix).
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator

import httpx
import websockets
from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.websockets import WebSocket, WebSocketDisconnect
from websockets.asyncio.client import ClientConnection

from katanaci.app.config import get_settings
from katanaci.app.metrics.collector import (
    PROXY_UPSTREAM_ERRORS_TOTAL,
    PROXY_WS_ACTIVE_CONNECTIONS,
)
from katanaci.core.errors import UpstreamUnavailableError
from katanaci.core.logging_schema import Component, ErrorClass, LogEvent
from katanaci.infra.models import Instance

from .client import (
    REQUEST_ONLY_HEADERS,
    WS_HOP_BY_HOP_HEADERS,
    filter_headers,
    get_http_client,
    upstream_base_url,
)

logger = logging.getLogger(__name__)

# Methods whose request body is streamed upstream
_BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class UpstreamConnectError(UpstreamUnavailableError):
    """Nothing is listening on the instance port."""

    def __init__(self, message: str = "Instance is not accepting connections") -> None:
        super().__init__(message)


def _target_path(path: str, query: str) -> str:
    target = f"/{path}" if path else "/"
    return f"{target}?{query}" if query else target


def _log_upstream_error(
    instance: Instance,
    target_url: str,
    error_type: str,
    exc: Exception,
    error_class: ErrorClass,
) -> None:
    PROXY_UPSTREAM_ERRORS_TOTAL.labels(error_type=error_type).inc()
    logger.warning(
        "Upstream %s for instance %s",
        error_type,
        instance.instance_name,
        extra={
            "event": LogEvent.UPSTREAM_FAILED,
            "component": Component.PROXY,
            "instance": instance.instance_name,
            "target_url": target_url,
            "error_type": error_type,
            "error_class": error_class,
            "error": str(exc),
        },
    )


async def proxy_http_to_upstream(
    request: Request,
    instance: Instance,
    path: str,
) -> StreamingResponse:
    """Proxy an HTTP request to the instance.

    Raises:
        UpstreamConnectError: Connection refused (caller decides 404 vs 502)
        UpstreamUnavailableError: Timeout or protocol failure
    """
    target_url = upstream_base_url(instance.proxied_port) + _target_path(
        path, request.url.query
    )

    headers = filter_headers(request.headers.items(), REQUEST_ONLY_HEADERS)
    http_client = await get_http_client()
    content = request.stream() if request.method in _BODY_METHODS else None

    try:
        upstream_request = http_client.build_request(
            method=request.method,
            url=target_url,
            headers=headers,
            content=content,
        )
        upstream_response = await http_client.send(upstream_request, stream=True)
    except httpx.ConnectError as exc:
        _log_upstream_error(
            instance, target_url, "connection_error", exc, ErrorClass.TRANSIENT
        )
        raise UpstreamConnectError() from exc
    except httpx.TimeoutException as exc:
        _log_upstream_error(instance, target_url, "timeout", exc, ErrorClass.TIMEOUT)
        raise UpstreamUnavailableError("Instance timed out") from exc
    except httpx.HTTPError as exc:
        _log_upstream_error(
            instance, target_url, "protocol_error", exc, ErrorClass.PERMANENT
        )
        raise UpstreamUnavailableError() from exc

    response_headers = filter_headers(upstream_response.headers.multi_items())

    async def stream_response() -> AsyncGenerator[bytes]:
        try:
            async for chunk in upstream_response.aiter_raw():
                yield chunk
        except httpx.HTTPError as exc:
            # Headers are already sent; the client sees a truncated body
            _log_upstream_error(
                instance, target_url, "stream_error", exc, ErrorClass.TRANSIENT
            )
        finally:
            await upstream_response.aclose()

    response = StreamingResponse(stream_response(), status_code=upstream_response.status_code)
    # Raw pairs keep repeated fields such as Set-Cookie
    response.raw_headers.extend(
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in response_headers
    )
    return response


async def _relay_client_to_backend(client_ws: WebSocket, backend_ws: ClientConnection) -> None:
    """Relay messages from client WebSocket to backend WebSocket."""
    while True:
        data = await client_ws.receive()
        if data["type"] == "websocket.receive":
            if data.get("text") is not None:
                await backend_ws.send(data["text"])
            elif data.get("bytes") is not None:
                await backend_ws.send(data["bytes"])
        elif data["type"] == "websocket.disconnect":
            break


async def _relay_backend_to_client(client_ws: WebSocket, backend_ws: ClientConnection) -> None:
    """Relay messages from backend WebSocket to client WebSocket."""
    async for message in backend_ws:
        if isinstance(message, str):
            await client_ws.send_text(message)
        else:
            await client_ws.send_bytes(message)


async def proxy_ws_to_upstream(
    websocket: WebSocket,
    instance: Instance,
    path: str,
) -> None:
    """Proxy a WebSocket session to the instance and relay messages.

    Whichever side ends first tears down the other.
    """
    config = get_settings().proxy
    query_string = websocket.scope.get("query_string", b"").decode()
    upstream_ws_uri = upstream_base_url(instance.proxied_port, "ws") + _target_path(
        path, query_string
    )

    extra_headers = filter_headers(websocket.headers.items(), WS_HOP_BY_HOP_HEADERS)

    try:
        backend_ws = await websockets.connect(
            upstream_ws_uri,
            additional_headers=extra_headers,
            ping_interval=config.ws_ping_interval,
            ping_timeout=config.ws_ping_timeout,
            max_size=config.ws_max_size,
            max_queue=config.ws_max_queue,
        )
    except (OSError, websockets.InvalidHandshake, asyncio.TimeoutError) as exc:
        _log_upstream_error(
            instance, upstream_ws_uri, "ws_connect_failed", exc, ErrorClass.TRANSIENT
        )
        await websocket.close(code=1011, reason="Upstream connection failed")
        return

    await websocket.accept()
    PROXY_WS_ACTIVE_CONNECTIONS.inc()

    try:
        async with backend_ws:
            tasks = [
                asyncio.create_task(_relay_client_to_backend(websocket, backend_ws)),
                asyncio.create_task(_relay_backend_to_client(websocket, backend_ws)),
            ]
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(
                    exc, (WebSocketDisconnect, websockets.ConnectionClosed)
                ):
                    raise exc
    except Exception as exc:
        _log_upstream_error(
            instance, upstream_ws_uri, "ws_relay_error", exc, ErrorClass.TRANSIENT
        )
    finally:
        PROXY_WS_ACTIVE_CONNECTIONS.dec()
        logger.debug(
            "WebSocket session closed",
            extra={
                "event": LogEvent.WS_CLOSED,
                "component": Component.PROXY,
                "instance": instance.instance_name,
            },
        )
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await websocket.close()
