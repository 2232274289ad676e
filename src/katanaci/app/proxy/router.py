"""Instance proxy routes.

Routes: /{name} and /{name}/{path} -> 127.0.0.1:{proxied_port}/{path}
Registered after the lifecycle routes, so /start, /{name}/stop and
/{name}/logs take precedence.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from starlette.websockets import WebSocket

from katanaci.app.api.dependencies import (
    AppServices,
    CurrentTenant,
    Lifecycle,
    authenticate,
)
from katanaci.core.errors import KatanaCIError
from katanaci.core.logging_schema import Component

from .transport import UpstreamConnectError, proxy_http_to_upstream, proxy_ws_to_upstream

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

# WebSocket close codes (RFC 6455)
WS_POLICY_VIOLATION = 1008
WS_INTERNAL_ERROR = 1011


async def _forward(
    request: Request, tenant: CurrentTenant, lifecycle: Lifecycle, name: str, path: str
) -> StreamingResponse:
    instance = await lifecycle.resolve(tenant, name)
    try:
        return await proxy_http_to_upstream(request, instance, path)
    except UpstreamConnectError:
        # Container gone -> 404 (row dropped); anything else -> 502
        await lifecycle.diagnose_unreachable(instance)
        raise


@router.api_route("/{name}", methods=PROXY_METHODS)
async def proxy_root(
    request: Request, name: str, tenant: CurrentTenant, lifecycle: Lifecycle
) -> StreamingResponse:
    return await _forward(request, tenant, lifecycle, name, "")


@router.api_route("/{name}/{path:path}", methods=PROXY_METHODS)
async def proxy_http(
    request: Request, name: str, path: str, tenant: CurrentTenant, lifecycle: Lifecycle
) -> StreamingResponse:
    return await _forward(request, tenant, lifecycle, name, path)


@router.websocket("/{name}/{path:path}")
async def proxy_websocket(
    websocket: WebSocket,
    name: str,
    path: str,
    services: AppServices,
) -> None:
    """Relay a WebSocket session, after the same auth and ownership checks."""
    try:
        tenant = await authenticate(services, websocket.headers.get("authorization"))
        instance = await services.lifecycle.resolve(tenant, name)
    except KatanaCIError as exc:
        logger.info(
            "WebSocket rejected: %s",
            exc.message,
            extra={"component": Component.PROXY, "error_code": exc.code.value},
        )
        await websocket.close(code=WS_POLICY_VIOLATION, reason=exc.message)
        return

    await proxy_ws_to_upstream(websocket, instance, path)
