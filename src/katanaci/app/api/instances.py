"""Instance lifecycle routes: /start, /{name}/stop, /{name}/logs."""

from typing import Annotated

from fastapi import APIRouter, Query
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from katanaci.app.config import get_settings
from katanaci.core.errors import InvalidArgumentError
from katanaci.services.lifecycle import StartOptions

from .dependencies import CurrentTenant, Lifecycle

router = APIRouter(tags=["instances"])

ALL_LINES = "all"


def parse_tail(n: str | None, default: int) -> int | None:
    """Interpret the ``n`` query parameter of /logs.

    Returns:
        Line count, or None for the full history

    Raises:
        InvalidArgumentError: Not a non-negative integer nor "all"
    """
    if n is None:
        return default
    if n == ALL_LINES:
        return None
    if not n.isascii() or not n.isdigit():
        raise InvalidArgumentError(
            f"Query parameter n must be a non-negative integer or '{ALL_LINES}'"
        )
    return int(n)


@router.api_route("/start", methods=["GET", "POST"], response_class=PlainTextResponse)
async def start_instance(
    tenant: CurrentTenant,
    lifecycle: Lifecycle,
    block_time: Annotated[int | None, Query(ge=0)] = None,
    no_mining: bool | None = None,
) -> PlainTextResponse:
    """Start a sequencer and return its instance name as plain text."""
    options = StartOptions(block_time=block_time, no_mining=no_mining)
    instance = await lifecycle.start(tenant, options)
    return PlainTextResponse(instance.instance_name)


@router.api_route("/{name}/stop", methods=["GET", "POST"])
async def stop_instance(name: str, tenant: CurrentTenant, lifecycle: Lifecycle) -> Response:
    await lifecycle.stop(tenant, name)
    return Response(status_code=200)


@router.get("/{name}/logs", response_class=StreamingResponse)
async def instance_logs(
    name: str,
    tenant: CurrentTenant,
    lifecycle: Lifecycle,
    n: str | None = None,
) -> StreamingResponse:
    """Stream the tail of the instance's logs (stdout and stderr)."""
    tail = parse_tail(n, get_settings().instances.default_log_lines)
    chunks = await lifecycle.open_logs(tenant, name, tail)
    return StreamingResponse(chunks, media_type="text/plain; charset=utf-8")
