"""Upstream connection handling for the instance proxy.

One pooled httpx client serves every instance; sequencers live on
loopback ports, so pooling is keyed by port.
"""

from collections.abc import Iterable

import httpx

from katanaci.app.config import ProxyConfig, get_settings

# Connection-scoped headers (RFC 7230 6.1), never relayed in either direction
HOP_BY_HOP_HEADERS = frozenset(
    [
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
    ]
)

# The bearer token is a katana-ci credential; the sequencer never sees it
REQUEST_ONLY_HEADERS = HOP_BY_HOP_HEADERS | {"authorization"}

# The websockets client negotiates the handshake itself
WS_HOP_BY_HOP_HEADERS = REQUEST_ONLY_HEADERS | {
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
}

_http_client: httpx.AsyncClient | None = None


def _build_client(config: ProxyConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            config.timeout_total,
            connect=config.timeout_connect,
            pool=config.timeout_pool,
        ),
        limits=httpx.Limits(
            max_connections=config.max_connections,
            max_keepalive_connections=config.max_keepalive,
            keepalive_expiry=config.keepalive_expiry,
        ),
        follow_redirects=False,
    )


async def get_http_client() -> httpx.AsyncClient:
    """Shared upstream client, created on first use."""
    global _http_client
    if _http_client is None:
        _http_client = _build_client(get_settings().proxy)
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def filter_headers(
    headers: Iterable[tuple[str, str]],
    excluded: frozenset[str] = HOP_BY_HOP_HEADERS,
) -> list[tuple[str, str]]:
    """Drop excluded headers (case-insensitive).

    Takes and returns (name, value) pairs so repeated headers such as
    Set-Cookie survive as separate fields.
    """
    return [(name, value) for name, value in headers if name.lower() not in excluded]


def upstream_base_url(port: int, scheme: str = "http") -> str:
    """Base URL of the sequencer listening on port."""
    return f"{scheme}://{get_settings().proxy.upstream_host}:{port}"
