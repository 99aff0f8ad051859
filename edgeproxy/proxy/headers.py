"""Header policy applied to every proxied exchange.

Outbound, anything that reveals the client's address or the page it came
from is removed. Inbound, headers that pin the response to the upstream's
own origin policy are removed because the proxy changes the effective
origin. Neither direction is configurable.
"""

from __future__ import annotations

from typing import Iterable

import httpx

# Headers that must NEVER be forwarded from the client to the upstream.
CLIENT_IDENTITY_HEADERS: frozenset[str] = frozenset({
    "x-forwarded-for",
    "x-forwarded-host",
    "x-real-ip",
    "x-client-ip",
    "true-client-ip",
    "cf-connecting-ip",
    "cf-connecting-ipv6",
    "cf-ipcity",
    "cf-ipcountry",
    "forwarded",
    "referer",
})

# Headers that must NEVER appear in responses sent back to the client.
ORIGIN_POLICY_HEADERS: frozenset[str] = frozenset({
    "content-security-policy",
    "content-security-policy-report-only",
    "x-frame-options",
    "strict-transport-security",
})

HOP_BY_HOP_HEADERS: frozenset[str] = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

# Handshake headers the WebSocket client library generates itself.
WEBSOCKET_HANDSHAKE_HEADERS: frozenset[str] = frozenset({
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
})

RawHeaders = Iterable[tuple[bytes, bytes]]


def _header_name(key: bytes) -> str:
    return key.decode("latin-1").lower()


def sanitize_request_headers(incoming: RawHeaders, upstream: httpx.URL) -> httpx.Headers:
    """Copy client headers for the upstream request.

    Values stay as the bytes the client sent, so non-ASCII values such as an
    Emby device name reach the upstream untouched. ``Host`` is rewritten to
    the upstream authority; ``Content-Length`` is recomputed by the HTTP
    client from the forwarded body.
    """
    drop = CLIENT_IDENTITY_HEADERS | HOP_BY_HOP_HEADERS | {"host", "content-length"}
    headers = httpx.Headers([(key, value) for key, value in incoming if _header_name(key) not in drop])
    headers["Host"] = upstream.netloc.decode("ascii")
    return headers


def sanitize_response_headers(upstream_raw: RawHeaders, location: str | None = None) -> list[tuple[bytes, bytes]]:
    """Raw header pairs for the downstream response, values undecoded and names lower-cased for ASGI.

    A ``location`` replaces whatever ``Location`` the upstream sent.
    """
    drop = ORIGIN_POLICY_HEADERS | HOP_BY_HOP_HEADERS
    if location is not None:
        drop = drop | {"location"}
    headers = [(key.lower(), value) for key, value in upstream_raw if _header_name(key) not in drop]
    if location is not None:
        headers.append((b"location", location.encode("latin-1")))
    return headers


def websocket_handshake_headers(incoming: RawHeaders) -> list[tuple[str, str]]:
    """Client headers to replay on the upstream WebSocket handshake."""
    drop = CLIENT_IDENTITY_HEADERS | HOP_BY_HOP_HEADERS | WEBSOCKET_HANDSHAKE_HEADERS | {"host", "content-length"}
    headers = []
    for key, value in incoming:
        name = _header_name(key)
        if name in drop:
            continue
        try:
            text = value.decode("utf-8")
        except UnicodeDecodeError:
            text = value.decode("latin-1")
        headers.append((key.decode("latin-1"), text))
    return headers
