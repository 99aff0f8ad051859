"""Request pipeline for ``/{user}/{target...}``.

Steps run strictly in order: store readiness, user check, target parsing,
allow-list check, upstream fetch, single-hop redirect resolution, response
streaming. WebSocket upgrades share the admission steps and are then relayed
frame by frame. Every terminal outcome is handed to the access logger through
the background worker so the client never waits on persistence.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from fastapi import Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from starlette.requests import HTTPConnection
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosed, WebSocketException

from edgeproxy.proxy.access_gate import REASON_NOT_ALLOWED, REASON_REDIRECT_NOT_ALLOWED, AccessGate
from edgeproxy.proxy.exceptions import (
    InvalidTargetError,
    OriginDeniedError,
    ProxyError,
    StoreUnavailableError,
    UpstreamUnreachableError,
    UserDeniedError,
)
from edgeproxy.proxy.headers import (
    sanitize_request_headers,
    sanitize_response_headers,
    websocket_handshake_headers,
)
from edgeproxy.proxy.origin import canonical_origin
from edgeproxy.proxy.redirects import (
    Denied,
    DirectPassthrough,
    Follow,
    RawForward,
    resolve_redirect,
)
from edgeproxy.proxy.url_rewriter import parse_upstream_url
from edgeproxy.services.access_logger import (
    ACTION_DENY,
    ACTION_ERROR,
    ACTION_PROXY,
    ClientMeta,
    get_client_meta,
)
from edgeproxy.services.runtime import RuntimeState
from edgeproxy.services.store import STORE_ERRORS

logger = logging.getLogger(__name__)

BODYLESS_METHODS = frozenset({"GET", "HEAD"})

REASON_USER_DENIED = "user missing or disabled"
REASON_INVALID_TARGET = "invalid target address"
REASON_UPSTREAM_ERROR = "upstream unreachable"
REASON_DIRECT = "direct redirect"
REASON_FOLLOW = "follow redirect"
REASON_BAD_REDIRECT = "bad redirect url"
REASON_WEBSOCKET = "ws"
REASON_OK = "ok"

WS_CLOSE_NORMAL = 1000
WS_CLOSE_POLICY = 1008
WS_CLOSE_INTERNAL = 1011

WEBSOCKET_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


def split_ingress_path(path: str) -> tuple[str, str]:
    """Split ``/{user}/{rest...}`` into the user and ``/rest``.

    Empty segments are dropped, which is what collapses ``https://`` into
    ``https:/`` on the way in; the URL rewriter repairs it.
    """
    parts = [segment for segment in path.split("/") if segment]
    if len(parts) < 2:
        raise InvalidTargetError("path needs /user/target", origin="")
    return parts[0], "/" + "/".join(parts[1:])


def ingress_path(connection: HTTPConnection) -> str:
    """Undecoded request path, so percent-escapes reach the upstream intact."""
    raw = connection.scope.get("raw_path")
    if raw:
        return raw.decode("latin-1").split("?", 1)[0]
    return connection.url.path


@dataclass(slots=True)
class Admission:
    """A request that passed the user and allow-list checks."""

    meta: ClientMeta
    user: str
    url: httpx.URL
    origin: str
    gate: AccessGate
    direct_domains: tuple[str, ...]

    @property
    def path(self) -> str:
        return self.url.path


class ProxyService:
    def __init__(self, runtime: RuntimeState):
        self.runtime = runtime
        self.settings = runtime.settings
        self.store = runtime.store
        self.client = runtime.upstream_client

    # ── background hand-off ──────────────────────────────────────────

    def _log(
        self,
        meta: ClientMeta,
        *,
        user: str,
        origin: str,
        status: int | None,
        action: str,
        reason: str,
        path: str,
    ) -> None:
        access_logger = self.runtime.access_logger

        async def job() -> None:
            await access_logger.record(
                meta, user=user, origin=origin, status=status, action=action, reason=reason, path=path
            )

        self.runtime.worker.submit(f"access-log:{action}", job)

    def _touch(self, meta: ClientMeta, user: str, origin: str) -> None:
        access_logger = self.runtime.access_logger

        async def job() -> None:
            await access_logger.touch_last_seen(meta, user, origin)

        self.runtime.worker.submit("last-seen", job)

    # ── store reads ──────────────────────────────────────────────────

    async def _user_enabled(self, username: str) -> bool:
        try:
            record = await self.store.get_user(username)
        except STORE_ERRORS as exc:
            raise StoreUnavailableError(f"user lookup failed: {exc}") from exc
        return record is not None and record.enabled

    async def _load_policy(self) -> tuple[AccessGate, tuple[str, ...]]:
        try:
            gate = await AccessGate.load(self.store)
            direct_domains = await self.runtime.direct_domains()
        except STORE_ERRORS as exc:
            raise StoreUnavailableError(f"policy lookup failed: {exc}") from exc
        return gate, direct_domains

    # ── admission ────────────────────────────────────────────────────

    async def _admit(self, connection: HTTPConnection) -> Admission:
        """Run every check that precedes contacting the upstream.

        The user and origin are left on ``connection.state`` for the request
        log line.
        """
        runtime = self.runtime
        await runtime.ensure_ready()
        runtime.schedule_cleanup()

        meta = get_client_meta(connection, self.settings.CLIENT_IP_HEADER)
        user, rest_path = split_ingress_path(ingress_path(connection))
        connection.state.proxy_user = user

        if not await self._user_enabled(user):
            self._log(meta, user=user, origin="", status=403, action=ACTION_DENY, reason=REASON_USER_DENIED, path=rest_path)
            raise UserDeniedError(f"user {user!r} is missing or disabled")

        try:
            upstream_url = parse_upstream_url(rest_path, connection.url.query)
        except InvalidTargetError:
            self._log(
                meta, user=user, origin="", status=400, action=ACTION_DENY, reason=REASON_INVALID_TARGET, path=rest_path
            )
            raise

        origin = canonical_origin(upstream_url)
        connection.state.proxy_origin = origin
        gate, direct_domains = await self._load_policy()

        if not gate.permit(origin):
            self._log(
                meta, user=user, origin=origin, status=403, action=ACTION_DENY, reason=REASON_NOT_ALLOWED, path=upstream_url.path
            )
            raise OriginDeniedError(f"origin {origin} is not allow-listed", origin=origin)

        self._touch(meta, user, origin)
        return Admission(meta, user, upstream_url, origin, gate, direct_domains)

    # ── upstream I/O ─────────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        url: httpx.URL,
        request: Request,
        body: bytes | None,
        *,
        follow_redirects: bool,
    ) -> httpx.Response:
        outbound = self.client.build_request(
            method,
            url,
            headers=sanitize_request_headers(request.headers.raw, url),
            content=body,
        )
        return await self.client.send(outbound, stream=True, follow_redirects=follow_redirects)

    @staticmethod
    async def _stream(upstream: httpx.Response, location: str | None = None) -> StreamingResponse:
        async def body() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_raw():
                    yield chunk
            finally:
                await upstream.aclose()

        try:
            response = StreamingResponse(body(), status_code=upstream.status_code)
            response.raw_headers.extend(sanitize_response_headers(upstream.headers.raw, location))
        except BaseException:
            await upstream.aclose()
            raise
        return response

    # ── pipeline ─────────────────────────────────────────────────────

    async def handle(self, request: Request) -> StreamingResponse:
        admission = await self._admit(request)
        meta, user, origin, path = admission.meta, admission.user, admission.origin, admission.path

        method = request.method.upper()
        body = None if method in BODYLESS_METHODS else await request.body()

        try:
            upstream = await self._send(method, admission.url, request, body, follow_redirects=False)
        except httpx.HTTPError as exc:
            logger.warning("Upstream fetch failed origin=%s error=%s", origin, exc)
            self._log(meta, user=user, origin=origin, status=502, action=ACTION_ERROR, reason=REASON_UPSTREAM_ERROR, path=path)
            raise UpstreamUnreachableError(str(exc), origin=origin) from exc

        decision = resolve_redirect(
            upstream.status_code,
            upstream.headers.get("location"),
            admission.url,
            admission.direct_domains,
            admission.gate,
        )

        if isinstance(decision, DirectPassthrough):
            self._log(meta, user=user, origin=origin, status=upstream.status_code, action=ACTION_PROXY, reason=REASON_DIRECT, path=path)
            return await self._stream(upstream, location=decision.location)

        if isinstance(decision, Denied):
            await upstream.aclose()
            self._log(
                meta, user=user, origin=origin, status=403, action=ACTION_DENY, reason=REASON_REDIRECT_NOT_ALLOWED, path=path
            )
            raise OriginDeniedError(f"redirect target {decision.origin} is not allow-listed", origin=decision.origin)

        if isinstance(decision, Follow):
            await upstream.aclose()
            try:
                followed = await self._send(
                    method,
                    decision.url,
                    request,
                    body,
                    follow_redirects=self.settings.FOLLOW_REDIRECT_CHAIN,
                )
            except httpx.HTTPError as exc:
                logger.warning("Redirect follow failed target=%s error=%s", decision.origin, exc)
                self._log(
                    meta, user=user, origin=origin, status=502, action=ACTION_ERROR, reason=REASON_UPSTREAM_ERROR, path=path
                )
                raise UpstreamUnreachableError(str(exc), origin=decision.origin) from exc
            self._log(meta, user=user, origin=origin, status=followed.status_code, action=ACTION_PROXY, reason=REASON_FOLLOW, path=path)
            return await self._stream(followed)

        if isinstance(decision, RawForward):
            logger.debug("Forwarding unresolvable redirect as is: %s", decision.reason)
            self._log(
                meta, user=user, origin=origin, status=upstream.status_code, action=ACTION_PROXY, reason=REASON_BAD_REDIRECT, path=path
            )
            return await self._stream(upstream)

        self._log(meta, user=user, origin=origin, status=upstream.status_code, action=ACTION_PROXY, reason=REASON_OK, path=path)
        return await self._stream(upstream)

    # ── WebSocket relay ──────────────────────────────────────────────

    async def handle_websocket(self, websocket: WebSocket) -> None:
        """Admit an upgrade like any request, then relay frames both ways.

        Refusals close the handshake before it is accepted, which the server
        turns into an HTTP 403.
        """
        try:
            admission = await self._admit(websocket)
        except ProxyError as exc:
            logger.info("WebSocket refused status=%d origin=%s detail=%s", exc.status_code, exc.origin, exc)
            await websocket.close(code=WS_CLOSE_POLICY if exc.status_code < 500 else WS_CLOSE_INTERNAL)
            return

        meta, user, origin, path = admission.meta, admission.user, admission.origin, admission.path
        ws_url = admission.url.copy_with(scheme="wss" if admission.url.scheme == "https" else "ws")
        subprotocols = [
            value.strip() for value in websocket.headers.get("sec-websocket-protocol", "").split(",") if value.strip()
        ]

        try:
            upstream = await self.runtime.ws_connect(
                str(ws_url),
                additional_headers=websocket_handshake_headers(websocket.headers.raw),
                subprotocols=subprotocols or None,
                user_agent_header=None,
                open_timeout=self.settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS,
            )
        except WEBSOCKET_CONNECT_ERRORS as exc:
            logger.warning("Upstream WebSocket failed origin=%s error=%s", origin, exc)
            self._log(meta, user=user, origin=origin, status=502, action=ACTION_ERROR, reason=REASON_UPSTREAM_ERROR, path=path)
            await websocket.close(code=WS_CLOSE_INTERNAL)
            return

        try:
            self._log(meta, user=user, origin=origin, status=101, action=ACTION_PROXY, reason=REASON_WEBSOCKET, path=path)
            await websocket.accept(subprotocol=upstream.subprotocol)
            await self._relay(websocket, upstream)
        finally:
            await upstream.close()

    @staticmethod
    async def _relay(websocket: WebSocket, upstream: Any) -> None:
        async def client_to_upstream() -> None:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])

        async def upstream_to_client() -> None:
            async for message in upstream:
                if isinstance(message, str):
                    await websocket.send_text(message)
                else:
                    await websocket.send_bytes(message)

        tasks = [asyncio.create_task(client_to_upstream()), asyncio.create_task(upstream_to_client())]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, (ConnectionClosed, WebSocketDisconnect)):
                raise exc

        if websocket.client_state == WebSocketState.CONNECTED:
            normal = upstream.close_code in (None, 1000, 1001, 1005)
            await websocket.close(code=WS_CLOSE_NORMAL if normal else WS_CLOSE_INTERNAL)
