"""End-to-end behaviour through the ASGI app with a mocked upstream."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import patch

import httpx
import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from edgeproxy.main import create_app
from edgeproxy.proxy.redirects import DEFAULT_DIRECT_DOMAINS
from edgeproxy.proxy.service import ProxyService
from edgeproxy.services.store import ProxyStore

ADMIN_PASSWORD = "test-admin-password-0123456789"

MEDIA = "https://media.example.com"
CDN = "https://cdn.example.com"


def _prepare(database_url: str, *, origins=(MEDIA,), enabled: bool = True, disabled_users=()):
    async def _main():
        store = ProxyStore(database_url)
        await store.create_schema()
        await store.seed_defaults(default_user="ikun", direct_domains=DEFAULT_DIRECT_DOMAINS, whitelist_enabled=enabled)
        for origin in origins:
            await store.add_whitelist(origin)
        for user in disabled_users:
            await store.upsert_user(user)
            await store.toggle_user(user)
        await store.dispose()

    asyncio.run(_main())


def _reply(status: int, body: bytes = b"", headers=None) -> httpx.Response:
    """Unread upstream reply, the way a real transport hands it over."""
    return httpx.Response(status, headers=headers, stream=httpx.ByteStream(body))


def _read(database_url: str, reader):
    async def _main():
        store = ProxyStore(database_url)
        try:
            return await reader(store)
        finally:
            await store.dispose()

    return asyncio.run(_main())


class Upstream:
    """Records outbound requests and answers from a route table."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = f"{request.url.scheme}://{request.url.netloc.decode()}{request.url.path}"
        route = self.routes.get(key)
        if route is None:
            return _reply(200, b"hello from upstream", {"Content-Type": "text/plain"})
        if isinstance(route, Exception):
            raise route
        return route


@pytest.fixture
def build_client(make_settings):
    def _build(upstream: Upstream, **overrides) -> TestClient:
        app = create_app(make_settings(**overrides), upstream_transport=httpx.MockTransport(upstream))
        return TestClient(app, base_url="https://testserver")

    return _build


class TestProxyPath:
    def test_allowed_request_is_proxied_and_sanitized(self, database_url, build_client):
        _prepare(database_url)
        upstream = Upstream(
            {
                f"{MEDIA}/Items": _reply(
                    200,
                    b"[]",
                    headers=[
                        ("Content-Type", "application/json"),
                        ("Content-Security-Policy", "default-src 'none'"),
                        ("X-Frame-Options", "DENY"),
                        ("Set-Cookie", "a=1"),
                        ("Set-Cookie", "b=2"),
                    ],
                )
            }
        )

        with build_client(upstream) as client:
            response = client.get(
                "/ikun/https:/media.example.com/Items?x=1",
                headers={"X-Forwarded-For": "203.0.113.7", "Referer": "https://testserver/", "X-Emby-Token": "t"},
            )

        assert response.status_code == 200
        assert response.content == b"[]"
        assert "content-security-policy" not in response.headers
        assert "x-frame-options" not in response.headers
        assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]
        assert response.headers["access-control-allow-origin"] == "*"

        sent = upstream.requests[0]
        assert str(sent.url) == "https://media.example.com/Items?x=1"
        assert sent.headers["host"] == "media.example.com"
        assert sent.headers["x-emby-token"] == "t"
        assert "x-forwarded-for" not in sent.headers
        assert "referer" not in sent.headers

        last_seen = _read(database_url, lambda store: store.list_last_seen())
        assert [(row["user"], row["origin"], row["count"]) for row in last_seen] == [("ikun", MEDIA, 1)]
        logs = _read(database_url, lambda store: store.list_logs(10))
        assert [(row.action, row.reason, row.status) for row in logs] == [("proxy", "ok", 200)]

    def test_post_body_is_forwarded(self, database_url, build_client):
        _prepare(database_url)
        upstream = Upstream()

        with build_client(upstream) as client:
            response = client.post("/ikun/https:/media.example.com/Sessions/Playing", content=b'{"a":1}')

        assert response.status_code == 200
        assert upstream.requests[0].method == "POST"
        assert upstream.requests[0].content == b'{"a":1}'

    def test_scheme_mismatch_is_denied(self, database_url, build_client):
        _prepare(database_url)
        upstream = Upstream()

        with build_client(upstream) as client:
            response = client.get("/ikun/http:/media.example.com/Items")

        assert response.status_code == 403
        assert response.text == "forbidden"
        assert upstream.requests == []

        logs = _read(database_url, lambda store: store.list_logs(10))
        assert [(row.action, row.reason, row.upstream_origin) for row in logs] == [
            ("deny", "not in whitelist", "http://media.example.com")
        ]

    @pytest.mark.parametrize("user", ["nobody", "off"])
    def test_missing_or_disabled_user_is_denied(self, database_url, build_client, user):
        _prepare(database_url, disabled_users=("off",))
        upstream = Upstream()

        with build_client(upstream) as client:
            response = client.get(f"/{user}/https:/media.example.com/Items")

        assert response.status_code == 403
        assert upstream.requests == []

    def test_invalid_target_is_400(self, database_url, build_client):
        _prepare(database_url)
        upstream = Upstream()

        with build_client(upstream) as client:
            bad_port = client.get("/ikun/https:/media.example.com:abc/Items")
            too_short = client.get("/ikun")

        assert bad_port.status_code == 400
        assert bad_port.text == "invalid target address"
        assert too_short.status_code == 400
        assert upstream.requests == []

    def test_transport_failure_is_502(self, database_url, build_client):
        _prepare(database_url)
        upstream = Upstream({f"{MEDIA}/Items": httpx.ConnectError("connection refused")})

        with build_client(upstream) as client:
            response = client.get("/ikun/https:/media.example.com/Items")

        assert response.status_code == 502
        assert response.text == "upstream unreachable"

    def test_disabled_allow_list_permits_any_origin(self, database_url, build_client):
        _prepare(database_url, origins=(), enabled=False)
        upstream = Upstream()

        with build_client(upstream) as client:
            response = client.get("/ikun/https:/anything.example.org/x")

        assert response.status_code == 200

    def test_non_ascii_header_values_pass_both_ways(self, database_url, build_client):
        _prepare(database_url)
        device = 'Emby Client="Android", Device="张三的手机"'.encode("utf-8")
        disposition = 'attachment; filename="电影.mkv"'.encode("utf-8")
        upstream = Upstream(
            {f"{MEDIA}/Items/1/Download": _reply(200, b"data", headers=[(b"Content-Disposition", disposition)])}
        )

        with build_client(upstream) as client:
            response = client.get(
                "/ikun/https:/media.example.com/Items/1/Download", headers=[(b"X-Emby-Authorization", device)]
            )

        assert response.status_code == 200
        assert response.content == b"data"
        assert (b"content-disposition", disposition) in response.headers.raw
        assert (b"x-emby-authorization", device) in upstream.requests[0].headers.raw

    @pytest.mark.parametrize(
        "path",
        ["/ikun/http:/127.0.0.1:99999/x", "/ikun/https:/exa%20mple.com/x"],
    )
    def test_unreachable_target_is_400_even_without_allow_list(self, database_url, build_client, path):
        _prepare(database_url, origins=(), enabled=False)
        upstream = Upstream()

        with build_client(upstream) as client:
            response = client.get(path)

        assert response.status_code == 400
        assert response.text == "invalid target address"
        assert upstream.requests == []

    def test_request_log_line_names_user_and_origin(self, database_url, build_client, caplog):
        _prepare(database_url)

        with caplog.at_level(logging.WARNING, logger="edgeproxy.requests"):
            with build_client(Upstream()) as client:
                client.get("/ikun/http:/media.example.com/Items")

        assert "CLIENT_ERROR status=403 method=GET user=ikun origin=http://media.example.com" in caplog.text


class TestRedirects:
    def test_direct_domain_redirect_reaches_client(self, database_url, build_client):
        _prepare(database_url)
        upstream = Upstream(
            {f"{MEDIA}/Videos/1/stream": _reply(302, headers={"Location": "https://cdn.115.com/f?sig=1"})}
        )

        with build_client(upstream) as client:
            response = client.get("/ikun/https:/media.example.com/Videos/1/stream", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "https://cdn.115.com/f?sig=1"
        assert len(upstream.requests) == 1

    def test_redirect_to_unlisted_origin_is_403(self, database_url, build_client):
        _prepare(database_url)
        upstream = Upstream(
            {f"{MEDIA}/Videos/1/stream": _reply(302, headers={"Location": "https://evil.example.org/x"})}
        )

        with build_client(upstream) as client:
            response = client.get("/ikun/https:/media.example.com/Videos/1/stream", follow_redirects=False)

        assert response.status_code == 403
        assert len(upstream.requests) == 1

        logs = _read(database_url, lambda store: store.list_logs(10))
        assert logs[0].reason == "redirect target not in whitelist"

    def test_allow_listed_redirect_is_followed(self, database_url, build_client):
        _prepare(database_url, origins=(MEDIA, CDN))
        upstream = Upstream(
            {
                f"{MEDIA}/Videos/1/stream": _reply(302, headers={"Location": "https://cdn.example.com/blob"}),
                f"{CDN}/blob": _reply(200, b"video-bytes"),
            }
        )

        with build_client(upstream) as client:
            response = client.get("/ikun/https:/media.example.com/Videos/1/stream", follow_redirects=False)

        assert response.status_code == 200
        assert response.content == b"video-bytes"
        assert [str(r.url) for r in upstream.requests] == [
            "https://media.example.com/Videos/1/stream",
            "https://cdn.example.com/blob",
        ]
        assert upstream.requests[1].headers["host"] == "cdn.example.com"

    def test_malformed_location_is_forwarded_raw(self, database_url, build_client):
        _prepare(database_url)
        upstream = Upstream(
            {f"{MEDIA}/Videos/1/stream": _reply(302, headers={"Location": "https://example.com:abc/file"})}
        )

        with build_client(upstream) as client:
            response = client.get("/ikun/https:/media.example.com/Videos/1/stream", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com:abc/file"


class TestAmbientRoutes:
    def test_options_preflight_short_circuits(self, database_url, build_client):
        upstream = Upstream()
        with build_client(upstream) as client:
            response = client.options("/ikun/https:/media.example.com/Items")

        assert response.status_code == 204
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-methods"] == "*"
        assert upstream.requests == []

    def test_missing_store_fails_closed(self, build_client):
        upstream = Upstream()
        with build_client(upstream, DATABASE_URL=None) as client:
            proxied = client.get("/ikun/https:/media.example.com/Items")
            overview = client.get("/")

        assert proxied.status_code == 500
        assert proxied.text == "store unavailable"
        assert overview.status_code == 500
        assert upstream.requests == []

    def test_overview_and_health(self, database_url, build_client):
        _prepare(database_url)
        with build_client(Upstream()) as client:
            client.get("/ikun/https:/media.example.com/Items")
            overview = client.get("/", headers={"CF-Connecting-IP": "203.0.113.7", "CF-Ray": "abc-hkg"})
            health = client.get("/healthz")

        assert overview.status_code == 200
        assert "IP: 203.0.113.7" in overview.text
        assert "COLO: HKG" in overview.text
        assert health.json()["status"] == "healthy"
        assert health.json()["store_configured"] is True


class TestAdmin:
    def _login(self, client: TestClient) -> httpx.Response:
        return client.post("/admin/login", data={"password": ADMIN_PASSWORD}, follow_redirects=False)

    def test_login_sets_scoped_cookie(self, database_url, build_client):
        with build_client(Upstream()) as client:
            response = self._login(client)

        assert response.status_code == 303
        assert response.headers["location"] == "/admin"
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("adm=")
        for attribute in ("Path=/admin", "HttpOnly", "Secure", "SameSite=lax", "Max-Age=43200"):
            assert attribute.lower() in cookie.lower()

    def test_wrong_password_is_401(self, database_url, build_client):
        with build_client(Upstream()) as client:
            response = client.post("/admin/login", data={"password": "nope"}, follow_redirects=False)

        assert response.status_code == 401
        assert "Wrong password" in response.text

    def test_dashboard_requires_session(self, database_url, build_client):
        with build_client(Upstream()) as client:
            page = client.get("/admin")
            api = client.get("/admin/api/summary")
            action = client.post("/admin", data={"action": "add_user", "user": "mallory"}, follow_redirects=False)

        assert page.status_code == 200
        assert 'action="/admin/login"' in page.text
        assert api.status_code == 401
        assert action.status_code == 401

    def test_form_actions_update_the_store(self, database_url, build_client):
        _prepare(database_url, origins=())
        with build_client(Upstream()) as client:
            self._login(client)
            client.post("/admin", data={"action": "add_wl", "origin": "media.example.com, http://cdn.example.com:80"})
            client.post("/admin", data={"action": "add_user", "user": "", "note": "default"})
            client.post("/admin", data={"action": "add_user", "user": "alice", "note": "tv"})
            client.post("/admin", data={"action": "toggle_user", "user": "alice"})
            client.post(
                "/admin",
                data={"action": "set_manual_domains", "manual_domains": "https://www.example.net\n115.com;"},
            )
            client.post("/admin", data={"action": "set_base_domains", "base_domains": "https://a.example.com/x\nnot a url"})
            dashboard = client.get("/admin")
            summary = client.get("/admin/api/summary")

        assert dashboard.status_code == 200
        assert "Log out" in dashboard.text
        assert summary.json()["whitelist"] == 2

        whitelist = _read(database_url, lambda store: store.list_whitelist())
        assert whitelist == ["http://cdn.example.com", "https://media.example.com"]
        users = {u.username: u for u in _read(database_url, lambda store: store.list_users())}
        assert users["ikun"].note == "default"
        assert users["alice"].enabled is False
        direct = _read(database_url, lambda store: store.get_json_list("manualRedirectDomains"))
        assert direct == ["example.net", "115.com"]
        bases = _read(database_url, lambda store: store.get_json_list("baseDomains"))
        assert bases == ["https://a.example.com"]

    def test_allow_list_edits_ignored_while_disabled(self, database_url, build_client):
        _prepare(database_url, origins=(MEDIA,))
        with build_client(Upstream()) as client:
            self._login(client)
            client.post("/admin", data={"action": "set_wl_enabled"})
            client.post("/admin", data={"action": "add_wl", "origin": "cdn.example.com"})
            client.post("/admin", data={"action": "del_wl", "origin": MEDIA})

        assert _read(database_url, lambda store: store.get_whitelist_enabled()) is False
        assert _read(database_url, lambda store: store.list_whitelist()) == [MEDIA]

    def test_logout_clears_cookie(self, database_url, build_client):
        with build_client(Upstream()) as client:
            self._login(client)
            response = client.post("/admin/logout", follow_redirects=False)
            page = client.get("/admin")

        assert response.status_code == 303
        assert "adm=" in response.headers["set-cookie"]
        assert 'action="/admin/login"' in page.text

    def test_json_reads(self, database_url, build_client):
        _prepare(database_url)
        with build_client(Upstream()) as client:
            client.get("/ikun/https:/media.example.com/Items")
            client.get("/ikun/https:/evil.example.org/")
            self._login(client)
            # Let the background worker persist the two decisions.
            client.portal.call(client.app.state.runtime.worker.join)
            logs = client.get("/admin/api/logs?limit=10")
            last_seen = client.get("/admin/api/last-seen")

        assert logs.status_code == 200
        body = logs.json()
        assert body["total"] == 2
        assert {item["action"] for item in body["items"]} == {"proxy", "deny"}
        assert last_seen.json()[0]["origin"] == MEDIA
        assert last_seen.json()[0]["count"] == 1


class RecordingStream(httpx.AsyncByteStream):
    """Upstream body that remembers being closed; ``hold`` keeps it open after the chunks."""

    def __init__(self, chunks, *, hold: bool = False):
        self.chunks = list(chunks)
        self.hold = hold
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.hold:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


def _http_scope(path: str) -> dict:
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "https",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "root_path": "",
        "headers": [(b"host", b"testserver")],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 443),
    }


class TestStreaming:
    def test_client_disconnect_closes_upstream(self, database_url, make_settings):
        _prepare(database_url)
        body = RecordingStream([b"first chunk"], hold=True)
        upstream = Upstream(
            {f"{MEDIA}/Videos/1/stream": httpx.Response(200, headers={"Content-Type": "video/mp4"}, stream=body)}
        )
        app = create_app(make_settings(), upstream_transport=httpx.MockTransport(upstream))

        async def scenario():
            sent: list[dict] = []
            first_chunk = asyncio.Event()
            request_delivered = False

            async def receive():
                nonlocal request_delivered
                if not request_delivered:
                    request_delivered = True
                    return {"type": "http.request", "body": b"", "more_body": False}
                await first_chunk.wait()
                return {"type": "http.disconnect"}

            async def send(message):
                sent.append(message)
                if message["type"] == "http.response.body" and message.get("body"):
                    first_chunk.set()

            async with app.router.lifespan_context(app):
                await asyncio.wait_for(app(_http_scope("/ikun/https:/media.example.com/Videos/1/stream"), receive, send), 5)
            return sent

        sent = asyncio.run(scenario())

        assert sent[0]["type"] == "http.response.start"
        assert sent[0]["status"] == 200
        assert any(message.get("body") == b"first chunk" for message in sent)
        assert body.closed

    def test_upstream_closed_when_response_cannot_be_built(self):
        body = RecordingStream([b"x"])
        upstream = httpx.Response(200, stream=body)

        with patch("edgeproxy.proxy.service.sanitize_response_headers", side_effect=ValueError("bad header")):
            with pytest.raises(ValueError):
                asyncio.run(ProxyService._stream(upstream))

        assert body.closed


class FakeUpstreamSocket:
    """Stands in for a connected upstream WebSocket; echoes what it is sent."""

    def __init__(self):
        self.sent: list = []
        self.subprotocol = None
        self.close_code = None
        self.closed = False
        self._incoming: asyncio.Queue | None = None

    def _queue(self) -> asyncio.Queue:
        if self._incoming is None:
            self._incoming = asyncio.Queue()
        return self._incoming

    async def send(self, message) -> None:
        self.sent.append(message)
        await self._queue().put(f"echo:{message}" if isinstance(message, str) else message)

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self._queue().get()

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    def __init__(self, error: Exception | None = None):
        self.calls: list[tuple[str, dict]] = []
        self.socket = FakeUpstreamSocket()
        self.error = error

    async def __call__(self, uri: str, **kwargs):
        self.calls.append((uri, kwargs))
        if self.error is not None:
            raise self.error
        return self.socket


class TestWebSocket:
    def _client(self, make_settings, connector: FakeConnector) -> TestClient:
        app = create_app(
            make_settings(), upstream_transport=httpx.MockTransport(Upstream()), ws_connect=connector
        )
        return TestClient(app, base_url="https://testserver")

    def test_frames_are_relayed_and_identity_headers_stripped(self, database_url, make_settings):
        _prepare(database_url)
        connector = FakeConnector()

        with self._client(make_settings, connector) as client:
            with client.websocket_connect(
                "/ikun/https:/media.example.com/embywebsocket?api_key=k",
                headers={"X-Forwarded-For": "203.0.113.7", "X-Emby-Token": "t"},
            ) as ws:
                ws.send_text("hello")
                assert ws.receive_text() == "echo:hello"
                ws.send_bytes(b"\x01\x02")
                assert ws.receive_bytes() == b"\x01\x02"

        uri, options = connector.calls[0]
        assert uri == "wss://media.example.com/embywebsocket?api_key=k"
        sent_headers = dict(options["additional_headers"])
        assert sent_headers["x-emby-token"] == "t"
        assert "x-forwarded-for" not in sent_headers
        assert "host" not in sent_headers
        assert connector.socket.sent == ["hello", b"\x01\x02"]
        assert connector.socket.closed

        logs = _read(database_url, lambda store: store.list_logs(10))
        assert [(row.action, row.reason, row.status) for row in logs] == [("proxy", "ws", 101)]

    def test_unlisted_origin_is_refused_before_connecting(self, database_url, make_settings):
        _prepare(database_url)
        connector = FakeConnector()

        with self._client(make_settings, connector) as client:
            with pytest.raises(WebSocketDisconnect) as refused:
                with client.websocket_connect("/ikun/https:/evil.example.com/embywebsocket"):
                    pass

        assert refused.value.code == 1008
        assert connector.calls == []

    def test_upstream_connect_failure_closes_with_internal_error(self, database_url, make_settings):
        _prepare(database_url)
        connector = FakeConnector(error=OSError("connection refused"))

        with self._client(make_settings, connector) as client:
            with pytest.raises(WebSocketDisconnect) as refused:
                with client.websocket_connect("/ikun/https:/media.example.com/embywebsocket"):
                    pass

        assert refused.value.code == 1011
        logs = _read(database_url, lambda store: store.list_logs(10))
        assert [(row.action, row.status) for row in logs] == [("error", 502)]
