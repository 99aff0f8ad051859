# edgeproxy/main.py

import logging
import time
from contextlib import asynccontextmanager
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Any, Callable, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware

from edgeproxy.core.config import Settings, settings
from edgeproxy.proxy.exceptions import ProxyError
from edgeproxy.routers import admin, proxy, system
from edgeproxy.services.access_logger import get_client_ip
from edgeproxy.services.page_renderer import PageRenderer
from edgeproxy.services.runtime import RuntimeState
from edgeproxy.services.store import ProxyStore

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)
_logger = logging.getLogger("edgeproxy.requests")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "*",
    "Access-Control-Allow-Headers": "*",
}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One line per request, level by status; proxied requests name their user and upstream origin."""

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            _logger.exception("UNHANDLED_EXCEPTION %s elapsed_ms=%.1f", _describe(request), _elapsed_ms(start))
            raise

        code = response.status_code
        if code >= 500:
            level, label = logging.ERROR, "SERVER_ERROR"
        elif code >= 400:
            level, label = logging.WARNING, "CLIENT_ERROR"
        else:
            level, label = logging.DEBUG, "OK"
        _logger.log(level, "%s status=%d %s elapsed_ms=%.1f", label, code, _describe(request), _elapsed_ms(start))
        return response


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000


def _describe(request: Request) -> str:
    client = get_client_ip(request, request.app.state.settings.CLIENT_IP_HEADER) or "unknown"
    user = getattr(request.state, "proxy_user", None)
    if user is None:
        return f"method={request.method} path={request.url.path} client={client}"
    origin = getattr(request.state, "proxy_origin", "-")
    return f"method={request.method} user={user} origin={origin} client={client}"


class CorsMiddleware(BaseHTTPMiddleware):
    """Wildcard CORS on every response; preflight answered before routing."""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)
        for key, value in CORS_HEADERS.items():
            response.headers[key] = value
        return response


async def proxy_error_handler(request: Request, exc: ProxyError) -> PlainTextResponse:
    if exc.status_code >= 500:
        logger.error("Proxy request failed status=%d origin=%s detail=%s", exc.status_code, exc.origin, exc)
    else:
        logger.info("Proxy request refused status=%d origin=%s detail=%s", exc.status_code, exc.origin, exc)
    return PlainTextResponse(exc.public_message, status_code=exc.status_code)


def create_app(
    app_settings: Optional[Settings] = None,
    *,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
    geo_transport: Optional[httpx.AsyncBaseTransport] = None,
    ws_connect: Optional[Callable[..., Any]] = None,
) -> FastAPI:
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manages application startup and shutdown events.
        """
        upstream_client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                app_settings.UPSTREAM_TIMEOUT_SECONDS,
                connect=app_settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS,
            ),
            limits=httpx.Limits(max_connections=200, max_keepalive_connections=50),
            follow_redirects=False,
            # Shared by every user: upstream cookies must pass through, never be stored.
            cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
            transport=upstream_transport,
        )
        geo_client = httpx.AsyncClient(
            timeout=httpx.Timeout(app_settings.GEOIP_TIMEOUT_SECONDS),
            transport=geo_transport,
        )
        store = ProxyStore(app_settings.DATABASE_URL)
        runtime = RuntimeState(app_settings, store, upstream_client, geo_client)
        if ws_connect is not None:
            runtime.ws_connect = ws_connect
        runtime.worker.start()
        app.state.runtime = runtime

        if not store.configured:
            logger.error("DATABASE_URL is not set; proxied requests will answer 500")
        logger.info("Edge proxy started env=%s", app_settings.APP_ENV)

        try:
            yield
        finally:
            await runtime.aclose()
            logger.info("Edge proxy stopped")

    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        version=app_settings.PROJECT_VERSION,
        description="Path-addressed reverse proxy with an origin allow-list",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = app_settings
    app.state.renderer = PageRenderer()

    app.add_exception_handler(ProxyError, proxy_error_handler)

    app.add_middleware(RequestLoggingMiddleware)
    # Added last so it wraps everything, error responses included.
    app.add_middleware(CorsMiddleware)

    app.include_router(system.router)
    app.include_router(admin.router)
    # Catch-all; must stay last.
    app.include_router(proxy.router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("edgeproxy.main:app", host="0.0.0.0", port=settings.port, workers=1)
