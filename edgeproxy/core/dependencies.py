# edgeproxy/core/dependencies.py

from fastapi import Request
from fastapi.requests import HTTPConnection

from edgeproxy.core.config import Settings
from edgeproxy.services.page_renderer import PageRenderer
from edgeproxy.services.runtime import RuntimeState


def get_runtime(connection: HTTPConnection) -> RuntimeState:
    """Dependency to reach the per-application runtime state, for HTTP and WebSocket routes."""
    return connection.app.state.runtime


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_renderer(request: Request) -> PageRenderer:
    return request.app.state.renderer
