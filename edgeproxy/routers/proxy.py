# edgeproxy/routers/proxy.py

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, status

from edgeproxy.core.dependencies import get_runtime
from edgeproxy.proxy.service import WS_CLOSE_POLICY, ProxyService
from edgeproxy.services.runtime import RuntimeState

router = APIRouter(tags=["Proxy"])

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


def _is_admin_path(full_path: str) -> bool:
    return full_path == "admin" or full_path.startswith("admin/")


@router.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy(full_path: str, request: Request, runtime: RuntimeState = Depends(get_runtime)):
    """Forward ``/{user}/{target...}`` to the upstream it names."""
    if _is_admin_path(full_path):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    return await ProxyService(runtime).handle(request)


@router.websocket("/{full_path:path}")
async def proxy_websocket(full_path: str, websocket: WebSocket, runtime: RuntimeState = Depends(get_runtime)):
    if _is_admin_path(full_path):
        await websocket.close(code=WS_CLOSE_POLICY)
        return
    await ProxyService(runtime).handle_websocket(websocket)
