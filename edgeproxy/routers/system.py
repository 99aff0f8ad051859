# edgeproxy/routers/system.py

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import HTMLResponse

from edgeproxy.core.dependencies import get_renderer, get_runtime
from edgeproxy.proxy.exceptions import StoreUnavailableError
from edgeproxy.schemas import HealthResponse
from edgeproxy.services.access_logger import get_client_meta
from edgeproxy.services.page_renderer import PageRenderer
from edgeproxy.services.runtime import RuntimeState
from edgeproxy.services.store import STORE_ERRORS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["System"])


@router.get("/", response_class=HTMLResponse)
async def overview(
    request: Request,
    runtime: RuntimeState = Depends(get_runtime),
    renderer: PageRenderer = Depends(get_renderer),
):
    """One-line overview: caller IP, city, edge colo and store totals."""
    if not runtime.store.configured:
        return HTMLResponse(
            renderer.overview(summary=None, ip="", city="", colo="", error="DATABASE_URL is not configured"),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    meta = get_client_meta(request, runtime.settings.CLIENT_IP_HEADER)
    try:
        await runtime.ensure_ready()
        runtime.schedule_cleanup()
        summary = await runtime.store.summary()
    except (StoreUnavailableError, *STORE_ERRORS) as exc:
        logger.error("Overview failed to read the store: %s", exc)
        return HTMLResponse(
            renderer.overview(summary=None, ip=meta.ip, city="", colo=meta.colo, error="store unavailable"),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    city = await runtime.geoip.city_for(meta.ip, meta.city)
    return HTMLResponse(renderer.overview(summary=summary, ip=meta.ip, city=city, colo=meta.colo))


@router.get("/healthz", response_model=HealthResponse)
async def health_check(runtime: RuntimeState = Depends(get_runtime)):
    """Liveness plus the counters of work that failed out of band."""
    counts = runtime.failure_counts()
    overall = "healthy"
    if any(counts.values()):
        overall = "degraded"
    return HealthResponse(status=overall, store_configured=runtime.store.configured, **counts)
