# edgeproxy/routers/admin.py

import logging
import re
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Form, Query, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from edgeproxy.core.dependencies import get_renderer, get_runtime
from edgeproxy.core.security import (
    check_admin_password,
    clear_session_cookie,
    get_current_admin,
    is_admin_request,
    issue_session_token,
    require_admin_password_configured,
    set_session_cookie,
)
from edgeproxy.proxy.exceptions import InvalidTargetError, StoreUnavailableError
from edgeproxy.proxy.origin import canonical_origin, normalize_origin
from edgeproxy.proxy.url_rewriter import ALLOWED_SCHEMES
from edgeproxy.schemas import LastSeenRow, LogListResponse, LogRow, SummaryResponse
from edgeproxy.services.page_renderer import PageRenderer
from edgeproxy.services.runtime import RuntimeState
from edgeproxy.services.store import CONFIG_BASE_DOMAINS, CONFIG_DIRECT_DOMAINS, STORE_ERRORS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])

_LIST_SPLIT_RE = re.compile(r"[\n,;]+")
_SCHEME_PREFIX_RE = re.compile(r"^https?://", re.IGNORECASE)
_WWW_PREFIX_RE = re.compile(r"^www\.", re.IGNORECASE)

LAST_SEEN_LIMIT = 300


# ── form value helpers ───────────────────────────────────────────────

def split_list(raw: Optional[str]) -> list[str]:
    """Split operator input on newlines, commas and semicolons."""
    return [item.strip() for item in _LIST_SPLIT_RE.split(raw or "") if item.strip()]


def clean_direct_domain(raw: str) -> str:
    value = _SCHEME_PREFIX_RE.sub("", raw.strip()).strip()
    return _WWW_PREFIX_RE.sub("", value).strip()


def safe_base(raw: str) -> Optional[str]:
    """Reduce a base URL to its origin; anything unparsable is dropped."""
    try:
        url = httpx.URL(raw.strip())
    except (httpx.InvalidURL, ValueError, TypeError):
        return None
    if url.scheme not in ALLOWED_SCHEMES or not url.host:
        return None
    return canonical_origin(url)


def dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(item for item in items if item))


def _redirect_to_dashboard() -> RedirectResponse:
    return RedirectResponse(url="/admin", status_code=status.HTTP_303_SEE_OTHER)


def _store_error_page(renderer: PageRenderer, exc: Exception) -> HTMLResponse:
    logger.error("Admin store operation failed: %s", exc)
    return HTMLResponse(renderer.store_error(str(exc)), status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


# ── pages ────────────────────────────────────────────────────────────

@router.get("", response_class=HTMLResponse)
async def admin_page(
    request: Request,
    runtime: RuntimeState = Depends(get_runtime),
    renderer: PageRenderer = Depends(get_renderer),
    _: str = Depends(require_admin_password_configured),
):
    """Login page without a valid session, dashboard with one."""
    if not is_admin_request(request):
        return HTMLResponse(renderer.login())

    store = runtime.store
    try:
        await runtime.ensure_ready()
        base_domains = await store.get_json_list(CONFIG_BASE_DOMAINS)
        direct_domains = await store.get_json_list(CONFIG_DIRECT_DOMAINS)
        users = await store.list_users()
        whitelist = await store.list_whitelist()
        whitelist_enabled = await store.get_whitelist_enabled()
        last_seen = await store.list_last_seen(LAST_SEEN_LIMIT)
        logs = await store.list_logs(runtime.settings.ADMIN_SHOW_LOGS)
    except (StoreUnavailableError, *STORE_ERRORS) as exc:
        return _store_error_page(renderer, exc)

    page_origin = str(request.base_url).rstrip("/")
    bases = [base.rstrip("/") for base in dedupe([page_origin, *base_domains])]
    return HTMLResponse(
        renderer.admin(
            bases=bases,
            base_domains=base_domains,
            direct_domains=direct_domains,
            users=users,
            whitelist=whitelist,
            whitelist_enabled=whitelist_enabled,
            last_seen=last_seen,
            logs=logs,
            log_max=runtime.settings.LOG_MAX_ROWS,
            default_user=runtime.settings.DEFAULT_USER,
        )
    )


@router.post("/login")
async def login(
    request: Request,
    password: str = Form(""),
    renderer: PageRenderer = Depends(get_renderer),
    admin_password: str = Depends(require_admin_password_configured),
):
    app_settings = request.app.state.settings
    if not check_admin_password(password, admin_password):
        logger.warning("Admin login failed from client=%s", request.client.host if request.client else "unknown")
        return HTMLResponse(renderer.login(error="Wrong password"), status_code=status.HTTP_401_UNAUTHORIZED)

    token = issue_session_token(app_settings.session_secret, ttl_seconds=app_settings.SESSION_TTL_SECONDS)
    response = _redirect_to_dashboard()
    set_session_cookie(response, token, app_settings)
    logger.info("Admin session issued")
    return response


@router.post("/logout")
async def logout(request: Request):
    response = _redirect_to_dashboard()
    clear_session_cookie(response, request.app.state.settings)
    return response


@router.post("")
async def admin_action(
    request: Request,
    runtime: RuntimeState = Depends(get_runtime),
    renderer: PageRenderer = Depends(get_renderer),
    _: str = Depends(require_admin_password_configured),
) -> Response:
    """Apply one dashboard form action, then redirect back to the dashboard."""
    if not is_admin_request(request):
        return HTMLResponse(renderer.login(error="Please log in first"), status_code=status.HTTP_401_UNAUTHORIZED)

    form = await request.form()
    action = str(form.get("action") or "")
    store = runtime.store

    try:
        await runtime.ensure_ready()

        if action == "set_wl_enabled":
            enabled = str(form.get("wl_enabled") or "") == "1"
            await store.set_whitelist_enabled(enabled)
            if enabled:
                logger.info("Allow-list enforcement enabled")
            else:
                logger.warning("Allow-list enforcement DISABLED: every upstream origin is now permitted")

        elif action == "set_base_domains":
            bases = [base for base in map(safe_base, split_list(str(form.get("base_domains") or ""))) if base]
            await store.put_json_list(CONFIG_BASE_DOMAINS, bases)

        elif action == "set_manual_domains":
            domains = [d for d in map(clean_direct_domain, split_list(str(form.get("manual_domains") or ""))) if d]
            await store.put_json_list(CONFIG_DIRECT_DOMAINS, domains)
            runtime.replace_direct_domains(domains)

        elif action == "add_user":
            username = str(form.get("user") or "").strip() or runtime.settings.DEFAULT_USER
            note = str(form.get("note") or "").strip()
            await store.upsert_user(username, note)

        elif action == "toggle_user":
            username = str(form.get("user") or "").strip()
            if username:
                await store.toggle_user(username)

        elif action == "del_user":
            username = str(form.get("user") or "").strip()
            if username:
                await store.delete_user(username)

        elif action == "add_wl":
            if await store.get_whitelist_enabled():
                for raw in split_list(str(form.get("origin") or "")):
                    origin = normalize_origin(raw)
                    if origin:
                        await store.add_whitelist(origin)

        elif action == "del_wl":
            if await store.get_whitelist_enabled():
                origin = normalize_origin(str(form.get("origin") or ""))
                if origin:
                    await store.delete_whitelist(origin)

        else:
            logger.warning("Unknown admin action=%r", action)

    except InvalidTargetError as exc:
        return HTMLResponse(renderer.store_error(str(exc)), status_code=status.HTTP_400_BAD_REQUEST)
    except (StoreUnavailableError, *STORE_ERRORS) as exc:
        return _store_error_page(renderer, exc)

    return _redirect_to_dashboard()


# ── JSON reads ───────────────────────────────────────────────────────

@router.get("/api/logs", response_model=LogListResponse, dependencies=[Depends(get_current_admin)])
async def list_logs(
    limit: int = Query(100, ge=1, le=2000),
    runtime: RuntimeState = Depends(get_runtime),
):
    await runtime.ensure_ready()
    rows = await runtime.store.list_logs(limit)
    total = await runtime.store.count_logs()
    return LogListResponse(total=total, items=[LogRow.model_validate(row) for row in rows])


@router.get("/api/last-seen", response_model=list[LastSeenRow], dependencies=[Depends(get_current_admin)])
async def list_last_seen(
    limit: int = Query(LAST_SEEN_LIMIT, ge=1, le=1000),
    runtime: RuntimeState = Depends(get_runtime),
):
    await runtime.ensure_ready()
    return [LastSeenRow(**row) for row in await runtime.store.list_last_seen(limit)]


@router.get("/api/summary", response_model=SummaryResponse, dependencies=[Depends(get_current_admin)])
async def summary(runtime: RuntimeState = Depends(get_runtime)):
    await runtime.ensure_ready()
    return SummaryResponse(**await runtime.store.summary())
