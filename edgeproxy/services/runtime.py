"""Long-lived state shared by every request of one application instance.

Everything that would otherwise be a module-level cache lives here and is
reached through ``app.state.runtime``:

- the one-shot schema/seed guard, reset when initialization fails so the
  next request retries;
- the direct-domain list, refreshed from the store at most every
  ``DIRECT_DOMAINS_CACHE_TTL_SECONDS`` and replaced immediately when an
  admin saves a new list;
- the timestamp of the last retention sweep.

The allow-list is deliberately absent: it is read per request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Iterable

import httpx
from websockets.asyncio.client import connect as websocket_connect

from edgeproxy.core.config import Settings
from edgeproxy.proxy.exceptions import StoreUnavailableError
from edgeproxy.proxy.redirects import DEFAULT_DIRECT_DOMAINS
from edgeproxy.services.access_logger import AccessLogger
from edgeproxy.services.background import BackgroundWorker
from edgeproxy.services.geoip import GeoIpResolver
from edgeproxy.services.store import CONFIG_DIRECT_DOMAINS, STORE_ERRORS, ProxyStore

logger = logging.getLogger(__name__)


class RuntimeState:
    def __init__(
        self,
        app_settings: Settings,
        store: ProxyStore,
        upstream_client: httpx.AsyncClient,
        geo_client: httpx.AsyncClient | None = None,
        worker: BackgroundWorker | None = None,
        ws_connect: Callable[..., Any] = websocket_connect,
    ):
        self.settings = app_settings
        self.store = store
        self.upstream_client = upstream_client
        self.ws_connect = ws_connect
        self.geo_client = geo_client
        self.worker = worker or BackgroundWorker(
            queue_size=app_settings.BACKGROUND_QUEUE_SIZE,
            workers=app_settings.BACKGROUND_WORKERS,
        )
        self.geoip = GeoIpResolver(
            store,
            geo_client,
            url_template=app_settings.GEOIP_URL_TEMPLATE,
            ttl_seconds=app_settings.IP_GEO_TTL_SECONDS,
            enabled=app_settings.GEOIP_ENABLED,
        )
        self.access_logger = AccessLogger(
            store,
            self.geoip,
            max_rows=app_settings.LOG_MAX_ROWS,
            retention_days=app_settings.DATA_RETENTION_DAYS,
        )

        self._ready = False
        self._ready_lock = asyncio.Lock()
        self._direct_domains: tuple[str, ...] | None = None
        self._direct_domains_at = 0.0
        self.last_cleanup_at = 0.0

    # ── store readiness ──────────────────────────────────────────────

    async def ensure_ready(self) -> None:
        """Create tables and seed defaults once; raise StoreUnavailableError otherwise."""
        if self._ready:
            return
        if not self.store.configured:
            raise StoreUnavailableError("DATABASE_URL is not configured")

        async with self._ready_lock:
            if self._ready:
                return
            try:
                await self.store.create_schema()
                await self.store.seed_defaults(
                    default_user=self.settings.DEFAULT_USER,
                    direct_domains=DEFAULT_DIRECT_DOMAINS,
                    whitelist_enabled=self.settings.ALLOWLIST_ENFORCED_BY_DEFAULT,
                )
            except STORE_ERRORS as exc:
                logger.exception("Store initialization failed; will retry on next request")
                raise StoreUnavailableError(f"store initialization failed: {exc}") from exc
            self._ready = True
            logger.info("Store schema ready")

        self.schedule_cleanup(force=True)

    # ── direct-domain cache ──────────────────────────────────────────

    async def direct_domains(self) -> tuple[str, ...]:
        await self.refresh_if_stale()
        return self._direct_domains or ()

    async def refresh_if_stale(self) -> None:
        ttl = self.settings.DIRECT_DOMAINS_CACHE_TTL_SECONDS
        if self._direct_domains is not None and time.monotonic() - self._direct_domains_at < ttl:
            return
        domains = await self.store.get_json_list(CONFIG_DIRECT_DOMAINS, list(DEFAULT_DIRECT_DOMAINS))
        self.replace_direct_domains(domains)

    def replace_direct_domains(self, domains: Iterable[str]) -> None:
        self._direct_domains = tuple(domains)
        self._direct_domains_at = time.monotonic()

    # ── retention sweep ──────────────────────────────────────────────

    def cleanup_due(self, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else now
        return current - self.last_cleanup_at > self.settings.CLEANUP_INTERVAL_SECONDS

    def schedule_cleanup(self, force: bool = False) -> bool:
        """Queue a retention sweep if the interval has passed."""
        if not force and not self.cleanup_due():
            return False
        self.last_cleanup_at = time.monotonic()
        return self.worker.submit("retention-sweep", self.access_logger.sweep)

    # ── lifecycle ────────────────────────────────────────────────────

    def failure_counts(self) -> dict[str, int]:
        return {
            "background_failures": self.worker.failure_count,
            "background_dropped": self.worker.dropped_count,
            "access_log_failures": self.access_logger.failure_count,
        }

    async def aclose(self) -> None:
        await self.worker.drain(timeout=self.settings.BACKGROUND_DRAIN_TIMEOUT_SECONDS)
        await self.upstream_client.aclose()
        if self.geo_client is not None:
            await self.geo_client.aclose()
        await self.store.dispose()
