from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass
from datetime import timedelta

from starlette.requests import HTTPConnection

from edgeproxy.services.geoip import GeoIpResolver
from edgeproxy.services.store import LogEntry, ProxyStore, PruneResult, utcnow

logger = logging.getLogger(__name__)

ACTION_DENY = "deny"
ACTION_ERROR = "error"
ACTION_PROXY = "proxy"


@dataclass(slots=True)
class ClientMeta:
    ip: str
    colo: str
    city: str
    ua: str


def get_client_ip(request: HTTPConnection | None, ip_header: str = "cf-connecting-ip") -> str:
    if not request:
        return ""

    edge_ip = request.headers.get(ip_header, "").strip() if ip_header else ""
    if edge_ip:
        return edge_ip

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_ip = forwarded_for.split(",")[0].strip()
        if first_ip:
            return first_ip

    if request.client:
        return request.client.host
    return ""


def get_client_meta(request: HTTPConnection, ip_header: str = "cf-connecting-ip") -> ClientMeta:
    """Read client context before the request is handed to background work."""
    ray = request.headers.get("cf-ray", "")
    colo = ray.rsplit("-", 1)[1] if "-" in ray else ""
    return ClientMeta(
        ip=get_client_ip(request, ip_header),
        colo=colo.upper(),
        city=request.headers.get("cf-ipcity", ""),
        ua=request.headers.get("user-agent", ""),
    )


class AccessLogger:
    """Best-effort decision log with a row cap and an age-based sweep."""

    def __init__(
        self,
        store: ProxyStore,
        geoip: GeoIpResolver,
        max_rows: int = 2000,
        retention_days: int = 7,
    ):
        self.store = store
        self.geoip = geoip
        self.max_rows = max_rows
        self.retention = timedelta(days=retention_days)
        self.failure_count = 0

    async def record(
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
        try:
            city = await self.geoip.city_for(meta.ip, meta.city)
            entry = LogEntry(
                username=user,
                origin=origin,
                status=status,
                action=action,
                reason=reason,
                path=path,
                ip=meta.ip,
                city=city,
                colo=meta.colo,
                ua=meta.ua,
            )
            await self.store.append_log(entry, self.max_rows)
        except Exception:
            self.failure_count += 1
            logger.error(
                "ACCESS_LOG_PERSIST_FAILURE: Failed to persist access log "
                "[user=%s origin=%s status=%s action=%s reason=%s ip=%s failures=%d]: %s",
                user,
                origin,
                status,
                action,
                reason,
                meta.ip,
                self.failure_count,
                traceback.format_exc().strip(),
            )

    async def touch_last_seen(self, meta: ClientMeta, user: str, origin: str) -> None:
        try:
            await self.store.touch_last_seen(user, origin, meta.ip, meta.colo)
        except Exception:
            self.failure_count += 1
            logger.error(
                "LAST_SEEN_PERSIST_FAILURE: Failed to update last-seen [user=%s origin=%s failures=%d]: %s",
                user,
                origin,
                self.failure_count,
                traceback.format_exc().strip(),
            )

    async def sweep(self) -> PruneResult:
        cutoff = utcnow() - self.retention
        result = await self.store.delete_older_than(cutoff)
        logger.info(
            "Retention sweep cutoff=%s logs=%d last_seen=%d ip_geo=%d",
            cutoff.isoformat(),
            result.logs,
            result.last_seen,
            result.ip_geo,
        )
        return result
