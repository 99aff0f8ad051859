from __future__ import annotations

import logging
from datetime import timedelta
from urllib.parse import quote

import httpx

from edgeproxy.services.store import STORE_ERRORS, ProxyStore, utcnow

logger = logging.getLogger(__name__)


class GeoIpResolver:
    """City lookup for client IPs, cached in the store (empty results too)."""

    def __init__(
        self,
        store: ProxyStore,
        http_client: httpx.AsyncClient | None,
        url_template: str = "https://ipapi.co/{ip}/json/",
        ttl_seconds: int = 7 * 86400,
        enabled: bool = True,
    ):
        self.store = store
        self.http_client = http_client
        self.url_template = url_template
        self.ttl = timedelta(seconds=ttl_seconds)
        self.enabled = enabled

    async def city_for(self, ip: str, edge_city: str = "") -> str:
        if edge_city:
            return edge_city
        if not ip or ip == "unknown" or not self.enabled:
            return ""

        try:
            cached = await self.store.get_geo(ip)
        except STORE_ERRORS:
            logger.warning("Geo cache read failed for ip=%s", ip)
            cached = None
        if cached is not None:
            city, updated_at = cached
            if utcnow() - updated_at < self.ttl:
                return city

        city = await self._lookup(ip)

        try:
            await self.store.put_geo(ip, city)
        except STORE_ERRORS:
            logger.warning("Geo cache write failed for ip=%s", ip)
        return city

    async def _lookup(self, ip: str) -> str:
        if self.http_client is None:
            return ""
        url = self.url_template.format(ip=quote(ip, safe=""))
        try:
            response = await self.http_client.get(url, headers={"User-Agent": "edgeproxy"})
        except httpx.TimeoutException:
            logger.warning("Geo lookup timeout for ip=%s", ip)
            return ""
        except httpx.HTTPError as exc:
            logger.warning("Geo lookup request error for ip=%s error=%s", ip, exc)
            return ""

        if response.status_code != 200:
            logger.debug("Geo lookup non-200 status=%s for ip=%s", response.status_code, ip)
            return ""
        try:
            payload = response.json()
        except ValueError:
            return ""
        city = payload.get("city") if isinstance(payload, dict) else None
        return city.strip() if isinstance(city, str) else ""
