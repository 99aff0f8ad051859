from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from edgeproxy.database import create_engine, create_session_factory
from edgeproxy.models import Base, IpGeo, LastSeen, ProxyConfig, ProxyLog, ProxyUser, WhitelistEntry
from edgeproxy.proxy.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

CONFIG_WHITELIST_ENABLED = "whitelistEnabled"
CONFIG_DIRECT_DOMAINS = "manualRedirectDomains"
CONFIG_BASE_DOMAINS = "baseDomains"

# Errors that mean "the store did not answer", as opposed to programming errors.
STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(slots=True)
class UserRecord:
    username: str
    enabled: bool
    note: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class LogEntry:
    username: str
    origin: str
    status: int | None
    action: str
    reason: str
    path: str
    ip: str = ""
    city: str = ""
    colo: str = ""
    ua: str = ""


@dataclass(slots=True)
class PruneResult:
    logs: int
    last_seen: int
    ip_geo: int


class ProxyStore:
    """Key-value and table operations the proxy needs from its database.

    Works on PostgreSQL (asyncpg) and SQLite (aiosqlite); upserts use each
    dialect's native ``INSERT ... ON CONFLICT``.
    """

    def __init__(self, database_url: str | None = None, engine: AsyncEngine | None = None):
        if engine is None and database_url:
            engine = create_engine(database_url)
        self.engine = engine
        self._sessions = create_session_factory(engine) if engine is not None else None

    @property
    def configured(self) -> bool:
        return self.engine is not None

    def _session(self):
        if self._sessions is None:
            raise StoreUnavailableError("DATABASE_URL is not configured")
        return self._sessions()

    def _insert(self, model):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise StoreUnavailableError(f"unsupported database dialect: {dialect}")

    async def dispose(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    # ── schema ───────────────────────────────────────────────────────

    async def create_schema(self) -> None:
        if self.engine is None:
            raise StoreUnavailableError("DATABASE_URL is not configured")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def seed_defaults(
        self,
        *,
        default_user: str,
        direct_domains: Iterable[str],
        whitelist_enabled: bool,
    ) -> None:
        """Insert first-run rows without touching values an operator already set."""
        now = utcnow()
        defaults = {
            CONFIG_BASE_DOMAINS: json.dumps([]),
            CONFIG_DIRECT_DOMAINS: json.dumps(list(direct_domains)),
            CONFIG_WHITELIST_ENABLED: "1" if whitelist_enabled else "0",
        }
        async with self._session() as session:
            for key, value in defaults.items():
                stmt = self._insert(ProxyConfig).values(key=key, value=value, updated_at=now)
                await session.execute(stmt.on_conflict_do_nothing(index_elements=[ProxyConfig.key]))
            stmt = self._insert(ProxyUser).values(
                username=default_user, enabled=True, note="", created_at=now, updated_at=now
            )
            await session.execute(stmt.on_conflict_do_nothing(index_elements=[ProxyUser.username]))
            await session.commit()

    # ── config ───────────────────────────────────────────────────────

    async def get_config(self, key: str) -> str | None:
        async with self._session() as session:
            result = await session.execute(select(ProxyConfig.value).where(ProxyConfig.key == key))
            return result.scalar_one_or_none()

    async def put_config(self, key: str, value: str) -> None:
        now = utcnow()
        stmt = self._insert(ProxyConfig).values(key=key, value=value, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ProxyConfig.key],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_json_list(self, key: str, default: list[str] | None = None) -> list[str]:
        raw = await self.get_config(key)
        if raw is None:
            return list(default or [])
        try:
            parsed: Any = json.loads(raw)
        except ValueError:
            logger.warning("Config key %s holds invalid JSON; using default", key)
            return list(default or [])
        if not isinstance(parsed, list):
            return list(default or [])
        return [str(item) for item in parsed if item]

    async def put_json_list(self, key: str, values: Iterable[str]) -> None:
        await self.put_config(key, json.dumps(list(values)))

    async def get_whitelist_enabled(self) -> bool:
        return await self.get_config(CONFIG_WHITELIST_ENABLED) == "1"

    async def set_whitelist_enabled(self, enabled: bool) -> None:
        await self.put_config(CONFIG_WHITELIST_ENABLED, "1" if enabled else "0")

    # ── users ────────────────────────────────────────────────────────

    async def get_user(self, username: str) -> UserRecord | None:
        async with self._session() as session:
            result = await session.execute(select(ProxyUser).where(ProxyUser.username == username))
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return UserRecord(row.username, bool(row.enabled), row.note or "", row.created_at, row.updated_at)

    async def list_users(self) -> list[UserRecord]:
        async with self._session() as session:
            result = await session.execute(select(ProxyUser).order_by(ProxyUser.username.asc()))
            rows = result.scalars().all()
        return [UserRecord(r.username, bool(r.enabled), r.note or "", r.created_at, r.updated_at) for r in rows]

    async def upsert_user(self, username: str, note: str = "") -> None:
        now = utcnow()
        stmt = self._insert(ProxyUser).values(
            username=username, enabled=True, note=note, created_at=now, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ProxyUser.username],
            set_={"note": stmt.excluded.note, "updated_at": stmt.excluded.updated_at},
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def toggle_user(self, username: str) -> bool | None:
        """Flip the enabled flag; returns the new value, None if absent."""
        async with self._session() as session:
            result = await session.execute(select(ProxyUser.enabled).where(ProxyUser.username == username))
            current = result.scalar_one_or_none()
            if current is None:
                return None
            enabled = not current
            await session.execute(
                update(ProxyUser)
                .where(ProxyUser.username == username)
                .values(enabled=enabled, updated_at=utcnow())
            )
            await session.commit()
        return enabled

    async def delete_user(self, username: str) -> None:
        async with self._session() as session:
            await session.execute(delete(ProxyUser).where(ProxyUser.username == username))
            await session.execute(delete(LastSeen).where(LastSeen.username == username))
            await session.commit()

    # ── allow-list ───────────────────────────────────────────────────

    async def list_whitelist(self) -> list[str]:
        async with self._session() as session:
            result = await session.execute(select(WhitelistEntry.origin).order_by(WhitelistEntry.origin.asc()))
            return list(result.scalars().all())

    async def add_whitelist(self, origin: str) -> None:
        stmt = self._insert(WhitelistEntry).values(origin=origin, created_at=utcnow())
        async with self._session() as session:
            await session.execute(stmt.on_conflict_do_nothing(index_elements=[WhitelistEntry.origin]))
            await session.commit()

    async def delete_whitelist(self, origin: str) -> None:
        async with self._session() as session:
            await session.execute(delete(WhitelistEntry).where(WhitelistEntry.origin == origin))
            await session.commit()

    # ── last-seen aggregate ──────────────────────────────────────────

    async def touch_last_seen(self, username: str, origin: str, ip: str = "", colo: str = "") -> None:
        """Atomic upsert-increment keyed by (username, origin)."""
        stmt = self._insert(LastSeen).values(
            username=username,
            upstream_origin=origin,
            last_ts=utcnow(),
            count=1,
            last_ip=ip,
            last_colo=colo,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[LastSeen.username, LastSeen.upstream_origin],
            set_={
                "last_ts": stmt.excluded.last_ts,
                "count": LastSeen.count + 1,
                "last_ip": stmt.excluded.last_ip,
                "last_colo": stmt.excluded.last_colo,
            },
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def list_last_seen(self, limit: int = 100) -> list[dict[str, Any]]:
        stmt = (
            select(
                LastSeen.username,
                ProxyUser.note,
                LastSeen.upstream_origin,
                LastSeen.last_ts,
                LastSeen.count,
                LastSeen.last_ip,
                LastSeen.last_colo,
            )
            .outerjoin(ProxyUser, ProxyUser.username == LastSeen.username)
            .order_by(LastSeen.last_ts.desc())
            .limit(limit)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            rows = result.all()
        return [
            {
                "user": row.username,
                "note": row.note or "",
                "origin": row.upstream_origin,
                "last_ts": row.last_ts,
                "count": row.count,
                "last_ip": row.last_ip or "",
                "last_colo": row.last_colo or "",
            }
            for row in rows
        ]

    # ── access log ───────────────────────────────────────────────────

    async def append_log(self, entry: LogEntry, max_rows: int) -> None:
        """Insert one row, then drop everything older than the newest ``max_rows``."""
        async with self._session() as session:
            session.add(
                ProxyLog(
                    ts=utcnow(),
                    username=entry.username,
                    upstream_origin=entry.origin,
                    status=entry.status,
                    action=entry.action,
                    reason=entry.reason,
                    path=entry.path,
                    ip=entry.ip,
                    city=entry.city,
                    colo=entry.colo,
                    ua=entry.ua,
                )
            )
            await session.flush()
            newest = await session.execute(select(func.max(ProxyLog.id)))
            cutoff_id = (newest.scalar_one_or_none() or 0) - max_rows
            if cutoff_id > 0:
                await session.execute(delete(ProxyLog).where(ProxyLog.id <= cutoff_id))
            await session.commit()

    async def list_logs(self, limit: int = 50) -> list[ProxyLog]:
        async with self._session() as session:
            result = await session.execute(select(ProxyLog).order_by(ProxyLog.id.desc()).limit(limit))
            return list(result.scalars().all())

    async def count_logs(self) -> int:
        async with self._session() as session:
            result = await session.execute(select(func.count()).select_from(ProxyLog))
            return int(result.scalar_one())

    # ── geo-ip cache ─────────────────────────────────────────────────

    async def get_geo(self, ip: str) -> tuple[str, datetime] | None:
        async with self._session() as session:
            result = await session.execute(select(IpGeo.city, IpGeo.updated_at).where(IpGeo.ip == ip))
            row = result.first()
        if row is None:
            return None
        return row.city or "", row.updated_at

    async def put_geo(self, ip: str, city: str) -> None:
        stmt = self._insert(IpGeo).values(ip=ip, city=city, updated_at=utcnow())
        stmt = stmt.on_conflict_do_update(
            index_elements=[IpGeo.ip],
            set_={"city": stmt.excluded.city, "updated_at": stmt.excluded.updated_at},
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    # ── retention ────────────────────────────────────────────────────

    async def delete_older_than(self, cutoff: datetime) -> PruneResult:
        """Drop log, last-seen and geo rows older than ``cutoff``.

        Each table is pruned in its own transaction so one failure does not
        keep the others from shrinking.
        """
        counts: dict[str, int] = {}
        targets = (
            ("logs", ProxyLog, ProxyLog.ts),
            ("last_seen", LastSeen, LastSeen.last_ts),
            ("ip_geo", IpGeo, IpGeo.updated_at),
        )
        for name, model, column in targets:
            try:
                async with self._session() as session:
                    result = await session.execute(delete(model).where(column < cutoff))
                    await session.commit()
                counts[name] = result.rowcount or 0
            except STORE_ERRORS:
                logger.exception("Retention prune failed for table=%s", model.__tablename__)
                counts[name] = 0
        return PruneResult(**counts)

    # ── overview ─────────────────────────────────────────────────────

    async def summary(self) -> dict[str, Any]:
        async with self._session() as session:
            total = await session.execute(select(func.coalesce(func.sum(LastSeen.count), 0)))
            users = await session.execute(
                select(func.count()).select_from(ProxyUser).where(ProxyUser.enabled.is_(True))
            )
            whitelist = await session.execute(select(func.count()).select_from(WhitelistEntry))
            last_activity = await session.execute(select(func.max(LastSeen.last_ts)))
            return {
                "total_requests": int(total.scalar_one() or 0),
                "users": int(users.scalar_one() or 0),
                "whitelist": int(whitelist.scalar_one() or 0),
                "last_activity": last_activity.scalar_one_or_none(),
            }
