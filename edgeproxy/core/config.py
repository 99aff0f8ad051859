# edgeproxy/core/config.py

from __future__ import annotations

import logging
import sys
import warnings

from pydantic_settings import BaseSettings
from typing import Optional

logger = logging.getLogger(__name__)

# ── Secrets that MUST NOT remain at their default/example values in production ──
_WEAK_ADMIN_PASSWORDS = frozenset({
    "admin",
    "password",
    "change-me",
    "changeme",
    "secret",
    "123456",
    "",
})


class Settings(BaseSettings):
    PROJECT_NAME: str = "Edge Proxy"
    PROJECT_VERSION: str = "1.0.0"

    # ── Environment mode  (development | production) ──
    APP_ENV: str = "development"
    DEBUG: bool = False
    port: int = 8000

    # ── Store ──
    # Left unset, every proxied request answers 500 instead of failing open.
    DATABASE_URL: Optional[str] = None

    # ── Admin session ──
    ADMIN_PASSWORD: Optional[str] = None
    SESSION_SECRET: Optional[str] = None
    SESSION_COOKIE_NAME: str = "adm"
    SESSION_TTL_SECONDS: int = 12 * 3600

    # ── Access log retention ──
    LOG_MAX_ROWS: int = 2000
    ADMIN_SHOW_LOGS: int = 300
    DATA_RETENTION_DAYS: int = 7
    CLEANUP_INTERVAL_SECONDS: int = 30 * 60
    IP_GEO_TTL_SECONDS: int = 7 * 86400

    # ── Proxy behaviour ──
    DIRECT_DOMAINS_CACHE_TTL_SECONDS: int = 60
    UPSTREAM_TIMEOUT_SECONDS: float = 60.0
    UPSTREAM_CONNECT_TIMEOUT_SECONDS: float = 10.0
    FOLLOW_REDIRECT_CHAIN: bool = True
    CLIENT_IP_HEADER: str = "cf-connecting-ip"
    DEFAULT_USER: str = "ikun"
    ALLOWLIST_ENFORCED_BY_DEFAULT: bool = True

    # ── Geo-IP lookup ──
    GEOIP_ENABLED: bool = True
    GEOIP_URL_TEMPLATE: str = "https://ipapi.co/{ip}/json/"
    GEOIP_TIMEOUT_SECONDS: float = 5.0

    # ── Background work ──
    BACKGROUND_QUEUE_SIZE: int = 1000
    BACKGROUND_WORKERS: int = 2
    BACKGROUND_DRAIN_TIMEOUT_SECONDS: float = 5.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    # ── helpers ──
    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower().strip() == "production"

    @property
    def session_secret(self) -> Optional[str]:
        """HMAC key for admin sessions; rotating it logs every admin out."""
        return self.SESSION_SECRET or self.ADMIN_PASSWORD

    # ── Startup validation ──
    def validate_security(self) -> None:
        """
        Enforce secure-by-default rules.
        In production → hard fail (SystemExit) for P0 violations.
        In development → warning only.
        """
        errors: list[str] = []
        warns: list[str] = []

        # 1) ADMIN_PASSWORD
        admin_password = self.ADMIN_PASSWORD or ""
        if admin_password.strip().lower() in _WEAK_ADMIN_PASSWORDS or len(admin_password) < 12:
            msg = "ADMIN_PASSWORD is missing or weak. Generate one: openssl rand -hex 24"
            (errors if self.is_production else warns).append(msg)

        # 2) SESSION_SECRET, when set separately
        if self.SESSION_SECRET is not None and len(self.SESSION_SECRET) < 16:
            msg = "SESSION_SECRET is shorter than 16 characters."
            (errors if self.is_production else warns).append(msg)

        # 3) Store
        if not self.DATABASE_URL:
            msg = "DATABASE_URL is not set; every proxied request will answer 500."
            (errors if self.is_production else warns).append(msg)

        # 4) Opt-out of allow-list enforcement
        if not self.ALLOWLIST_ENFORCED_BY_DEFAULT:
            warns.append("ALLOWLIST_ENFORCED_BY_DEFAULT is off: a fresh store permits any upstream origin.")

        # Emit warnings
        for w in warns:
            logger.warning("[SECURITY] %s", w)
            warnings.warn(f"[SECURITY] {w}", stacklevel=2)

        # Emit errors – fatal in production
        if errors:
            for e in errors:
                logger.error("[SECURITY-FATAL] %s", e)
            if self.is_production:
                print("\n".join(f"FATAL: {e}" for e in errors), file=sys.stderr)
                raise SystemExit(
                    f"Startup blocked: {len(errors)} security violation(s) in production mode. "
                    "Fix the issues above or set APP_ENV=development."
                )


settings = Settings()
settings.validate_security()
