from __future__ import annotations

import os

# Settings are read at import time; give the module-level instance sane values.
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("ADMIN_PASSWORD", "test-admin-password-0123456789")
os.environ.setdefault("GEOIP_ENABLED", "false")

import pytest

from edgeproxy.core.config import Settings

ADMIN_PASSWORD = "test-admin-password-0123456789"


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'edgeproxy.db'}"


@pytest.fixture
def make_settings(database_url):
    def _make(**overrides) -> Settings:
        values = {
            "APP_ENV": "development",
            "DATABASE_URL": database_url,
            "ADMIN_PASSWORD": ADMIN_PASSWORD,
            "SESSION_SECRET": "session-secret-for-tests-0123456789",
            "GEOIP_ENABLED": False,
            "BACKGROUND_DRAIN_TIMEOUT_SECONDS": 5.0,
        }
        values.update(overrides)
        return Settings(**values)

    return _make
