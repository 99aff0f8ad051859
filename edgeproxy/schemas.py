# edgeproxy/schemas.py

from __future__ import annotations
from pydantic import BaseModel, ConfigDict
from typing import Optional, List
from datetime import datetime


# --- Access log ---
class LogRow(BaseModel):
    id: int
    ts: datetime
    username: Optional[str] = None
    upstream_origin: Optional[str] = None
    status: Optional[int] = None
    action: Optional[str] = None
    reason: Optional[str] = None
    path: Optional[str] = None
    ip: Optional[str] = None
    city: Optional[str] = None
    colo: Optional[str] = None
    ua: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class LogListResponse(BaseModel):
    total: int
    items: List[LogRow]


# --- Last-seen aggregate ---
class LastSeenRow(BaseModel):
    user: str
    note: str = ""
    origin: str
    last_ts: datetime
    count: int
    last_ip: str = ""
    last_colo: str = ""


# --- Overview ---
class SummaryResponse(BaseModel):
    total_requests: int
    users: int
    whitelist: int
    last_activity: Optional[datetime] = None


class HealthResponse(BaseModel):
    status: str
    store_configured: bool
    background_failures: int
    background_dropped: int
    access_log_failures: int
