# edgeproxy/models.py

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, Index
from sqlalchemy.orm import declarative_base
Base = declarative_base()

# All timestamps are naive UTC; see edgeproxy.services.store.utcnow.


class ProxyConfig(Base):
    __tablename__ = "proxy_config"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=True)


class ProxyUser(Base):
    __tablename__ = "proxy_users"

    username = Column(String, primary_key=True)
    enabled = Column(Boolean, default=True, nullable=False)
    note = Column(String, default="", nullable=False)
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)


class WhitelistEntry(Base):
    __tablename__ = "proxy_whitelist"

    origin = Column(String, primary_key=True)
    created_at = Column(DateTime, nullable=True)


class LastSeen(Base):
    __tablename__ = "proxy_last_seen"
    __table_args__ = (Index("idx_last_seen_ts", "last_ts"),)

    username = Column(String, primary_key=True)
    upstream_origin = Column(String, primary_key=True)
    last_ts = Column(DateTime, nullable=False)
    count = Column(Integer, default=0, nullable=False)
    last_ip = Column(String, nullable=True)
    last_colo = Column(String, nullable=True)


class ProxyLog(Base):
    __tablename__ = "proxy_logs"
    __table_args__ = (Index("idx_logs_ts", "ts"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime, nullable=False)
    username = Column(String, nullable=True)
    upstream_origin = Column(String, nullable=True)
    status = Column(Integer, nullable=True)
    action = Column(String, nullable=False)
    reason = Column(String, nullable=True)
    path = Column(String, nullable=True)
    ip = Column(String, nullable=True)
    city = Column(String, nullable=True)
    colo = Column(String, nullable=True)
    ua = Column(String, nullable=True)


class IpGeo(Base):
    __tablename__ = "proxy_ipgeo"

    ip = Column(String, primary_key=True)
    city = Column(String, nullable=True)
    updated_at = Column(DateTime, nullable=False)
