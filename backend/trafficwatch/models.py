from sqlalchemy import (
    JSON, BigInteger, Boolean, Column, DateTime, Float, Integer, String,
    UniqueConstraint,
)

from trafficwatch.database import Base
from trafficwatch.utils.timeutil import utcnow


class AccessLog(Base):
    """
    Raw request row, one per parsed log line.
    The unique key deduplicates overlapping re-reads of the same file region.
    """
    __tablename__ = "access_logs"
    __table_args__ = (
        UniqueConstraint(
            "proxy_host_id", "log_timestamp", "url", "ip_address", "method",
            name="uq_access_logs_request",
        ),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    proxy_host_id = Column(Integer, nullable=False, index=True)
    url = Column(String(500), nullable=False)
    method = Column(String(10), nullable=False)
    status_code = Column(Integer, nullable=False)
    ip_address = Column(String(45), nullable=True, index=True)  # Supports IPv6
    user_agent = Column(String(500), nullable=True)
    referer = Column(String(500), nullable=True)
    bytes_sent = Column(BigInteger, default=0)
    response_time_ms = Column(Integer, default=0)
    log_timestamp = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class RealtimeTraffic(Base):
    """Minute bucket"""
    __tablename__ = "realtime_traffic"
    __table_args__ = (
        UniqueConstraint("proxy_host_id", "timestamp", name="uq_realtime_traffic_bucket"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    proxy_host_id = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    request_count = Column(Integer, nullable=False, default=0)
    # Decaying estimate: (old + new) / 2 on each update, not a true mean
    response_time_ms = Column(Float, nullable=False, default=0)


class TrafficStat(Base):
    """Hour bucket"""
    __tablename__ = "traffic_stats"
    __table_args__ = (
        UniqueConstraint("proxy_host_id", "timestamp", name="uq_traffic_stats_bucket"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    proxy_host_id = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    request_count = Column(Integer, nullable=False, default=0)
    bytes_sent = Column(BigInteger, nullable=False, default=0)
    avg_response_time_ms = Column(Float, nullable=False, default=0)
    status_2xx = Column(Integer, nullable=False, default=0)
    status_4xx = Column(Integer, nullable=False, default=0)
    status_5xx = Column(Integer, nullable=False, default=0)


class SecurityEvent(Base):
    """Append-only record of a detection outcome."""
    __tablename__ = "security_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    proxy_host_id = Column(Integer, nullable=True, index=True)
    event_type = Column(String(40), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True, index=True)
    path = Column(String(500), nullable=True)
    user_agent = Column(String(500), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class IpBlacklist(Base):
    __tablename__ = "ip_blacklist"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip_address = Column(String(45), nullable=False, unique=True)
    reason = Column(String(500), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class ProxyHostStatus(Base):
    __tablename__ = "proxy_host_status"

    id = Column(Integer, primary_key=True, autoincrement=True)
    proxy_host_id = Column(Integer, nullable=False, unique=True)
    status_code = Column(Integer, nullable=True)
    status_error = Column(String(255), nullable=True)
    checked_at = Column(DateTime, default=utcnow, nullable=False)
