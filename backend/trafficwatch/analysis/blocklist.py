import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, List

from sqlalchemy import or_
from sqlalchemy.orm import sessionmaker

from trafficwatch.analysis.security_events import SecurityEventLog
from trafficwatch.models import IpBlacklist
from trafficwatch.schemas import EventType
from trafficwatch.storage.upserts import upsert
from trafficwatch.utils.timeutil import utcnow

log = logging.getLogger(__name__)

BLOCK_DURATION = timedelta(hours=24)


class AutoBlocklistManager:
    """
    Promotes repeat offenders to the IP blocklist.
    An ip holds at most one row; re-blocking after expiry re-activates it.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        events: SecurityEventLog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.events = events
        self.clock = clock
        self._lock = threading.Lock()

    def _effective(self, now: datetime):
        return (
            IpBlacklist.is_active.is_(True),
            or_(IpBlacklist.expires_at.is_(None), IpBlacklist.expires_at > now),
        )

    def is_blocked(self, ip: str) -> bool:
        now = self.clock()
        with self.session_factory() as session:
            entry = (
                session.query(IpBlacklist.id)
                .filter(IpBlacklist.ip_address == ip, *self._effective(now))
                .first()
            )
        return entry is not None

    def active_entries(self) -> List[IpBlacklist]:
        now = self.clock()
        with self.session_factory() as session:
            return (
                session.query(IpBlacklist)
                .filter(*self._effective(now))
                .order_by(IpBlacklist.ip_address)
                .all()
            )

    def consider(self, ip: str, reason: str, threshold_count: int = 5, window_hours: float = 1) -> bool:
        """
        Block ``ip`` when any single event type reached ``threshold_count``
        within the trailing ``window_hours``.

        Returns True only when a new block was written.
        """
        with self._lock:
            return self._consider(ip, reason, threshold_count, window_hours)

    def _consider(self, ip, reason, threshold_count, window_hours):
        qualifying = self.events.counts_by_type(ip, window_hours, min_count=threshold_count)
        if not qualifying or self.is_blocked(ip):
            return False

        event_type, count = qualifying[0]
        now = self.clock()
        values = {
            "ip_address": ip,
            "reason": f"auto-block: {reason} ({count} events)"[:500],
            "expires_at": now + BLOCK_DURATION,
            "is_active": True,
            "created_at": now,
        }
        with self.session_factory() as session:
            with session.begin():
                dialect = session.get_bind().dialect.name
                session.execute(upsert(
                    IpBlacklist.__table__, values, keys=("ip_address",), dialect_name=dialect,
                    replaces=("reason", "expires_at", "is_active"),
                ))

        log.warning("Auto-blocked %s until %s: %s (%d x %s)", ip, values["expires_at"], reason, count, event_type)
        self.events.record(
            EventType.BLOCKED_IP,
            ip,
            details={"autoBlocked": True, "reason": reason, "eventCount": count},
        )
        return True

    def render_deny_config(self) -> str:
        """nginx ``deny`` directives for every currently effective entry."""
        entries = self.active_entries()
        if not entries:
            return ""
        lines = ["# IP blocklist"]
        lines.extend(f"deny {entry.ip_address};" for entry in entries)
        return "\n".join(lines) + "\n"
