from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import desc, func
from sqlalchemy.orm import sessionmaker

from trafficwatch.models import SecurityEvent
from trafficwatch.schemas import EventType
from trafficwatch.utils.timeutil import utcnow


class SecurityEventLog:
    """Append-only store of detection outcomes."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def record(
        self,
        event_type: EventType,
        ip: Optional[str],
        proxy_host_id: Optional[int] = None,
        path: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            proxy_host_id=proxy_host_id,
            event_type=EventType(event_type).value,
            ip_address=ip,
            path=path[:500] if path else None,
            user_agent=user_agent[:500] if user_agent else None,
            details=details,
            created_at=self.clock(),
        )
        with self.session_factory() as session:
            session.add(event)
            session.commit()
        return event

    def counts_by_type(self, ip: str, hours: float, min_count: int = 1) -> List[Tuple[str, int]]:
        """Event types seen for ``ip`` in the trailing window with at least ``min_count`` hits."""
        since = self.clock() - timedelta(hours=hours)
        count = func.count(SecurityEvent.id)
        with self.session_factory() as session:
            rows = (
                session.query(SecurityEvent.event_type, count.label("cnt"))
                .filter(SecurityEvent.ip_address == ip, SecurityEvent.created_at >= since)
                .group_by(SecurityEvent.event_type)
                .having(count >= min_count)
                .order_by(desc("cnt"))
                .all()
            )
        return [(row.event_type, int(row.cnt)) for row in rows]
