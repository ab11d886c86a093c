from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from trafficwatch.models import AccessLog
from trafficwatch.schemas import EventType, LogRecord
from trafficwatch.utils.best_effort import best_effort
from trafficwatch.utils.timeutil import utcnow


@dataclass(frozen=True)
class RateLimitResult:
    exceeded: bool
    count: int


class RateLimiter:
    """
    Per-ip request counter backed by the raw access table.
    Counts only rows already persisted, so it lags by one batch.
    """

    BLOCK_THRESHOLD = 2
    BLOCK_WINDOW_HOURS = 1

    def __init__(
        self,
        session_factory: sessionmaker,
        events=None,
        blocklist=None,
        max_requests: int = 100,
        window_minutes: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.events = events
        self.blocklist = blocklist
        self.max_requests = max_requests
        self.window_minutes = window_minutes
        self.clock = clock

    def check_rate_limit(
        self, ip: str, max_requests: Optional[int] = None, window_minutes: Optional[int] = None
    ) -> RateLimitResult:
        max_requests = max_requests or self.max_requests
        window_minutes = window_minutes or self.window_minutes
        since = self.clock() - timedelta(minutes=window_minutes)

        with self.session_factory() as session:
            count = (
                session.query(func.count(AccessLog.id))
                .filter(AccessLog.ip_address == ip, AccessLog.created_at >= since)
                .scalar()
            ) or 0
        return RateLimitResult(exceeded=count >= max_requests, count=int(count))

    def enforce(self, record: LogRecord) -> RateLimitResult:
        """Check the record's ip; on a violation log it and consider a block."""
        result = self.check_rate_limit(record.ip)
        if not result.exceeded:
            return result

        if self.events is not None:
            best_effort(
                self.events.record,
                EventType.RATE_LIMIT,
                record.ip,
                proxy_host_id=record.proxy_host_id,
                path=record.url,
                user_agent=record.user_agent,
                details={"requestCount": result.count, "windowMinutes": self.window_minutes},
            )
        if self.blocklist is not None:
            best_effort(
                self.blocklist.consider,
                record.ip,
                "rate limit violation",
                threshold_count=self.BLOCK_THRESHOLD,
                window_hours=self.BLOCK_WINDOW_HOURS,
                default=False,
            )
        return result
