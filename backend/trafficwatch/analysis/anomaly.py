import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List

from sqlalchemy import case, func
from sqlalchemy.orm import sessionmaker

from trafficwatch.models import AccessLog
from trafficwatch.schemas import EventType, LogRecord
from trafficwatch.utils.best_effort import best_effort
from trafficwatch.utils.timeutil import utcnow

VOLUME_FACTOR = 3
SLOW_RESPONSE_MS = 5000
ERROR_RATE_PERCENT = 50
SCAN_DISTINCT_URLS = 100
SCAN_MAX_REQUESTS = 200


@dataclass(frozen=True)
class AnomalyResult:
    detected: bool
    anomalies: List[str] = field(default_factory=list)


class AnomalyDetector:
    """
    Behavioural checks on one ip's recent traffic compared to everyone else's.
    Queries are heavy, so ``maybe_inspect`` only runs on a sample of records.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        events=None,
        sample_rate: float = 0.1,
        window_hours: float = 1,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.events = events
        self.sample_rate = sample_rate
        self.window_hours = window_hours
        self.rng = rng
        self.clock = clock

    def detect_anomalies(self, ip: str, hours: float = None) -> AnomalyResult:
        since = self.clock() - timedelta(hours=hours or self.window_hours)

        with self.session_factory() as session:
            stats = (
                session.query(
                    func.count(AccessLog.id).label("total"),
                    func.avg(AccessLog.response_time_ms).label("avg_response_time"),
                    func.sum(case((AccessLog.status_code >= 400, 1), else_=0)).label("errors"),
                    func.count(func.distinct(AccessLog.url)).label("unique_urls"),
                )
                .filter(AccessLog.ip_address == ip, AccessLog.created_at >= since)
                .one()
            )
            if not stats.total:
                return AnomalyResult(detected=False)

            per_ip = (
                session.query(func.count(AccessLog.id).label("request_count"))
                .filter(AccessLog.created_at >= since)
                .group_by(AccessLog.ip_address)
                .subquery()
            )
            mean_requests = session.query(func.avg(per_ip.c.request_count)).scalar() or 0

        total = int(stats.total)
        avg_response_time = float(stats.avg_response_time or 0)
        error_rate = float(stats.errors or 0) / total * 100
        unique_urls = int(stats.unique_urls or 0)

        anomalies = []
        if total > float(mean_requests) * VOLUME_FACTOR:
            anomalies.append(f"high volume: {total} requests")
        if avg_response_time > SLOW_RESPONSE_MS:
            anomalies.append(f"slow responses: {avg_response_time:.0f}ms average")
        if error_rate > ERROR_RATE_PERCENT:
            anomalies.append(f"high error rate: {error_rate:.1f}%")
        if unique_urls > SCAN_DISTINCT_URLS and total < SCAN_MAX_REQUESTS:
            anomalies.append(f"suspicious URL scan: {unique_urls} distinct URLs")

        return AnomalyResult(detected=bool(anomalies), anomalies=anomalies)

    def maybe_inspect(self, record: LogRecord) -> AnomalyResult:
        if self.rng() >= self.sample_rate:
            return AnomalyResult(detected=False)

        result = self.detect_anomalies(record.ip)
        if result.detected and self.events is not None:
            best_effort(
                self.events.record,
                EventType.ANOMALY_DETECTED,
                record.ip,
                proxy_host_id=record.proxy_host_id,
                path=record.url,
                user_agent=record.user_agent,
                details={"anomalies": result.anomalies},
            )
        return result
