import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from trafficwatch.ingestion.state import IngestionStats
from trafficwatch.models import AccessLog, RealtimeTraffic, TrafficStat
from trafficwatch.schemas import BatchResult, LogRecord
from trafficwatch.storage.upserts import insert_ignore, upsert
from trafficwatch.utils.retry import RetryPolicy
from trafficwatch.utils.timeutil import hour_bucket, minute_bucket, utcnow

log = logging.getLogger(__name__)

# Always report the first few failures of a streak, then every Nth
LOUD_FAILURES = 5
FAILURE_LOG_EVERY = 10


def _clip(value: Optional[str], width: int) -> Optional[str]:
    return value[:width] if value else value


class BatchPersister:
    """
    Writes one batch of records for a proxy host: raw rows plus the minute
    and hour rollups, inside a single transaction with retry.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        stats: IngestionStats,
        max_log_age_days: int = 7,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.stats = stats
        self.max_log_age = timedelta(days=max_log_age_days)
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock

    def persist(self, records: List[LogRecord], proxy_host_id: Optional[int]) -> BatchResult:
        total = len(records)
        if not records or not proxy_host_id:
            return BatchResult(success_count=0, total_count=total)

        # Drop records older than the retention window before touching storage
        cutoff = self.clock() - self.max_log_age
        fresh = [r for r in records if r.timestamp >= cutoff]
        skipped = total - len(fresh)
        if skipped:
            log.info("Skipped %d record(s) older than %d days (host %s)",
                     skipped, self.max_log_age.days, proxy_host_id)
        if not fresh:
            return BatchResult(success_count=0, total_count=total, skipped_count=skipped)

        try:
            self.retry_policy.run(lambda: self._write(fresh, proxy_host_id))
        except Exception as exc:
            streak = self.stats.record_failure(len(fresh))
            if streak <= LOUD_FAILURES or streak % FAILURE_LOG_EVERY == 0:
                log.error("Storage write failed (%d consecutive): %s", streak, exc, exc_info=True)
            return BatchResult(success_count=0, total_count=total, skipped_count=skipped)

        self.stats.record_success(proxy_host_id, len(fresh))
        return BatchResult(success_count=len(fresh), total_count=total, skipped_count=skipped)

    def _write(self, records: List[LogRecord], proxy_host_id: int):
        with self.session_factory() as session:
            with session.begin():
                dialect = session.get_bind().dialect.name
                self._insert_raw_rows(session, dialect, records, proxy_host_id)
                self._upsert_minute_buckets(session, dialect, records, proxy_host_id)
                self._upsert_hour_buckets(session, dialect, records, proxy_host_id)

    def _insert_raw_rows(self, session: Session, dialect: str, records: List[LogRecord], proxy_host_id: int):
        now = self.clock()
        rows = [
            {
                "proxy_host_id": proxy_host_id,
                "url": _clip(r.url, 500),
                "method": _clip(r.method, 10),
                "status_code": r.status_code,
                "ip_address": r.ip or None,
                "user_agent": _clip(r.user_agent, 500),
                "referer": _clip(r.referer, 500),
                "bytes_sent": r.bytes_sent or 0,
                "response_time_ms": r.response_time_ms or 0,
                "log_timestamp": r.timestamp,
                "created_at": now,
            }
            for r in records
        ]
        session.execute(insert_ignore(AccessLog.__table__, dialect), rows)

    def _upsert_minute_buckets(self, session: Session, dialect: str, records: List[LogRecord], proxy_host_id: int):
        buckets: Dict[datetime, Dict] = defaultdict(lambda: {"count": 0, "response_time": 0})
        for r in records:
            bucket = buckets[minute_bucket(r.timestamp)]
            bucket["count"] += 1
            bucket["response_time"] += r.response_time_ms or 0

        # Fixed key order keeps lock acquisition consistent across writers
        for start in sorted(buckets):
            bucket = buckets[start]
            stmt = upsert(
                RealtimeTraffic.__table__,
                {
                    "proxy_host_id": proxy_host_id,
                    "timestamp": start,
                    "request_count": bucket["count"],
                    "response_time_ms": bucket["response_time"] / bucket["count"],
                },
                keys=["proxy_host_id", "timestamp"],
                dialect_name=dialect,
                increments=["request_count"],
                decays=["response_time_ms"],
            )
            session.execute(stmt)

    def _upsert_hour_buckets(self, session: Session, dialect: str, records: List[LogRecord], proxy_host_id: int):
        buckets: Dict[datetime, Dict] = defaultdict(lambda: {
            "count": 0, "bytes": 0, "response_time": 0,
            "2xx": 0, "4xx": 0, "5xx": 0,
        })
        for r in records:
            bucket = buckets[hour_bucket(r.timestamp)]
            bucket["count"] += 1
            bucket["bytes"] += r.bytes_sent or 0
            bucket["response_time"] += r.response_time_ms or 0
            if 200 <= r.status_code < 300:
                bucket["2xx"] += 1
            elif 400 <= r.status_code < 500:
                bucket["4xx"] += 1
            elif r.status_code >= 500:
                bucket["5xx"] += 1

        for start in sorted(buckets):
            bucket = buckets[start]
            stmt = upsert(
                TrafficStat.__table__,
                {
                    "proxy_host_id": proxy_host_id,
                    "timestamp": start,
                    "request_count": bucket["count"],
                    "bytes_sent": bucket["bytes"],
                    "avg_response_time_ms": bucket["response_time"] / bucket["count"],
                    "status_2xx": bucket["2xx"],
                    "status_4xx": bucket["4xx"],
                    "status_5xx": bucket["5xx"],
                },
                keys=["proxy_host_id", "timestamp"],
                dialect_name=dialect,
                increments=["request_count", "bytes_sent", "status_2xx", "status_4xx", "status_5xx"],
                decays=["avg_response_time_ms"],
            )
            session.execute(stmt)
