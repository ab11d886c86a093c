from typing import Optional

from sqlalchemy.orm import sessionmaker

from trafficwatch.analysis.anomaly import AnomalyDetector
from trafficwatch.analysis.blocklist import AutoBlocklistManager
from trafficwatch.analysis.rate_limiter import RateLimiter
from trafficwatch.analysis.screening import SecurityScreener
from trafficwatch.analysis.security_events import SecurityEventLog
from trafficwatch.analysis.threat_detector import ThreatDetector
from trafficwatch.config import Settings
from trafficwatch.ingestion.host_resolver import HostResolver
from trafficwatch.ingestion.pipeline import IngestionPipeline
from trafficwatch.ingestion.state import IngestionStats
from trafficwatch.storage.persister import BatchPersister
from trafficwatch.utils.npm_client import NPMClient
from trafficwatch.utils.retry import RetryPolicy


def build_screener(settings: Settings, session_factory: sessionmaker) -> SecurityScreener:
    events = SecurityEventLog(session_factory)
    blocklist = AutoBlocklistManager(session_factory, events)
    return SecurityScreener(
        threats=ThreatDetector(events=events, blocklist=blocklist),
        rate_limiter=RateLimiter(
            session_factory,
            events=events,
            blocklist=blocklist,
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
            window_minutes=settings.RATE_LIMIT_WINDOW_MINUTES,
        ),
        anomalies=AnomalyDetector(session_factory, events=events, sample_rate=settings.ANOMALY_SAMPLE_RATE),
    )


def build_pipeline(
    settings: Settings,
    session_factory: sessionmaker,
    stats: Optional[IngestionStats] = None,
    screen: bool = True,
) -> IngestionPipeline:
    stats = stats or IngestionStats()
    persister = BatchPersister(
        session_factory,
        stats,
        max_log_age_days=settings.MAX_LOG_AGE_DAYS,
        retry_policy=RetryPolicy(base_delay=settings.RETRY_BASE_DELAY_MS / 1000.0),
    )
    return IngestionPipeline(
        persister,
        screener=build_screener(settings, session_factory) if screen else None,
        batch_size=settings.BATCH_SIZE,
        stats=stats,
    )


def build_npm_client(settings: Settings) -> Optional[NPMClient]:
    if not settings.npm_enabled:
        return None
    return NPMClient(settings.NPM_API_URL, settings.NPM_USERNAME, settings.NPM_PASSWORD)


def build_host_resolver(settings: Settings) -> HostResolver:
    return HostResolver(build_npm_client(settings), cache_seconds=settings.NPM_DOMAIN_CACHE_SECONDS)
