import logging
from typing import Iterable, Optional

from trafficwatch.analysis.anomaly import AnomalyDetector
from trafficwatch.analysis.rate_limiter import RateLimiter
from trafficwatch.analysis.threat_detector import ThreatDetector
from trafficwatch.schemas import LogRecord
from trafficwatch.utils.best_effort import best_effort

log = logging.getLogger(__name__)


class SecurityScreener:
    """
    Runs every record through signature matching, the rate limiter and the
    sampled anomaly check. Nothing here may fail the ingestion path.
    """

    def __init__(
        self,
        threats: ThreatDetector,
        rate_limiter: Optional[RateLimiter] = None,
        anomalies: Optional[AnomalyDetector] = None,
    ):
        self.threats = threats
        self.rate_limiter = rate_limiter
        self.anomalies = anomalies

    def screen(self, record: LogRecord):
        best_effort(self.threats.inspect, record)
        if self.rate_limiter is not None:
            best_effort(self.rate_limiter.enforce, record)
        if self.anomalies is not None:
            best_effort(self.anomalies.maybe_inspect, record)

    def screen_batch(self, records: Iterable[LogRecord]) -> int:
        screened = 0
        for record in records:
            self.screen(record)
            screened += 1
        log.debug("Screened %d record(s)", screened)
        return screened
