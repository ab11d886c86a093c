from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    """Threat severity ranking"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class EventType(str, Enum):
    BLOCKED_IP = "BLOCKED_IP"
    BLOCKED_PATH = "BLOCKED_PATH"
    SUSPICIOUS_UA = "SUSPICIOUS_UA"
    RATE_LIMIT = "RATE_LIMIT"
    VULNERABILITY_DETECTED = "VULNERABILITY_DETECTED"
    SQL_INJECTION = "SQL_INJECTION"
    XSS = "XSS"
    PATH_TRAVERSAL = "PATH_TRAVERSAL"
    COMMAND_INJECTION = "COMMAND_INJECTION"
    ANOMALY_DETECTED = "ANOMALY_DETECTED"


# Unified request record (one per parsed log line)
class LogRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    proxy_host_id: Optional[int] = None
    ip: str = "0.0.0.0"
    timestamp: datetime  # naive UTC
    method: str = "GET"
    url: str = "/"
    protocol: str = "HTTP/1.1"
    status_code: int = 200
    bytes_sent: int = 0
    referer: Optional[str] = None
    user_agent: Optional[str] = None
    host: Optional[str] = None
    response_time_ms: int = 0


class BatchResult(BaseModel):
    success_count: int = 0
    total_count: int = 0
    skipped_count: int = 0


class FileResult(BaseModel):
    source: str
    proxy_host_id: Optional[int] = None
    lines: int = 0
    parsed: int = 0
    parse_fail_count: int = 0
    failed_samples: List[str] = Field(default_factory=list)
    success_count: int = 0
    skipped_count: int = 0
    error_count: int = 0


class HostStats(BaseModel):
    count: int = 0
    last_access: Optional[datetime] = None


class StatsSnapshot(BaseModel):
    total_lines_processed: int
    total_errors: int
    total_parse_failures: int = 0
    consecutive_errors: int
    last_processed_time: Optional[datetime] = None
    proxy_host_stats: Dict[int, HostStats] = Field(default_factory=dict)


# API Request/Response Models
class LogParserRequest(BaseModel):
    logLine: Optional[str] = None
    logLines: Optional[List[str]] = None
    proxyHostId: Optional[int] = None
    host: Optional[str] = None
    filename: Optional[str] = None

    def lines(self) -> List[str]:
        if self.logLines:
            return list(self.logLines)
        return [self.logLine] if self.logLine else []


class TrafficRecordIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    proxyHostId: Optional[int] = None
    host: Optional[str] = None
    url: Optional[str] = None
    path: Optional[str] = None
    method: str = "GET"
    statusCode: Optional[int] = Field(None, alias="status")
    responseTime: int = Field(0, alias="response_time_ms")
    bytesSent: int = Field(0, alias="bytes_sent")
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = Field(None, alias="user_agent")
    referer: Optional[str] = Field(None, alias="referrer")


class IngestAccepted(BaseModel):
    success: bool = True
    processed: int = 0
