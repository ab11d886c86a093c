import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from trafficwatch.config import get_settings
from trafficwatch.database import get_session_factory
from trafficwatch.ingestion.host_resolver import HostResolver
from trafficwatch.ingestion.pipeline import IngestionPipeline
from trafficwatch.runtime import build_host_resolver, build_pipeline
from trafficwatch.schemas import IngestAccepted, LogParserRequest, LogRecord, TrafficRecordIn
from trafficwatch.utils.timeutil import utcnow

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/traffic", tags=["traffic"])


@lru_cache()
def get_pipeline() -> IngestionPipeline:
    return build_pipeline(get_settings(), get_session_factory())


@lru_cache()
def get_host_resolver() -> HostResolver:
    return build_host_resolver(get_settings())


def client_ip(request: Request, fallback: Optional[str]) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.headers.get("x-real-ip") or fallback or "0.0.0.0"


def _request_host(request: Request, body_host: Optional[str]) -> Optional[str]:
    return body_host or request.headers.get("x-forwarded-host")


@router.post("/log-parser", response_model=IngestAccepted)
def parse_log_lines(
    payload: LogParserRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    resolver: HostResolver = Depends(get_host_resolver),
):
    """Accept raw log lines; parsing and storage continue after the response."""
    lines = payload.lines()
    if not lines:
        raise HTTPException(status_code=400, detail="logLine or logLines is required")

    proxy_host_id = resolver.resolve(
        payload.proxyHostId, payload.filename, _request_host(request, payload.host)
    )
    if not proxy_host_id:
        raise HTTPException(status_code=400, detail="Unknown proxy host")

    background_tasks.add_task(
        pipeline.process_lines, lines, proxy_host_id, payload.filename or "log-parser"
    )
    return IngestAccepted(success=True, processed=len(lines))


def _ingest_record(
    payload: TrafficRecordIn,
    request: Request,
    pipeline: IngestionPipeline,
    resolver: HostResolver,
    url: str,
    source: str,
) -> IngestAccepted:
    proxy_host_id = resolver.resolve(payload.proxyHostId, None, _request_host(request, payload.host))
    if not proxy_host_id:
        raise HTTPException(status_code=400, detail="Unknown proxy host")

    record = LogRecord(
        proxy_host_id=proxy_host_id,
        ip=client_ip(request, payload.ipAddress),
        timestamp=utcnow(),
        method=(payload.method or "GET").upper(),
        url=url,
        status_code=payload.statusCode or 200,
        bytes_sent=payload.bytesSent or 0,
        response_time_ms=payload.responseTime or 0,
        user_agent=payload.userAgent or request.headers.get("user-agent"),
        referer=payload.referer or request.headers.get("referer"),
    )
    try:
        result = pipeline.process_records([record], proxy_host_id, source=source)
    except Exception as e:
        log.error("Traffic ingestion failed: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    return IngestAccepted(success=result.error_count == 0, processed=result.success_count)


@router.post("/webhook", response_model=IngestAccepted)
def traffic_webhook(
    payload: TrafficRecordIn,
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    resolver: HostResolver = Depends(get_host_resolver),
):
    return _ingest_record(payload, request, pipeline, resolver, payload.url or payload.path or "/", "webhook")


@router.post("/collect", response_model=IngestAccepted)
def collect_traffic(
    payload: TrafficRecordIn,
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    resolver: HostResolver = Depends(get_host_resolver),
):
    """Record a single request reported by an external system."""
    if not payload.url:
        raise HTTPException(status_code=400, detail="url is required")
    return _ingest_record(payload, request, pipeline, resolver, payload.url, "collect")
