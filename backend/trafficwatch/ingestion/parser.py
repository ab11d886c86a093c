"""
Access log line parser.

Three grammars are tried in a fixed order and the first match wins:

1. the reverse-proxy manager's bracketed format
   ``[27/Nov/2025:01:21:17 +0000] - 502 502 - GET https example.com "/" [Client 1.2.3.4]
   [Length 154] [Gzip -] [Sent-to upstream] "-" "-"``
2. a relaxed form of (1) for lines missing trailing fields
3. the standard combined log format
   ``1.2.3.4 - - [25/Dec/2024:10:00:00 +0000] "GET /test HTTP/1.1" 200 1024 "-" "Mozilla/5.0"``
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple, Union

from trafficwatch.schemas import LogRecord
from trafficwatch.utils.timeutil import to_naive_utc, utcnow

PRIMARY_RE = re.compile(
    r'^\[([^\]]+)\]\s+-\s+(\d+)\s+(\d+)\s+-\s+(\S+)\s+(\S+)\s+(\S+)\s+"([^"]+)"'
    r'\s+\[Client\s+([^\]]+)\]\s+\[Length\s+(\d+)\]\s+\[Gzip\s+([^\]]+)\]'
    r'\s+\[Sent-to\s+([^\]]+)\]\s+"([^"]*)"\s+"([^"]*)"$'
)
RELAXED_RE = re.compile(r'^\[([^\]]+)\]\s+.*?\[Client\s+([^\]]+)\].*?\[Length\s+(\d+)\]')
RELAXED_REQUEST_RE = re.compile(r'\s+(\S+)\s+(\S+)\s+(\S+)\s+"([^"]+)"')
RELAXED_STATUS_RE = re.compile(r'\s+(\d+)\s+(\d+)\s+')
COMBINED_RE = re.compile(
    r'^(\S+) - (\S+) \[([^\]]+)\] "(\S+) (\S+) ([^"]+)" (\d+) (\d+) "([^"]*)" "([^"]*)"$'
)

TIMESTAMP_RE = re.compile(r'(\d{2})/(\w{3})/(\d{4}):(\d{2}):(\d{2}):(\d{2})\s+([+-])(\d{2})(\d{2})')
MONTHS = {
    'Jan': 1, 'Feb': 2, 'Mar': 3, 'Apr': 4, 'May': 5, 'Jun': 6,
    'Jul': 7, 'Aug': 8, 'Sep': 9, 'Oct': 10, 'Nov': 11, 'Dec': 12,
}
PROXY_HOST_RE = re.compile(r'proxy-host-(\d+)')


@dataclass(frozen=True)
class Matched:
    record: LogRecord
    grammar: str


@dataclass(frozen=True)
class NoMatch:
    line: str


ParseResult = Union[Matched, NoMatch]


def parse_timestamp(value: str, now: Optional[Callable[[], datetime]] = None) -> datetime:
    """
    Parse ``DD/Mon/YYYY:HH:MM:SS +ZZZZ`` into naive UTC.
    Best effort: anything unparseable becomes the current time.
    """
    now = now or utcnow
    m = TIMESTAMP_RE.search(value or "")
    if not m:
        return now()
    day, month, year, hour, minute, second, sign, tz_h, tz_m = m.groups()
    if month not in MONTHS:
        return now()
    try:
        offset = timedelta(hours=int(tz_h), minutes=int(tz_m))
        if sign == '-':
            offset = -offset
        dt = datetime(
            int(year), MONTHS[month], int(day),
            int(hour), int(minute), int(second),
            tzinfo=timezone(offset),
        )
    except ValueError:
        return now()
    return to_naive_utc(dt)


def _optional(value: Optional[str]) -> Optional[str]:
    if not value or value == '-':
        return None
    return value


def _int(value: Optional[str], default: int = 0) -> int:
    try:
        return int(value) if value else default
    except ValueError:
        return default


def _status(first: Optional[str], second: Optional[str]) -> int:
    # First non-zero captured status wins
    return _int(first) or _int(second) or 200


def _parse_primary(line: str) -> Optional[LogRecord]:
    m = PRIMARY_RE.match(line)
    if not m:
        return None
    (ts, status1, status2, method, protocol, host, url,
     client_ip, length, _gzip, _upstream, referer, user_agent) = m.groups()
    return LogRecord(
        ip=client_ip or '0.0.0.0',
        timestamp=parse_timestamp(ts),
        method=method or 'GET',
        url=url or '/',
        protocol=protocol or 'HTTP/1.1',
        status_code=_status(status1, status2),
        bytes_sent=_int(length),
        referer=_optional(referer),
        user_agent=_optional(user_agent),
        host=host,
    )


def _parse_relaxed(line: str) -> Optional[LogRecord]:
    m = RELAXED_RE.match(line)
    if not m:
        return None
    ts, client_ip, length = m.groups()

    request = RELAXED_REQUEST_RE.search(line)
    status = RELAXED_STATUS_RE.search(line)
    return LogRecord(
        ip=client_ip or '0.0.0.0',
        timestamp=parse_timestamp(ts),
        method=request.group(1) if request else 'GET',
        url=request.group(4) if request else '/',
        protocol=request.group(2) if request else 'HTTP/1.1',
        status_code=_status(status.group(1), status.group(2)) if status else 200,
        bytes_sent=_int(length),
    )


def _parse_combined(line: str) -> Optional[LogRecord]:
    m = COMBINED_RE.match(line)
    if not m:
        return None
    ip, _user, ts, method, url, protocol, status, size, referer, user_agent = m.groups()
    return LogRecord(
        ip=ip or '0.0.0.0',
        timestamp=parse_timestamp(ts),
        method=method or 'GET',
        url=url or '/',
        protocol=protocol or 'HTTP/1.1',
        status_code=_status(status, None),
        bytes_sent=_int(size),
        referer=_optional(referer),
        user_agent=_optional(user_agent),
    )


GRAMMARS: List[Tuple[str, Callable[[str], Optional[LogRecord]]]] = [
    ('npm_primary', _parse_primary),
    ('npm_relaxed', _parse_relaxed),
    ('combined', _parse_combined),
]


def parse_line(line: str, proxy_host_id: Optional[int] = None) -> ParseResult:
    """Try every grammar in priority order; first match wins."""
    text = (line or '').rstrip('\r\n')
    if not text.strip():
        return NoMatch(line=text)

    for name, grammar in GRAMMARS:
        record = grammar(text)
        if record is not None:
            if proxy_host_id is not None:
                record = record.model_copy(update={'proxy_host_id': proxy_host_id})
            return Matched(record=record, grammar=name)

    return NoMatch(line=text)


def parse(line: str) -> Optional[LogRecord]:
    """Convenience wrapper returning the record or None."""
    result = parse_line(line)
    return result.record if isinstance(result, Matched) else None


def extract_proxy_host_id(filename: str) -> Optional[int]:
    """NPM names per-host logs ``proxy-host-<id>_access.log``."""
    m = PROXY_HOST_RE.search(filename or '')
    return int(m.group(1)) if m else None
