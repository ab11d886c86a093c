import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple

from trafficwatch.schemas import EventType, LogRecord, Severity
from trafficwatch.utils.best_effort import best_effort

SHELL_COMMANDS = r"(rm|ls|cat|echo|wget|curl|nc|netcat|bash|sh|python|perl|ruby)\s"


def _compile(patterns: List[str]) -> List[Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


@dataclass(frozen=True)
class ThreatCategory:
    event_type: EventType
    severity: Severity
    patterns: List[Pattern]
    check_url: bool = True
    check_user_agent: bool = True


@dataclass(frozen=True)
class ThreatResult:
    detected: bool
    threat_type: Optional[EventType] = None
    severity: Optional[Severity] = None
    pattern: Optional[str] = None


NOT_DETECTED = ThreatResult(detected=False)


class ThreatDetector:
    """
    Signature matcher for request URLs and user agents.
    Categories are evaluated in a fixed priority order; the first hit wins.
    """

    CATEGORIES: Tuple[ThreatCategory, ...] = (
        ThreatCategory(EventType.SQL_INJECTION, Severity.CRITICAL, _compile([
            r"(%27)|(')|(--)|(%23)|(#)",
            r"((%3d)|(=))[^\n]*((%27)|(')|(--)|(%3b)|(;))",
            r"\w*((%27)|('))((%6f)|o|(%4f))((%72)|r|(%52))",
            r"((%27)|('))union",
            r"exec(\s|\+)+(s|x)p\w+",
            r"union[^a-z]+select",
            r"select.*from",
            r"insert.*into",
            r"delete.*from",
            r"update.*set",
            r"drop.*table",
        ])),
        ThreatCategory(EventType.XSS, Severity.HIGH, _compile([
            r"((%3c)|<)((%2f)|/)*[a-z0-9%]+((%3e)|>)",
            r"((%3c)|<)[^\n]+((%3e)|>)",
            r"<script[^>]*>.*?</script>",
            r"<iframe[^>]*>.*?</iframe>",
            r"javascript:",
            r"on\w+\s*=",
            r"<img[^>]+src[^>]*=.*javascript:",
            r"<body[^>]*onload",
            r"<svg[^>]*onload",
        ])),
        ThreatCategory(EventType.PATH_TRAVERSAL, Severity.HIGH, _compile([
            r"\.\./",
            r"\.\.\\",
            r"\.\.%2f",
            r"\.\.%5c",
            r"\.\.%252f",
            r"\.\.%255c",
            r"\.\.%c0%af",
            r"\.\.%c1%9c",
        ]), check_user_agent=False),
        ThreatCategory(EventType.COMMAND_INJECTION, Severity.CRITICAL, _compile([
            r";.*" + SHELL_COMMANDS,
            r"\|.*" + SHELL_COMMANDS,
            r"`.*" + SHELL_COMMANDS,
            r"\$\(.*" + SHELL_COMMANDS,
            r"&&.*" + SHELL_COMMANDS,
            r"\|\|.*" + SHELL_COMMANDS,
        ])),
        ThreatCategory(EventType.SUSPICIOUS_UA, Severity.MEDIUM, _compile([
            r"scanner|crawler|spider|scraper|nikto|sqlmap|nmap|masscan|burp|zap|dirbuster|gobuster|wfuzz|ffuf",
            r"python-requests|curl/|wget|libwww-perl|go-http-client",
        ])),
    )

    # Detections at these severities count toward auto-blocking
    BLOCKING_SEVERITIES = (Severity.CRITICAL, Severity.HIGH)
    BLOCK_THRESHOLD = 3
    BLOCK_WINDOW_HOURS = 1

    def __init__(self, events=None, blocklist=None):
        self.events = events
        self.blocklist = blocklist

    def analyze(self, url: str, user_agent: Optional[str] = None, method: Optional[str] = None) -> ThreatResult:
        """
        Match a request against every category.
        Returns the first hit, or a not-detected result.
        """
        full_url = (url or "").lower()
        ua = (user_agent or "").lower()

        for category in self.CATEGORIES:
            for pattern in category.patterns:
                if (category.check_url and pattern.search(full_url)) or \
                        (category.check_user_agent and pattern.search(ua)):
                    return ThreatResult(
                        detected=True,
                        threat_type=category.event_type,
                        severity=category.severity,
                        pattern=pattern.pattern,
                    )
        return NOT_DETECTED

    def inspect(self, record: LogRecord) -> ThreatResult:
        """Analyze a record and fire the best-effort side effects of a hit."""
        result = self.analyze(record.url, record.user_agent, record.method)
        if not result.detected:
            return result

        if self.events is not None:
            best_effort(
                self.events.record,
                result.threat_type,
                record.ip,
                proxy_host_id=record.proxy_host_id,
                path=record.url,
                user_agent=record.user_agent,
                details={
                    "severity": result.severity.value,
                    "pattern": result.pattern,
                    "method": (record.method or "GET").upper(),
                },
            )

        if self.blocklist is not None and result.severity in self.BLOCKING_SEVERITIES:
            best_effort(
                self.blocklist.consider,
                record.ip,
                f"{result.threat_type.value} detected",
                threshold_count=self.BLOCK_THRESHOLD,
                window_hours=self.BLOCK_WINDOW_HOURS,
                default=False,
            )
        return result
