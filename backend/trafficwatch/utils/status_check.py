"""
Reachability checks for every proxy host known to the proxy manager.
Results land in ``proxy_host_status``, one row per host.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import requests
from sqlalchemy.orm import sessionmaker

from trafficwatch.models import ProxyHostStatus
from trafficwatch.storage.upserts import upsert
from trafficwatch.utils.timeutil import utcnow

log = logging.getLogger(__name__)

USER_AGENT = "Nginx-Proxy-Manager-Status-Checker/1.0"
PAUSE_BETWEEN_HOSTS = 0.5


@dataclass(frozen=True)
class StatusResult:
    status_code: Optional[int] = None
    error: Optional[str] = None


def check_host(domain: str, ssl_forced: bool = False, timeout: float = 10.0) -> StatusResult:
    """HEAD the host's root. Never raises; failures come back as ``error``."""
    scheme = "https" if ssl_forced else "http"
    try:
        response = requests.head(
            f"{scheme}://{domain}",
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            allow_redirects=False,
        )
    except requests.Timeout:
        return StatusResult(error="Timeout")
    except requests.RequestException as exc:
        return StatusResult(error=str(exc) or "Connection failed")
    return StatusResult(status_code=response.status_code)


def record_status(session_factory: sessionmaker, proxy_host_id: int, result: StatusResult):
    with session_factory() as session:
        with session.begin():
            session.execute(upsert(
                ProxyHostStatus.__table__,
                {
                    "proxy_host_id": proxy_host_id,
                    "status_code": result.status_code,
                    "status_error": result.error[:255] if result.error else None,
                    "checked_at": utcnow(),
                },
                keys=("proxy_host_id",),
                dialect_name=session.get_bind().dialect.name,
                replaces=("status_code", "status_error", "checked_at"),
            ))


def check_all_hosts(
    client,
    session_factory: sessionmaker,
    timeout: float = 10.0,
    check: Callable[..., StatusResult] = check_host,
    sleep: Callable[[float], None] = time.sleep,
) -> List[StatusResult]:
    hosts = client.get_proxy_hosts()
    log.info("Checking %d proxy host(s)", len(hosts))

    results = []
    for index, host in enumerate(hosts):
        domains = host.get("domain_names") or []
        if not host.get("enabled") or not domains:
            result = StatusResult(error="disabled")
        else:
            log.info("[%d/%d] checking %s", index + 1, len(hosts), domains[0])
            result = check(domains[0], bool(host.get("ssl_forced")), timeout=timeout)
            if index < len(hosts) - 1:
                sleep(PAUSE_BETWEEN_HOSTS)

        try:
            record_status(session_factory, host["id"], result)
        except Exception as exc:
            log.error("Failed to store status for proxy host %s: %s", host.get("id"), exc)

        if result.status_code:
            log.info("  proxy host %s: HTTP %d", host.get("id"), result.status_code)
        else:
            log.info("  proxy host %s: %s", host.get("id"), result.error)
        results.append(result)
    return results
