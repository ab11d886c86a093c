import logging
import threading
import time
from typing import Callable, Dict, Optional

from trafficwatch.ingestion.parser import extract_proxy_host_id

log = logging.getLogger(__name__)


class HostResolver:
    """
    Maps an incoming record to a proxy host id: explicit id first, then the
    log filename, then a domain lookup against the proxy manager.
    """

    def __init__(self, client=None, cache_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.cache_seconds = cache_seconds
        self.clock = clock
        self._domains: Dict[str, int] = {}
        self._loaded_at: Optional[float] = None
        self._lock = threading.Lock()

    def domain_map(self) -> Dict[str, int]:
        if self.client is None:
            return {}
        with self._lock:
            now = self.clock()
            if self._loaded_at is None or now - self._loaded_at >= self.cache_seconds:
                domains = {}
                for host in self.client.get_proxy_hosts():
                    for domain in host.get("domain_names") or []:
                        domains[domain.lower()] = host["id"]
                self._domains = domains
                self._loaded_at = now
                log.debug("Loaded %d proxy host domain(s)", len(domains))
            return dict(self._domains)

    def resolve(
        self,
        proxy_host_id: Optional[int] = None,
        filename: Optional[str] = None,
        host: Optional[str] = None,
    ) -> Optional[int]:
        if proxy_host_id:
            return proxy_host_id
        if filename:
            from_name = extract_proxy_host_id(filename)
            if from_name is not None:
                return from_name
        if host:
            return self.domain_map().get(host.split(":")[0].lower())
        return None
