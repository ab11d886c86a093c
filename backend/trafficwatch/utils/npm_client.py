import logging
from typing import Dict, List, Optional

import requests

log = logging.getLogger(__name__)


class NPMClient:
    """Read-only client for the reverse-proxy manager's REST API."""

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self.token: Optional[str] = None

    def login(self) -> bool:
        try:
            response = self.session.post(
                f"{self.base_url}/api/tokens",
                json={"identity": self.username, "secret": self.password},
                timeout=self.timeout,
                allow_redirects=False,
            )
            response.raise_for_status()
            self.token = response.json()["token"]
        except (requests.RequestException, KeyError, ValueError) as exc:
            log.error("NPM login failed: %s", exc)
            self.token = None
            return False

        self.session.headers["Authorization"] = f"Bearer {self.token}"
        return True

    def get_proxy_hosts(self) -> List[Dict]:
        """All proxy hosts, or an empty list when the API is unreachable."""
        if not self.token and self.username and not self.login():
            return []
        try:
            response = self.session.get(
                f"{self.base_url}/api/nginx/proxy-hosts",
                timeout=self.timeout,
                allow_redirects=False,
            )
            response.raise_for_status()
            hosts = response.json()
        except (requests.RequestException, ValueError) as exc:
            log.error("Failed to fetch proxy hosts: %s", exc)
            return []
        return hosts if isinstance(hosts, list) else []
