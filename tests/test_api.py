import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import primary_line
from trafficwatch.api.traffic import get_host_resolver, get_pipeline, parse_log_lines
from trafficwatch.database import get_db
from trafficwatch.ingestion.host_resolver import HostResolver
from trafficwatch.ingestion.pipeline import IngestionPipeline
from trafficwatch.main import app
from trafficwatch.models import AccessLog
from trafficwatch.storage.persister import BatchPersister
from trafficwatch.utils.timeutil import utcnow


class FakeNPM:
    def __init__(self, hosts):
        self.hosts = hosts
        self.calls = 0

    def get_proxy_hosts(self):
        self.calls += 1
        return self.hosts


class TestTrafficAPI:
    """HTTP ingestion endpoints"""

    @pytest.fixture(autouse=True)
    def _setup(self, session_factory, stats):
        self.session_factory = session_factory
        pipeline = IngestionPipeline(BatchPersister(session_factory, stats))
        resolver = HostResolver(FakeNPM([
            {"id": 3, "domain_names": ["Example.com", "www.example.com"]},
        ]))

        def override_get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_pipeline] = lambda: pipeline
        app.dependency_overrides[get_host_resolver] = lambda: resolver
        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)
        yield
        app.dependency_overrides.clear()

    def rows(self):
        with self.session_factory() as session:
            return session.query(AccessLog).order_by(AccessLog.id).all()

    def test_health(self):
        response = self.client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_log_parser_accepts_lines(self):
        ts = (utcnow() - timedelta(minutes=1)).replace(microsecond=0)
        payload = {"logLines": [primary_line(ts, url="/a"), primary_line(ts, url="/b")], "proxyHostId": 5}

        response = self.client.post("/api/traffic/log-parser", json=payload)
        assert response.status_code == 200
        assert response.json() == {"success": True, "processed": 2}
        # Background task has run by the time TestClient returns
        assert {(r.proxy_host_id, r.url) for r in self.rows()} == {(5, "/a"), (5, "/b")}

    def test_log_parser_resolves_filename_and_domain(self):
        ts = (utcnow() - timedelta(minutes=1)).replace(microsecond=0)
        self.client.post("/api/traffic/log-parser",
                         json={"logLine": primary_line(ts, url="/f"), "filename": "proxy-host-8_access.log"})
        self.client.post("/api/traffic/log-parser",
                         json={"logLine": primary_line(ts, url="/d"), "host": "EXAMPLE.com"})

        assert {(r.proxy_host_id, r.url) for r in self.rows()} == {(8, "/f"), (3, "/d")}

    def test_log_parser_resolves_host_off_the_event_loop(self):
        on_loop = []
        resolver = app.dependency_overrides[get_host_resolver]()
        real_resolve = resolver.resolve

        def resolve(*args):
            try:
                asyncio.get_running_loop()
                on_loop.append(True)
            except RuntimeError:
                on_loop.append(False)
            return real_resolve(*args)

        resolver.resolve = resolve
        ts = (utcnow() - timedelta(minutes=1)).replace(microsecond=0)
        response = self.client.post("/api/traffic/log-parser",
                                    json={"logLine": primary_line(ts), "host": "example.com"})

        assert response.status_code == 200
        assert on_loop == [False]
        assert not asyncio.iscoroutinefunction(parse_log_lines)

    def test_log_parser_rejects_empty_and_unknown_host(self):
        assert self.client.post("/api/traffic/log-parser", json={"proxyHostId": 1}).status_code == 400
        response = self.client.post("/api/traffic/log-parser", json={"logLine": "x", "host": "nope.org"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Unknown proxy host"

    def test_webhook_uses_forwarded_ip(self):
        response = self.client.post(
            "/api/traffic/webhook",
            json={"proxyHostId": 2, "path": "/hook", "status": 404, "response_time_ms": 12, "bytes_sent": 7},
            headers={"X-Forwarded-For": "9.9.9.9, 10.0.0.1", "User-Agent": "hook-client/1.0"},
        )
        assert response.status_code == 200
        assert response.json()["success"] is True

        row = self.rows()[0]
        assert row.ip_address == "9.9.9.9"
        assert row.url == "/hook"
        assert row.status_code == 404
        assert row.response_time_ms == 12
        assert row.bytes_sent == 7
        assert row.user_agent == "hook-client/1.0"

    def test_webhook_real_ip_then_body(self):
        self.client.post("/api/traffic/webhook", json={"proxyHostId": 2, "url": "/r"},
                         headers={"X-Real-IP": "8.8.4.4"})
        self.client.post("/api/traffic/webhook", json={"proxyHostId": 2, "url": "/b", "ipAddress": "7.7.7.7"})
        assert [r.ip_address for r in self.rows()] == ["8.8.4.4", "7.7.7.7"]

    def test_collect_requires_url(self):
        response = self.client.post("/api/traffic/collect", json={"proxyHostId": 2})
        assert response.status_code == 400
        assert response.json()["detail"] == "url is required"

    def test_collect_by_domain(self):
        response = self.client.post("/api/traffic/collect",
                                    json={"host": "www.example.com", "url": "/c", "statusCode": 201})
        assert response.status_code == 200
        row = self.rows()[0]
        assert (row.proxy_host_id, row.url, row.status_code) == (3, "/c", 201)

    def test_collect_unknown_host(self):
        response = self.client.post("/api/traffic/collect", json={"host": "other.net", "url": "/"})
        assert response.status_code == 400
