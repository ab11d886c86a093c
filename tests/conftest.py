from datetime import datetime

import pytest
from sqlalchemy import create_engine

from trafficwatch.database import build_session_factory, create_schema
from trafficwatch.ingestion.state import IngestionStats

MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

# Fixed wall clock shared by storage and detection tests
NOW = datetime(2026, 3, 14, 12, 30, 30)


class Clock:
    """Settable clock for components that take a ``clock`` callable."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


def format_ts(dt: datetime) -> str:
    return f"{dt.day:02d}/{MONTH_NAMES[dt.month - 1]}/{dt.year}:{dt:%H:%M:%S} +0000"


def primary_line(ts: datetime, url="/", ip="1.2.3.4", status=200, method="GET",
                 user_agent="Mozilla/5.0", length=154, host="example.com"):
    return (
        f'[{format_ts(ts)}] - {status} {status} - {method} https {host} "{url}" '
        f'[Client {ip}] [Length {length}] [Gzip -] [Sent-to 10.0.0.2] "-" "{user_agent}"'
    )


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'traffic.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def stats():
    return IngestionStats()


@pytest.fixture
def clock():
    return Clock()
