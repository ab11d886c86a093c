import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from trafficwatch.schemas import HostStats, StatsSnapshot
from trafficwatch.utils.timeutil import utcnow


@dataclass
class FileCursor:
    """Last-read byte position of one watched file."""
    path: str
    byte_offset: int = 0
    last_known_size: int = 0

    def reset(self):
        self.byte_offset = 0

    def advance(self, offset: int, size: int):
        if offset < self.byte_offset:
            raise ValueError(f"cursor for {self.path} cannot move backwards without a reset")
        self.byte_offset = offset
        self.last_known_size = size


@dataclass
class IngestionStats:
    """
    Process-wide counters. Files run in worker threads, so every update
    goes through the lock.
    """
    total_lines_processed: int = 0
    total_errors: int = 0
    total_parse_failures: int = 0
    consecutive_errors: int = 0
    last_processed_time: Optional[datetime] = None
    proxy_host_stats: Dict[int, HostStats] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_success(self, proxy_host_id: int, count: int):
        with self._lock:
            now = utcnow()
            self.total_lines_processed += count
            self.last_processed_time = now
            self.consecutive_errors = 0
            host = self.proxy_host_stats.setdefault(proxy_host_id, HostStats())
            host.count += count
            host.last_access = now

    def record_parse_failures(self, count: int):
        with self._lock:
            self.total_parse_failures += count

    def record_failure(self, count: int) -> int:
        """Count a dropped batch; returns the new consecutive-failure streak."""
        with self._lock:
            self.total_errors += count
            self.consecutive_errors += 1
            return self.consecutive_errors

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                total_lines_processed=self.total_lines_processed,
                total_errors=self.total_errors,
                total_parse_failures=self.total_parse_failures,
                consecutive_errors=self.consecutive_errors,
                last_processed_time=self.last_processed_time,
                proxy_host_stats={
                    host_id: host.model_copy() for host_id, host in self.proxy_host_stats.items()
                },
            )


class IngestionContext:
    """State owned by the poll loop: file cursors plus running stats."""

    def __init__(self, stats: Optional[IngestionStats] = None):
        self.cursors: Dict[str, FileCursor] = {}
        self.stats = stats or IngestionStats()

    def cursor(self, path: str) -> FileCursor:
        if path not in self.cursors:
            self.cursors[path] = FileCursor(path=path)
        return self.cursors[path]

    def forget(self, path: str):
        self.cursors.pop(path, None)
