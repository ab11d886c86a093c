"""
Incremental tailer for the reverse-proxy manager's log directory.

Every tick re-lists the directory, so new hosts and rotated files are picked
up without a restart. Files are polled in chunks of ``max_concurrent_files``:
chunks run one after another, files inside a chunk run concurrently in
worker threads. That caps the number of simultaneous DB transactions.
"""
import asyncio
import logging
import os
from typing import List, Optional

from trafficwatch.ingestion.parser import extract_proxy_host_id
from trafficwatch.ingestion.pipeline import IngestionPipeline
from trafficwatch.ingestion.state import IngestionContext
from trafficwatch.schemas import FileResult

log = logging.getLogger(__name__)

TOP_HOSTS_REPORTED = 10


def is_access_log(name: str) -> bool:
    return "access.log" in name and not name.endswith(".gz") and "error.log" not in name


class LogWatcher:
    def __init__(
        self,
        log_dir: str,
        pipeline: IngestionPipeline,
        context: Optional[IngestionContext] = None,
        interval: float = 1.0,
        max_concurrent_files: int = 5,
        stats_interval: float = 300.0,
    ):
        self.log_dir = log_dir
        self.pipeline = pipeline
        self.context = context or IngestionContext(stats=pipeline.stats)
        self.interval = interval
        self.max_concurrent_files = max_concurrent_files
        self.stats_interval = stats_interval
        self._stop = asyncio.Event()

    def _scan(self) -> List[str]:
        with os.scandir(self.log_dir) as entries:
            return sorted(
                entry.path for entry in entries
                if is_access_log(entry.name) and entry.is_file()
            )

    def discover(self) -> List[str]:
        """Paths of every eligible access log currently in the directory."""
        try:
            return self._scan()
        except FileNotFoundError:
            log.warning("Log directory %s does not exist", self.log_dir)
        except OSError as exc:
            log.error("Cannot list log directory %s: %s", self.log_dir, exc)
        return []

    def poll(self, path: str) -> Optional[FileResult]:
        """
        Read whatever was appended to ``path`` since the last poll.

        A shrunken file is treated as rotated and re-read from the start.
        The trailing line is withheld until its newline is written.
        """
        cursor = self.context.cursor(path)
        name = os.path.basename(path)
        try:
            size = os.path.getsize(path)
            if size < cursor.byte_offset:
                log.info("Rotation detected for %s (size %d < offset %d), re-reading from start",
                         name, size, cursor.byte_offset)
                cursor.reset()
            if size == cursor.byte_offset:
                cursor.last_known_size = size
                return None

            proxy_host_id = extract_proxy_host_id(name)
            if proxy_host_id is None:
                # Fallback/default logs are not attributable to a host
                cursor.advance(size, size)
                return None

            with open(path, "rb") as f:
                f.seek(cursor.byte_offset)
                data = f.read(size - cursor.byte_offset)
        except FileNotFoundError:
            self.context.forget(path)
            return None
        except OSError as exc:
            log.error("Failed to read %s: %s", name, exc)
            return None

        last_newline = data.rfind(b"\n")
        if last_newline < 0:
            return None
        cursor.advance(cursor.byte_offset + last_newline + 1, size)

        text = data[:last_newline + 1].decode("utf-8", errors="replace")
        lines = [line for line in text.split("\n") if line.strip()]
        if not lines:
            return None
        return self.pipeline.process_lines(lines, proxy_host_id, source=name)

    async def tick(self) -> List[FileResult]:
        try:
            paths = self._scan()
        except OSError as exc:
            # Keep cursors; the directory may be back next tick
            log.error("Cannot list log directory %s: %s", self.log_dir, exc)
            return []
        present = set(paths)
        for path in list(self.context.cursors):
            if path not in present:
                self.context.forget(path)

        results = []
        for start in range(0, len(paths), self.max_concurrent_files):
            chunk = paths[start:start + self.max_concurrent_files]
            outcomes = await asyncio.gather(
                *(asyncio.to_thread(self.poll, path) for path in chunk),
                return_exceptions=True,
            )
            for path, outcome in zip(chunk, outcomes):
                if isinstance(outcome, Exception):
                    log.error("Unexpected failure while polling %s: %s", path, outcome, exc_info=outcome)
                elif outcome is not None:
                    results.append(outcome)
        return results

    def report_stats(self):
        snapshot = self.context.stats.snapshot()
        log.info(
            "Stats: %d lines processed, %d errors, %d parse failures, %d consecutive errors, last at %s",
            snapshot.total_lines_processed, snapshot.total_errors, snapshot.total_parse_failures,
            snapshot.consecutive_errors, snapshot.last_processed_time,
        )
        top = sorted(snapshot.proxy_host_stats.items(), key=lambda item: item[1].count, reverse=True)
        for host_id, host in top[:TOP_HOSTS_REPORTED]:
            log.info("  proxy host %s: %d requests, last %s", host_id, host.count, host.last_access)

    async def _sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; True once a stop was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _report_periodically(self):
        while not await self._sleep(self.stats_interval):
            self.report_stats()

    async def run(self):
        log.info("Watching %s every %.1fs (max %d files at once)",
                 self.log_dir, self.interval, self.max_concurrent_files)
        reporter = asyncio.create_task(self._report_periodically())
        try:
            while not self._stop.is_set():
                try:
                    await self.tick()
                except Exception as exc:
                    log.error("Watch tick failed: %s", exc, exc_info=True)
                if await self._sleep(self.interval):
                    break
        finally:
            self._stop.set()
            await reporter
            self.report_stats()
            log.info("Watcher stopped")

    def stop(self):
        self._stop.set()
