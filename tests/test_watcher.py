import asyncio
import os
import threading
import time
from datetime import timedelta

import pytest

from conftest import primary_line
from trafficwatch.ingestion.pipeline import IngestionPipeline
from trafficwatch.ingestion.state import FileCursor, IngestionContext
from trafficwatch.ingestion.watcher import LogWatcher
from trafficwatch.models import AccessLog, RealtimeTraffic
from trafficwatch.schemas import BatchResult, FileResult
from trafficwatch.storage.persister import BatchPersister
from trafficwatch.utils.timeutil import utcnow


def recent(minutes=5):
    return (utcnow() - timedelta(minutes=minutes)).replace(second=10, microsecond=0)


class SlowPipeline:
    """Counts how many files are inside process_lines at the same time."""

    def __init__(self, stats):
        self.stats = stats
        self.active = 0
        self.peak = 0
        self.calls = 0
        self._lock = threading.Lock()

    def process_lines(self, lines, proxy_host_id, source=""):
        with self._lock:
            self.active += 1
            self.calls += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.05)
        with self._lock:
            self.active -= 1
        return FileResult(source=source, proxy_host_id=proxy_host_id, parsed=len(lines))


class TestLogWatcher:
    """Discovery, incremental reads and rotation against a real directory"""

    @pytest.fixture(autouse=True)
    def _setup(self, tmp_path, session_factory, stats):
        self.log_dir = tmp_path / "logs"
        self.log_dir.mkdir()
        self.session_factory = session_factory
        self.pipeline = IngestionPipeline(BatchPersister(session_factory, stats), batch_size=100)
        self.context = IngestionContext(stats=stats)
        self.watcher = LogWatcher(str(self.log_dir), self.pipeline, context=self.context,
                                  interval=0.01, max_concurrent_files=2)

    def write(self, name, lines, mode="w"):
        path = self.log_dir / name
        with open(path, mode, encoding="utf-8") as f:
            f.write("".join(line + "\n" for line in lines))
        return str(path)

    def rows(self, proxy_host_id):
        with self.session_factory() as session:
            return session.query(AccessLog).filter_by(proxy_host_id=proxy_host_id).all()

    def test_discover_filters_names(self):
        for name in ("proxy-host-1_access.log", "proxy-host-1_access.log.2.gz",
                     "proxy-host-1_error.log", "fallback_access.log", "notes.txt"):
            (self.log_dir / name).write_text("")
        (self.log_dir / "nested_access.log").mkdir()

        names = [os.path.basename(p) for p in self.watcher.discover()]
        assert names == ["fallback_access.log", "proxy-host-1_access.log"]

    def test_missing_directory(self, tmp_path):
        watcher = LogWatcher(str(tmp_path / "absent"), self.pipeline)
        assert watcher.discover() == []

    def test_end_to_end_tick(self):
        ts = recent()
        self.write("proxy-host-7_access.log", [
            primary_line(ts, url="/one"),
            primary_line(ts, url="/two"),
            "%%% not a log line %%%",
        ])

        results = asyncio.run(self.watcher.tick())

        assert len(results) == 1
        result = results[0]
        assert result.proxy_host_id == 7
        assert result.parse_fail_count == 1
        assert result.failed_samples == ["%%% not a log line %%%"]
        assert result.success_count == 2
        assert sorted(r.url for r in self.rows(7)) == ["/one", "/two"]
        with self.session_factory() as session:
            bucket = session.query(RealtimeTraffic).filter_by(proxy_host_id=7).one()
        assert bucket.request_count == 2
        assert self.context.stats.snapshot().total_parse_failures == 1

    def test_only_appended_bytes_are_read(self):
        ts = recent()
        path = self.write("proxy-host-2_access.log", [primary_line(ts, url="/a")])
        assert self.watcher.poll(path).parsed == 1
        assert self.watcher.poll(path) is None

        self.write("proxy-host-2_access.log", [primary_line(ts, url="/b")], mode="a")
        result = self.watcher.poll(path)
        assert result.parsed == 1
        assert self.context.cursor(path).byte_offset == os.path.getsize(path)
        assert len(self.rows(2)) == 2

    def test_rotation_rereads_from_start(self):
        ts = recent()
        path = self.write("proxy-host-3_access.log", [primary_line(ts, url=f"/old/{n}") for n in range(3)])
        self.watcher.poll(path)

        self.write("proxy-host-3_access.log", [primary_line(ts, url="/new")])
        result = self.watcher.poll(path)

        assert result.parsed == 1
        assert self.context.cursor(path).byte_offset == os.path.getsize(path)
        assert len(self.rows(3)) == 4

    def test_partial_trailing_line_is_withheld(self):
        ts = recent()
        full = primary_line(ts, url="/complete")
        partial = primary_line(ts, url="/later")
        path = str(self.log_dir / "proxy-host-4_access.log")
        with open(path, "w", encoding="utf-8") as f:
            f.write(full + "\n" + partial[:30])

        assert self.watcher.poll(path).parsed == 1
        assert self.context.cursor(path).byte_offset == len(full) + 1

        with open(path, "a", encoding="utf-8") as f:
            f.write(partial[30:] + "\n")
        result = self.watcher.poll(path)
        assert result.parsed == 1
        assert result.parse_fail_count == 0
        assert sorted(r.url for r in self.rows(4)) == ["/complete", "/later"]

    def test_fallback_log_is_skipped(self):
        path = self.write("fallback_access.log", [primary_line(recent())])
        assert self.watcher.poll(path) is None
        assert self.context.cursor(path).byte_offset == os.path.getsize(path)
        with self.session_factory() as session:
            assert session.query(AccessLog).count() == 0

    def test_vanished_file_cursor_is_dropped(self):
        path = self.write("proxy-host-5_access.log", [primary_line(recent())])
        asyncio.run(self.watcher.tick())
        assert path in self.context.cursors

        os.remove(path)
        asyncio.run(self.watcher.tick())
        assert path not in self.context.cursors

    def test_many_files_in_chunks(self):
        ts = recent()
        for host in range(1, 6):
            self.write(f"proxy-host-{host}_access.log", [primary_line(ts, url=f"/h{host}")])

        results = asyncio.run(self.watcher.tick())
        assert sorted(r.proxy_host_id for r in results) == [1, 2, 3, 4, 5]
        snapshot = self.context.stats.snapshot()
        assert snapshot.total_lines_processed == 5
        assert set(snapshot.proxy_host_stats) == {1, 2, 3, 4, 5}

    def test_run_stops_on_request(self):
        async def main():
            task = asyncio.create_task(self.watcher.run())
            await asyncio.sleep(0.05)
            self.watcher.stop()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(main())

    def test_directory_that_is_a_file(self, tmp_path):
        not_a_dir = tmp_path / "access.log"
        not_a_dir.write_text("")
        watcher = LogWatcher(str(not_a_dir), self.pipeline)
        assert watcher.discover() == []
        assert asyncio.run(watcher.tick()) == []

    def test_listing_failure_keeps_cursors(self, monkeypatch):
        path = self.write("proxy-host-6_access.log", [primary_line(recent())])
        asyncio.run(self.watcher.tick())
        offset = self.context.cursor(path).byte_offset

        def denied():
            raise PermissionError(13, "Permission denied", str(self.log_dir))

        monkeypatch.setattr(self.watcher, "_scan", denied)
        assert asyncio.run(self.watcher.tick()) == []
        assert self.context.cursor(path).byte_offset == offset

    def test_run_survives_bad_directory_and_failing_ticks(self, tmp_path):
        not_a_dir = tmp_path / "access.log"
        not_a_dir.write_text("")
        watcher = LogWatcher(str(not_a_dir), self.pipeline, interval=0.01)
        ticks = []
        real_tick = watcher.tick

        async def flaky_tick():
            ticks.append(1)
            if len(ticks) == 2:
                raise RuntimeError("boom")
            return await real_tick()

        watcher.tick = flaky_tick

        async def main():
            task = asyncio.create_task(watcher.run())
            await asyncio.sleep(0.1)
            assert not task.done()
            watcher.stop()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(main())
        assert len(ticks) > 2

    def test_polls_never_exceed_concurrency_limit(self):
        pipeline = SlowPipeline(self.context.stats)
        watcher = LogWatcher(str(self.log_dir), pipeline, context=self.context, max_concurrent_files=2)
        for host in range(1, 8):
            self.write(f"proxy-host-{host}_access.log", [primary_line(recent())])

        results = asyncio.run(watcher.tick())
        assert len(results) == 7
        assert pipeline.calls == 7
        assert 1 <= pipeline.peak <= 2


class FakePersister:
    def __init__(self, stats, fail_on=()):
        self.stats = stats
        self.fail_on = fail_on
        self.batches = []

    def persist(self, records, proxy_host_id):
        self.batches.append(len(records))
        if len(self.batches) in self.fail_on:
            raise RuntimeError("unexpected")
        return BatchResult(success_count=len(records), total_count=len(records))


class TestIngestionPipeline:

    def test_batches_are_sequential_and_bounded(self, stats):
        persister = FakePersister(stats)
        pipeline = IngestionPipeline(persister, batch_size=2)
        lines = [primary_line(recent(), url=f"/{n}") for n in range(5)]

        result = pipeline.process_lines(lines, 9, source="test")
        assert persister.batches == [2, 2, 1]
        assert result.success_count == 5

    def test_failed_batch_does_not_stop_the_rest(self, stats):
        persister = FakePersister(stats, fail_on=(1,))
        pipeline = IngestionPipeline(persister, batch_size=2)
        lines = [primary_line(recent(), url=f"/{n}") for n in range(4)]

        result = pipeline.process_lines(lines, 9)
        assert persister.batches == [2, 2]
        assert result.error_count == 2
        assert result.success_count == 2

    def test_failure_samples_are_bounded(self, stats):
        pipeline = IngestionPipeline(FakePersister(stats))
        result = pipeline.process_lines(["x" * 500] * 5 + [""], 9)
        assert result.lines == 5
        assert result.parse_fail_count == 5
        assert len(result.failed_samples) == 3
        assert all(len(s) == 200 for s in result.failed_samples)
        assert stats.snapshot().total_parse_failures == 5


class TestFileCursor:

    def test_offset_never_moves_backwards(self):
        cursor = FileCursor(path="a")
        cursor.advance(100, 100)
        with pytest.raises(ValueError):
            cursor.advance(50, 100)
        cursor.reset()
        cursor.advance(50, 50)
        assert cursor.byte_offset == 50
