import logging
from typing import Iterable, List, Optional

from trafficwatch.ingestion.parser import Matched, parse_line
from trafficwatch.ingestion.state import IngestionStats
from trafficwatch.schemas import FileResult, LogRecord
from trafficwatch.storage.persister import BatchPersister

log = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 3
FAILED_SAMPLE_WIDTH = 200


class IngestionPipeline:
    """
    Parse -> screen -> persist for a block of raw lines from one source.

    Batches of one source are processed strictly in order; a failing batch
    is counted and the next one still runs.
    """

    def __init__(
        self,
        persister: BatchPersister,
        screener=None,
        batch_size: int = 100,
        stats: Optional[IngestionStats] = None,
    ):
        self.persister = persister
        self.screener = screener
        self.batch_size = batch_size
        self.stats = stats or persister.stats

    def parse_lines(self, lines: Iterable[str], proxy_host_id: Optional[int], result: FileResult) -> List[LogRecord]:
        records = []
        for line in lines:
            if not line.strip():
                continue
            result.lines += 1
            parsed = parse_line(line, proxy_host_id)
            if isinstance(parsed, Matched):
                records.append(parsed.record)
            else:
                result.parse_fail_count += 1
                if len(result.failed_samples) < FAILED_SAMPLE_LIMIT:
                    result.failed_samples.append(parsed.line[:FAILED_SAMPLE_WIDTH])
        result.parsed = len(records)
        return records

    def process_lines(self, lines: Iterable[str], proxy_host_id: Optional[int], source: str = "<input>") -> FileResult:
        result = FileResult(source=source, proxy_host_id=proxy_host_id)
        records = self.parse_lines(lines, proxy_host_id, result)

        if result.parse_fail_count:
            self.stats.record_parse_failures(result.parse_fail_count)
            log.warning("%s: %d of %d line(s) did not parse", source, result.parse_fail_count, result.lines)
            for sample in result.failed_samples:
                log.warning("  unparsed: %s", sample)

        self._persist_batches(records, proxy_host_id, source, result)

        if records:
            log.info(
                "%s: %d parsed, %d stored, %d skipped (host %s)",
                source, result.parsed, result.success_count, result.skipped_count, proxy_host_id,
            )
        return result

    def process_records(self, records: List[LogRecord], proxy_host_id: Optional[int], source: str = "<input>") -> FileResult:
        """Screen and persist records that arrived already structured."""
        result = FileResult(source=source, proxy_host_id=proxy_host_id, lines=len(records), parsed=len(records))
        self._persist_batches(records, proxy_host_id, source, result)
        return result

    def _persist_batches(self, records: List[LogRecord], proxy_host_id: Optional[int], source: str, result: FileResult):
        for start in range(0, len(records), self.batch_size):
            batch = records[start:start + self.batch_size]
            try:
                if self.screener is not None:
                    self.screener.screen_batch(batch)
                outcome = self.persister.persist(batch, proxy_host_id)
            except Exception as exc:
                result.error_count += len(batch)
                log.error("%s: batch at record %d failed: %s", source, start, exc, exc_info=True)
                continue
            result.success_count += outcome.success_count
            result.skipped_count += outcome.skipped_count
            result.error_count += outcome.total_count - outcome.success_count - outcome.skipped_count
