"""Chunked bulk import of traffic density CSV files into Redis.

The importer streams a CSV file through pandas in fixed-size chunks and, per chunk:
- checks the duplicate ceiling (skip the whole chunk once the prefix already holds enough records;
  the prefix is counted once per job and the count advances by each committed chunk);
- parses rows into `TrafficObservation` (bad rows are skipped or abort the job, per config);
- writes each record hash plus its lookup-set memberships through one pipeline round trip;
- reports the chunk outcome to a `ChunkListener`.

Chunk boundaries are the commit points. There is no cross-chunk transaction: a failed chunk does
not undo earlier chunks, it only marks the job FAILED.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

import pandas as pd
import redis
from pydantic import BaseModel

from trafficdensity.errors import (
    PartialChunkFailureError,
    RowParseError,
    SourceFileNotFoundError,
    StoreUnavailableError,
    classify_store_error,
)
from trafficdensity.records.schemas import CSV_COLUMNS, TrafficObservation
from trafficdensity.settings import AppConfig, get_config
from trafficdensity.store.lookup import count_records, latitude_key, longitude_key, record_index_key

logger = logging.getLogger(__name__)


class ChunkStatus(str, Enum):
    COMMITTED = "committed"
    SKIPPED = "skipped"
    FAILED = "failed"


class JobStatus(str, Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ChunkEvent:
    """Outcome of one chunk.

    `rows_rejected` counts row-level parse skips inside an otherwise healthy chunk; a chunk-level
    hard error is `status == FAILED` with `reason` set.
    """

    job_id: str
    chunk_index: int
    status: ChunkStatus
    rows_read: int
    rows_committed: int = 0
    rows_skipped: int = 0
    rows_rejected: int = 0
    rows_failed: int = 0
    reason: Optional[str] = None
    error_code: Optional[str] = None


class ImportReport(BaseModel):
    job_id: str
    path: str
    status: JobStatus
    rows_read: int = 0
    rows_committed: int = 0
    rows_skipped: int = 0
    rows_rejected: int = 0
    rows_failed: int = 0
    chunks_committed: int = 0
    chunks_skipped: int = 0
    chunks_failed: int = 0
    started_at: datetime
    finished_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED


class ChunkListener:
    """Callbacks around an import job. The base class ignores every event."""

    def before_job(self, job_id: str, path: Path) -> None:
        return None

    def after_chunk(self, event: ChunkEvent) -> None:
        return None

    def after_chunk_error(self, event: ChunkEvent) -> None:
        return None

    def after_job(self, report: ImportReport) -> None:
        return None


class LoggingChunkListener(ChunkListener):
    def before_job(self, job_id: str, path: Path) -> None:
        logger.info("Job with id %s is about to start at %s (source=%s)", job_id, datetime.now(), path)

    def after_chunk(self, event: ChunkEvent) -> None:
        if event.status == ChunkStatus.SKIPPED:
            logger.info(
                "Chunk %d of job %s skipped: %s", event.chunk_index, event.job_id, event.reason
            )
            return
        logger.info(
            "Chunk %d of job %s committed: read=%d committed=%d rejected=%d",
            event.chunk_index,
            event.job_id,
            event.rows_read,
            event.rows_committed,
            event.rows_rejected,
        )

    def after_chunk_error(self, event: ChunkEvent) -> None:
        logger.warning("Error in chunk %d for job %s: %s", event.chunk_index, event.job_id, event.reason)

    def after_job(self, report: ImportReport) -> None:
        logger.info(
            "Job %s completed at %s, execution time in millis %d, status %s",
            report.job_id,
            report.finished_at,
            int(report.elapsed_seconds * 1000),
            report.status.value,
        )


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class _BadLines:
    """Rows pandas could not split into the expected column count, pending attribution to a chunk."""

    abort: bool
    errors: list[RowParseError] = field(default_factory=list)

    def __call__(self, bad_line: list[str]) -> None:
        error = RowParseError(f"expected {len(CSV_COLUMNS)} columns, got {len(bad_line)}")
        self.errors.append(error)
        if not self.abort:
            logger.info("Skipping malformed row: %s", error)
        return None

    def drain(self) -> list[RowParseError]:
        drained, self.errors = self.errors, []
        return drained


class BulkIndexer:
    def __init__(
        self,
        client: redis.Redis,
        config: Optional[AppConfig] = None,
        listener: Optional[ChunkListener] = None,
    ) -> None:
        self.client = client
        self.config = config or get_config()
        self.listener = listener or LoggingChunkListener()
        self._known_records: Optional[int] = None

    @property
    def prefix(self) -> str:
        return self.config.index.prefix

    def _read_chunks(self, path: Path, bad_lines: _BadLines) -> Iterator[pd.DataFrame]:
        # Everything stays a string here; integer parsing belongs to TrafficObservation.from_row.
        with pd.read_csv(
            path,
            header=None,
            skiprows=1,
            names=list(CSV_COLUMNS),
            dtype=str,
            keep_default_na=False,
            chunksize=self.config.ingestion.chunk_size,
            engine="python",
            on_bad_lines=bad_lines,
            encoding="utf-8",
        ) as reader:
            yield from reader

    def _count_existing(self) -> int:
        try:
            return count_records(self.client, self.prefix)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
            raise StoreUnavailableError(f"counting records under {self.prefix}: {exc}") from exc

    def ceiling_reached(self) -> bool:
        ceiling = self.config.ingestion.ceiling
        if not ceiling:
            return False
        if self._known_records is None:
            self._known_records = self._count_existing()
        return self._known_records >= ceiling

    def _write_records(self, records: list[TrafficObservation]) -> None:
        pipe = self.client.pipeline(transaction=False)
        for record in records:
            if record.location is None:
                logger.warning(
                    "Record %s has no valid geo point (latitude=%r, longitude=%r); location omitted.",
                    record.id,
                    record.latitude,
                    record.longitude,
                )
            pipe.hset(record.record_key(self.prefix), mapping=record.to_hash())
            lookup_keys: list[str] = []
            if record.latitude:
                lookup_keys.append(latitude_key(self.prefix, record.latitude))
            if record.longitude:
                lookup_keys.append(longitude_key(self.prefix, record.longitude))
            for key in lookup_keys:
                pipe.sadd(key, record.id)
            if lookup_keys:
                pipe.sadd(record_index_key(self.prefix, record.id), *lookup_keys)
            pipe.sadd(self.prefix, record.id)
        pipe.execute()

    def _process_chunk(
        self, job_id: str, chunk_index: int, frame: pd.DataFrame, bad_lines: list[RowParseError]
    ) -> ChunkEvent:
        rows_read = len(frame) + len(bad_lines)
        abort = self.config.ingestion.parse_error_policy == "abort"

        if self.ceiling_reached():
            return ChunkEvent(
                job_id=job_id,
                chunk_index=chunk_index,
                status=ChunkStatus.SKIPPED,
                rows_read=rows_read,
                rows_skipped=rows_read,
                reason=f"{self.prefix} already holds >= {self.config.ingestion.ceiling} records",
            )

        rejected: list[RowParseError] = list(bad_lines)
        records: list[TrafficObservation] = []
        for idx, *values in frame.itertuples(index=True, name=None):
            try:
                # +2: one for the skipped header, one for 1-based line numbers.
                records.append(TrafficObservation.from_row(values, line_number=int(idx) + 2))
            except RowParseError as exc:
                if abort:
                    rejected.append(exc)
                    break
                logger.info("Skipping row: %s", exc)
                rejected.append(exc)

        if abort and rejected:
            return ChunkEvent(
                job_id=job_id,
                chunk_index=chunk_index,
                status=ChunkStatus.FAILED,
                rows_read=rows_read,
                rows_rejected=len(rejected),
                reason=str(rejected[0]),
                error_code="parse_error",
            )

        try:
            self._write_records(records)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
            raise StoreUnavailableError(f"chunk {chunk_index}: {exc}") from exc
        except redis.exceptions.RedisError as exc:
            failure = PartialChunkFailureError(f"chunk {chunk_index} write failed: {exc}", chunk_index)
            return ChunkEvent(
                job_id=job_id,
                chunk_index=chunk_index,
                status=ChunkStatus.FAILED,
                rows_read=rows_read,
                rows_rejected=len(rejected),
                rows_failed=len(records),
                reason=str(failure),
                error_code=classify_store_error(failure).code,
            )

        if self._known_records is not None:
            self._known_records += len(records)
        return ChunkEvent(
            job_id=job_id,
            chunk_index=chunk_index,
            status=ChunkStatus.COMMITTED,
            rows_read=rows_read,
            rows_committed=len(records),
            rows_rejected=len(rejected),
        )

    def import_file(self, path: str | Path, job_id: Optional[str] = None) -> ImportReport:
        source = Path(path)
        if not source.is_file():
            logger.error("CSV file not found: %s", source)
            raise SourceFileNotFoundError(f"CSV file not found: {source}")

        job_id = job_id or new_job_id()
        report = ImportReport(
            job_id=job_id,
            path=str(source),
            status=JobStatus.STARTED,
            started_at=datetime.now(timezone.utc),
        )
        start = time.perf_counter()
        self.listener.before_job(job_id, source)
        self._known_records = None

        bad_lines = _BadLines(abort=self.config.ingestion.parse_error_policy == "abort")
        chunk_index = -1
        try:
            for chunk_index, frame in enumerate(self._read_chunks(source, bad_lines)):
                event = self._process_chunk(job_id, chunk_index, frame, bad_lines.drain())
                self._tally(report, event)
                if event.status == ChunkStatus.FAILED:
                    self.listener.after_chunk_error(event)
                    if report.error is None:
                        report.error, report.error_code = event.reason, event.error_code
                    if event.error_code == "parse_error" or not self.config.ingestion.continue_on_chunk_error:
                        break
                else:
                    self.listener.after_chunk(event)

            # Malformed trailing lines after the last full chunk never reach a frame.
            leftover = bad_lines.drain()
            if leftover:
                report.rows_read += len(leftover)
                report.rows_rejected += len(leftover)
                if bad_lines.abort and report.error is None:
                    report.chunks_failed += 1
                    report.error, report.error_code = str(leftover[0]), "parse_error"
        except StoreUnavailableError as exc:
            info = classify_store_error(exc)
            logger.error("Job %s stopped, store unavailable: %s", job_id, exc)
            report.chunks_failed += 1
            report.error, report.error_code = info.message, info.code
        except redis.exceptions.RedisError as exc:
            info = classify_store_error(exc)
            logger.error("Job %s stopped after chunk %d: %s", job_id, chunk_index, exc)
            report.chunks_failed += 1
            report.error, report.error_code = info.message, info.code
        except pd.errors.EmptyDataError:
            logger.info("Job %s: %s has no data rows.", job_id, source)
        except (pd.errors.ParserError, UnicodeDecodeError, OSError) as exc:
            logger.error("Job %s stopped reading %s after chunk %d: %s", job_id, source, chunk_index, exc)
            report.chunks_failed += 1
            report.error, report.error_code = str(exc), "read_error"

        report.status = JobStatus.FAILED if report.error else JobStatus.COMPLETED
        report.finished_at = datetime.now(timezone.utc)
        report.elapsed_seconds = time.perf_counter() - start
        self.listener.after_job(report)
        return report

    @staticmethod
    def _tally(report: ImportReport, event: ChunkEvent) -> None:
        report.rows_read += event.rows_read
        report.rows_committed += event.rows_committed
        report.rows_skipped += event.rows_skipped
        report.rows_rejected += event.rows_rejected
        report.rows_failed += event.rows_failed
        if event.status == ChunkStatus.COMMITTED:
            report.chunks_committed += 1
        elif event.status == ChunkStatus.SKIPPED:
            report.chunks_skipped += 1
        else:
            report.chunks_failed += 1
