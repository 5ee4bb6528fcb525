from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from trafficdensity.errors import SourceFileNotFoundError
from trafficdensity.ingestion.bulk_indexer import (
    BulkIndexer,
    ChunkListener,
    ImportReport,
    JobStatus,
    new_job_id,
)
from trafficdensity.settings import AppConfig
from trafficdensity.store.connection import RedisStore

logger = logging.getLogger(__name__)


class ImportJobRunner:
    """Runs import jobs synchronously and keeps their reports for the lifetime of the runner.

    Reports are held in memory only; nothing about a job run is persisted to the store.
    """

    def __init__(
        self,
        store: RedisStore,
        config: Optional[AppConfig] = None,
        listener: Optional[ChunkListener] = None,
    ) -> None:
        self.store = store
        self.config = config or store.config
        self.listener = listener
        self._reports: dict[str, ImportReport] = {}

    def submit_import(self, path: str | Path | None = None) -> tuple[str, JobStatus]:
        source = Path(path) if path is not None else self.config.ingestion.source_csv
        if not source.is_file():
            logger.error("CSV file not found: %s", source)
            raise SourceFileNotFoundError(f"CSV file not found: {source}")

        job_id = new_job_id()
        logger.info("Starting batch job %s with file: %s", job_id, source)
        with self.store.client() as client:
            indexer = BulkIndexer(client, self.config, listener=self.listener)
            report = indexer.import_file(source.resolve(), job_id=job_id)
        self._reports[job_id] = report
        logger.info("Job %s completed with status: %s", job_id, report.status.value)
        return job_id, report.status

    def get_report(self, job_id: str) -> ImportReport:
        try:
            return self._reports[job_id]
        except KeyError:
            raise KeyError(f"Unknown import job: {job_id}") from None

    def reports(self) -> list[ImportReport]:
        return sorted(self._reports.values(), key=lambda r: r.started_at)
