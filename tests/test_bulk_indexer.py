from __future__ import annotations

from pathlib import Path

import pytest
import redis

from trafficdensity.errors import SourceFileNotFoundError
from trafficdensity.ingestion.bulk_indexer import BulkIndexer, ChunkListener, ChunkStatus, JobStatus

HEADER = "DATE_TIME,LATITUDE,LONGITUDE,GEOHASH,MINIMUM_SPEED,MAXIMUM_SPEED,AVERAGE_SPEED,NUMBER_OF_VEHICLES\n"


class _RecordingListener(ChunkListener):
    def __init__(self) -> None:
        self.events = []
        self.errors = []
        self.reports = []

    def after_chunk(self, event) -> None:
        self.events.append(event)

    def after_chunk_error(self, event) -> None:
        self.errors.append(event)

    def after_job(self, report) -> None:
        self.reports.append(report)


def _write_csv(path: Path, rows: list[str]) -> Path:
    path.write_text(HEADER + "".join(f"{row}\n" for row in rows), encoding="utf-8")
    return path


def _row(i: int, lat: str = "41.08", lon: str = "28.97", speed: str = "50") -> str:
    return f"2024-12-01 00:{i:02d}:00,{lat},{lon},sxk9g,10,90,{speed},{i}"


def _ingestion(config, **update):
    return config.model_copy(update={"ingestion": config.ingestion.model_copy(update=update)})


def test_missing_file_fails_before_any_chunk(fake_redis, config, tmp_path) -> None:
    listener = _RecordingListener()
    with pytest.raises(SourceFileNotFoundError):
        BulkIndexer(fake_redis, config, listener).import_file(tmp_path / "nope.csv")
    assert listener.reports == []
    assert fake_redis.hashes == {}


def test_import_writes_hashes_and_lookup_sets_in_chunks(fake_redis, config, tmp_path) -> None:
    path = _write_csv(tmp_path / "obs.csv", [_row(i) for i in range(5)] + [_row(9, lat="41.5")])
    listener = _RecordingListener()
    config = _ingestion(config, chunk_size=2, ceiling=None)

    report = BulkIndexer(fake_redis, config, listener).import_file(path, job_id="job-1")

    assert report.status == JobStatus.COMPLETED
    assert (report.rows_read, report.rows_committed, report.rows_skipped) == (6, 6, 0)
    assert report.chunks_committed == 3
    assert [e.chunk_index for e in listener.events] == [0, 1, 2]

    records = [k for k in fake_redis.hashes if k.startswith("traffic_density:")]
    assert len(records) == 6
    ids = fake_redis.sets["traffic_density"]
    assert len(ids) == 6
    assert len(fake_redis.sets["traffic_density:latitude:41.08"]) == 5
    assert len(fake_redis.sets["traffic_density:latitude:41.5"]) == 1
    assert fake_redis.sets["traffic_density:longitude:28.97"] == ids

    some_id = sorted(ids)[0]
    stored = fake_redis.hashes[f"traffic_density:{some_id}"]
    assert stored["id"] == some_id
    assert stored["location"] == f"{stored['longitude']},{stored['latitude']}"
    assert fake_redis.sets[f"traffic_density:{some_id}:idx"] == {
        f"traffic_density:latitude:{stored['latitude']}",
        "traffic_density:longitude:28.97",
    }


def test_bad_rows_are_skipped_and_counted_separately(fake_redis, config, tmp_path) -> None:
    rows = [_row(1), _row(2, speed="fast"), "too,few", _row(3), _row(4) + ",extra"]
    path = _write_csv(tmp_path / "obs.csv", rows)
    listener = _RecordingListener()

    report = BulkIndexer(fake_redis, _ingestion(config, ceiling=None), listener).import_file(path)

    assert report.status == JobStatus.COMPLETED
    assert report.rows_read == 5
    assert report.rows_committed == 2
    assert report.rows_rejected == 3
    assert report.rows_skipped == 0
    assert listener.errors == []
    assert listener.events[0].status == ChunkStatus.COMMITTED
    assert listener.events[0].rows_rejected == 3


def test_abort_policy_fails_job_on_first_bad_row(fake_redis, config, tmp_path) -> None:
    path = _write_csv(tmp_path / "obs.csv", [_row(1), _row(2), _row(3, speed="x"), _row(4), _row(5)])
    listener = _RecordingListener()
    config = _ingestion(config, chunk_size=2, ceiling=None, parse_error_policy="abort")

    report = BulkIndexer(fake_redis, config, listener).import_file(path)

    assert report.status == JobStatus.FAILED
    assert report.error_code == "parse_error"
    assert "line 4" in (report.error or "")
    # The first chunk stays committed; the failing chunk and everything after is not written.
    assert report.rows_committed == 2
    assert report.chunks_committed == 1
    assert report.chunks_failed == 1
    assert len(fake_redis.sets["traffic_density"]) == 2
    assert [e.status for e in listener.errors] == [ChunkStatus.FAILED]


def test_ceiling_skips_chunks_without_errors(fake_redis, config, tmp_path) -> None:
    for i in range(3):
        fake_redis.hset(f"traffic_density:existing-{i}", mapping={"id": f"existing-{i}"})
    fake_redis.sadd("traffic_density:latitude:1", "existing-0")
    path = _write_csv(tmp_path / "obs.csv", [_row(i) for i in range(4)])

    report = BulkIndexer(fake_redis, _ingestion(config, chunk_size=2, ceiling=3)).import_file(path)

    assert report.status == JobStatus.COMPLETED
    assert report.rows_read == 4
    assert report.rows_skipped == 4
    assert report.rows_committed == 0
    assert report.chunks_skipped == 2
    assert report.error is None
    assert len(fake_redis.hashes) == 3


def test_ceiling_counts_only_record_hashes(fake_redis, config, tmp_path) -> None:
    path = _write_csv(tmp_path / "obs.csv", [_row(i) for i in range(3)])

    report = BulkIndexer(fake_redis, _ingestion(config, chunk_size=2, ceiling=2)).import_file(path)

    # First chunk writes 2 records (ceiling reached), the second chunk is skipped.
    assert report.rows_committed == 2
    assert report.rows_skipped == 1
    assert report.chunks_skipped == 1


def test_chunk_write_error_keeps_earlier_chunks(fake_redis, config, tmp_path) -> None:
    path = _write_csv(tmp_path / "obs.csv", [_row(i) for i in range(6)])
    indexer = BulkIndexer(fake_redis, _ingestion(config, chunk_size=2, ceiling=None))

    original = indexer._write_records
    calls = {"count": 0}

    def flaky_write(records) -> None:
        calls["count"] += 1
        if calls["count"] == 2:
            fake_redis.fail_pipeline = redis.exceptions.ResponseError("OOM command not allowed")
        original(records)

    indexer._write_records = flaky_write  # type: ignore[method-assign]
    report = indexer.import_file(path)

    assert report.status == JobStatus.FAILED
    assert report.error_code == "chunk_failed"
    assert report.rows_committed == 2
    assert report.rows_failed == 2
    assert report.chunks_failed == 1
    assert len(fake_redis.sets["traffic_density"]) == 2


def test_continue_on_chunk_error_processes_later_chunks(fake_redis, config, tmp_path) -> None:
    path = _write_csv(tmp_path / "obs.csv", [_row(i) for i in range(6)])
    config = _ingestion(config, chunk_size=2, ceiling=None, continue_on_chunk_error=True)
    indexer = BulkIndexer(fake_redis, config)

    original = indexer._write_records
    calls = {"count": 0}

    def flaky_write(records) -> None:
        calls["count"] += 1
        if calls["count"] == 1:
            fake_redis.fail_pipeline = redis.exceptions.ResponseError("READONLY")
        original(records)

    indexer._write_records = flaky_write  # type: ignore[method-assign]
    report = indexer.import_file(path)

    assert report.status == JobStatus.FAILED
    assert report.rows_committed == 4
    assert report.chunks_committed == 2
    assert report.chunks_failed == 1


def test_connection_loss_stops_job_with_store_unavailable(fake_redis, config, tmp_path) -> None:
    path = _write_csv(tmp_path / "obs.csv", [_row(i) for i in range(4)])
    fake_redis.fail_pipeline = redis.exceptions.ConnectionError("Connection refused")

    report = BulkIndexer(fake_redis, _ingestion(config, chunk_size=2, ceiling=None)).import_file(path)

    assert report.status == JobStatus.FAILED
    assert report.error_code == "store_unavailable"
    assert report.rows_committed == 0


def test_malformed_coordinate_is_indexed_without_location(fake_redis, config, tmp_path) -> None:
    path = _write_csv(tmp_path / "obs.csv", [_row(1, lat="abc")])

    report = BulkIndexer(fake_redis, _ingestion(config, ceiling=None)).import_file(path)

    assert report.rows_committed == 1
    (record_id,) = fake_redis.sets["traffic_density"]
    stored = fake_redis.hashes[f"traffic_density:{record_id}"]
    assert "location" not in stored
    assert stored["latitude"] == "abc"
    assert stored["averageSpeed"] == "50"


def test_header_only_file_completes_empty(fake_redis, config, tmp_path) -> None:
    path = _write_csv(tmp_path / "obs.csv", [])
    report = BulkIndexer(fake_redis, config).import_file(path)
    assert report.status == JobStatus.COMPLETED
    assert report.rows_read == 0


def test_connection_loss_during_ceiling_check_is_reported(fake_redis, config, tmp_path, monkeypatch) -> None:
    path = _write_csv(tmp_path / "obs.csv", [_row(i) for i in range(4)])
    listener = _RecordingListener()

    def refused(*args, **kwargs):
        raise redis.exceptions.ConnectionError("Connection refused")

    monkeypatch.setattr(fake_redis, "scan_iter", refused)
    report = BulkIndexer(fake_redis, _ingestion(config, chunk_size=2, ceiling=10), listener).import_file(path)

    assert report.status == JobStatus.FAILED
    assert report.error_code == "store_unavailable"
    assert "Connection refused" in (report.error or "")
    assert report.rows_committed == 0
    assert fake_redis.hashes == {}
    assert listener.reports == [report]


def test_ceiling_scans_once_per_job_and_tracks_commits(fake_redis, config, tmp_path, monkeypatch) -> None:
    path = _write_csv(tmp_path / "obs.csv", [_row(i) for i in range(7)])
    scans = {"count": 0}
    original = fake_redis.scan_iter

    def counting_scan(*args, **kwargs):
        scans["count"] += 1
        return original(*args, **kwargs)

    monkeypatch.setattr(fake_redis, "scan_iter", counting_scan)
    indexer = BulkIndexer(fake_redis, _ingestion(config, chunk_size=2, ceiling=4))

    report = indexer.import_file(path)

    # Chunks 0 and 1 commit 4 records; chunks 2 and 3 hit the ceiling.
    assert report.rows_committed == 4
    assert report.rows_skipped == 3
    assert report.chunks_skipped == 2
    assert scans["count"] == 1

    indexer.import_file(path)
    assert scans["count"] == 2
