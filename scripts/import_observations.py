from __future__ import annotations

import _bootstrap  # noqa: F401

import argparse
import sys

from trafficdensity.errors import SourceFileNotFoundError
from trafficdensity.ingestion.jobs import ImportJobRunner
from trafficdensity.logging_config import configure_logging
from trafficdensity.settings import get_config
from trafficdensity.store.connection import RedisStore


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import a traffic density CSV into Redis in chunks.")
    parser.add_argument(
        "csv_path",
        nargs="?",
        default=None,
        help="Source CSV (default: config ingestion.source_csv).",
    )
    parser.add_argument("--chunk-size", type=int, default=None, help="Rows per chunk (default: config).")
    parser.add_argument(
        "--ceiling",
        type=int,
        default=None,
        help="Skip chunks once the prefix holds this many records; 0 disables (default: config).",
    )
    parser.add_argument(
        "--on-parse-error",
        choices=["skip", "abort"],
        default=None,
        help="Row parse error policy (default: config ingestion.parse_error_policy).",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level (e.g. DEBUG).")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging(level=args.log_level)

    config = get_config()
    overrides = {
        key: value
        for key, value in {
            "chunk_size": args.chunk_size,
            "ceiling": args.ceiling,
            "parse_error_policy": args.on_parse_error,
        }.items()
        if value is not None
    }
    if overrides:
        config = config.model_copy(update={"ingestion": config.ingestion.model_copy(update=overrides)})

    store = RedisStore(config)
    runner = ImportJobRunner(store, config)
    try:
        job_id, status = runner.submit_import(args.csv_path)
    except SourceFileNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(2) from exc
    finally:
        store.close()

    report = runner.get_report(job_id)
    print(f"Job: {job_id}")
    print(f"Status: {status.value}")
    print(f"Rows read: {report.rows_read:,}")
    print(f"Rows committed: {report.rows_committed:,}")
    print(f"Rows skipped (ceiling): {report.rows_skipped:,}")
    print(f"Rows rejected (parse): {report.rows_rejected:,}")
    if report.rows_failed:
        print(f"Rows failed: {report.rows_failed:,}")
    print(f"Elapsed: {report.elapsed_seconds:.2f}s")
    if report.error:
        print(f"Error [{report.error_code}]: {report.error}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
