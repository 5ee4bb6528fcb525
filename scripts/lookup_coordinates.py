from __future__ import annotations

import _bootstrap  # noqa: F401

import argparse
import json
import time

from trafficdensity.logging_config import configure_logging
from trafficdensity.settings import get_config
from trafficdensity.store.connection import RedisStore
from trafficdensity.store.lookup import count_records, find_ids, load_observations


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Exact latitude/longitude lookup through the lookup sets (no search index)."
    )
    parser.add_argument("--latitude", default=None)
    parser.add_argument("--longitude", default=None)
    parser.add_argument("--limit", type=int, default=10, help="Max records to load (default: 10).")
    parser.add_argument("--count", action="store_true", help="Also count record hashes under the prefix.")
    parser.add_argument("--log-level", default=None, help="Override the configured log level (e.g. DEBUG).")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging(level=args.log_level)

    config = get_config()
    prefix = config.index.prefix
    store = RedisStore(config)
    try:
        with store.client() as client:
            start = time.perf_counter()
            ids = find_ids(client, prefix, latitude=args.latitude, longitude=args.longitude)
            lookup_ms = (time.perf_counter() - start) * 1000
            records = load_observations(client, prefix, sorted(ids)[: args.limit])
            total_records = count_records(client, prefix) if args.count else None
    finally:
        store.close()

    payload = {
        "matched_ids": len(ids),
        "lookup_ms": round(lookup_ms, 2),
        "records": [r.model_dump() for r in records],
    }
    if total_records is not None:
        payload["records_under_prefix"] = total_records
    print(json.dumps(payload, indent=2))


if __name__ == "__main__":
    main()
