from __future__ import annotations

import _bootstrap  # noqa: F401

import argparse

from trafficdensity.logging_config import configure_logging
from trafficdensity.settings import get_config
from trafficdensity.store.connection import RedisStore
from trafficdensity.store.index_schema import IndexSchemaManager


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drop and recreate the traffic density search index.")
    parser.add_argument("--index", default=None, help="Index name (default: config index.name).")
    parser.add_argument("--prefix", default=None, help="Hash key prefix (default: config index.prefix).")
    parser.add_argument("--log-level", default=None, help="Override the configured log level (e.g. DEBUG).")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging(level=args.log_level)

    config = get_config()
    store = RedisStore(config)
    try:
        with store.client() as client:
            manager = IndexSchemaManager(client, config)
            manager.declare_index(name=args.index, prefix=args.prefix)
            fields = manager.index_fields(args.index)
    finally:
        store.close()

    print(f"Index: {args.index or config.index.name}")
    for name, field_type in sorted(fields.items()):
        print(f"  {name}: {field_type}")


if __name__ == "__main__":
    main()
