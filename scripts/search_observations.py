from __future__ import annotations

import _bootstrap  # noqa: F401

import argparse
import json

from trafficdensity.errors import InvalidFilterError
from trafficdensity.logging_config import configure_logging
from trafficdensity.query.compiler import QueryCompiler, SearchFilters
from trafficdensity.search.drivers import DRIVERS
from trafficdensity.search.gateway import FIELD_PROFILES, Pagination, SearchGateway
from trafficdensity.settings import get_config
from trafficdensity.store.connection import RedisStore


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Search indexed traffic density observations.")
    parser.add_argument("--latitude", default=None)
    parser.add_argument("--longitude", default=None)
    parser.add_argument("--radius", default=None, help="Geo radius (default: config search.default_radius).")
    parser.add_argument("--unit", default=None, choices=["m", "km", "mi", "ft"])
    parser.add_argument("--min-speed", default=None)
    parser.add_argument("--max-speed", default=None)
    parser.add_argument("--vehicles", default=None, help="Exact number of vehicles.")
    parser.add_argument(
        "--text",
        action="store_true",
        help="Match latitude/longitude as text instead of a geo radius.",
    )
    parser.add_argument("--fuzzy", action="store_true", help="Fuzzy text match (implies --text semantics).")
    parser.add_argument("--offset", type=int, default=0)
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--fields", choices=sorted(FIELD_PROFILES), default="full")
    parser.add_argument("--driver", choices=sorted(DRIVERS), default=None)
    parser.add_argument("--compare", action="store_true", help="Run the query on every driver.")
    parser.add_argument("--explain", action="store_true", help="Print the compiled query and exit.")
    parser.add_argument("--log-level", default=None, help="Override the configured log level (e.g. DEBUG).")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging(level=args.log_level)

    config = get_config()
    filters = SearchFilters(
        latitude=args.latitude,
        longitude=args.longitude,
        radius=args.radius,
        unit=args.unit,
        min_speed=args.min_speed,
        max_speed=args.max_speed,
        vehicle_count=args.vehicles,
        coordinate_mode="text" if (args.text or args.fuzzy) else "geo",
        fuzzy=args.fuzzy,
    )
    try:
        compiled = QueryCompiler(config).compile(filters)
    except InvalidFilterError as exc:
        raise SystemExit(f"Invalid filter: {exc}") from exc

    if args.explain:
        print(compiled.text)
        return

    pagination = Pagination(offset=args.offset, limit=args.limit or config.search.default_limit)
    store = RedisStore(config)
    gateway = SearchGateway.from_store(store, config)
    try:
        if args.compare:
            outcomes = gateway.compare_drivers(compiled, pagination, args.fields)
        else:
            outcome = gateway.execute(compiled, pagination, args.fields, args.driver)
            outcomes = {outcome.driver: outcome}
    finally:
        store.close()

    print(json.dumps({name: o.model_dump(mode="json") for name, o in outcomes.items()}, indent=2))
    if any(not o.ok for o in outcomes.values()):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
