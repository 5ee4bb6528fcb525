"""Compile optional search filters into a RediSearch query string.

Clause templates (the store's query dialect):
- geo radius:       `@location:[<lon> <lat> <radius> <unit>]`
- average speed:    `@averageSpeed:[<min> <max>]`, an absent bound is `-inf` / `+inf`
- vehicle count:    `@numberOfVehicles:[<n> <n>]`
- coordinate text:  `@latitude:*<v>*`, or `@latitude:%<v>%` when fuzzy

Clauses are space-joined (implicit AND) in a fixed category order so identical filters always
produce byte-identical queries. No filters compile to the match-all token `*`.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Literal, Optional, Union

from trafficdensity.errors import InvalidFilterError
from trafficdensity.records.schemas import HASH_FIELDS, LOCATION_FIELD
from trafficdensity.settings import AppConfig, get_config

WILDCARD = "*"
NEG_INF = "-inf"
POS_INF = "+inf"
GEO_UNITS: tuple[str, ...] = ("m", "km", "mi", "ft")
DEFAULT_RADIUS = 10
DEFAULT_UNIT = "km"

Number = Union[int, float, str]

# Characters with meaning in the query grammar; text-mode values must not smuggle them in.
_TEXT_VALUE = re.compile(r"^[^\s@|{}\[\]()~\"'*%:$\\<>=!,;]+$")


@dataclass(frozen=True)
class SearchFilters:
    latitude: Optional[Number] = None
    longitude: Optional[Number] = None
    radius: Optional[Number] = None
    unit: Optional[str] = None
    min_speed: Optional[Number] = None
    max_speed: Optional[Number] = None
    vehicle_count: Optional[Number] = None
    # "geo" uses a radius clause when both coordinates are given; "text" always matches them as text.
    coordinate_mode: Literal["geo", "text"] = "geo"
    fuzzy: bool = False


@dataclass(frozen=True)
class CompiledQuery:
    clauses: tuple[str, ...] = ()

    @property
    def text(self) -> str:
        return " ".join(self.clauses) if self.clauses else WILDCARD

    @property
    def matches_all(self) -> bool:
        return not self.clauses

    def __str__(self) -> str:
        return self.text


def _present(value: Any) -> bool:
    if value is None:
        return False
    return not (isinstance(value, str) and not value.strip())


def _number_text(name: str, value: Number) -> str:
    """Validate a finite decimal and return it as given (trimmed), so the query echoes the input."""

    text = str(value).strip()
    try:
        number = float(text)
    except ValueError:
        raise InvalidFilterError(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise InvalidFilterError(f"{name} must be finite, got {value!r}")
    return text


def _non_negative_int(name: str, value: Number) -> int:
    if isinstance(value, bool):
        raise InvalidFilterError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidFilterError(f"{name} must be an integer, got {value!r}")
        number = int(value)
    else:
        try:
            number = int(str(value).strip())
        except ValueError:
            raise InvalidFilterError(f"{name} must be an integer, got {value!r}") from None
    if number < 0:
        raise InvalidFilterError(f"{name} must be >= 0, got {value!r}")
    return number


def _radius_text(value: Number) -> str:
    text = _number_text("radius", value)
    number = float(text)
    if number <= 0:
        raise InvalidFilterError(f"radius must be > 0, got {value!r}")
    return str(int(number)) if number.is_integer() else repr(number)


def _text_value(name: str, value: Number) -> str:
    text = str(value).strip()
    if not _TEXT_VALUE.match(text):
        raise InvalidFilterError(f"{name} contains characters not allowed in a text match: {value!r}")
    return text


def geo_clause(latitude: Number, longitude: Number, radius: Number, unit: str) -> str:
    lat = _number_text("latitude", latitude)
    lon = _number_text("longitude", longitude)
    if not -90.0 <= float(lat) <= 90.0:
        raise InvalidFilterError(f"latitude out of range: {latitude!r}")
    if not -180.0 <= float(lon) <= 180.0:
        raise InvalidFilterError(f"longitude out of range: {longitude!r}")
    unit_text = str(unit).strip().lower()
    if unit_text not in GEO_UNITS:
        raise InvalidFilterError(f"unit must be one of {', '.join(GEO_UNITS)}, got {unit!r}")
    return f"@{LOCATION_FIELD}:[{lon} {lat} {_radius_text(radius)} {unit_text}]"


def range_clause(field: str, low: Optional[int], high: Optional[int]) -> str:
    low_text = NEG_INF if low is None else str(low)
    high_text = POS_INF if high is None else str(high)
    return f"@{field}:[{low_text} {high_text}]"


def text_clause(field: str, value: Number, fuzzy: bool = False) -> str:
    text = _text_value(field, value)
    return f"@{field}:%{text}%" if fuzzy else f"@{field}:*{text}*"


def compile_filters(
    filters: SearchFilters,
    default_radius: Number = DEFAULT_RADIUS,
    default_unit: str = DEFAULT_UNIT,
    text_coordinates: bool = True,
) -> CompiledQuery:
    """Compile filters into a query; raises InvalidFilterError instead of emitting a malformed clause.

    `text_coordinates=False` means latitude/longitude are NUMERIC in the index, so a
    coordinate that would become a text clause is rejected.
    """

    if filters.coordinate_mode not in ("geo", "text"):
        raise InvalidFilterError(f"coordinate_mode must be 'geo' or 'text', got {filters.coordinate_mode!r}")

    clauses: list[str] = []
    has_lat = _present(filters.latitude)
    has_lon = _present(filters.longitude)
    geo = filters.coordinate_mode == "geo" and has_lat and has_lon

    if geo:
        radius = filters.radius if _present(filters.radius) else default_radius
        unit = filters.unit if _present(filters.unit) else default_unit
        clauses.append(geo_clause(filters.latitude, filters.longitude, radius, unit))  # type: ignore[arg-type]

    min_speed = _non_negative_int("min_speed", filters.min_speed) if _present(filters.min_speed) else None
    max_speed = _non_negative_int("max_speed", filters.max_speed) if _present(filters.max_speed) else None
    if min_speed is not None and max_speed is not None and min_speed > max_speed:
        raise InvalidFilterError(f"min_speed {min_speed} is greater than max_speed {max_speed}")
    if min_speed is not None or max_speed is not None:
        clauses.append(range_clause(HASH_FIELDS["avg_speed"], min_speed, max_speed))

    if _present(filters.vehicle_count):
        count = _non_negative_int("vehicle_count", filters.vehicle_count)  # type: ignore[arg-type]
        clauses.append(range_clause(HASH_FIELDS["vehicle_count"], count, count))

    if not geo and (has_lat or has_lon) and not text_coordinates:
        raise InvalidFilterError(
            "latitude/longitude are indexed as NUMERIC; text matching needs index.text_coordinates"
        )
    if not geo:
        if has_lat:
            clauses.append(text_clause(HASH_FIELDS["latitude"], filters.latitude, filters.fuzzy))  # type: ignore[arg-type]
        if has_lon:
            clauses.append(text_clause(HASH_FIELDS["longitude"], filters.longitude, filters.fuzzy))  # type: ignore[arg-type]

    return CompiledQuery(clauses=tuple(clauses))


class QueryCompiler:
    """`compile_filters` with the radius/unit defaults and coordinate field type taken from config."""

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self.config = config or get_config()

    def compile(self, filters: SearchFilters) -> CompiledQuery:
        return compile_filters(
            filters,
            default_radius=self.config.search.default_radius,
            default_unit=self.config.search.default_unit,
            text_coordinates=self.config.index.text_coordinates,
        )
