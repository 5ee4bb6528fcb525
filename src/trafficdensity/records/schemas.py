"""Canonical record shape for one traffic density observation.

The same record travels three ways:
- in from a CSV row (`TrafficObservation.from_row`), strictly validated;
- out to a Redis hash (`to_hash`), with the derived `location` geo point;
- back from a search driver (`TrafficObservation.from_document`), leniently normalized.
"""

from __future__ import annotations

import math
import uuid
from typing import Any, Mapping, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from trafficdensity.errors import RowParseError

# Fixed source column order; the file header itself is skipped, never matched.
CSV_COLUMNS: tuple[str, ...] = (
    "DATE_TIME",
    "LATITUDE",
    "LONGITUDE",
    "GEOHASH",
    "MINIMUM_SPEED",
    "MAXIMUM_SPEED",
    "AVERAGE_SPEED",
    "NUMBER_OF_VEHICLES",
)

# Model attribute -> hash field name in the store.
HASH_FIELDS: dict[str, str] = {
    "id": "id",
    "timestamp": "dateTime",
    "latitude": "latitude",
    "longitude": "longitude",
    "geohash": "geohash",
    "min_speed": "minimumSpeed",
    "max_speed": "maximumSpeed",
    "avg_speed": "averageSpeed",
    "vehicle_count": "numberOfVehicles",
}
LOCATION_FIELD = "location"

INT_ATTRIBUTES: tuple[str, ...] = ("min_speed", "max_speed", "avg_speed", "vehicle_count")

# Redis GEO accepts latitudes only inside the Web Mercator band.
GEO_LAT_LIMIT = 85.05112878


def new_record_id() -> str:
    return str(uuid.uuid4())


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _coerce_coordinate(value: Any) -> Optional[float]:
    try:
        number = float(_to_text(value).strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _coerce_int(value: Any) -> int:
    text = _to_text(value).strip()
    if not text:
        return 0
    try:
        return max(int(text), 0)
    except ValueError:
        return 0


def derive_location(latitude: Any, longitude: Any) -> Optional[str]:
    """Return the `lon,lat` geo point for a coordinate pair, or None when it cannot be indexed."""

    lat = _coerce_coordinate(latitude)
    lon = _coerce_coordinate(longitude)
    if lat is None or lon is None:
        return None
    if not (-180.0 <= lon <= 180.0) or not (-GEO_LAT_LIMIT <= lat <= GEO_LAT_LIMIT):
        return None
    return f"{_to_text(longitude).strip()},{_to_text(latitude).strip()}"


class TrafficObservation(BaseModel):
    id: str = Field(default_factory=new_record_id)
    timestamp: str = ""
    latitude: str = ""
    longitude: str = ""
    geohash: str = ""
    min_speed: int = Field(default=0, ge=0)
    max_speed: int = Field(default=0, ge=0)
    avg_speed: int = Field(default=0, ge=0)
    vehicle_count: int = Field(default=0, ge=0)
    location: Optional[str] = None

    @classmethod
    def from_row(cls, values: Sequence[Any], line_number: Optional[int] = None) -> "TrafficObservation":
        """Parse one CSV row in `CSV_COLUMNS` order; integer columns must be non-negative ints."""

        if len(values) != len(CSV_COLUMNS):
            raise RowParseError(
                f"expected {len(CSV_COLUMNS)} columns, got {len(values)}", line_number=line_number
            )
        text = [_to_text(v).strip() for v in values]
        timestamp, latitude, longitude, geohash = text[:4]

        numbers: dict[str, int] = {}
        for attribute, column, raw in zip(INT_ATTRIBUTES, CSV_COLUMNS[4:], text[4:]):
            try:
                numbers[attribute] = int(raw)
            except ValueError:
                raise RowParseError(f"{column} is not an integer: {raw!r}", line_number=line_number) from None

        try:
            return cls(
                timestamp=timestamp,
                latitude=latitude,
                longitude=longitude,
                geohash=geohash,
                location=derive_location(latitude, longitude),
                **numbers,
            )
        except ValidationError as exc:
            raise RowParseError(
                "; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()),
                line_number=line_number,
            ) from exc

    @classmethod
    def from_document(
        cls,
        fields: Mapping[Any, Any],
        key: Optional[Any] = None,
        prefix: Optional[str] = None,
    ) -> "TrafficObservation":
        """Normalize a stored/returned document; missing strings become "" and missing ints 0."""

        data = {_to_text(k): v for k, v in fields.items()}

        record_id = _to_text(data.get("id")).strip()
        if not record_id and key is not None:
            key_text = _to_text(key)
            if prefix and key_text.startswith(f"{prefix}:"):
                key_text = key_text[len(prefix) + 1 :]
            record_id = key_text
        if not record_id:
            record_id = new_record_id()

        values: dict[str, Any] = {"id": record_id}
        for attribute, field in HASH_FIELDS.items():
            if attribute == "id":
                continue
            raw = data.get(field)
            values[attribute] = _coerce_int(raw) if attribute in INT_ATTRIBUTES else _to_text(raw)

        location = _to_text(data.get(LOCATION_FIELD)).strip()
        values["location"] = location or None
        return cls(**values)

    def record_key(self, prefix: str) -> str:
        return f"{prefix}:{self.id}"

    def to_hash(self) -> dict[str, str]:
        mapping = {field: str(getattr(self, attribute)) for attribute, field in HASH_FIELDS.items()}
        if self.location:
            mapping[LOCATION_FIELD] = self.location
        return mapping
