from __future__ import annotations

import logging
from typing import Any, Optional

import redis
from redis.commands.search.field import Field, GeoField, NumericField, TagField, TextField
from redis.commands.search.index_definition import IndexDefinition, IndexType

from trafficdensity.records.schemas import HASH_FIELDS, LOCATION_FIELD
from trafficdensity.settings import AppConfig, get_config

logger = logging.getLogger(__name__)


def index_fields_for(text_coordinates: bool = True) -> list[Field]:
    coordinate = TextField if text_coordinates else NumericField
    return [
        TagField(HASH_FIELDS["id"]),
        TextField(HASH_FIELDS["timestamp"]),
        coordinate(HASH_FIELDS["latitude"]),
        coordinate(HASH_FIELDS["longitude"]),
        GeoField(LOCATION_FIELD),
        TextField(HASH_FIELDS["geohash"]),
        NumericField(HASH_FIELDS["min_speed"]),
        NumericField(HASH_FIELDS["max_speed"]),
        NumericField(HASH_FIELDS["avg_speed"]),
        NumericField(HASH_FIELDS["vehicle_count"]),
    ]


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class IndexSchemaManager:
    """Declares the RediSearch index over the observation hashes."""

    def __init__(self, client: redis.Redis, config: Optional[AppConfig] = None) -> None:
        self.client = client
        self.config = config or get_config()

    def list_indexes(self) -> list[str]:
        return [_text(name) for name in self.client.execute_command("FT._LIST") or []]

    def drop_index(self, name: str) -> bool:
        """Drop the index definition only; the hashes stay and are re-enumerated on create."""

        try:
            self.client.ft(name).dropindex(delete_documents=False)
        except redis.exceptions.ResponseError as exc:
            logger.warning("Error dropping index %s: %s", name, exc)
            return False
        return True

    def declare_index(self, name: Optional[str] = None, prefix: Optional[str] = None) -> None:
        index_name = name or self.config.index.name
        key_prefix = prefix or self.config.index.prefix

        self.drop_index(index_name)
        if index_name in self.list_indexes():
            logger.warning("Index %s still present after drop; leaving it in place.", index_name)
            return

        definition = IndexDefinition(prefix=[f"{key_prefix}:"], index_type=IndexType.HASH)
        self.client.ft(index_name).create_index(
            index_fields_for(self.config.index.text_coordinates),
            definition=definition,
            stopwords=[],
        )
        logger.info("Created traffic density index %s on prefix %s:", index_name, key_prefix)

    def index_fields(self, name: Optional[str] = None) -> dict[str, str]:
        """Return {attribute identifier: field type} as reported by FT.INFO."""

        info = self.client.ft(name or self.config.index.name).info()
        fields: dict[str, str] = {}
        for attribute in info.get("attributes", []):
            # Each attribute is a flat [k1, v1, k2, v2, ...] list under RESP2.
            pairs = dict(zip(map(_text, attribute[::2]), attribute[1::2]))
            fields[_text(pairs.get("identifier", ""))] = _text(pairs.get("type", ""))
        return fields
