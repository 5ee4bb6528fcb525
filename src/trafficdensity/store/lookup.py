from __future__ import annotations

from typing import Iterable, Iterator, Optional

import redis

from trafficdensity.records.schemas import TrafficObservation


def record_key(prefix: str, record_id: str) -> str:
    return f"{prefix}:{record_id}"


def latitude_key(prefix: str, value: str) -> str:
    return f"{prefix}:latitude:{value}"


def longitude_key(prefix: str, value: str) -> str:
    return f"{prefix}:longitude:{value}"


def record_index_key(prefix: str, record_id: str) -> str:
    return f"{prefix}:{record_id}:idx"


def iter_record_keys(client: redis.Redis, prefix: str, count: int = 1000) -> Iterator[str]:
    """Yield record hash keys under the prefix; lookup sets share the prefix and are filtered by type."""

    yield from client.scan_iter(match=f"{prefix}:*", count=count, _type="HASH")


def count_records(client: redis.Redis, prefix: str) -> int:
    return sum(1 for _ in iter_record_keys(client, prefix))


def find_ids(
    client: redis.Redis,
    prefix: str,
    latitude: Optional[str] = None,
    longitude: Optional[str] = None,
) -> set[str]:
    """Equality lookup through the latitude/longitude sets, without the search index.

    With both values the result is the intersection; with neither it is every known id.
    """

    keys: list[str] = []
    if latitude:
        keys.append(latitude_key(prefix, latitude))
    if longitude:
        keys.append(longitude_key(prefix, longitude))
    if not keys:
        return set(client.smembers(prefix))
    if len(keys) == 1:
        return set(client.smembers(keys[0]))
    return set(client.sinter(keys))


def load_observations(client: redis.Redis, prefix: str, ids: Iterable[str]) -> list[TrafficObservation]:
    ordered = sorted(ids)
    pipe = client.pipeline(transaction=False)
    for record_id in ordered:
        pipe.hgetall(record_key(prefix, record_id))
    observations: list[TrafficObservation] = []
    for record_id, fields in zip(ordered, pipe.execute()):
        # Ids in the lookup sets outlive evicted hashes.
        if not fields:
            continue
        observations.append(
            TrafficObservation.from_document(fields, key=record_key(prefix, record_id), prefix=prefix)
        )
    return observations
