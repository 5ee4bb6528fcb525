from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from redis.commands.search.query import Query


@dataclass(frozen=True)
class SearchRequest:
    index: str
    query: str
    offset: int
    limit: int
    return_fields: tuple[str, ...] = ()
    dialect: int = 2


@dataclass(frozen=True)
class RawDocument:
    key: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DriverReply:
    total: int
    documents: list[RawDocument]


def _text(value: Any) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)


def _pairs(values: Any) -> dict[str, Any]:
    if isinstance(values, Mapping):
        return {_text(k): v for k, v in values.items()}
    items = list(values or [])
    return {_text(k): v for k, v in zip(items[::2], items[1::2])}


def unpack_resp3(reply: Mapping[Any, Any]) -> DriverReply:
    """FT.SEARCH under RESP3: {"total_results": n, "results": [{"id": key, "extra_attributes": {...}}]}."""

    data = {_text(k): v for k, v in reply.items()}
    documents: list[RawDocument] = []
    for item in data.get("results") or []:
        entry = {_text(k): v for k, v in item.items()}
        documents.append(
            RawDocument(key=_text(entry.get("id", "")), fields=_pairs(entry.get("extra_attributes")))
        )
    return DriverReply(total=int(data.get("total_results", 0)), documents=documents)


def unpack_resp2(reply: list[Any]) -> DriverReply:
    """FT.SEARCH under RESP2: [total, key1, [f1, v1, ...], key2, [...], ...].

    The field list is absent per key when the query returned no content.
    """

    if not reply:
        return DriverReply(total=0, documents=[])
    total = int(reply[0])
    documents: list[RawDocument] = []
    i = 1
    while i < len(reply):
        key = _text(reply[i])
        fields: dict[str, Any] = {}
        if i + 1 < len(reply) and isinstance(reply[i + 1], (list, tuple)):
            fields = _pairs(reply[i + 1])
            i += 1
        documents.append(RawDocument(key=key, fields=fields))
        i += 1
    return DriverReply(total=total, documents=documents)


class SearchDriver:
    """One way of running FT.SEARCH. `submit` is the timed store call, `unpack` the driver's reply shape."""

    name = ""
    is_async = False

    def submit(self, client: Any, request: SearchRequest) -> Any:
        raise NotImplementedError

    def unpack(self, reply: Any) -> DriverReply:
        raise NotImplementedError


class RawCommandDriver(SearchDriver):
    """Low-level synchronous driver: FT.SEARCH through `execute_command`, reply parsed by hand."""

    name = "raw"

    def submit(self, client: Any, request: SearchRequest) -> Any:
        args: list[Any] = [request.index, request.query, "LIMIT", request.offset, request.limit]
        if request.return_fields:
            args += ["RETURN", len(request.return_fields), *request.return_fields]
        if request.dialect:
            args += ["DIALECT", request.dialect]
        return client.execute_command("FT.SEARCH", *args)

    def unpack(self, reply: Any) -> DriverReply:
        if isinstance(reply, Mapping):
            return unpack_resp3(reply)
        return unpack_resp2(list(reply or []))


def build_query(request: SearchRequest) -> Query:
    query = Query(request.query).paging(request.offset, request.limit)
    if request.return_fields:
        query = query.return_fields(*request.return_fields)
    if request.dialect:
        query = query.dialect(request.dialect)
    return query


def unpack_result(reply: Any) -> DriverReply:
    """redis-py `Result` (RESP2) or the plain dict returned under RESP3."""

    if isinstance(reply, Mapping):
        return unpack_resp3(reply)
    documents: list[RawDocument] = []
    for doc in reply.docs:
        # Document keeps returned fields as attributes; its `id` is the key and the hash `id` is dropped.
        fields = {k: v for k, v in vars(doc).items() if k not in ("id", "payload", "score")}
        documents.append(RawDocument(key=_text(doc.id), fields=fields))
    return DriverReply(total=int(reply.total), documents=documents)


class SearchApiDriver(SearchDriver):
    """High-level driver over redis-py's search API, sharing the store's connection pool."""

    name = "search"

    def submit(self, client: Any, request: SearchRequest) -> Any:
        return client.ft(request.index).search(build_query(request))

    def unpack(self, reply: Any) -> DriverReply:
        return unpack_result(reply)


class AsyncSearchDriver(SearchDriver):
    """The high-level search API on a `redis.asyncio` client."""

    name = "async"
    is_async = True

    async def submit(self, client: Any, request: SearchRequest) -> Any:  # type: ignore[override]
        return await client.ft(request.index).search(build_query(request))

    def unpack(self, reply: Any) -> DriverReply:
        return unpack_result(reply)


DRIVERS: dict[str, SearchDriver] = {
    driver.name: driver for driver in (RawCommandDriver(), SearchApiDriver(), AsyncSearchDriver())
}
