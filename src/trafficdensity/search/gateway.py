from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Callable, ContextManager, Iterable, Optional, Sequence, Union

import redis
from pydantic import BaseModel, Field

from trafficdensity.errors import (
    InvalidFilterError,
    OffsetLimitExceededError,
    TrafficDensityError,
    classify_store_error,
)
from trafficdensity.query.compiler import CompiledQuery, QueryCompiler, SearchFilters
from trafficdensity.records.schemas import HASH_FIELDS, LOCATION_FIELD, TrafficObservation
from trafficdensity.search.drivers import DRIVERS, DriverReply, SearchDriver, SearchRequest
from trafficdensity.settings import AppConfig, get_config

logger = logging.getLogger(__name__)

# Named projections; `basic` is the record without its derived geo point.
FIELD_PROFILES: dict[str, tuple[str, ...]] = {
    "full": (*HASH_FIELDS.values(), LOCATION_FIELD),
    "basic": tuple(HASH_FIELDS.values()),
}

Connect = Callable[[], ContextManager[Any]]
AsyncConnect = Callable[[], AsyncContextManager[Any]]


@dataclass(frozen=True)
class Pagination:
    offset: int = 0
    limit: int = 10

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise InvalidFilterError(f"offset must be >= 0, got {self.offset}")
        if self.limit < 0:
            raise InvalidFilterError(f"limit must be >= 0, got {self.limit}")


class SearchResult(BaseModel):
    driver: str
    query: str
    total: int
    records: list[TrafficObservation] = Field(default_factory=list)
    elapsed_seconds: float = 0.0
    offset: int = 0
    limit: int = 0
    ok: bool = True


class SearchFailure(BaseModel):
    driver: str
    query: str
    code: str
    message: str
    offset: int = 0
    limit: int = 0
    ok: bool = False

    @property
    def offset_limit_exceeded(self) -> bool:
        return self.code == "offset_limit_exceeded"


SearchOutcome = Union[SearchResult, SearchFailure]


def resolve_return_fields(return_fields: Union[str, Sequence[str], None]) -> tuple[str, ...]:
    if return_fields is None:
        return ()
    if isinstance(return_fields, str):
        try:
            return FIELD_PROFILES[return_fields]
        except KeyError:
            raise ValueError(
                f"Unknown field profile {return_fields!r}; expected one of {sorted(FIELD_PROFILES)}"
            ) from None
    return tuple(return_fields)


class SearchGateway:
    """Runs compiled queries through an interchangeable driver and normalizes the records.

    Every call opens its own client through `connect` (and `async_connect` for async drivers)
    and releases it when the call returns. Failures come back as `SearchFailure`, never raised,
    so a caller comparing drivers still gets every driver's outcome.
    """

    def __init__(
        self,
        connect: Connect,
        config: Optional[AppConfig] = None,
        async_connect: Optional[AsyncConnect] = None,
        drivers: Optional[dict[str, SearchDriver]] = None,
    ) -> None:
        self.connect = connect
        self.async_connect = async_connect
        self.config = config or get_config()
        self.drivers = dict(DRIVERS if drivers is None else drivers)
        self.compiler = QueryCompiler(self.config)

    @classmethod
    def from_store(cls, store: Any, config: Optional[AppConfig] = None) -> "SearchGateway":
        return cls(store.client, config or store.config, async_connect=store.async_client)

    def _request(
        self,
        compiled: CompiledQuery,
        pagination: Pagination,
        return_fields: Union[str, Sequence[str], None],
    ) -> SearchRequest:
        return SearchRequest(
            index=self.config.index.name,
            query=compiled.text,
            offset=pagination.offset,
            limit=pagination.limit,
            return_fields=resolve_return_fields(return_fields),
            dialect=self.config.search.dialect,
        )

    def _failure(self, driver: str, request: SearchRequest, exc: Exception) -> SearchFailure:
        info = classify_store_error(exc)
        if info.code == "offset_limit_exceeded":
            logger.warning("Search rejected, %s (offset=%d limit=%d)", info.message, request.offset, request.limit)
        else:
            logger.error("Error executing search with driver %s: %s", driver, info.message)
        return SearchFailure(
            driver=driver,
            query=request.query,
            code=info.code,
            message=info.message,
            offset=request.offset,
            limit=request.limit,
        )

    def _precheck(self, driver: str, request: SearchRequest) -> Optional[SearchFailure]:
        ceiling = self.config.search.max_results
        if ceiling is not None and request.offset + request.limit > ceiling:
            exc = OffsetLimitExceededError(
                f"OFFSET exceeds maximum of {ceiling} (offset={request.offset}, limit={request.limit})"
            )
            return self._failure(driver, request, exc)
        return None

    def _result(
        self, driver: SearchDriver, request: SearchRequest, reply: Any, elapsed: float
    ) -> SearchOutcome:
        try:
            unpacked: DriverReply = driver.unpack(reply)
        except (TypeError, ValueError, KeyError, IndexError, AttributeError) as exc:
            logger.error("Unexpected %s reply shape: %s", driver.name, exc)
            return SearchFailure(
                driver=driver.name,
                query=request.query,
                code="malformed_reply",
                message=str(exc),
                offset=request.offset,
                limit=request.limit,
            )
        prefix = self.config.index.prefix
        records = [
            TrafficObservation.from_document(doc.fields, key=doc.key, prefix=prefix)
            for doc in unpacked.documents
        ]
        return SearchResult(
            driver=driver.name,
            query=request.query,
            total=unpacked.total,
            records=records,
            elapsed_seconds=elapsed,
            offset=request.offset,
            limit=request.limit,
        )

    def _resolve_driver(self, name: Optional[str]) -> SearchDriver:
        driver_name = name or self.config.search.default_driver
        try:
            return self.drivers[driver_name]
        except KeyError:
            raise ValueError(f"Unknown search driver {driver_name!r}; expected one of {sorted(self.drivers)}") from None

    def _rejected(
        self,
        driver: Optional[str],
        query: str,
        pagination: Optional[Pagination],
        code: str,
        message: str,
    ) -> SearchFailure:
        page = pagination or Pagination(limit=self.config.search.default_limit)
        logger.warning("Search not run (%s): %s", code, message)
        return SearchFailure(
            driver=driver or self.config.search.default_driver,
            query=query,
            code=code,
            message=message,
            offset=page.offset,
            limit=page.limit,
        )

    def _prepare(
        self,
        compiled: CompiledQuery,
        pagination: Optional[Pagination],
        return_fields: Union[str, Sequence[str], None],
        driver: Optional[str],
    ) -> Union[tuple[SearchDriver, SearchRequest], SearchFailure]:
        try:
            impl = self._resolve_driver(driver)
        except ValueError as exc:
            return self._rejected(driver, compiled.text, pagination, "unknown_driver", str(exc))
        page = pagination or Pagination(limit=self.config.search.default_limit)
        try:
            request = self._request(compiled, page, return_fields)
        except ValueError as exc:
            return self._rejected(impl.name, compiled.text, page, "invalid_request", str(exc))
        return impl, request

    def execute(
        self,
        compiled: CompiledQuery,
        pagination: Optional[Pagination] = None,
        return_fields: Union[str, Sequence[str], None] = "full",
        driver: Optional[str] = None,
    ) -> SearchOutcome:
        prepared = self._prepare(compiled, pagination, return_fields, driver)
        if isinstance(prepared, SearchFailure):
            return prepared
        impl, request = prepared

        if impl.is_async:
            if _loop_running():
                return self._rejected(
                    impl.name,
                    request.query,
                    pagination,
                    "driver_unavailable",
                    f"driver {impl.name!r} cannot block inside a running event loop; await execute_async instead",
                )
            return asyncio.run(self.execute_async(compiled, pagination, return_fields, impl.name))

        failure = self._precheck(impl.name, request)
        if failure is not None:
            return failure

        try:
            with self.connect() as client:
                start = time.perf_counter()
                reply = impl.submit(client, request)
                elapsed = time.perf_counter() - start
        except (redis.exceptions.RedisError, TrafficDensityError) as exc:
            return self._failure(impl.name, request, exc)
        return self._result(impl, request, reply, elapsed)

    async def execute_async(
        self,
        compiled: CompiledQuery,
        pagination: Optional[Pagination] = None,
        return_fields: Union[str, Sequence[str], None] = "full",
        driver: Optional[str] = None,
    ) -> SearchOutcome:
        prepared = self._prepare(compiled, pagination, return_fields, driver or "async")
        if isinstance(prepared, SearchFailure):
            return prepared
        impl, request = prepared

        if not impl.is_async:
            # Sync drivers block on their socket; keep them off the event loop.
            return await asyncio.to_thread(self.execute, compiled, pagination, return_fields, impl.name)
        if self.async_connect is None:
            return self._rejected(
                impl.name,
                request.query,
                pagination,
                "driver_unavailable",
                f"driver {impl.name!r} needs an async client factory",
            )
        failure = self._precheck(impl.name, request)
        if failure is not None:
            return failure

        try:
            async with self.async_connect() as client:
                start = time.perf_counter()
                reply = await impl.submit(client, request)
                elapsed = time.perf_counter() - start
        except (redis.exceptions.RedisError, TrafficDensityError) as exc:
            return self._failure(impl.name, request, exc)
        return self._result(impl, request, reply, elapsed)

    def search(
        self,
        filters: SearchFilters,
        pagination: Optional[Pagination] = None,
        return_fields: Union[str, Sequence[str], None] = "full",
        driver: Optional[str] = None,
    ) -> SearchOutcome:
        """Compile then execute; a rejected filter set never reaches the store."""

        try:
            compiled = self.compiler.compile(filters)
        except InvalidFilterError as exc:
            return self._rejected(driver, "", pagination, "invalid_filter", str(exc))
        return self.execute(compiled, pagination, return_fields, driver)

    def _driver_names(self, drivers: Optional[Iterable[str]]) -> list[str]:
        return list(drivers) if drivers is not None else sorted(self.drivers)

    def compare_drivers(
        self,
        compiled: CompiledQuery,
        pagination: Optional[Pagination] = None,
        return_fields: Union[str, Sequence[str], None] = "full",
        drivers: Optional[Iterable[str]] = None,
    ) -> dict[str, SearchOutcome]:
        """Run one query on each driver; from async code use `compare_drivers_async`."""

        names = self._driver_names(drivers)
        outcomes = {name: self.execute(compiled, pagination, return_fields, name) for name in names}
        _log_comparison(outcomes)
        return outcomes

    async def compare_drivers_async(
        self,
        compiled: CompiledQuery,
        pagination: Optional[Pagination] = None,
        return_fields: Union[str, Sequence[str], None] = "full",
        drivers: Optional[Iterable[str]] = None,
    ) -> dict[str, SearchOutcome]:
        outcomes: dict[str, SearchOutcome] = {}
        for name in self._driver_names(drivers):
            outcomes[name] = await self.execute_async(compiled, pagination, return_fields, name)
        _log_comparison(outcomes)
        return outcomes


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def _log_comparison(outcomes: dict[str, SearchOutcome]) -> None:
    for name, outcome in outcomes.items():
        if isinstance(outcome, SearchResult):
            logger.info(
                "driver=%s total=%d returned=%d elapsed_ms=%.1f",
                name,
                outcome.total,
                len(outcome.records),
                outcome.elapsed_seconds * 1000,
            )
        else:
            logger.info("driver=%s failed code=%s", name, outcome.code)
