from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator, Iterator, Optional

import redis
import redis.asyncio

from trafficdensity.errors import StoreUnavailableError
from trafficdensity.settings import AppConfig, get_config, load_redis_credentials

logger = logging.getLogger(__name__)


class RedisStore:
    """Builds Redis clients from config and scopes their lifetime to one job or request.

    The synchronous clients share one connection pool owned by this object; call `close()`
    when the process is done with the store.
    """

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self.config = config or get_config()
        self._pool: Optional[redis.ConnectionPool] = None

    def _connection_kwargs(self) -> dict:
        section = self.config.redis
        username, password = load_redis_credentials(section)
        return {
            "host": section.host,
            "port": section.port,
            "db": section.db,
            "username": username,
            "password": password,
            "socket_timeout": section.socket_timeout_seconds,
            "protocol": section.protocol,
            "decode_responses": True,
        }

    def _sync_pool(self) -> redis.ConnectionPool:
        if self._pool is None:
            self._pool = redis.ConnectionPool(**self._connection_kwargs())
        return self._pool

    @contextmanager
    def client(self) -> Iterator[redis.Redis]:
        client = redis.Redis(connection_pool=self._sync_pool())
        try:
            yield client
        except redis.exceptions.ConnectionError as exc:
            raise StoreUnavailableError(
                f"Redis at {self.config.redis.host}:{self.config.redis.port} unavailable: {exc}"
            ) from exc
        finally:
            client.close()

    @asynccontextmanager
    async def async_client(self) -> AsyncIterator[redis.asyncio.Redis]:
        client = redis.asyncio.Redis(**self._connection_kwargs())
        try:
            yield client
        finally:
            await client.aclose()

    def ping(self) -> bool:
        with self.client() as client:
            return bool(client.ping())

    def close(self) -> None:
        if self._pool is not None:
            self._pool.disconnect()
            self._pool = None
