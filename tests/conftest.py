from __future__ import annotations

import fnmatch
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

import pytest
import redis

from trafficdensity.settings import AppConfig


class FakeSearchIndex:
    def __init__(self, owner: "FakeRedis", name: str) -> None:
        self.owner = owner
        self.name = name

    def dropindex(self, delete_documents: bool = False) -> None:
        self.owner.calls.append(("dropindex", self.name, delete_documents))
        if self.name not in self.owner.indexes:
            raise redis.exceptions.ResponseError("Unknown Index name")
        del self.owner.indexes[self.name]

    def create_index(self, fields, definition=None, stopwords=None, **kwargs) -> None:
        self.owner.calls.append(("create_index", self.name, stopwords))
        if self.name in self.owner.indexes:
            raise redis.exceptions.ResponseError("Index already exists")
        self.owner.indexes[self.name] = {
            "fields": list(fields),
            "definition": definition,
            "stopwords": stopwords,
        }

    def info(self) -> dict[str, Any]:
        index = self.owner.indexes[self.name]
        return {
            "attributes": [
                ["identifier", f.name, "attribute", f.name, "type", f.args[0]] for f in index["fields"]
            ]
        }

    def search(self, query) -> Any:
        self.owner.calls.append(("search", self.name, query))
        if self.owner.search_handler is None:
            raise AssertionError("no search handler configured")
        return self.owner.search_handler(query)


class FakePipeline:
    def __init__(self, owner: "FakeRedis") -> None:
        self.owner = owner
        self.queued: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str) -> Callable[..., "FakePipeline"]:
        def queue(*args: Any, **kwargs: Any) -> "FakePipeline":
            self.queued.append((name, args, kwargs))
            return self

        return queue

    def execute(self) -> list[Any]:
        if self.owner.fail_pipeline is not None:
            error, self.owner.fail_pipeline = self.owner.fail_pipeline, None
            raise error
        results = [getattr(self.owner, name)(*args, **kwargs) for name, args, kwargs in self.queued]
        self.queued = []
        return results


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the package issues."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.indexes: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple] = []
        self.search_handler: Optional[Callable[[Any], Any]] = None
        self.command_handler: Optional[Callable[..., Any]] = None
        self.fail_pipeline: Optional[Exception] = None

    def hset(self, key: str, mapping: dict[str, Any]) -> int:
        target = self.hashes.setdefault(key, {})
        added = len(set(mapping) - set(target))
        target.update({k: str(v) for k, v in mapping.items()})
        return added

    def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    def sadd(self, key: str, *members: str) -> int:
        target = self.sets.setdefault(key, set())
        before = len(target)
        target.update(members)
        return len(target) - before

    def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    def sinter(self, keys: list[str]) -> set[str]:
        groups = [self.sets.get(k, set()) for k in keys]
        return set.intersection(*groups) if groups else set()

    def scan_iter(self, match: str = "*", count: int = 10, _type: Optional[str] = None) -> Iterator[str]:
        candidates: list[str] = []
        if _type in (None, "HASH"):
            candidates += list(self.hashes)
        if _type in (None, "SET"):
            candidates += list(self.sets)
        for key in candidates:
            if fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def execute_command(self, *args: Any) -> Any:
        self.calls.append(("execute_command",) + args)
        if args[0] == "FT._LIST":
            return list(self.indexes)
        if self.command_handler is None:
            raise AssertionError(f"unexpected command {args[0]}")
        return self.command_handler(*args)

    def ft(self, name: str) -> FakeSearchIndex:
        return FakeSearchIndex(self, name)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def connect(fake_redis: FakeRedis) -> Callable[[], Any]:
    @contextmanager
    def _connect() -> Iterator[FakeRedis]:
        yield fake_redis

    return _connect


@pytest.fixture()
def config(tmp_path) -> AppConfig:
    return AppConfig().resolve_paths(root=tmp_path)
