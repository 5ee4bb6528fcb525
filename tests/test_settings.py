from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from trafficdensity import settings
from trafficdensity.settings import AppConfig, RedisSection, load_config, load_redis_credentials


@pytest.fixture(autouse=True)
def _no_dotenv(monkeypatch) -> None:
    monkeypatch.setattr(settings, "_maybe_load_dotenv", lambda: None)


def test_load_config_reads_yaml_and_resolves_source_path(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "index:\n  name: obs_idx\n  prefix: obs\n"
        "ingestion:\n  chunk_size: 250\n  ceiling: null\n  parse_error_policy: abort\n",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.index.name == "obs_idx"
    assert config.index.prefix == "obs"
    assert config.ingestion.chunk_size == 250
    assert config.ingestion.ceiling is None
    assert config.ingestion.parse_error_policy == "abort"
    assert config.ingestion.source_csv.is_absolute()
    assert config.search.default_driver == "search"


def test_config_path_from_environment(monkeypatch, tmp_path) -> None:
    path = tmp_path / "env.yaml"
    path.write_text("redis:\n  host: redis.internal\n  port: 6380\n", encoding="utf-8")
    monkeypatch.setenv("TRAFFICDENSITY_CONFIG", str(path))

    config = load_config()

    assert (config.redis.host, config.redis.port) == ("redis.internal", 6380)


def test_invalid_policy_and_chunk_size_are_rejected() -> None:
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"ingestion": {"parse_error_policy": "ignore"}})
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"ingestion": {"chunk_size": 0}})


def test_resolve_paths_keeps_absolute_source(tmp_path) -> None:
    absolute = tmp_path / "data.csv"
    config = AppConfig.model_validate({"ingestion": {"source_csv": str(absolute)}}).resolve_paths(Path("/elsewhere"))
    assert config.ingestion.source_csv == absolute


def test_credentials_prefer_environment(monkeypatch) -> None:
    section = RedisSection(username="yaml-user", password="yaml-pass")
    monkeypatch.delenv("REDIS_USERNAME", raising=False)
    monkeypatch.delenv("REDIS_PASSWORD", raising=False)
    assert load_redis_credentials(section) == ("yaml-user", "yaml-pass")

    monkeypatch.setenv("REDIS_USERNAME", "env-user")
    monkeypatch.setenv("REDIS_PASSWORD", " env-pass ")
    assert load_redis_credentials(section) == ("env-user", "env-pass")

    assert load_redis_credentials(RedisSection()) == ("env-user", "env-pass")
    monkeypatch.setenv("REDIS_PASSWORD", "")
    assert load_redis_credentials(RedisSection()) == ("env-user", None)
