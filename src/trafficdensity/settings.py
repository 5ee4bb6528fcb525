from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(root: Path, value: str | Path) -> Path:
    path = Path(value)
    return path if path.is_absolute() else (root / path)


class AppSection(BaseModel):
    name: str = "trafficdensity"


class RedisSection(BaseModel):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    username: Optional[str] = None
    password: Optional[str] = None
    socket_timeout_seconds: Optional[float] = 10.0
    # RESP2 keeps FT.SEARCH replies in the flat list shape the raw driver parses.
    protocol: int = 2


class IndexSection(BaseModel):
    name: str = "traffic_idx"
    prefix: str = "traffic_density"
    # TEXT coordinates serve `@latitude:*v*` matches and keep hashes with a malformed
    # coordinate indexed; NUMERIC fails the whole hash on a non-numeric value.
    text_coordinates: bool = True


class IngestionSection(BaseModel):
    source_csv: Path = Path("data/raw/traffic_density.csv")
    chunk_size: int = Field(default=1000, gt=0)
    ceiling: Optional[int] = 1000
    parse_error_policy: Literal["skip", "abort"] = "skip"
    continue_on_chunk_error: bool = False


class SearchSection(BaseModel):
    default_driver: str = "search"
    default_limit: int = 10
    default_radius: float = 10
    default_unit: str = "km"
    dialect: int = 2
    # Mirrors the store's MAXSEARCHRESULTS; None leaves the check to the store.
    max_results: Optional[int] = None


class AppConfig(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    redis: RedisSection = Field(default_factory=RedisSection)
    index: IndexSection = Field(default_factory=IndexSection)
    ingestion: IngestionSection = Field(default_factory=IngestionSection)
    search: SearchSection = Field(default_factory=SearchSection)

    def resolve_paths(self, root: Optional[Path] = None) -> "AppConfig":
        repo_root = project_root() if root is None else root
        updated_ingestion = self.ingestion.model_copy(
            update={"source_csv": _resolve_path(repo_root, self.ingestion.source_csv)}
        )
        return self.model_copy(update={"ingestion": updated_ingestion})


def load_redis_credentials(section: RedisSection) -> tuple[Optional[str], Optional[str]]:
    """Return (username, password), preferring `REDIS_USERNAME` / `REDIS_PASSWORD` from the environment.

    Secrets stay out of YAML; the config file values are only a fallback for local setups.
    """

    username = os.getenv("REDIS_USERNAME", "").strip() or section.username
    password = os.getenv("REDIS_PASSWORD", "").strip() or section.password
    return username or None, password or None


def _maybe_load_dotenv() -> None:
    try:
        from dotenv import load_dotenv  # type: ignore
    except ImportError:
        return

    load_dotenv()


def load_config(config_path: str | Path | None = None) -> AppConfig:
    _maybe_load_dotenv()

    root = project_root()
    candidate = config_path or os.getenv("TRAFFICDENSITY_CONFIG", "configs/config.yaml")
    path = _resolve_path(root, candidate)
    if not path.exists():
        path = root / "configs/config.example.yaml"

    data: dict[str, Any] = {}
    if path.exists():
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return AppConfig.model_validate(data).resolve_paths(root)


_CONFIG: AppConfig | None = None


def get_config() -> AppConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG
