from __future__ import annotations

import copy
import logging.config
import os
from pathlib import Path
from typing import Any, Optional

import yaml

from trafficdensity.settings import project_root

# Libraries that log every pooled connection or parser step at DEBUG.
QUIET_LOGGERS = ("redis", "asyncio")

DEFAULT_LOGGING: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {"format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s"},
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": "INFO",
            "formatter": "standard",
            "stream": "ext://sys.stderr",
        }
    },
    "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    "root": {"level": "INFO", "handlers": ["console"]},
}


def _logging_dict(path: Path) -> dict[str, Any]:
    if not path.exists():
        return copy.deepcopy(DEFAULT_LOGGING)
    return yaml.safe_load(path.read_text(encoding="utf-8")) or copy.deepcopy(DEFAULT_LOGGING)


def configure_logging(logging_config_path: str | Path | None = None, level: Optional[str] = None) -> dict[str, Any]:
    """Apply the YAML logging config (or the built-in console setup) and return what was applied.

    `level` (or `TRAFFICDENSITY_LOG_LEVEL`) overrides the root logger and every handler, so
    `--log-level DEBUG` on a script surfaces per-chunk detail without editing the YAML.
    """

    candidate = logging_config_path or os.getenv("TRAFFICDENSITY_LOGGING_CONFIG", "configs/logging.yaml")
    path = Path(candidate)
    if not path.is_absolute():
        path = project_root() / path

    config = _logging_dict(path)
    override = (level or os.getenv("TRAFFICDENSITY_LOG_LEVEL", "")).strip().upper()
    if override:
        config.setdefault("root", {})["level"] = override
        for handler in config.get("handlers", {}).values():
            handler["level"] = override

    logging.config.dictConfig(config)
    return config
