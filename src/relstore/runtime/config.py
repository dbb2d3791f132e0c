"""
Centralized configuration for relstore.

Settings come from environment variables, optionally layered over the
``[relstore]`` table of a TOML file. Environment values always win.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, fields, replace
from enum import StrEnum
from functools import cache
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_COMPUTE_DEPTH = 10


class DbMode(StrEnum):
    """Storage mode a backend runs in."""

    MEMORY = "memory"
    EMBEDDED = "embedded"
    REMOTE = "remote"


@dataclass(frozen=True)
class DataLayerConfig:
    """Data layer configuration.

    Attributes:
        db_mode: Which backend to construct (memory, embedded or remote)
        db_path: SQLite file used by the embedded backend
        remote_url: Base URL of the remote server
        remote_timeout: Request timeout in seconds for the remote backend
        max_compute_depth: Recursion cap for computed-field propagation
        log_level: Logging level name
        log_dir: Directory for JSONL log files (None disables file logging)
        account_id: Account stamped on broadcast payloads and trash records
    """

    db_mode: DbMode = DbMode.MEMORY
    db_path: str = ".relstore/data.db"
    remote_url: str | None = None
    remote_timeout: float = 10.0
    max_compute_depth: int = DEFAULT_MAX_COMPUTE_DEPTH
    log_level: str = "INFO"
    log_dir: str | None = None
    account_id: str | None = None


_ENV_KEYS: dict[str, str] = {
    "db_mode": "RELSTORE_DB_MODE",
    "db_path": "RELSTORE_DB_PATH",
    "remote_url": "RELSTORE_REMOTE_URL",
    "remote_timeout": "RELSTORE_REMOTE_TIMEOUT",
    "max_compute_depth": "RELSTORE_MAX_COMPUTE_DEPTH",
    "log_level": "RELSTORE_LOG_LEVEL",
    "log_dir": "RELSTORE_LOG_DIR",
    "account_id": "RELSTORE_ACCOUNT_ID",
}


def _coerce(name: str, value: Any) -> Any:
    if name == "db_mode":
        return DbMode(str(value).lower())
    if name == "remote_timeout":
        return float(value)
    if name == "max_compute_depth":
        return int(value)
    return value


def _from_mapping(base: DataLayerConfig, values: dict[str, Any]) -> DataLayerConfig:
    known = {f.name for f in fields(DataLayerConfig)}
    updates: dict[str, Any] = {}
    for key, value in values.items():
        if key not in known:
            logger.warning("Ignoring unknown relstore config key: %s", key)
            continue
        updates[key] = _coerce(key, value)
    return replace(base, **updates)


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name, env_key in _ENV_KEYS.items():
        value = os.environ.get(env_key)
        if value:
            overrides[name] = value
    return overrides


def load_config(path: Path | str | None = None) -> DataLayerConfig:
    """Load configuration from a TOML file and the environment.

    Args:
        path: Optional TOML file; only its ``[relstore]`` table is read

    Returns:
        DataLayerConfig with file values overridden by environment values.
    """
    config = DataLayerConfig()
    if path is not None:
        with open(path, "rb") as f:
            data = tomllib.load(f)
        config = _from_mapping(config, data.get("relstore", {}))
    return _from_mapping(config, _env_overrides())


@cache
def get_config() -> DataLayerConfig:
    """Load configuration from environment variables (cached).

    Environment variables:
        - RELSTORE_DB_MODE → db_mode
        - RELSTORE_DB_PATH → db_path
        - RELSTORE_REMOTE_URL → remote_url
        - RELSTORE_REMOTE_TIMEOUT → remote_timeout
        - RELSTORE_MAX_COMPUTE_DEPTH → max_compute_depth
        - RELSTORE_LOG_LEVEL → log_level
        - RELSTORE_LOG_DIR → log_dir
        - RELSTORE_ACCOUNT_ID → account_id
    """
    return load_config(os.environ.get("RELSTORE_CONFIG_FILE"))
