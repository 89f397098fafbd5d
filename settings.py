from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_BACKEND_ENV = "WATTSTORE_STORAGE_BACKEND"
_DATABASE_URL_ENV = "WATTSTORE_DATABASE_URL"
_SNAPSHOT_PATH_ENV = "WATTSTORE_SNAPSHOT_PATH"
_CACHE_WINDOW_ENV = "WATTSTORE_CACHE_WINDOW_MINUTES"
_CHECKPOINT_ENV = "WATTSTORE_CHECKPOINT_MINUTES"
_WIPE_ON_START_ENV = "WATTSTORE_WIPE_ON_START"
_LOG_LEVEL_ENV = "LOG_LEVEL"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    storage_backend: str
    database_url: str
    snapshot_path: Optional[str]
    cache_window_minutes: int
    checkpoint_minutes: int
    wipe_on_start: bool
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_int_env(name: str, default: int, minimum: int = 0) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _read_bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in _TRUE_VALUES:
        return True
    if candidate in _FALSE_VALUES:
        return False
    return default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        storage_backend=_read_str_env(_BACKEND_ENV, "memory").lower(),
        database_url=_read_str_env(_DATABASE_URL_ENV, "sqlite:///./tmp/wattstore.db"),
        snapshot_path=_read_optional_env(_SNAPSHOT_PATH_ENV, "./tmp/wattstore_snapshot.json"),
        cache_window_minutes=_read_int_env(_CACHE_WINDOW_ENV, 60, minimum=1),
        checkpoint_minutes=_read_int_env(_CHECKPOINT_ENV, 0),
        wipe_on_start=_read_bool_env(_WIPE_ON_START_ENV, False),
        log_level=_read_log_level("INFO"),
    )
