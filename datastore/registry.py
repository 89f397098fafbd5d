"""Map configuration names to storage backend factories."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Callable, Dict, List, Optional

from datastore.base import StorageBackend
from datastore.memory import MemoryStorage
from datastore.sql import SqlStorage
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

StorageFactory = Callable[[Settings], StorageBackend]


def _build_memory(settings: Settings) -> StorageBackend:
    path = Path(settings.snapshot_path) if settings.snapshot_path else None
    return MemoryStorage(persistence_path=path)


def _build_sql(settings: Settings) -> StorageBackend:
    path = Path(settings.snapshot_path).with_suffix(".db") if settings.snapshot_path else None
    return SqlStorage(database_url=settings.database_url, snapshot_path=path)


_REGISTRY: Dict[str, StorageFactory] = {
    "memory": _build_memory,
    "sql": _build_sql,
}


def register_backend(name: str, factory: StorageFactory) -> None:
    _REGISTRY[name.strip().lower()] = factory


def available_backends() -> List[str]:
    return sorted(_REGISTRY)


def create_backend(name: str, settings: Optional[Settings] = None) -> StorageBackend:
    """Instantiate and initialize the backend registered under ``name``."""
    key = name.strip().lower()
    factory = _REGISTRY.get(key)
    if factory is None:
        raise ValueError(
            f"Unknown storage backend {name!r}; expected one of: {', '.join(available_backends())}"
        )
    resolved = settings or get_settings()
    backend = factory(resolved)
    backend.initialize(wipe=resolved.wipe_on_start)
    logger.info("Storage backend ready", extra={"backend": backend.name})
    return backend


@lru_cache
def build_default_storage(name: Optional[str] = None) -> StorageBackend:
    settings = get_settings()
    return create_backend(settings.storage_backend if name is None else name, settings)
