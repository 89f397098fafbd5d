from __future__ import annotations

from typing import Iterable

from datastore.registry import build_default_storage
from services.manager import build_default_manager
from settings import get_settings


def _clear_caches(caches: Iterable) -> None:
    for cache in caches:
        cache.cache_clear()


CACHES = (get_settings, build_default_storage, build_default_manager)


def test_defaults_without_environment(monkeypatch) -> None:
    for name in (
        "WATTSTORE_STORAGE_BACKEND",
        "WATTSTORE_DATABASE_URL",
        "WATTSTORE_SNAPSHOT_PATH",
        "WATTSTORE_CACHE_WINDOW_MINUTES",
        "WATTSTORE_CHECKPOINT_MINUTES",
        "WATTSTORE_WIPE_ON_START",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()

    try:
        settings = get_settings()
        assert settings.storage_backend == "memory"
        assert settings.database_url == "sqlite:///./tmp/wattstore.db"
        assert settings.snapshot_path == "./tmp/wattstore_snapshot.json"
        assert settings.cache_window_minutes == 60
        assert settings.checkpoint_minutes == 0
        assert settings.wipe_on_start is False
        assert settings.log_level == "INFO"
    finally:
        get_settings.cache_clear()


def test_malformed_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("WATTSTORE_CACHE_WINDOW_MINUTES", "0")
    monkeypatch.setenv("WATTSTORE_CHECKPOINT_MINUTES", "soon")
    monkeypatch.setenv("WATTSTORE_WIPE_ON_START", "maybe")
    monkeypatch.setenv("WATTSTORE_SNAPSHOT_PATH", "  ")
    get_settings.cache_clear()

    try:
        settings = get_settings()
        assert settings.cache_window_minutes == 60
        assert settings.checkpoint_minutes == 0
        assert settings.wipe_on_start is False
        assert settings.snapshot_path is None
    finally:
        get_settings.cache_clear()


def test_environment_overrides_apply(monkeypatch, tmp_path) -> None:
    database_path = tmp_path / "store.db"

    monkeypatch.setenv("WATTSTORE_STORAGE_BACKEND", " SQL ")
    monkeypatch.setenv("WATTSTORE_DATABASE_URL", f"sqlite:///{database_path}")
    monkeypatch.setenv("WATTSTORE_SNAPSHOT_PATH", str(tmp_path / "snap.json"))
    monkeypatch.setenv("WATTSTORE_CACHE_WINDOW_MINUTES", "15")
    monkeypatch.setenv("WATTSTORE_CHECKPOINT_MINUTES", "5")
    monkeypatch.setenv("WATTSTORE_WIPE_ON_START", "yes")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    _clear_caches(CACHES)

    manager = build_default_manager()

    try:
        settings = get_settings()
        assert settings.storage_backend == "sql"
        assert settings.wipe_on_start is True
        assert settings.log_level == "DEBUG"
        assert manager.backend.name == "sql"
        assert manager.backend.snapshot_path == tmp_path / "snap.db"
        assert manager.cache.default_window_minutes == 15
        assert manager.settings.checkpoint_minutes == 5
        assert database_path.exists()
        assert build_default_manager() is manager
    finally:
        manager.close()
        _clear_caches(CACHES)
