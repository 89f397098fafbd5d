from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from cache.data_cache import DataCache
from datastore.memory import MemoryStorage
from models.records import (
    CACHE_CHECKPOINT_INTERVAL,
    INTERPOLATED,
    POWER_CONSUMED,
    POWER_GENERATED,
    SensorData,
    Source,
)
from services.manager import DataManager
from settings import Settings

T0 = datetime(2009, 7, 28, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += minutes * 60


class RejectingStorage(MemoryStorage):
    """Accepts sources but refuses every reading."""

    def store_sensor_data(self, data: SensorData) -> bool:
        return False


def _settings(checkpoint_minutes: int = 0) -> Settings:
    return Settings(
        storage_backend="memory",
        database_url="sqlite://",
        snapshot_path=None,
        cache_window_minutes=60,
        checkpoint_minutes=checkpoint_minutes,
        wipe_on_start=False,
        log_level="INFO",
    )


def _manager(
    checkpoint_minutes: int = 0,
    backend: MemoryStorage | None = None,
    clock: FakeClock | None = None,
) -> DataManager:
    backend = backend or MemoryStorage()
    backend.initialize()
    cache = DataCache(60, clock=clock or FakeClock())
    return DataManager(backend, cache, _settings(checkpoint_minutes))


def _power(source: str, offset_seconds: int, generated: float = 100.0) -> SensorData:
    return SensorData(
        source=source,
        timestamp=T0 + timedelta(seconds=offset_seconds),
        tool="test",
        properties={POWER_GENERATED: generated, POWER_CONSUMED: 0.0},
    )


@pytest.mark.parametrize("interval, persisted", [(1, 3), (2, 2)])
def test_checkpoint_interval_limits_backend_writes(interval: int, persisted: int) -> None:
    manager = _manager()
    manager.store_source(Source(name="meter", properties={CACHE_CHECKPOINT_INTERVAL: interval}))

    for offset in (0, 30, 60, 90, 120):
        assert manager.store_sensor_data(_power("meter", offset))

    assert len(manager.backend.get_sensor_data_index("meter")) == persisted
    assert len(manager.get_sensor_data_index("meter")) == 5


def test_default_checkpoint_interval_comes_from_settings() -> None:
    manager = _manager(checkpoint_minutes=10)
    manager.store_source(Source(name="meter"))

    for offset in (0, 5 * 60, 12 * 60):
        assert manager.store_sensor_data(_power("meter", offset))

    persisted = [ref.timestamp for ref in manager.backend.get_sensor_data_index("meter")]
    assert persisted == [T0, T0 + timedelta(minutes=12)]
    assert len(manager.get_sensor_data_index("meter")) == 3
    assert manager.get_checkpoint_timestamp("meter") == T0 + timedelta(minutes=12)


def test_source_property_overrides_settings_interval() -> None:
    manager = _manager(checkpoint_minutes=10)
    manager.store_source(Source(name="meter", properties={CACHE_CHECKPOINT_INTERVAL: 0}))

    for offset in (0, 30, 60):
        manager.store_sensor_data(_power("meter", offset))

    assert len(manager.backend.get_sensor_data_index("meter")) == 3


def test_retroactive_write_persists_without_moving_checkpoint() -> None:
    manager = _manager(checkpoint_minutes=10)
    manager.store_source(Source(name="meter"))
    manager.store_sensor_data(_power("meter", 600))

    assert manager.store_sensor_data(_power("meter", 0))

    assert manager.backend.has_sensor_data("meter", T0)
    assert manager.get_checkpoint_timestamp("meter") == T0 + timedelta(minutes=10)


def test_rejects_unknown_virtual_and_duplicate_writes() -> None:
    manager = _manager()
    manager.store_source(Source(name="meter"))
    manager.store_source(Source(name="group", virtual=True, sub_sources=("meter",)))

    assert manager.store_sensor_data(_power("ghost", 0)) is False
    assert manager.store_sensor_data(_power("group", 0)) is False
    assert manager.store_sensor_data(_power("meter", 0)) is True
    assert manager.store_sensor_data(_power("meter", 0, generated=5.0)) is False


def test_duplicate_of_persisted_reading_is_rejected_after_cache_expiry() -> None:
    clock = FakeClock()
    manager = _manager(clock=clock)
    manager.store_source(Source(name="meter"))
    manager.store_sensor_data(_power("meter", 0))
    clock.advance(61)

    assert not manager.cache.has_sensor_data("meter", T0)
    assert manager.store_sensor_data(_power("meter", 0)) is False


def test_backend_failure_rolls_back_cache_entry() -> None:
    manager = _manager(backend=RejectingStorage())
    manager.store_source(Source(name="meter"))

    assert manager.store_sensor_data(_power("meter", 0)) is False
    assert not manager.has_sensor_data("meter", T0)
    assert manager.get_checkpoint_timestamp("meter") is None


def test_unpersisted_readings_vanish_when_cache_expires() -> None:
    clock = FakeClock()
    manager = _manager(checkpoint_minutes=10, clock=clock)
    manager.store_source(Source(name="meter"))
    manager.store_sensor_data(_power("meter", 0))
    manager.store_sensor_data(_power("meter", 60))

    clock.advance(61)

    assert manager.has_sensor_data("meter", T0)
    assert not manager.has_sensor_data("meter", T0 + timedelta(seconds=60))


def test_cached_copy_wins_on_read() -> None:
    manager = _manager()
    manager.store_source(Source(name="meter"))
    manager.backend.store_sensor_data(_power("meter", 0, generated=1.0))
    manager.cache.store_sensor_data(_power("meter", 0, generated=2.0))

    data = manager.get_sensor_data("meter", T0)
    datas = manager.get_sensor_datas("meter", T0)

    assert data.get_property_as_float(POWER_GENERATED) == 2.0
    assert len(datas) == 1
    assert datas[0].get_property_as_float(POWER_GENERATED) == 2.0
    assert len(manager.get_sensor_data_index("meter")) == 1


def test_straddle_spans_cache_and_backend() -> None:
    manager = _manager(checkpoint_minutes=10)
    manager.store_source(Source(name="meter"))
    manager.store_sensor_data(_power("meter", 0, generated=100.0))
    manager.store_sensor_data(_power("meter", 60, generated=200.0))
    manager.cache.delete_sensor_data("meter", T0)

    straddle = manager.get_straddle("meter", T0 + timedelta(seconds=30))

    assert manager.backend.has_sensor_data("meter", T0)
    assert not manager.backend.has_sensor_data("meter", T0 + timedelta(seconds=60))
    assert straddle.power_generated == pytest.approx(150.0)


def test_latest_prefers_newest_across_stores() -> None:
    manager = _manager(checkpoint_minutes=10)
    manager.store_source(Source(name="meter"))
    manager.store_sensor_data(_power("meter", 0))
    manager.store_sensor_data(_power("meter", 60))

    assert manager.get_latest_sensor_data("meter").timestamp == T0 + timedelta(seconds=60)
    assert manager.get_latest_sensor_data("ghost") is None


def test_latest_for_virtual_source_uses_earliest_leaf_latest() -> None:
    manager = _manager()
    manager.store_source(Source(name="a"))
    manager.store_source(Source(name="b"))
    manager.store_source(Source(name="pair", virtual=True, sub_sources=("a", "b")))
    for offset in (0, 50):
        manager.store_sensor_data(_power("a", offset, generated=100.0 + offset * 2))
    for offset in (0, 30):
        manager.store_sensor_data(_power("b", offset, generated=10.0))

    latest = manager.get_latest_sensor_data("pair")

    assert latest.timestamp == T0 + timedelta(seconds=30)
    assert latest.get_property_as_float(POWER_GENERATED) == pytest.approx(170.0)
    assert latest.is_property_true(INTERPOLATED)


def test_latest_for_virtual_source_without_leaf_data_is_none() -> None:
    manager = _manager()
    manager.store_source(Source(name="a"))
    manager.store_source(Source(name="pair", virtual=True, sub_sources=("a",)))

    assert manager.get_latest_sensor_data("pair") is None


def test_source_summary_counts_cached_and_persisted() -> None:
    manager = _manager(checkpoint_minutes=10)
    manager.store_source(Source(name="meter"))
    for offset in (0, 30, 60):
        manager.store_sensor_data(_power("meter", offset))

    summary = manager.get_source_summary("meter")

    assert summary.total_sensor_data == 3
    assert summary.first_timestamp == T0
    assert summary.last_timestamp == T0 + timedelta(seconds=60)
    assert manager.backend.get_source_summary("meter").total_sensor_data == 1
    assert manager.get_source_summary("ghost") is None


def test_delete_sensor_data_hits_both_stores() -> None:
    manager = _manager(checkpoint_minutes=10)
    manager.store_source(Source(name="meter"))
    manager.store_sensor_data(_power("meter", 0))
    manager.store_sensor_data(_power("meter", 30))

    assert manager.delete_sensor_data("meter", T0) is True
    assert not manager.has_sensor_data("meter", T0)
    assert manager.delete_sensor_data("meter") is True
    assert manager.get_sensor_data_index("meter") == []
    assert manager.delete_sensor_data("meter", T0) is False


def test_delete_source_purges_cache_and_checkpoint() -> None:
    manager = _manager(checkpoint_minutes=10)
    manager.store_source(Source(name="meter"))
    manager.store_sensor_data(_power("meter", 0))
    manager.store_sensor_data(_power("meter", 30))

    assert manager.delete_source("meter") is True

    assert manager.get_source("meter") is None
    assert not manager.cache.has_sensor_data("meter", T0 + timedelta(seconds=30))
    assert manager.get_checkpoint_timestamp("meter") is None


def test_store_source_rejects_cycles() -> None:
    manager = _manager()
    manager.store_source(Source(name="a"))
    assert manager.store_source(Source(name="x", virtual=True, sub_sources=("a", "y")))
    assert manager.store_source(Source(name="y", virtual=True, sub_sources=("z",)))

    assert manager.store_source(Source(name="z", virtual=True, sub_sources=("x",))) is False
    assert manager.store_source(Source(name="self", virtual=True, sub_sources=("self",))) is False
    assert manager.store_source(Source(name="z", virtual=True, sub_sources=("a",))) is True


def test_overwrite_into_cycle_is_rejected() -> None:
    manager = _manager()
    manager.store_source(Source(name="a", virtual=True, sub_sources=()))
    manager.store_source(Source(name="b", virtual=True, sub_sources=("a",)))

    assert (
        manager.store_source(Source(name="a", virtual=True, sub_sources=("b",)), overwrite=True)
        is False
    )
    assert manager.get_source("a").sub_sources == ()


def test_maintenance_purges_expired_cache_entries() -> None:
    clock = FakeClock()
    manager = _manager(checkpoint_minutes=10, clock=clock)
    manager.store_source(Source(name="meter"))
    manager.store_sensor_data(_power("meter", 0))
    manager.store_sensor_data(_power("meter", 30))
    clock.advance(61)

    assert manager.perform_maintenance() is True
    assert manager.cache.purge_expired() == 0
    assert manager.index_tables() is True


def test_wipe_data_clears_cache_and_backend() -> None:
    manager = _manager(checkpoint_minutes=10)
    manager.store_source(Source(name="meter"))
    manager.store_sensor_data(_power("meter", 0))
    manager.store_sensor_data(_power("meter", 30))

    assert manager.wipe_data() is True

    assert manager.get_sources() == []
    assert manager.get_sensor_data_index("meter") == []
    assert manager.get_checkpoint_timestamp("meter") is None


def test_concurrent_writes_of_one_reading_persist_once() -> None:
    manager = _manager()
    manager.store_source(Source(name="meter"))
    data = _power("meter", 0)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: manager.store_sensor_data(data), range(32)))

    assert results.count(True) == 1
    assert manager.backend.get_sensor_data_index("meter") == [data.to_ref()]
    assert manager.get_checkpoint_timestamp("meter") == T0
