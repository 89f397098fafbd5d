from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from cache.data_cache import DataCache
from models.errors import DataStoreError
from models.records import POWER_GENERATED, SensorData

T0 = datetime(2009, 7, 28, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += minutes * 60


def _reading(offset_seconds: int, source: str = "meter", generated: float = 100.0) -> SensorData:
    return SensorData(
        source=source,
        timestamp=T0 + timedelta(seconds=offset_seconds),
        properties={POWER_GENERATED: generated},
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def cache(clock: FakeClock) -> DataCache:
    return DataCache(default_window_minutes=10, clock=clock)


def test_store_and_get(cache: DataCache) -> None:
    data = _reading(0)

    assert cache.store_sensor_data(data) is True
    assert cache.get_sensor_data("meter", T0) == data
    assert cache.has_sensor_data("meter", T0)
    assert cache.get_sensor_data("other", T0) is None


def test_unexpired_duplicate_is_rejected(cache: DataCache) -> None:
    cache.store_sensor_data(_reading(0))

    assert cache.store_sensor_data(_reading(0, generated=5.0)) is False
    assert cache.get_sensor_data("meter", T0).get_property_as_float(POWER_GENERATED) == 100.0


def test_entries_expire_after_default_window(cache: DataCache, clock: FakeClock) -> None:
    cache.store_sensor_data(_reading(0))

    clock.advance(9)
    assert cache.has_sensor_data("meter", T0)

    clock.advance(1)
    assert cache.get_sensor_data("meter", T0) is None
    assert cache.get_sensor_data_index("meter") == []


def test_expired_occupant_does_not_block_new_store(cache: DataCache, clock: FakeClock) -> None:
    cache.store_sensor_data(_reading(0))
    clock.advance(11)

    assert cache.store_sensor_data(_reading(0, generated=5.0)) is True
    assert cache.get_sensor_data("meter", T0).get_property_as_float(POWER_GENERATED) == 5.0


def test_window_length_overrides_default(cache: DataCache, clock: FakeClock) -> None:
    cache.store_sensor_data(_reading(0), window_length=1)
    cache.store_sensor_data(_reading(30), window_length=0)

    clock.advance(2)

    assert not cache.has_sensor_data("meter", T0)
    assert cache.has_sensor_data("meter", T0 + timedelta(seconds=30))


def test_default_window_must_be_positive() -> None:
    with pytest.raises(ValueError):
        DataCache(default_window_minutes=0)


def test_range_reads_are_sorted_and_inclusive(cache: DataCache) -> None:
    for offset in (60, 0, 90, 30):
        cache.store_sensor_data(_reading(offset))

    datas = cache.get_sensor_datas("meter", T0 + timedelta(seconds=30), T0 + timedelta(seconds=60))
    index = cache.get_sensor_data_index("meter")

    assert [data.timestamp for data in datas] == [
        T0 + timedelta(seconds=30),
        T0 + timedelta(seconds=60),
    ]
    assert [ref.timestamp for ref in index] == [T0 + timedelta(seconds=s) for s in (0, 30, 60, 90)]
    assert cache.get_latest_sensor_data("meter").timestamp == T0 + timedelta(seconds=90)


def test_reversed_range_raises(cache: DataCache) -> None:
    with pytest.raises(DataStoreError):
        cache.get_sensor_datas("meter", T0 + timedelta(seconds=1), T0)


def test_straddle_from_cached_readings(cache: DataCache) -> None:
    cache.store_sensor_data(_reading(0, generated=100.0))
    cache.store_sensor_data(_reading(50, generated=200.0))

    straddle = cache.get_straddle("meter", T0 + timedelta(seconds=25))
    exact = cache.get_straddle("meter", T0)

    assert straddle.power_generated == pytest.approx(150.0)
    assert exact.is_degenerate
    assert cache.get_straddle("meter", T0 + timedelta(seconds=51)) is None


def test_delete_single_and_all(cache: DataCache) -> None:
    cache.store_sensor_data(_reading(0))
    cache.store_sensor_data(_reading(30))

    assert cache.delete_sensor_data("meter", T0) is True
    assert cache.delete_sensor_data("meter", T0) is False
    assert cache.delete_sensor_data("meter") is True
    assert cache.get_sensor_data_index("meter") == []


def test_purge_expired_counts_removed_entries(cache: DataCache, clock: FakeClock) -> None:
    cache.store_sensor_data(_reading(0), window_length=1)
    cache.store_sensor_data(_reading(0, source="other"), window_length=1)
    cache.store_sensor_data(_reading(30))
    clock.advance(5)

    assert cache.purge_expired() == 2
    assert cache.purge_expired() == 0
    assert cache.has_sensor_data("meter", T0 + timedelta(seconds=30))


def test_should_persist_without_checkpointing(cache: DataCache) -> None:
    cache.put_checkpoint("meter", T0)

    assert cache.should_persist("meter", T0 + timedelta(seconds=1), 0)


def test_should_persist_without_a_checkpoint(cache: DataCache) -> None:
    assert cache.should_persist("meter", T0, 10)


def test_should_persist_follows_checkpoint_frequency(cache: DataCache) -> None:
    cache.put_checkpoint("meter", T0)

    assert not cache.should_persist("meter", T0 + timedelta(minutes=5), 10)
    assert cache.should_persist("meter", T0 + timedelta(minutes=10), 10)
    assert cache.should_persist("meter", T0 + timedelta(minutes=12), 10)


def test_should_persist_retroactive_readings(cache: DataCache) -> None:
    cache.put_checkpoint("meter", T0)

    assert cache.should_persist("meter", T0 - timedelta(seconds=1), 10)


def test_advance_checkpoint_never_moves_back(cache: DataCache) -> None:
    assert cache.advance_checkpoint("meter", T0) == T0
    assert cache.advance_checkpoint("meter", T0 - timedelta(minutes=1)) == T0
    assert cache.advance_checkpoint("meter", T0 + timedelta(minutes=1)) == T0 + timedelta(minutes=1)
    assert cache.get_checkpoint("meter") == T0 + timedelta(minutes=1)


def test_delete_checkpoint_and_wipe(cache: DataCache) -> None:
    cache.put_checkpoint("meter", T0)
    cache.put_checkpoint("other", T0)
    cache.store_sensor_data(_reading(0))

    assert cache.delete_checkpoint("meter") is True
    assert cache.delete_checkpoint("meter") is False

    cache.wipe_data()
    assert cache.get_checkpoint("other") is None
    assert not cache.has_sensor_data("meter", T0)


def test_per_source_locks_are_released_with_their_data(cache: DataCache, clock: FakeClock) -> None:
    cache.store_sensor_data(_reading(0))
    cache.store_sensor_data(_reading(0, source="other"), window_length=1)
    cache.advance_checkpoint("kept", T0)
    cache.get_sensor_data("never-stored", T0)
    assert set(cache._locks) == {"meter", "other", "kept"}

    cache.delete_sensor_data("meter")
    clock.advance(5)
    cache.purge_expired()
    assert set(cache._locks) == {"kept"}

    cache.wipe_data()
    assert cache._locks == {}


def test_concurrent_stores_of_one_key_admit_a_single_writer(cache: DataCache) -> None:
    data = _reading(0)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: cache.store_sensor_data(data), range(32)))

    assert results.count(True) == 1
    assert cache.get_sensor_data_index("meter") == [data.to_ref()]
