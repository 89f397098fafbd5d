"""Facade that combines the write-back cache with a durable storage backend."""

from __future__ import annotations

import logging
from datetime import datetime
from functools import lru_cache
from typing import Dict, List, Optional, Sequence

from cache.data_cache import DataCache
from datastore.base import StorageBackend, make_straddle, merge_brackets
from datastore.registry import build_default_storage
from models.records import (
    CACHE_CHECKPOINT_INTERVAL,
    SensorData,
    SensorDataRef,
    Source,
    SourceSummary,
)
from models.straddle import SensorDataStraddle, StraddleList
from models.timestamps import normalize_timestamp
from services.aggregator import Aggregator
from services.straddle import StraddleResolver
from settings import Settings, get_settings

logger = logging.getLogger(__name__)


class DataManager:
    """Single entry point for sources, readings and aggregates.

    New readings always land in the cache. They are written through to the
    backend according to the source's checkpoint interval, so a reading may
    live only in the cache until it expires. Reads merge both stores and
    prefer the cached copy when a key exists in both.
    """

    def __init__(
        self,
        backend: StorageBackend,
        cache: Optional[DataCache] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.backend = backend
        self.cache = cache or DataCache(self.settings.cache_window_minutes)
        self.resolver = StraddleResolver(self)
        self.aggregator = Aggregator(self.resolver)

    # Sources

    def store_source(self, source: Source, overwrite: bool = False) -> bool:
        if source.virtual and self._creates_cycle(source):
            logger.warning(
                "Rejecting virtual source that would create a cycle",
                extra={"source_name": source.name, "kind": "cyclic_source"},
            )
            return False
        return self.backend.store_source(source, overwrite=overwrite)

    def get_source(self, source_name: str) -> Optional[Source]:
        return self.backend.get_source(source_name)

    def get_sources(self) -> List[Source]:
        return self.backend.get_sources()

    def delete_source(self, source_name: str) -> bool:
        deleted = self.backend.delete_source(source_name)
        self.cache.delete_sensor_data(source_name)
        self.cache.delete_checkpoint(source_name)
        return deleted

    def get_source_summary(self, source_name: str) -> Optional[SourceSummary]:
        if self.get_source(source_name) is None:
            return None
        index = self.get_sensor_data_index(source_name)
        if not index:
            return SourceSummary(source=source_name)
        return SourceSummary(
            source=source_name,
            first_timestamp=index[0].timestamp,
            last_timestamp=index[-1].timestamp,
            total_sensor_data=len(index),
        )

    def _creates_cycle(self, source: Source) -> bool:
        pending = list(source.sub_source_names)
        visited = set()
        while pending:
            name = pending.pop()
            if name == source.name:
                return True
            if name in visited:
                continue
            visited.add(name)
            sub_source = self.backend.get_source(name)
            if sub_source is not None and sub_source.virtual:
                pending.extend(sub_source.sub_source_names)
        return False

    # Sensor data

    def store_sensor_data(self, data: SensorData) -> bool:
        """Cache ``data`` and write it through when a checkpoint is due.

        Returns ``False`` for unknown or virtual sources, for keys already
        held in either store, and when the backend write fails.
        """
        source_name = data.source_name
        context = {"source_name": source_name, "timestamp": data.timestamp.isoformat()}
        source = self.get_source(source_name)
        if source is None:
            logger.warning("Rejecting sensor data for unknown source", extra=context)
            return False
        if source.virtual:
            logger.warning("Rejecting sensor data for virtual source", extra=context)
            return False
        if self.has_sensor_data(source_name, data.timestamp):
            logger.debug("Sensor data already stored", extra={**context, "kind": "duplicate_key"})
            return False

        if not self.cache.store_sensor_data(data):
            return False

        frequency = self._checkpoint_frequency(source)
        if not self.cache.should_persist(source_name, data.timestamp, frequency):
            return True

        if not self.backend.store_sensor_data(data):
            self.cache.delete_sensor_data(source_name, data.timestamp)
            logger.warning(
                "Backend rejected sensor data; rolled back cache entry",
                extra={**context, "backend": self.backend.name},
            )
            return False

        checkpoint = self.cache.advance_checkpoint(source_name, data.timestamp)
        logger.debug(
            "Persisted sensor data",
            extra={
                **context,
                "checkpoint": checkpoint.isoformat(),
                "checkpoint_minutes": frequency,
            },
        )
        return True

    def _checkpoint_frequency(self, source: Source) -> int:
        frequency = source.get_property_as_int(CACHE_CHECKPOINT_INTERVAL)
        if frequency is None:
            return self.settings.checkpoint_minutes
        return frequency

    def get_sensor_data(self, source_name: str, timestamp: datetime) -> Optional[SensorData]:
        cached = self.cache.get_sensor_data(source_name, timestamp)
        if cached is not None:
            return cached
        return self.backend.get_sensor_data(source_name, timestamp)

    def has_sensor_data(self, source_name: str, timestamp: datetime) -> bool:
        return self.cache.has_sensor_data(source_name, timestamp) or self.backend.has_sensor_data(
            source_name, timestamp
        )

    def delete_sensor_data(self, source_name: str, timestamp: Optional[datetime] = None) -> bool:
        from_cache = self.cache.delete_sensor_data(source_name, timestamp)
        from_backend = self.backend.delete_sensor_data(source_name, timestamp)
        return from_cache or from_backend

    def get_sensor_data_index(
        self,
        source_name: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SensorDataRef]:
        merged: Dict[datetime, SensorDataRef] = {
            ref.timestamp: ref
            for ref in self.backend.get_sensor_data_index(source_name, start, end)
        }
        merged.update(
            (ref.timestamp, ref) for ref in self.cache.get_sensor_data_index(source_name, start, end)
        )
        return [merged[timestamp] for timestamp in sorted(merged)]

    def get_sensor_datas(
        self,
        source_name: str,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> List[SensorData]:
        merged: Dict[datetime, SensorData] = {
            data.timestamp: data
            for data in self.backend.get_sensor_datas(source_name, start, end)
        }
        merged.update(
            (data.timestamp, data) for data in self.cache.get_sensor_datas(source_name, start, end)
        )
        return [merged[timestamp] for timestamp in sorted(merged)]

    def get_latest_sensor_data(self, source_name: str) -> Optional[SensorData]:
        """Newest reading for a source.

        For a virtual source this is the summed power of its leaves at the
        earliest of their latest timestamps, the last instant every leaf
        has data for.
        """
        source = self.get_source(source_name)
        if source is None:
            return None
        if not source.virtual:
            return self._latest_non_virtual(source_name)

        latest_times: List[datetime] = []
        for leaf in self.resolver.get_all_non_virtual_sub_sources(source):
            latest = self._latest_non_virtual(leaf.name)
            if latest is None:
                return None
            latest_times.append(latest.timestamp)
        if not latest_times:
            return None
        return self.aggregator.get_power(source, min(latest_times))

    def _latest_non_virtual(self, source_name: str) -> Optional[SensorData]:
        cached = self.cache.get_latest_sensor_data(source_name)
        stored = self.backend.get_latest_non_virtual_sensor_data(source_name)
        if stored is None or (cached is not None and cached.timestamp >= stored.timestamp):
            return cached
        return stored

    def get_straddle(self, source_name: str, timestamp: datetime) -> Optional[SensorDataStraddle]:
        timestamp = normalize_timestamp(timestamp)
        bracket = merge_brackets(
            self.cache.get_bracket(source_name, timestamp),
            self.backend.get_bracket(source_name, timestamp),
        )
        return make_straddle(timestamp, *bracket)

    # Aggregates

    def get_straddle_list(
        self, source_name: str, timestamp: datetime
    ) -> Optional[List[SensorDataStraddle]]:
        source = self.get_source(source_name)
        if source is None:
            return None
        return self.resolver.get_straddle_list(source, timestamp)

    def get_straddle_lists(
        self, source_name: str, timestamps: Sequence[datetime]
    ) -> Optional[List[StraddleList]]:
        source = self.get_source(source_name)
        if source is None:
            return None
        return self.resolver.get_straddle_lists(source, timestamps)

    def get_straddle_list_of_lists(
        self, source_name: str, timestamps: Sequence[datetime]
    ) -> Optional[List[List[SensorDataStraddle]]]:
        source = self.get_source(source_name)
        if source is None:
            return None
        return self.resolver.get_straddle_list_of_lists(source, timestamps)

    def get_power(self, source_name: str, timestamp: datetime) -> Optional[SensorData]:
        source = self.get_source(source_name)
        if source is None:
            return None
        return self.aggregator.get_power(source, timestamp)

    def get_energy(
        self,
        source_name: str,
        start: datetime,
        end: Optional[datetime] = None,
        interval_minutes: int = 0,
    ) -> Optional[SensorData]:
        source = self.get_source(source_name)
        if source is None:
            return None
        return self.aggregator.get_energy(source, start, end, interval_minutes)

    def get_carbon(
        self,
        source_name: str,
        start: datetime,
        end: Optional[datetime] = None,
        interval_minutes: int = 0,
    ) -> Optional[SensorData]:
        source = self.get_source(source_name)
        if source is None:
            return None
        return self.aggregator.get_carbon(source, start, end, interval_minutes)

    # Maintenance

    def get_checkpoint_timestamp(self, source_name: str) -> Optional[datetime]:
        return self.cache.get_checkpoint(source_name)

    def is_freshly_created(self) -> bool:
        return self.backend.is_freshly_created()

    def perform_maintenance(self) -> bool:
        purged = self.cache.purge_expired()
        logger.info(
            "Running maintenance",
            extra={"backend": self.backend.name, "reason": f"purged {purged} cache entries"},
        )
        return self.backend.perform_maintenance()

    def index_tables(self) -> bool:
        return self.backend.index_tables()

    def make_snapshot(self) -> bool:
        return self.backend.make_snapshot()

    def wipe_data(self) -> bool:
        self.cache.wipe_data()
        return self.backend.wipe_data()

    def close(self) -> None:
        self.backend.close()


@lru_cache
def build_default_manager() -> DataManager:
    settings = get_settings()
    cache = DataCache(default_window_minutes=settings.cache_window_minutes)
    return DataManager(build_default_storage(), cache=cache, settings=settings)
