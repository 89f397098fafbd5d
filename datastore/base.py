"""Storage backend contract shared by every persistence implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from models.records import SensorData, SensorDataRef, Source, SourceSummary
from models.straddle import SensorDataStraddle
from models.timestamps import normalize_timestamp

Bracket = Tuple[Optional[SensorData], Optional[SensorData]]


class StorageBackend(ABC):
    """Durable storage for sources and their sensor data.

    Implementations must behave identically at this boundary: lookups return
    ``None``/``False``/empty results for missing keys, stores never overwrite
    an existing sensor-data key, ranged queries raise
    ``DataStoreError(kind=bad_interval)`` when ``start > end``, and faults in
    the underlying technology are logged and reported as ``False``/``None``.
    """

    name: str = "abstract"

    @abstractmethod
    def initialize(self, wipe: bool = False) -> None:
        """Prepare backend state, discarding existing data when ``wipe``."""

    @abstractmethod
    def is_freshly_created(self) -> bool:
        """True when ``initialize`` found no prior data."""

    @abstractmethod
    def wipe_data(self) -> bool:
        ...

    def close(self) -> None:
        """Release resources held by the backend."""

    # Sources

    @abstractmethod
    def store_source(self, source: Source, overwrite: bool = False) -> bool:
        ...

    @abstractmethod
    def get_source(self, source_name: str) -> Optional[Source]:
        ...

    @abstractmethod
    def get_sources(self) -> List[Source]:
        """All sources, sorted by name."""

    @abstractmethod
    def delete_source(self, source_name: str) -> bool:
        """Remove the source and every reading stored for it."""

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

    # Sensor data

    @abstractmethod
    def store_sensor_data(self, data: SensorData) -> bool:
        """Insert ``data`` unless its (source, timestamp) key already exists."""

    @abstractmethod
    def get_sensor_data(self, source_name: str, timestamp: datetime) -> Optional[SensorData]:
        ...

    def has_sensor_data(self, source_name: str, timestamp: datetime) -> bool:
        return self.get_sensor_data(source_name, timestamp) is not None

    @abstractmethod
    def delete_sensor_data(self, source_name: str, timestamp: Optional[datetime] = None) -> bool:
        """Delete one reading, or every reading of the source when no timestamp is given."""

    @abstractmethod
    def get_sensor_data_index(
        self,
        source_name: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SensorDataRef]:
        """References sorted ascending by timestamp; bounds are inclusive."""

    @abstractmethod
    def get_sensor_datas(
        self,
        source_name: str,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> List[SensorData]:
        ...

    @abstractmethod
    def get_latest_non_virtual_sensor_data(self, source_name: str) -> Optional[SensorData]:
        ...

    @abstractmethod
    def get_bracket(self, source_name: str, timestamp: datetime) -> Bracket:
        """Closest readings at-or-before and at-or-after ``timestamp``."""

    def get_straddle(self, source_name: str, timestamp: datetime) -> Optional[SensorDataStraddle]:
        before, after = self.get_bracket(source_name, timestamp)
        return make_straddle(timestamp, before, after)

    # Housekeeping

    @abstractmethod
    def perform_maintenance(self) -> bool:
        ...

    @abstractmethod
    def index_tables(self) -> bool:
        ...

    @abstractmethod
    def make_snapshot(self) -> bool:
        ...


def make_straddle(
    timestamp: datetime,
    before: Optional[SensorData],
    after: Optional[SensorData],
) -> Optional[SensorDataStraddle]:
    if before is None or after is None:
        return None
    timestamp = normalize_timestamp(timestamp)
    if before.timestamp == timestamp:
        return SensorDataStraddle(timestamp=timestamp, before=before, after=before)
    if after.timestamp == timestamp:
        return SensorDataStraddle(timestamp=timestamp, before=after, after=after)
    return SensorDataStraddle(timestamp=timestamp, before=before, after=after)


def merge_brackets(first: Bracket, second: Bracket) -> Bracket:
    """Combine two brackets, keeping the tighter end on each side.

    On a tie the reading from ``first`` wins.
    """
    first_before, first_after = first
    second_before, second_after = second

    before = first_before
    if second_before is not None and (
        before is None or second_before.timestamp > before.timestamp
    ):
        before = second_before

    after = first_after
    if second_after is not None and (
        after is None or second_after.timestamp < after.timestamp
    ):
        after = second_after

    return before, after
