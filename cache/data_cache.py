"""Write-back cache for recent sensor data.

Entries expire a fixed number of minutes after they are stored. Alongside
the readings the cache remembers, per source, the timestamp of the last
reading written through to durable storage (the checkpoint); ``should_persist``
uses it to decide whether a new reading must also reach the backend.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, Iterator, List, Optional

from datastore.base import Bracket, make_straddle
from models.records import SensorData, SensorDataRef
from models.straddle import SensorDataStraddle
from models.timestamps import check_interval, in_between, normalize_timestamp

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MINUTES = 60


@dataclass(slots=True)
class CacheEntry:
    """A cached reading and the clock value at which it expires."""

    data: SensorData
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class DataCache:

    def __init__(
        self,
        default_window_minutes: int = DEFAULT_WINDOW_MINUTES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_window_minutes <= 0:
            raise ValueError("Default cache window must be a positive number of minutes.")
        self.default_window_minutes = default_window_minutes
        self._clock = clock
        self._entries: Dict[str, Dict[datetime, CacheEntry]] = {}
        self._checkpoints: Dict[str, datetime] = {}
        self._locks: Dict[str, Lock] = {}

    def _lock_for(self, source_name: str) -> Lock:
        lock = self._locks.get(source_name)
        if lock is None:
            lock = self._locks.setdefault(source_name, Lock())
        return lock

    @contextmanager
    def _locked(self, source_name: str) -> Iterator[None]:
        """Hold the source's lock; the lock is dropped once the source has no state left."""
        while True:
            lock = self._lock_for(source_name)
            lock.acquire()
            # A lock pruned while we waited on it no longer guards the source.
            if self._locks.get(source_name) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            if source_name not in self._entries and source_name not in self._checkpoints:
                self._locks.pop(source_name, None)
            lock.release()

    def _live(self, source_name: str) -> List[SensorData]:
        """Unexpired readings for the source, dropping expired ones on the way."""
        with self._locked(source_name):
            bucket = self._entries.get(source_name)
            if not bucket:
                return []
            now = self._clock()
            expired = [ts for ts, entry in bucket.items() if entry.is_expired(now)]
            for ts in expired:
                del bucket[ts]
            return [entry.data for entry in bucket.values()]

    def _sorted_live(self, source_name: str) -> List[SensorData]:
        return sorted(self._live(source_name), key=lambda data: data.timestamp)

    # Sensor data

    def store_sensor_data(self, data: SensorData, window_length: int = 0) -> bool:
        """Cache ``data`` for ``window_length`` minutes (the default when <= 0).

        Fails if an unexpired entry already holds the same key.
        """
        minutes = window_length if window_length > 0 else self.default_window_minutes
        source_name = data.source_name
        with self._locked(source_name):
            now = self._clock()
            bucket = self._entries.setdefault(source_name, {})
            existing = bucket.get(data.timestamp)
            if existing is not None and not existing.is_expired(now):
                return False
            bucket[data.timestamp] = CacheEntry(data=data, expires_at=now + minutes * 60)
        return True

    def get_sensor_data(self, source_name: str, timestamp: datetime) -> Optional[SensorData]:
        timestamp = normalize_timestamp(timestamp)
        with self._locked(source_name):
            bucket = self._entries.get(source_name)
            if not bucket:
                return None
            entry = bucket.get(timestamp)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del bucket[timestamp]
                return None
            return entry.data

    def has_sensor_data(self, source_name: str, timestamp: datetime) -> bool:
        return self.get_sensor_data(source_name, timestamp) is not None

    def get_sensor_datas(
        self,
        source_name: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SensorData]:
        start = normalize_timestamp(start) if start is not None else None
        end = normalize_timestamp(end) if end is not None else None
        if start is not None and end is not None:
            check_interval(start, end)

        readings = self._sorted_live(source_name)
        if not readings:
            return []
        lower = start if start is not None else readings[0].timestamp
        upper = end if end is not None else readings[-1].timestamp
        return [data for data in readings if in_between(lower, data.timestamp, upper)]

    def get_sensor_data_index(
        self,
        source_name: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SensorDataRef]:
        return [data.to_ref() for data in self.get_sensor_datas(source_name, start, end)]

    def get_latest_sensor_data(self, source_name: str) -> Optional[SensorData]:
        readings = self._live(source_name)
        if not readings:
            return None
        return max(readings, key=lambda data: data.timestamp)

    def get_bracket(self, source_name: str, timestamp: datetime) -> Bracket:
        timestamp = normalize_timestamp(timestamp)
        before: Optional[SensorData] = None
        after: Optional[SensorData] = None
        for data in self._live(source_name):
            if data.timestamp == timestamp:
                return data, data
            if data.timestamp < timestamp and (
                before is None or data.timestamp > before.timestamp
            ):
                before = data
            if data.timestamp > timestamp and (
                after is None or data.timestamp < after.timestamp
            ):
                after = data
        return before, after

    def get_straddle(self, source_name: str, timestamp: datetime) -> Optional[SensorDataStraddle]:
        before, after = self.get_bracket(source_name, timestamp)
        return make_straddle(timestamp, before, after)

    def delete_sensor_data(self, source_name: str, timestamp: Optional[datetime] = None) -> bool:
        with self._locked(source_name):
            if timestamp is None:
                return bool(self._entries.pop(source_name, None))
            bucket = self._entries.get(source_name)
            if not bucket:
                return False
            entry = bucket.pop(normalize_timestamp(timestamp), None)
            return entry is not None and not entry.is_expired(self._clock())

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        removed = 0
        for source_name in list(self._entries):
            with self._locked(source_name):
                bucket = self._entries.get(source_name)
                if bucket is None:
                    continue
                now = self._clock()
                expired = [ts for ts, entry in bucket.items() if entry.is_expired(now)]
                for ts in expired:
                    del bucket[ts]
                removed += len(expired)
                if not bucket:
                    del self._entries[source_name]
        if removed:
            logger.debug("Purged expired cache entries", extra={"reason": f"{removed} entries"})
        return removed

    def wipe_data(self) -> None:
        for source_name in set(self._entries) | set(self._checkpoints):
            with self._locked(source_name):
                self._entries.pop(source_name, None)
                self._checkpoints.pop(source_name, None)

    # Checkpoints

    def get_checkpoint(self, source_name: str) -> Optional[datetime]:
        return self._checkpoints.get(source_name)

    def put_checkpoint(self, source_name: str, timestamp: datetime) -> None:
        self._checkpoints[source_name] = normalize_timestamp(timestamp)

    def advance_checkpoint(self, source_name: str, timestamp: datetime) -> datetime:
        """Move the checkpoint forward to ``timestamp``; never moves it back."""
        timestamp = normalize_timestamp(timestamp)
        with self._locked(source_name):
            current = self._checkpoints.get(source_name)
            if current is None or timestamp > current:
                self._checkpoints[source_name] = timestamp
                return timestamp
            return current

    def delete_checkpoint(self, source_name: str) -> bool:
        with self._locked(source_name):
            return self._checkpoints.pop(source_name, None) is not None

    def should_persist(
        self, source_name: str, timestamp: datetime, checkpoint_frequency: int
    ) -> bool:
        """Decide whether a reading must also be written to durable storage.

        Always true when checkpointing is disabled, when no checkpoint exists
        yet, and for readings older than the checkpoint. Otherwise true only
        once ``checkpoint_frequency`` minutes have passed since the checkpoint.
        """
        if checkpoint_frequency <= 0:
            return True

        last_checkpoint = self.get_checkpoint(source_name)
        if last_checkpoint is None:
            return True

        timestamp = normalize_timestamp(timestamp)
        if timestamp < last_checkpoint:
            return True

        return timestamp >= last_checkpoint + timedelta(minutes=checkpoint_frequency)
