from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

from datastore.base import Bracket, StorageBackend
from models.records import SensorData, SensorDataRef, Source
from models.timestamps import check_interval, in_between, normalize_timestamp

logger = logging.getLogger(__name__)


class MemoryStorage(StorageBackend):
    """Process-local storage built on dictionaries.

    Writes are serialised by one lock so that the source check, the insert
    and any cascade happen together; reads take no lock. With a
    ``persistence_path`` every successful write also rewrites the JSON
    snapshot, so the data outlives the process.
    """

    name = "memory"

    def __init__(self, persistence_path: Optional[Path] = None) -> None:
        self.persistence_path = persistence_path
        self._sources: Dict[str, Source] = {}
        self._sensor_data: Dict[str, Dict[datetime, SensorData]] = {}
        self._lock = Lock()
        self._freshly_created = True

    def initialize(self, wipe: bool = False) -> None:
        with self._lock:
            self._sources = {}
            self._sensor_data = {}
            self._freshly_created = True
            if self.persistence_path is None:
                return
            self.persistence_path.parent.mkdir(parents=True, exist_ok=True)
            if wipe:
                self.persistence_path.unlink(missing_ok=True)
                return
            self._load_from_disk()

    def is_freshly_created(self) -> bool:
        return self._freshly_created

    def wipe_data(self) -> bool:
        with self._lock:
            self._sources.clear()
            self._sensor_data.clear()
            self._persist()
        return True

    # Sources

    def store_source(self, source: Source, overwrite: bool = False) -> bool:
        with self._lock:
            if not overwrite and source.name in self._sources:
                return False
            self._sources[source.name] = source.model_copy()
            self._persist()
        return True

    def get_source(self, source_name: str) -> Optional[Source]:
        return self._sources.get(source_name)

    def get_sources(self) -> List[Source]:
        return sorted(self._sources.values(), key=lambda source: source.name)

    def delete_source(self, source_name: str) -> bool:
        with self._lock:
            self._sensor_data.pop(source_name, None)
            if self._sources.pop(source_name, None) is None:
                return False
            self._persist()
        return True

    # Sensor data

    def store_sensor_data(self, data: SensorData) -> bool:
        source_name = data.source_name
        with self._lock:
            if source_name not in self._sources:
                logger.warning(
                    "Rejecting sensor data for unknown source",
                    extra={"source_name": source_name, "timestamp": data.timestamp.isoformat()},
                )
                return False
            readings = self._sensor_data.setdefault(source_name, {})
            if data.timestamp in readings:
                return False
            readings[data.timestamp] = data.model_copy()
            self._persist()
        return True

    def get_sensor_data(self, source_name: str, timestamp: datetime) -> Optional[SensorData]:
        readings = self._sensor_data.get(source_name)
        if readings is None:
            return None
        return readings.get(normalize_timestamp(timestamp))

    def delete_sensor_data(self, source_name: str, timestamp: Optional[datetime] = None) -> bool:
        with self._lock:
            if timestamp is None:
                deleted = self._sensor_data.pop(source_name, None) is not None
            else:
                readings = self._sensor_data.get(source_name)
                deleted = (
                    readings is not None
                    and readings.pop(normalize_timestamp(timestamp), None) is not None
                )
            if deleted:
                self._persist()
        return deleted

    def get_sensor_data_index(
        self,
        source_name: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SensorDataRef]:
        return [data.to_ref() for data in self._readings_between(source_name, start, end)]

    def get_sensor_datas(
        self,
        source_name: str,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> List[SensorData]:
        return self._readings_between(source_name, start, end)

    def get_latest_non_virtual_sensor_data(self, source_name: str) -> Optional[SensorData]:
        source = self._sources.get(source_name)
        if source is None or source.virtual:
            return None
        readings = self._snapshot(source_name)
        if not readings:
            return None
        return max(readings, key=lambda data: data.timestamp)

    def get_bracket(self, source_name: str, timestamp: datetime) -> Bracket:
        timestamp = normalize_timestamp(timestamp)
        exact = self.get_sensor_data(source_name, timestamp)
        if exact is not None:
            return exact, exact

        before: Optional[SensorData] = None
        after: Optional[SensorData] = None
        for data in self._snapshot(source_name):
            if data.timestamp <= timestamp and (
                before is None or data.timestamp > before.timestamp
            ):
                before = data
            if data.timestamp >= timestamp and (
                after is None or data.timestamp < after.timestamp
            ):
                after = data
        return before, after

    # Housekeeping

    def perform_maintenance(self) -> bool:
        # Drop empty per-source maps left behind by single deletes.
        with self._lock:
            for source_name, readings in list(self._sensor_data.items()):
                if not readings:
                    self._sensor_data.pop(source_name, None)
        return True

    def index_tables(self) -> bool:
        return True

    def make_snapshot(self) -> bool:
        if self.persistence_path is None:
            logger.info("Snapshot requested but no persistence path is configured")
            return False
        with self._lock:
            return self._persist()

    def _persist(self) -> bool:
        """Write every source and reading to ``persistence_path``; caller holds the lock."""
        if self.persistence_path is None:
            return False
        payload = {
            "sources": [source.model_dump(mode="json") for source in self.get_sources()],
            "sensor_data": [
                data.model_dump(mode="json")
                for source_name in sorted(self._sensor_data)
                for data in self._sorted_readings(source_name)
            ],
        }
        try:
            self.persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))
        except OSError:
            logger.exception(
                "Failed to write snapshot",
                extra={"backend": self.name, "reason": str(self.persistence_path)},
            )
            return False
        return True

    def _snapshot(self, source_name: str) -> List[SensorData]:
        readings = self._sensor_data.get(source_name)
        if not readings:
            return []
        return list(readings.values())

    def _sorted_readings(self, source_name: str) -> List[SensorData]:
        return sorted(self._snapshot(source_name), key=lambda data: data.timestamp)

    def _readings_between(
        self,
        source_name: str,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> List[SensorData]:
        start = normalize_timestamp(start) if start is not None else None
        end = normalize_timestamp(end) if end is not None else None
        if start is not None and end is not None:
            check_interval(start, end)

        readings = self._sorted_readings(source_name)
        if not readings:
            return []
        lower = start if start is not None else readings[0].timestamp
        upper = end if end is not None else readings[-1].timestamp
        return [data for data in readings if in_between(lower, data.timestamp, upper)]

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            logger.exception(
                "Ignoring unreadable snapshot",
                extra={"backend": self.name, "reason": str(self.persistence_path)},
            )
            data = {}

        for payload in data.get("sources", []):
            source = Source.model_validate(payload)
            self._sources[source.name] = source
        for payload in data.get("sensor_data", []):
            reading = SensorData.model_validate(payload)
            self._sensor_data.setdefault(reading.source_name, {})[reading.timestamp] = reading

        if self._sources:
            self._freshly_created = False
            logger.info(
                "Loaded snapshot",
                extra={"backend": self.name, "reason": str(self.persistence_path)},
            )
