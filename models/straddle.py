"""Bracketing pairs of readings used for interpolation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from models.records import (
    INTERPOLATED,
    POWER_CONSUMED,
    POWER_GENERATED,
    SERVER_TOOL,
    SensorData,
    Source,
)
from models.timestamps import normalize_timestamp


@dataclass(frozen=True)
class SensorDataStraddle:
    """Readings immediately before and after ``timestamp``.

    ``before`` and ``after`` are the same reading when one exists exactly at
    ``timestamp`` (the degenerate case).
    """

    timestamp: datetime
    before: SensorData
    after: SensorData

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", normalize_timestamp(self.timestamp))
        if self.before.timestamp > self.after.timestamp:
            raise ValueError("Straddle 'before' reading is later than its 'after' reading.")
        if not self.before.timestamp <= self.timestamp <= self.after.timestamp:
            raise ValueError("Straddle timestamp falls outside the bracketing readings.")

    @property
    def is_degenerate(self) -> bool:
        return self.before == self.after

    @property
    def source_name(self) -> str:
        return self.before.source_name

    def interpolate(self, key: str) -> float:
        """Linearly interpolate property ``key`` at the straddle timestamp.

        A property missing from either reading interpolates to 0.
        """
        if self.is_degenerate:
            return self.before.get_property_as_float(key, 0.0) or 0.0

        before_value = self.before.get_property_as_float(key)
        after_value = self.after.get_property_as_float(key)
        if before_value is None or after_value is None:
            return 0.0

        before_time = self.before.timestamp.timestamp()
        after_time = self.after.timestamp.timestamp()
        target_time = self.timestamp.timestamp()
        slope = (after_value - before_value) / (after_time - before_time)
        return slope * (target_time - before_time) + before_value

    @property
    def power_generated(self) -> float:
        return self.interpolate(POWER_GENERATED)

    @property
    def power_consumed(self) -> float:
        return self.interpolate(POWER_CONSUMED)

    def power(self) -> SensorData:
        if self.is_degenerate:
            return self.before
        return make_power_sensor_data(
            self.timestamp,
            self.before.source,
            self.power_generated,
            self.power_consumed,
            interpolated=True,
        )


@dataclass(frozen=True)
class StraddleList:
    """A source paired with its straddles, one per requested timestamp."""

    source: Source
    straddles: List[SensorDataStraddle] = field(default_factory=list)


def make_power_sensor_data(
    timestamp: datetime,
    source: str,
    power_generated: float,
    power_consumed: float,
    interpolated: bool,
) -> SensorData:
    properties = {
        POWER_GENERATED: power_generated,
        POWER_CONSUMED: power_consumed,
    }
    if interpolated:
        properties[INTERPOLATED] = True
    return SensorData(source=source, timestamp=timestamp, tool=SERVER_TOOL, properties=properties)
