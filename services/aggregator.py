"""Power, energy and carbon aggregates over stored and cached readings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from models.records import (
    CARBON_EMITTED,
    CARBON_INTENSITY,
    ENERGY_CONSUMED,
    ENERGY_CONSUMED_TO_DATE,
    ENERGY_GENERATED,
    ENERGY_GENERATED_TO_DATE,
    INTERPOLATED,
    SERVER_TOOL,
    SUPPORTS_ENERGY_COUNTERS,
    SensorData,
    Source,
)
from models.straddle import SensorDataStraddle, make_power_sensor_data
from models.timestamps import normalize_timestamp, timestamp_list
from services.straddle import StraddleResolver

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 60 * 60
POUNDS_PER_MWH_SCALE = 1_000_000


@dataclass
class EnergyTotals:
    """Energy generated and consumed over a range, in watt-hours."""

    generated: float = 0.0
    consumed: float = 0.0

    def add(self, other: "EnergyTotals") -> None:
        self.generated += other.generated
        self.consumed += other.consumed


class Aggregator:
    """Computes aggregates for a source from the straddles around a time range.

    Virtual sources are expanded to their non-virtual leaves; a leaf that
    cannot be aggregated voids the whole result, which is returned as ``None``.
    """

    def __init__(self, resolver: StraddleResolver) -> None:
        self.resolver = resolver

    # Power

    def get_power(self, source: Source, timestamp: datetime) -> Optional[SensorData]:
        timestamp = normalize_timestamp(timestamp)
        if not source.virtual:
            straddle = self.resolver.get_straddle(source.name, timestamp)
            if straddle is None:
                self._log_failure(source, "no readings bracket the timestamp", start=timestamp)
                return None
            return straddle.power()

        straddles = self.resolver.get_straddle_list(source, timestamp)
        if straddles is None:
            self._log_failure(source, "a sub-source has no bracketing readings", start=timestamp)
            return None
        return power_from_straddles(source.name, timestamp, straddles)

    # Energy

    def get_energy(
        self,
        source: Source,
        start: datetime,
        end: Optional[datetime] = None,
        interval_minutes: int = 0,
    ) -> Optional[SensorData]:
        """Energy generated and consumed between ``start`` and ``end``.

        Sources flagged with ``supportsEnergyCounters`` use the difference of
        their cumulative counters; the rest integrate sampled power with the
        trapezoid rule. Raises ``DataStoreError`` for a bad range or interval.
        """
        window = self._resolve_window(source, start, end, interval_minutes)
        if window is None:
            return None
        start, end, samples = window

        totals = self._sum_over_leaves(
            source, lambda leaf: self._leaf_energy(leaf, start, end, samples)
        )
        if totals is None:
            return None
        return make_energy_sensor_data(start, source.name, totals.generated, totals.consumed)

    # Carbon

    def get_carbon(
        self,
        source: Source,
        start: datetime,
        end: Optional[datetime] = None,
        interval_minutes: int = 0,
    ) -> Optional[SensorData]:
        """Pounds of CO2 emitted, from energy generated and ``carbonIntensity``.

        Intensity is in lbs/MWh and taken from each leaf source; a leaf
        without one contributes nothing.
        """
        window = self._resolve_window(source, start, end, interval_minutes)
        if window is None:
            return None
        start, end, samples = window

        totals = self._sum_over_leaves(
            source, lambda leaf: self._leaf_carbon(leaf, start, end, samples)
        )
        if totals is None:
            return None
        return make_carbon_sensor_data(start, source.name, totals.generated)

    # Helpers

    def _resolve_window(
        self,
        source: Source,
        start: datetime,
        end: Optional[datetime],
        interval_minutes: int,
    ) -> Optional[tuple[datetime, datetime, List[datetime]]]:
        start = normalize_timestamp(start)
        if end is None:
            latest = self.resolver.manager.get_latest_sensor_data(source.name)
            if latest is None:
                self._log_failure(source, "no latest reading to end the range", start=start)
                return None
            end = latest.timestamp
        else:
            end = normalize_timestamp(end)
        # Validates the range and interval for every strategy, counters included.
        samples = timestamp_list(start, end, interval_minutes)
        return start, end, samples

    def _sum_over_leaves(
        self, source: Source, leaf_totals: Callable[[Source], Optional[EnergyTotals]]
    ) -> Optional[EnergyTotals]:
        leaves = self.resolver.get_all_non_virtual_sub_sources(source)
        if not leaves:
            self._log_failure(source, "virtual source has no non-virtual sub-sources")
            return None
        totals = EnergyTotals()
        for leaf in leaves:
            contribution = leaf_totals(leaf)
            if contribution is None:
                if leaf.name != source.name:
                    self._log_failure(source, f"sub-source {leaf.name!r} could not be aggregated")
                return None
            totals.add(contribution)
        return totals

    def _leaf_energy(
        self, leaf: Source, start: datetime, end: datetime, samples: Sequence[datetime]
    ) -> Optional[EnergyTotals]:
        if leaf.is_property_true(SUPPORTS_ENERGY_COUNTERS):
            return self._energy_from_counters(leaf, start, end)
        return self._energy_from_samples(leaf, samples)

    def _leaf_carbon(
        self, leaf: Source, start: datetime, end: datetime, samples: Sequence[datetime]
    ) -> Optional[EnergyTotals]:
        energy = self._leaf_energy(leaf, start, end, samples)
        if energy is None:
            return None
        intensity = leaf.get_property_as_float(CARBON_INTENSITY, 0.0) or 0.0
        # Carried in ``generated`` so the leaf sum can reuse EnergyTotals.
        return EnergyTotals(generated=energy.generated / POUNDS_PER_MWH_SCALE * intensity)

    def _energy_from_counters(
        self, leaf: Source, start: datetime, end: datetime
    ) -> Optional[EnergyTotals]:
        start_straddle = self.resolver.get_straddle(leaf.name, start)
        end_straddle = self.resolver.get_straddle(leaf.name, end)
        if start_straddle is None or end_straddle is None:
            self._log_failure(leaf, "no readings bracket the range ends", start=start, end=end)
            return None

        generated = end_straddle.interpolate(ENERGY_GENERATED_TO_DATE) - start_straddle.interpolate(
            ENERGY_GENERATED_TO_DATE
        )
        consumed = end_straddle.interpolate(ENERGY_CONSUMED_TO_DATE) - start_straddle.interpolate(
            ENERGY_CONSUMED_TO_DATE
        )
        if generated < 0 or consumed < 0:
            logger.warning(
                "Energy counter went backwards, assuming rollover",
                extra={
                    "source_name": leaf.name,
                    "start": start.isoformat(),
                    "end": end.isoformat(),
                    "delta": min(generated, consumed),
                },
            )
            return None
        return EnergyTotals(generated=generated, consumed=consumed)

    def _energy_from_samples(
        self, leaf: Source, samples: Sequence[datetime]
    ) -> Optional[EnergyTotals]:
        straddles: List[SensorDataStraddle] = []
        for timestamp in samples:
            straddle = self.resolver.get_straddle(leaf.name, timestamp)
            if straddle is None:
                self._log_failure(leaf, "no readings bracket a sample", start=timestamp)
                return None
            straddles.append(straddle)
        return energy_from_straddles(straddles)

    @staticmethod
    def _log_failure(
        source: Source,
        reason: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> None:
        extra = {"source_name": source.name, "reason": reason}
        if start is not None:
            extra["start"] = start.isoformat()
        if end is not None:
            extra["end"] = end.isoformat()
        logger.warning("Aggregation failed", extra=extra)


def power_from_straddles(
    source_name: str, timestamp: datetime, straddles: Sequence[SensorDataStraddle]
) -> SensorData:
    """Sum leaf power; the result is interpolated unless every straddle is exact."""
    generated = sum(straddle.power_generated for straddle in straddles)
    consumed = sum(straddle.power_consumed for straddle in straddles)
    interpolated = not all(straddle.is_degenerate for straddle in straddles)
    return make_power_sensor_data(timestamp, source_name, generated, consumed, interpolated)


def energy_from_straddles(straddles: Sequence[SensorDataStraddle]) -> EnergyTotals:
    """Trapezoid-rule energy across consecutive straddles, in watt-hours."""
    totals = EnergyTotals()
    for first, second in zip(straddles, straddles[1:]):
        seconds = (second.timestamp - first.timestamp).total_seconds()
        totals.generated += seconds * (first.power_generated + second.power_generated) / 2
        totals.consumed += seconds * (first.power_consumed + second.power_consumed) / 2
    totals.generated /= SECONDS_PER_HOUR
    totals.consumed /= SECONDS_PER_HOUR
    return totals


def make_energy_sensor_data(
    timestamp: datetime, source: str, energy_generated: float, energy_consumed: float
) -> SensorData:
    properties = {
        ENERGY_GENERATED: energy_generated,
        ENERGY_CONSUMED: energy_consumed,
        INTERPOLATED: True,
    }
    return SensorData(source=source, timestamp=timestamp, tool=SERVER_TOOL, properties=properties)


def make_carbon_sensor_data(timestamp: datetime, source: str, carbon_emitted: float) -> SensorData:
    properties = {CARBON_EMITTED: carbon_emitted, INTERPOLATED: True}
    return SensorData(source=source, timestamp=timestamp, tool=SERVER_TOOL, properties=properties)
