"""Domain models shared across services."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models.timestamps import normalize_timestamp

# Source property keys
CARBON_INTENSITY = "carbonIntensity"
SUPPORTS_ENERGY_COUNTERS = "supportsEnergyCounters"
CACHE_CHECKPOINT_INTERVAL = "cacheCheckpointInterval"
UPDATE_INTERVAL = "updateInterval"

# SensorData property keys
POWER_CONSUMED = "powerConsumed"
POWER_GENERATED = "powerGenerated"
ENERGY_CONSUMED_TO_DATE = "energyConsumedToDate"
ENERGY_GENERATED_TO_DATE = "energyGeneratedToDate"
ENERGY_CONSUMED = "energyConsumed"
ENERGY_GENERATED = "energyGenerated"
CARBON_EMITTED = "carbonEmitted"
INTERPOLATED = "interpolated"

SERVER_TOOL = "wattstore"


def source_name_from_ref(reference: str) -> str:
    """Return the source name from a plain name or a source URI."""
    return reference.rstrip("/").rsplit("/", 1)[-1]


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class _PropertyBag(BaseModel):
    """Typed accessors over a string-valued ``properties`` mapping."""

    model_config = ConfigDict(frozen=True)

    properties: Dict[str, str] = Field(default_factory=dict)

    @field_validator("properties", mode="before")
    @classmethod
    def _stringify_values(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(key): _stringify(item) for key, item in value.items()}
        return value

    def get_property(self, key: str) -> Optional[str]:
        return self.properties.get(key)

    def get_property_as_float(self, key: str, default: Optional[float] = None) -> Optional[float]:
        raw = self.properties.get(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except ValueError:
            return default

    def get_property_as_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        raw = self.properties.get(key)
        if raw is None:
            return default
        try:
            return int(raw.strip())
        except ValueError:
            return default

    def is_property_true(self, key: str) -> bool:
        raw = self.properties.get(key)
        return raw is not None and raw.strip().lower() == "true"


class Source(_PropertyBag):
    """A named origin of readings; virtual sources aggregate other sources."""

    name: str = Field(..., min_length=1)
    owner: str = ""
    public: bool = False
    virtual: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    coordinates: Optional[str] = None
    sub_sources: Tuple[str, ...] = ()

    @field_validator("name")
    @classmethod
    def _name_has_no_separator(cls, value: str) -> str:
        if "/" in value:
            raise ValueError("Source names may not contain '/'.")
        return value

    @model_validator(mode="after")
    def _only_virtual_sources_have_children(self) -> "Source":
        if self.sub_sources and not self.virtual:
            raise ValueError(f"Non-virtual source {self.name!r} cannot have sub-sources.")
        return self

    @property
    def sub_source_names(self) -> Tuple[str, ...]:
        return tuple(source_name_from_ref(ref) for ref in self.sub_sources)

    def with_properties(self, **updates: Any) -> "Source":
        """Return a copy with the given properties added or replaced."""
        merged = dict(self.properties)
        merged.update({key: _stringify(value) for key, value in updates.items()})
        return self.model_copy(update={"properties": merged})


class SensorData(_PropertyBag):
    """One timestamped reading; unique per (source, timestamp)."""

    source: str = Field(..., min_length=1)
    timestamp: datetime
    tool: str = ""

    @field_validator("timestamp")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return normalize_timestamp(value)

    @property
    def source_name(self) -> str:
        return source_name_from_ref(self.source)

    @property
    def key(self) -> Tuple[str, datetime]:
        return self.source_name, self.timestamp

    def to_ref(self) -> "SensorDataRef":
        return SensorDataRef(source=self.source_name, timestamp=self.timestamp, tool=self.tool)


class SensorDataRef(BaseModel):
    """Lightweight index entry for a stored reading."""

    model_config = ConfigDict(frozen=True)

    source: str
    timestamp: datetime
    tool: str = ""


class SourceSummary(BaseModel):
    """Span and size of the readings held for one source."""

    model_config = ConfigDict(frozen=True)

    source: str
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    total_sensor_data: int = Field(0, ge=0)
