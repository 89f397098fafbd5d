"""Error taxonomy for storage and aggregation operations."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of failure callers may need to tell apart."""

    not_found = "not_found"
    bad_interval = "bad_interval"
    duplicate_key = "duplicate_key"
    aggregation_failure = "aggregation_failure"
    backend_fault = "backend_fault"
    cyclic_source = "cyclic_source"


class DataStoreError(Exception):
    """Single error type raised by the storage core; branch on ``kind``."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.start = start
        self.end = end

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    @classmethod
    def bad_interval(
        cls, start: datetime, end: datetime, message: Optional[str] = None
    ) -> "DataStoreError":
        detail = message or (
            f"Start time {start.isoformat()} is after end time {end.isoformat()}"
        )
        return cls(ErrorKind.bad_interval, detail, start=start, end=end)

    @classmethod
    def cyclic_source(cls, path: list[str]) -> "DataStoreError":
        return cls(
            ErrorKind.cyclic_source,
            f"Sub-source graph contains a cycle: {' -> '.join(path)}",
        )
