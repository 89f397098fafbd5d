"""Timestamp helpers shared by the stores, the cache and the aggregator."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

from models.errors import DataStoreError


def normalize_timestamp(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are read as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    candidate = value.strip()
    if not candidate:
        raise ValueError("Timestamp is empty.")

    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp format: {value!r}") from exc

    return normalize_timestamp(parsed)


def in_between(start: datetime, timestamp: datetime, end: datetime) -> bool:
    """Inclusive range check."""
    return start <= timestamp <= end


def check_interval(start: datetime, end: datetime) -> None:
    if start > end:
        raise DataStoreError.bad_interval(start, end)


def timestamp_list(start: datetime, end: datetime, interval_minutes: int = 0) -> List[datetime]:
    """Sample timestamps from ``start`` to ``end`` inclusive.

    With ``interval_minutes`` of 0 the range is split into ten equal steps.
    The final sample is always ``end`` even when the step does not divide the
    range evenly.
    """
    check_interval(start, end)
    if interval_minutes < 0:
        raise DataStoreError.bad_interval(
            start, end, f"Sampling interval must not be negative: {interval_minutes}"
        )

    span = end - start
    if span == timedelta(0):
        return [start]

    if interval_minutes == 0:
        # Ranges under ten microseconds would otherwise give a zero step.
        step = max(span / 10, timedelta(microseconds=1))
    else:
        step = timedelta(minutes=interval_minutes)
        if step > span:
            raise DataStoreError.bad_interval(
                start,
                end,
                f"Sampling interval of {interval_minutes} minutes exceeds the requested range",
            )

    samples: List[datetime] = []
    current = start
    while current < end:
        samples.append(current)
        current = start + step * len(samples)
    samples.append(end)
    return samples
