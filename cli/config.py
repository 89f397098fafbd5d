from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_INTERVAL_MINUTES = 0

_BACKEND_ENV = "WATTSTORE_CLI_BACKEND"
_INTERVAL_ENV = "WATTSTORE_CLI_INTERVAL_MINUTES"


@dataclass(frozen=True)
class CLIConfig:
    backend: Optional[str] = None
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES


def _read_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def load_config(
    backend: Optional[str] = None,
    interval_minutes: Optional[int] = None,
) -> CLIConfig:
    """Resolve CLI options, falling back to environment variables.

    ``backend`` of ``None`` means the storage backend from the core settings.
    """
    name = backend or os.getenv(_BACKEND_ENV) or None
    if interval_minutes is None:
        interval_minutes = _read_int(os.getenv(_INTERVAL_ENV), DEFAULT_INTERVAL_MINUTES)
    return CLIConfig(
        backend=name.strip().lower() if name else None,
        interval_minutes=interval_minutes,
    )
