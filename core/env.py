"""Environment variable helpers."""

from __future__ import annotations

import os
from typing import List, Optional

from core.logging import get_logger

logger = get_logger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_int(key: str, default: int, *, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %d.", key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%d is below minimum %d. Falling back to %d.", key, value, minimum, default)
        return default
    if maximum is not None and value > maximum:
        return maximum
    return value


def env_float(key: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
        if minimum is not None and value < minimum:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %.2f.", key, raw, default)
        return default


def env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    logger.warning("Invalid boolean env %s='%s'. Using default=%s.", key, raw, default)
    return default


def env_csv(key: str, *, lower: bool = False) -> List[str]:
    """Split a comma separated variable into trimmed, non-empty entries."""
    raw = os.getenv(key) or ""
    items: List[str] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        items.append(entry.lower() if lower else entry)
    return items


def runtime_environment() -> str:
    return (env_str("APP_ENV", "development") or "development").lower()


def is_production() -> bool:
    return runtime_environment() in {"production", "prod"}
