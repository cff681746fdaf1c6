"""Shared logging helpers."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Optional, Tuple

_CONFIGURED = False
_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
_RATE_LIMITED_LOGGERS: Dict[str, logging.Logger] = {}
_REGISTRY_LOCK = threading.Lock()


def setup_logging(level: int = logging.INFO, *, fmt: Optional[str] = None) -> None:
    """Ensure root logger is configured once."""
    global _CONFIGURED
    if not _CONFIGURED:
        logging.basicConfig(level=level, format=fmt or _DEFAULT_FORMAT)
        _CONFIGURED = True


def get_logger(name: str, *, level: int = logging.INFO) -> logging.Logger:
    """Return configured logger for a module."""
    setup_logging(level=level)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger


class RateLimitedLogFilter(logging.Filter):
    """Drop records identical to one already emitted within ``interval`` seconds.

    ``interval=None`` keeps a record suppressed for the lifetime of the process,
    which turns any warning routed through the filter into a warn-once message.
    Records below ``min_level`` always pass.
    """

    def __init__(self, interval: Optional[float] = None, *, min_level: int = logging.WARNING) -> None:
        super().__init__()
        self.interval = interval
        self.min_level = min_level
        self._seen: Dict[Tuple[int, str], float] = {}
        self._lock = threading.Lock()

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno < self.min_level:
            return True
        key = (record.levelno, record.getMessage())
        now = time.monotonic()
        with self._lock:
            last = self._seen.get(key)
            if last is not None and (self.interval is None or now - last < self.interval):
                return False
            self._seen[key] = now
        return True

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()


def get_rate_limited_logger(name: str, *, interval: Optional[float] = None) -> logging.Logger:
    """Return a process-scoped logger whose identical warnings are rate limited.

    One logger exists per name; asking for it again with a different
    ``interval`` raises ``ValueError``.
    """
    with _REGISTRY_LOCK:
        logger = _RATE_LIMITED_LOGGERS.get(name)
        if logger is None:
            logger = get_logger(f"{name}.ratelimited")
            logger.addFilter(RateLimitedLogFilter(interval))
            _RATE_LIMITED_LOGGERS[name] = logger
            return logger
        existing = next(item for item in logger.filters if isinstance(item, RateLimitedLogFilter))
        if existing.interval != interval:
            raise ValueError(
                f"rate limited logger {name!r} already uses interval={existing.interval!r}, not {interval!r}"
            )
        return logger


def reset_rate_limited_loggers() -> None:
    """Forget suppressed messages; used by tests."""
    with _REGISTRY_LOCK:
        for logger in _RATE_LIMITED_LOGGERS.values():
            for item in logger.filters:
                if isinstance(item, RateLimitedLogFilter):
                    item.reset()
