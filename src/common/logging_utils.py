"""Centralized logging helpers.

Provides one place to configure the root logger plus small helpers used by
modules that emit structured DEBUG traces:

    if is_debug_enabled(logger):
        logger.debug("Solver step", extra=extra_context(event="decision", ...))
"""
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Iterable, Optional

from constants import Constants

_CONTEXT_KEYS = ("event", "component", "action", "outcome", "target", "package")


def configure_logging(level: Optional[str] = None, logfile: Optional[str] = None) -> None:
    """Configure the root logger once for CLI usage.

    The level is taken from ``level`` when given, else from the
    DEPSOLVE_LOG_LEVEL environment variable, else INFO.
    """
    name = (level or os.environ.get(Constants.ENV_LOG_LEVEL) or "INFO").upper()
    value = getattr(logging, name, None)
    if not isinstance(value, int):
        value = logging.INFO

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler: logging.Handler
    if logfile:
        handler = logging.FileHandler(logfile, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(Constants.LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(value)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records would be emitted by ``logger``."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra`` mapping for structured log records.

    None values are dropped; well-known keys are always present so formatters
    can reference them safely.
    """
    ctx: Dict[str, Any] = {key: None for key in _CONTEXT_KEYS}
    ctx.update({k: v for k, v in fields.items() if v is not None})
    return ctx


def format_names(names: Iterable[str], limit: int = 10) -> str:
    """Render a bounded, comma separated list of names for log lines."""
    items = list(names)
    if len(items) <= limit:
        return ", ".join(items)
    return ", ".join(items[:limit]) + f", ... (+{len(items) - limit} more)"


class Timer:
    """Context manager measuring wall-clock duration."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, *exc: Any) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        """Elapsed milliseconds; usable inside or after the ``with`` block."""
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
