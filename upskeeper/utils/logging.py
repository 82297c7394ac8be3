"""
Project-wide logging setup for upskeeper.

Provides a simple, consistent console logger with optional JSON output.
Level and format come from ``Settings.LOG_LEVEL`` and ``Settings.LOG_FORMAT``
(``UPSKEEPER_LOG_LEVEL`` and ``UPSKEEPER_LOG_FORMAT``).

At runtime the ``debug.level`` setting (off|error|warn|info|debug|trace)
is applied to the ``upskeeper`` logger through ``apply_debug_level``.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pythonjsonlogger.json import JsonFormatter

from ..config import Settings, get_settings

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

PACKAGE_LOGGER = "upskeeper"

DEBUG_LEVEL_TO_LOGGING = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}


def _get_level(name: str) -> int:
    level = name.upper()
    if level == "TRACE":
        return TRACE
    return getattr(logging, level, logging.INFO)


def setup_logging(
    force: bool = False,
    *,
    logger: Optional[logging.Logger] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Configure root logging for console output.

    If a handler is already present and force is False, this is a no-op.
    Settings are read from the environment when none are passed.
    """
    target_logger = logger or logging.getLogger()
    if target_logger.handlers and not force:
        return
    settings = settings or get_settings()

    # Clear existing handlers when forcing
    if force:
        for h in list(target_logger.handlers):
            target_logger.removeHandler(h)

    target_logger.setLevel(_get_level(settings.LOG_LEVEL))

    handler = logging.StreamHandler()

    fmt = settings.LOG_FORMAT.lower()
    if fmt == "json":
        formatter: logging.Formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger"},
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )

    handler.setFormatter(formatter)
    target_logger.addHandler(handler)


def apply_debug_level(level: str) -> None:
    """Apply an AppConfig ``debug.level`` to the package logger."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if level == "off":
        # Child loggers inherit the effective level, not the disabled flag.
        package_logger.setLevel(logging.CRITICAL + 1)
        return
    # Propagated records are filtered by handler levels only, not the root level.
    package_logger.setLevel(DEBUG_LEVEL_TO_LOGGING.get(level, logging.INFO))


def trace_enabled(logger: logging.Logger) -> bool:
    return logger.isEnabledFor(TRACE)


def log_trace_payload(logger: logging.Logger, label: str, payload: Any) -> None:
    """Dump ``payload`` as pretty, key-sorted JSON at TRACE level."""
    if not trace_enabled(logger):
        return
    logger.log(TRACE, "%s:\n%s", label, json.dumps(payload, indent=2, sort_keys=True, default=str))
