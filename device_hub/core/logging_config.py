"""Root logging configuration for the device hub process.

Two destinations are set up:

* the hub log (stdout and/or ``device_hub.log``) at the configured level
* the capture log (``capture.log``), which receives every line the scrcpy
  capture processes print, tagged with the owning session

Capture output is logged at DEBUG under ``device_hub.Capture.<session>``.
The capture logger is opened to DEBUG so its own handler sees everything,
while the hub handlers keep their level and drop that chatter; capture
errors still propagate to the hub log.
"""

from __future__ import annotations

import contextlib
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .logging_utils import HUB_LOGGER_NAMESPACE

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
CAPTURE_LOG_FORMAT = "%(asctime)s | %(session)-16s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

CAPTURE_LOGGER_NAME = f"{HUB_LOGGER_NAMESPACE}.Capture"

_HUB_MAX_BYTES = 5 * 1024 * 1024
_HUB_BACKUP_COUNT = 3
# scrcpy is chatty at startup; a smaller window with more files keeps recent sessions around.
_CAPTURE_MAX_BYTES = 1024 * 1024
_CAPTURE_BACKUP_COUNT = 5

# aiohttp logs every request at INFO; the hub logs its own API activity.
DEFAULT_SUPPRESSED = ("aiohttp.access",)

_installed_handlers: List[logging.Handler] = []


class CaptureSessionFilter(logging.Filter):
    """Adds ``record.session`` from the ``device_hub.Capture.<session>`` logger name."""

    def filter(self, record: logging.LogRecord) -> bool:
        prefix = CAPTURE_LOGGER_NAME + "."
        if record.name.startswith(prefix):
            record.session = record.name[len(prefix):]
        else:
            record.session = "-"
        return True


def _coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, str):
        name = level.upper()
        if not hasattr(logging, name):
            raise ValueError(f"Unknown log level '{level}'")
        return getattr(logging, name)
    return int(level)


def _rotating_handler(path: Union[str, Path], max_bytes: int, backup_count: int) -> RotatingFileHandler:
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")


def _remove_installed_handlers() -> None:
    for handler in _installed_handlers:
        for name in (None, CAPTURE_LOGGER_NAME):
            logging.getLogger(name).removeHandler(handler)
        with contextlib.suppress(Exception):
            handler.close()
    _installed_handlers.clear()


def configure_logging(
    level: Union[int, str] = logging.INFO,
    *,
    force: bool = False,
    console: bool = True,
    log_file: Optional[Union[str, Path]] = None,
    capture_log_file: Optional[Union[str, Path]] = None,
    suppressed_loggers: Iterable[str] = DEFAULT_SUPPRESSED,
) -> None:
    """Configure hub and capture logging.

    Args:
        level: Hub log level (int or name such as "info").
        force: Rebuild handlers even if logging was already configured.
        console: Emit hub logs to stdout.
        log_file: Rotating hub log.
        capture_log_file: Rotating log of capture process output. When unset,
            capture output only shows up in the hub log at DEBUG.
        suppressed_loggers: Logger names to silence down to WARNING.
    """
    numeric_level = _coerce_level(level)
    root = logging.getLogger()
    capture_logger = logging.getLogger(CAPTURE_LOGGER_NAME)

    if _installed_handlers and not force:
        root.setLevel(numeric_level)
        for handler in _installed_handlers:
            if handler in root.handlers:
                handler.setLevel(numeric_level)
        return

    _remove_installed_handlers()
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    hub_handlers: List[logging.Handler] = []
    if console:
        hub_handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        hub_handlers.append(_rotating_handler(log_file, _HUB_MAX_BYTES, _HUB_BACKUP_COUNT))

    for handler in hub_handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
        _installed_handlers.append(handler)

    root.setLevel(numeric_level)

    if capture_log_file:
        capture_handler = _rotating_handler(capture_log_file, _CAPTURE_MAX_BYTES, _CAPTURE_BACKUP_COUNT)
        capture_handler.setLevel(logging.DEBUG)
        capture_handler.addFilter(CaptureSessionFilter())
        capture_handler.setFormatter(logging.Formatter(fmt=CAPTURE_LOG_FORMAT, datefmt=LOG_DATEFMT))
        capture_logger.addHandler(capture_handler)
        capture_logger.setLevel(logging.DEBUG)
        _installed_handlers.append(capture_handler)
    else:
        capture_logger.setLevel(logging.NOTSET)

    for name in suppressed_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = [
    "CAPTURE_LOGGER_NAME",
    "CaptureSessionFilter",
    "LOG_DATEFMT",
    "LOG_FORMAT",
    "configure_logging",
]
