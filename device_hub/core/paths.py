"""Centralized path constants for the device hub."""

from __future__ import annotations

import os
from pathlib import Path

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT = PACKAGE_ROOT.parent

# Configuration
CONFIG_PATH = PROJECT_ROOT / "config.txt"

# Runtime state (logs live here so the project directory may be read-only)
_STATE_ENV = os.environ.get("DEVICE_HUB_STATE_DIR")
STATE_DIR = Path(_STATE_ENV).expanduser() if _STATE_ENV else (Path.home() / ".device_hub")
LOGS_DIR = STATE_DIR / "logs"
HUB_LOG_FILE = LOGS_DIR / "device_hub.log"
CAPTURE_LOG_FILE = LOGS_DIR / "capture.log"


def ensure_directories() -> None:
    """Create runtime directories if they don't exist."""
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


__all__ = [
    "PACKAGE_ROOT",
    "PROJECT_ROOT",
    "CONFIG_PATH",
    "STATE_DIR",
    "LOGS_DIR",
    "HUB_LOG_FILE",
    "CAPTURE_LOG_FILE",
    "ensure_directories",
]
