"""
Device bridge protocol - the hub's view of device tooling.

The orchestration core never talks to adb or scrcpy directly. It consumes an
object implementing DeviceBridge; AdbDeviceBridge is the default, tests use
in-memory fakes.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .control import ControlCommand


UNKNOWN_MODEL = "Unknown Device"
UNKNOWN_VALUE = "Unknown"


@dataclass
class DeviceInfo:
    """Best-effort device properties. Fields default to "Unknown"."""
    id: str
    serial: str
    model: str = UNKNOWN_MODEL
    version: str = UNKNOWN_VALUE
    resolution: str = UNKNOWN_VALUE
    battery: Optional[int] = None
    state: str = "device"

    @classmethod
    def unknown(cls, serial: str) -> "DeviceInfo":
        return cls(id=serial, serial=serial)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@runtime_checkable
class DeviceBridge(Protocol):

    async def list_devices(self) -> List[Dict[str, str]]:
        """Return ``[{"serial": ..., "status": "device"}]`` for usable devices."""
        ...

    async def get_device_info(self, serial: str) -> DeviceInfo:
        """Never raises; partial failures fall back to defaults."""
        ...

    async def check_device_connection(self, serial: str) -> bool:
        ...

    async def start_capture_process(
        self, serial: str, port: int, session_id: str
    ) -> asyncio.subprocess.Process:
        """Spawn the capture process. Raises DeviceUnavailable if unreachable."""
        ...

    async def stop_capture_process(self, session_id: str) -> None:
        """Drop any bridge-side state kept for the session's capture process."""
        ...

    async def send_control_command(self, serial: str, command: ControlCommand) -> None:
        ...

    async def screenshot(self, serial: str) -> bytes:
        ...
