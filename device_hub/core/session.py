"""
Session - one client's slot in the hub.

A session holds at most one lease (device + port + capture process). The
object itself is plain state; every transition goes through
SessionStateMachine.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from device_hub.core.logging_utils import get_module_logger


MAX_DEVICE_HISTORY = 10
SESSION_INFO_HISTORY = 5
DEFAULT_IDLE_TIMEOUT = 300.0


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SWITCHING = "switching"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    CLOSED = "closed"


class ClientChannel(Protocol):
    """What a session needs from its client connection (aiohttp WebSocketResponse fits)."""

    @property
    def closed(self) -> bool:
        ...

    async def send_json(self, data: Dict[str, Any]) -> None:
        ...

    async def close(self) -> Any:
        ...


@dataclass
class HistoryEntry:
    device_serial: str
    timestamp: float
    session_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceSerial": self.device_serial,
            "timestamp": int(self.timestamp * 1000),
            "sessionId": self.session_id,
        }


@dataclass
class SwitchStats:
    switch_count: int = 0
    last_switch_time: Optional[float] = None
    average_switch_duration: float = 0.0

    def record_switch(self, started_at: float, duration_ms: float) -> None:
        """
        Count a successful switch.

        The running average halves toward each new sample rather than
        computing a true mean; recent switches weigh more.
        """
        self.switch_count += 1
        self.last_switch_time = started_at
        if self.average_switch_duration == 0:
            self.average_switch_duration = duration_ms
        else:
            self.average_switch_duration = (self.average_switch_duration + duration_ms) / 2

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "switchCount": data["switch_count"],
            "lastSwitchTime": int(self.last_switch_time * 1000) if self.last_switch_time else None,
            "averageSwitchDuration": data["average_switch_duration"],
        }


@dataclass
class Session:
    user_id: str
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: SessionState = SessionState.IDLE
    current_device: Optional[str] = None
    current_port: Optional[int] = None
    device_history: List[HistoryEntry] = field(default_factory=list)
    stats: SwitchStats = field(default_factory=SwitchStats)
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    switch_in_progress: bool = False
    switch_progress: int = 0
    switch_message: str = ""

    channel: Optional[ClientChannel] = None

    def __post_init__(self) -> None:
        get_module_logger("Session").debug("Session created: %s (%s)", self.user_id, self.session_id)

    def touch(self) -> None:
        self.last_activity = time.time()

    def is_idle(self, timeout: float = DEFAULT_IDLE_TIMEOUT, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.last_activity > timeout

    def is_active(self, timeout: float = DEFAULT_IDLE_TIMEOUT) -> bool:
        return (
            self.state == SessionState.CONNECTED
            and self.current_device is not None
            and not self.is_idle(timeout)
        )

    def add_to_history(self, device_serial: str) -> None:
        entries = [e for e in self.device_history if e.device_serial != device_serial]
        entries.insert(0, HistoryEntry(device_serial, time.time(), self.session_id))
        self.device_history = entries[:MAX_DEVICE_HISTORY]

    @property
    def has_channel(self) -> bool:
        return self.channel is not None and not self.channel.closed

    def session_info(self) -> Dict[str, Any]:
        now = time.time()
        return {
            "userId": self.user_id,
            "sessionId": self.session_id,
            "currentDevice": self.current_device,
            "assignedPort": self.current_port,
            "status": self.state.value,
            "lastActivity": int(self.last_activity * 1000),
            "uptime": int((now - (self.stats.last_switch_time or now)) * 1000),
            "deviceHistory": [e.to_dict() for e in self.device_history[:SESSION_INFO_HISTORY]],
            "stats": {
                **self.stats.to_dict(),
                "sessionDuration": int((now - self.created_at) * 1000),
            },
        }

    def detailed_status(self) -> Dict[str, Any]:
        return {
            **self.session_info(),
            "switchingInProgress": self.switch_in_progress,
            "switchProgress": self.switch_progress,
            "switchMessage": self.switch_message,
            "hasWebSocket": self.has_channel,
            "fullDeviceHistory": [e.to_dict() for e in self.device_history],
        }

    def metrics(self, idle_timeout: float = DEFAULT_IDLE_TIMEOUT) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "sessionId": self.session_id,
            "status": self.state.value,
            "switchCount": self.stats.switch_count,
            "averageSwitchTime": self.stats.average_switch_duration,
            "deviceHistoryCount": len(self.device_history),
            "currentDevice": self.current_device,
            "assignedPort": self.current_port,
            "isActive": self.is_active(idle_timeout),
            "isIdle": self.is_idle(idle_timeout),
        }
