"""
Error taxonomy for the device hub.

Every error raised by the orchestration core derives from DeviceHubError and
carries a stable ``code`` plus the HTTP status the API layer should answer
with. Switch failures are reported to clients rather than raised out of the
state machine; the classes are still the vocabulary for those reports.
"""

from typing import Optional


class DeviceHubError(Exception):
    """Base class for all orchestration errors."""

    code = "HUB_ERROR"
    status = 500

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message())

    def default_message(self) -> str:
        return self.__class__.__name__

    @property
    def message(self) -> str:
        return str(self)


class PoolExhausted(DeviceHubError):
    code = "POOL_EXHAUSTED"
    status = 503

    def default_message(self) -> str:
        return "Port pool exhausted, try again later"


class DeviceUnavailable(DeviceHubError):
    code = "DEVICE_UNAVAILABLE"
    status = 404

    def __init__(self, serial: str, message: Optional[str] = None):
        self.serial = serial
        super().__init__(message or f"Device {serial} is not connected")


class ProcessStartTimeout(DeviceHubError):
    code = "PROCESS_START_TIMEOUT"
    status = 504

    def __init__(self, timeout: float, message: Optional[str] = None):
        self.timeout = timeout
        super().__init__(message or f"Capture process not ready after {timeout:.1f}s")


class ProcessStartFailure(DeviceHubError):
    code = "PROCESS_START_FAILURE"
    status = 502

    def __init__(self, exit_code: Optional[int], message: Optional[str] = None):
        self.exit_code = exit_code
        super().__init__(message or f"Capture process exited during startup (exit code {exit_code})")


class SwitchAlreadyInProgress(DeviceHubError):
    """Benign: a second switch for the same session is dropped, not queued."""

    code = "SWITCH_IN_PROGRESS"
    status = 409

    def default_message(self) -> str:
        return "A device switch is already in progress"


class NoActiveDevice(DeviceHubError):
    code = "NO_ACTIVE_DEVICE"
    status = 409

    def default_message(self) -> str:
        return "No device is connected for this session"


class StreamNotFound(DeviceHubError):
    code = "STREAM_NOT_FOUND"
    status = 404

    def __init__(self, stream_id: str, message: Optional[str] = None):
        self.stream_id = stream_id
        super().__init__(message or f"Device {stream_id} not found or not streaming")


class SessionCapacityExceeded(DeviceHubError):
    code = "SESSION_CAPACITY_EXCEEDED"
    status = 503

    def __init__(self, max_sessions: int, message: Optional[str] = None):
        self.max_sessions = max_sessions
        super().__init__(message or f"Session limit reached ({max_sessions})")


class InvalidCommand(DeviceHubError):
    code = "INVALID_COMMAND"
    status = 400


__all__ = [
    "DeviceHubError",
    "PoolExhausted",
    "DeviceUnavailable",
    "ProcessStartTimeout",
    "ProcessStartFailure",
    "SwitchAlreadyInProgress",
    "NoActiveDevice",
    "StreamNotFound",
    "SessionCapacityExceeded",
    "InvalidCommand",
]
