"""Orchestration core: port pool, capture supervision, sessions and relay."""

from .errors import (
    DeviceHubError,
    DeviceUnavailable,
    InvalidCommand,
    NoActiveDevice,
    PoolExhausted,
    ProcessStartFailure,
    ProcessStartTimeout,
    SessionCapacityExceeded,
    StreamNotFound,
    SwitchAlreadyInProgress,
)
from .hub import DeviceHub
from .port_allocator import PoolIntegrityReport, PortAllocator
from .process_supervisor import CaptureProcess, CaptureState, ProcessSupervisor
from .readiness import ReadinessDetector
from .session import Session, SessionState
from .session_registry import SessionRegistry
from .session_state_machine import SessionStateMachine
from .shutdown_coordinator import ShutdownCoordinator, get_shutdown_coordinator
from .video_relay import VideoRelay

__all__ = [
    'DeviceHub',
    'PortAllocator',
    'PoolIntegrityReport',
    'ProcessSupervisor',
    'CaptureProcess',
    'CaptureState',
    'ReadinessDetector',
    'Session',
    'SessionState',
    'SessionRegistry',
    'SessionStateMachine',
    'ShutdownCoordinator',
    'get_shutdown_coordinator',
    'VideoRelay',
    'DeviceHubError',
    'PoolExhausted',
    'DeviceUnavailable',
    'ProcessStartTimeout',
    'ProcessStartFailure',
    'SwitchAlreadyInProgress',
    'NoActiveDevice',
    'StreamNotFound',
    'SessionCapacityExceeded',
    'InvalidCommand',
]
