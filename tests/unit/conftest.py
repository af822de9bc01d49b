"""Unit test fixtures for the orchestration core.

Nothing here spawns real processes or talks to adb:
- FakeCaptureProcess implements the part of asyncio.subprocess.Process the
  supervisor uses (stdout/stderr readers, wait, terminate, kill, returncode)
- FakeBridge is an in-memory DeviceBridge that hands out FakeCaptureProcess
  instances and records every call

Supervisor timings are shrunk so startup and stop paths finish in
milliseconds.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from device_hub.core.devices.bridge import DeviceInfo
from device_hub.core.devices.control import ControlCommand
from device_hub.core.errors import DeviceUnavailable
from device_hub.core.port_allocator import PortAllocator
from device_hub.core.process_supervisor import ProcessSupervisor
from device_hub.core.session import Session
from device_hub.core.session_registry import SessionRegistry
from device_hub.core.session_state_machine import SessionStateMachine
from device_hub.core.video_relay import VideoRelay


READY_LINE = "INFO: Device: Pixel 7 (emulator-5554)"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16

FAST_STARTUP_TIMEOUT = 0.2
FAST_STOP_GRACE = 0.05

_pids = itertools.count(40000)


# =============================================================================
# Fake capture process
# =============================================================================

class FakeCaptureProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(
        self,
        ready_line: Optional[str] = READY_LINE,
        ignore_sigterm: bool = False,
        exit_code: Optional[int] = None,
    ):
        self.pid = next(_pids)
        self.returncode: Optional[int] = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.ignore_sigterm = ignore_sigterm

        self.terminate_calls = 0
        self.kill_calls = 0
        self._exited = asyncio.Event()

        if ready_line:
            self.emit(ready_line)
        if exit_code is not None:
            self.exit(exit_code)

    def emit(self, line: str, stream: str = "stdout") -> None:
        if self.returncode is not None:
            return
        reader = self.stdout if stream == "stdout" else self.stderr
        reader.feed_data(line.encode() + b"\n")

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_sigterm:
            self.exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


ProcessFactory = Callable[[str, int], FakeCaptureProcess]


# =============================================================================
# Fake device bridge
# =============================================================================

class FakeBridge:
    """In-memory DeviceBridge recording every call."""

    def __init__(
        self,
        devices: Tuple[str, ...] = ("emulator-5554", "emulator-5556", "R58M123ABC"),
        process_factory: Optional[ProcessFactory] = None,
    ):
        self.devices: List[str] = list(devices)
        self.process_factory: ProcessFactory = process_factory or (lambda serial, port: FakeCaptureProcess())

        self.started: List[Tuple[str, int, str]] = []
        self.processes: List[FakeCaptureProcess] = []
        self.stopped: List[str] = []
        self.commands: List[Tuple[str, ControlCommand]] = []

    async def list_devices(self) -> List[Dict[str, str]]:
        return [{"serial": serial, "status": "device"} for serial in self.devices]

    async def get_device_info(self, serial: str) -> DeviceInfo:
        if serial not in self.devices:
            return DeviceInfo.unknown(serial)
        return DeviceInfo(
            id=serial,
            serial=serial,
            model="Pixel 7",
            version="14",
            resolution="1080x2400",
            battery=87,
        )

    async def check_device_connection(self, serial: str) -> bool:
        return serial in self.devices

    async def start_capture_process(self, serial: str, port: int, session_id: str) -> FakeCaptureProcess:
        if serial not in self.devices:
            raise DeviceUnavailable(serial)
        process = self.process_factory(serial, port)
        self.started.append((serial, port, session_id))
        self.processes.append(process)
        return process

    async def stop_capture_process(self, session_id: str) -> None:
        self.stopped.append(session_id)

    async def send_control_command(self, serial: str, command: ControlCommand) -> None:
        self.commands.append((serial, command))

    async def screenshot(self, serial: str) -> bytes:
        return PNG_BYTES

    @property
    def last_process(self) -> FakeCaptureProcess:
        return self.processes[-1]


# =============================================================================
# Recording client channel
# =============================================================================

class RecordingChannel:
    """ClientChannel that keeps every message sent to it."""

    def __init__(self):
        self.messages: List[dict] = []
        self.closed = False

    async def send_json(self, data: dict) -> None:
        if self.closed:
            raise ConnectionResetError("channel closed")
        self.messages.append(data)

    async def close(self) -> None:
        self.closed = True

    def of_type(self, message_type: str) -> List[dict]:
        return [m for m in self.messages if m.get("type") == message_type]

    @property
    def types(self) -> List[str]:
        return [m.get("type") for m in self.messages]


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout``."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(0.005)


# =============================================================================
# Core fixtures
# =============================================================================

@pytest.fixture
def fake_bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture
def allocator() -> PortAllocator:
    return PortAllocator(start=27183, size=5)


@pytest.fixture
def supervisor(fake_bridge: FakeBridge) -> ProcessSupervisor:
    return ProcessSupervisor(
        fake_bridge,
        startup_timeout=FAST_STARTUP_TIMEOUT,
        settle_delay=0,
        stop_grace=FAST_STOP_GRACE,
    )


@pytest.fixture
def relay() -> VideoRelay:
    return VideoRelay()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def machine_factory(allocator, supervisor, relay, fake_bridge):
    """Build SessionStateMachines sharing the fixture pool, supervisor and relay."""

    def _make(user_id: str = "user-1", channel: Optional[RecordingChannel] = None) -> SessionStateMachine:
        machine = SessionStateMachine(Session(user_id), allocator, supervisor, relay, fake_bridge)
        if channel is not None:
            machine.attach_channel(channel)
        return machine

    return _make


@pytest.fixture
def registry(allocator, supervisor, relay, fake_bridge) -> SessionRegistry:
    reg = SessionRegistry(
        allocator,
        supervisor,
        relay,
        fake_bridge,
        max_sessions=3,
        idle_timeout=300,
        sweep_interval=60,
        pool_check_interval=300,
    )
    supervisor.exit_callback = reg.handle_capture_exit
    return reg
