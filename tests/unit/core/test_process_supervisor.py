"""Unit tests for ProcessSupervisor and ReadinessDetector."""

import asyncio

import pytest

from device_hub.core.errors import DeviceUnavailable, ProcessStartFailure, ProcessStartTimeout
from device_hub.core.process_supervisor import CaptureState, ProcessSupervisor
from device_hub.core.readiness import ReadinessDetector

from tests.unit.conftest import FAST_STOP_GRACE, FakeBridge, FakeCaptureProcess, wait_until


def _supervisor(bridge, **kwargs) -> ProcessSupervisor:
    options = {"startup_timeout": 0.2, "settle_delay": 0, "stop_grace": FAST_STOP_GRACE}
    options.update(kwargs)
    return ProcessSupervisor(bridge, **options)


class TestReadinessDetector:

    @pytest.mark.parametrize("line", [
        "INFO: Renderer: opengl",
        "[server] INFO: Device: Pixel 7",
        "device info retrieved",
        "capture started on port 27183",
    ])
    def test_default_markers_match(self, line):
        assert ReadinessDetector().matches(line)

    def test_unrelated_line_does_not_match(self):
        assert not ReadinessDetector().matches("adb: waiting for device")

    def test_custom_matcher_replaces_markers(self):
        detector = ReadinessDetector(matcher=lambda line: line.endswith("READY"))
        assert detector.matches("stream READY")
        assert not detector.matches("INFO: Device: x")

    def test_requires_markers_or_matcher(self):
        with pytest.raises(ValueError):
            ReadinessDetector(markers=())


class TestStart:

    @pytest.mark.asyncio
    async def test_start_returns_ready_handle(self, fake_bridge):
        supervisor = _supervisor(fake_bridge)
        capture = await supervisor.start("user-1", "emulator-5554", 27183)

        assert capture.state == CaptureState.READY
        assert capture.ready_line.startswith("INFO:")
        assert supervisor.is_running("user-1")
        assert fake_bridge.started == [("emulator-5554", 27183, "user-1")]

        await supervisor.stop("user-1")

    @pytest.mark.asyncio
    async def test_readiness_on_stderr(self):
        bridge = FakeBridge(process_factory=lambda s, p: FakeCaptureProcess(ready_line=None))
        supervisor = _supervisor(bridge)

        task = asyncio.create_task(supervisor.start("user-1", "emulator-5554", 27183))
        await wait_until(lambda: bridge.processes)
        bridge.last_process.emit("noise", stream="stdout")
        bridge.last_process.emit("INFO: Device: emulator", stream="stderr")

        capture = await task
        assert capture.ready_line == "INFO: Device: emulator"
        await supervisor.stop("user-1")

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        bridge = FakeBridge(process_factory=lambda s, p: FakeCaptureProcess(ready_line=None))
        supervisor = _supervisor(bridge, startup_timeout=0.05)

        with pytest.raises(ProcessStartTimeout):
            await supervisor.start("user-1", "emulator-5554", 27183)

        process = bridge.last_process
        assert process.kill_calls == 1
        assert process.terminate_calls == 0
        assert not supervisor.has_process("user-1")
        assert bridge.stopped == ["user-1"]

    @pytest.mark.asyncio
    async def test_exit_before_ready_is_failure(self):
        bridge = FakeBridge(process_factory=lambda s, p: FakeCaptureProcess(ready_line=None, exit_code=1))
        supervisor = _supervisor(bridge)

        with pytest.raises(ProcessStartFailure) as exc_info:
            await supervisor.start("user-1", "emulator-5554", 27183)

        assert exc_info.value.exit_code == 1
        assert not supervisor.has_process("user-1")

    @pytest.mark.asyncio
    async def test_death_during_settle_delay_is_failure(self):
        bridge = FakeBridge()
        supervisor = _supervisor(bridge, settle_delay=0.1)

        task = asyncio.create_task(supervisor.start("user-1", "emulator-5554", 27183))
        await wait_until(lambda: bridge.processes and supervisor.get("user-1") and supervisor.get("user-1").ready_event.is_set())
        bridge.last_process.exit(2)

        with pytest.raises(ProcessStartFailure) as exc_info:
            await task
        assert exc_info.value.exit_code == 2
        assert len(supervisor) == 0

    @pytest.mark.asyncio
    async def test_unavailable_device_propagates(self, fake_bridge):
        supervisor = _supervisor(fake_bridge)
        with pytest.raises(DeviceUnavailable):
            await supervisor.start("user-1", "missing-device", 27183)
        assert len(supervisor) == 0

    @pytest.mark.asyncio
    async def test_hung_launch_counts_against_startup_timeout(self):
        bridge = _SlowLaunchBridge(launch_delay=5.0)
        supervisor = _supervisor(bridge, startup_timeout=0.1)

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(ProcessStartTimeout):
            await supervisor.start("user-1", "emulator-5554", 27183)

        assert loop.time() - started < 1.0
        assert len(supervisor) == 0
        assert bridge.stopped == ["user-1"]

    @pytest.mark.asyncio
    async def test_slow_launch_shrinks_readiness_window(self):
        bridge = _SlowLaunchBridge(
            launch_delay=0.15,
            process_factory=lambda serial, port: FakeCaptureProcess(ready_line=None),
        )
        supervisor = _supervisor(bridge, startup_timeout=0.2)

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(ProcessStartTimeout):
            await supervisor.start("user-1", "emulator-5554", 27183)

        # One budget covers launch and readiness together.
        assert loop.time() - started < 0.3
        assert bridge.last_process.kill_calls == 1

    @pytest.mark.asyncio
    async def test_restart_stops_previous_process(self, fake_bridge):
        supervisor = _supervisor(fake_bridge)
        await supervisor.start("user-1", "emulator-5554", 27183)
        first = fake_bridge.last_process

        await supervisor.start("user-1", "emulator-5556", 27184)
        assert first.returncode is not None
        assert supervisor.get("user-1").device == "emulator-5556"
        assert len(supervisor) == 1

        await supervisor.stop_all()


class TestStop:

    @pytest.mark.asyncio
    async def test_graceful_stop(self, fake_bridge):
        supervisor = _supervisor(fake_bridge)
        capture = await supervisor.start("user-1", "emulator-5554", 27183)
        process = fake_bridge.last_process

        assert await supervisor.stop("user-1") is True

        assert process.terminate_calls == 1
        assert process.kill_calls == 0
        assert capture.forced is False
        assert capture.state == CaptureState.STOPPED
        assert not supervisor.has_process("user-1")

    @pytest.mark.asyncio
    async def test_escalates_to_kill_exactly_once(self):
        bridge = FakeBridge(process_factory=lambda s, p: FakeCaptureProcess(ignore_sigterm=True))
        supervisor = _supervisor(bridge)
        capture = await supervisor.start("user-1", "emulator-5554", 27183)
        process = bridge.last_process

        results = await asyncio.gather(supervisor.stop("user-1"), supervisor.stop("user-1"))

        assert results == [True, True]
        assert process.terminate_calls == 1
        assert process.kill_calls == 1
        assert capture.forced is True
        assert bridge.stopped == ["user-1"]
        assert not supervisor.has_process("user-1")

    @pytest.mark.asyncio
    async def test_stop_unknown_session(self, fake_bridge):
        supervisor = _supervisor(fake_bridge)
        assert await supervisor.stop("nobody") is False
        assert fake_bridge.stopped == []

    @pytest.mark.asyncio
    async def test_stop_already_exited_process(self, fake_bridge):
        supervisor = _supervisor(fake_bridge)
        await supervisor.start("user-1", "emulator-5554", 27183)
        process = fake_bridge.last_process
        process.exit(0)

        assert await supervisor.stop("user-1") is True
        assert process.terminate_calls == 0
        assert process.kill_calls == 0
        assert not supervisor.has_process("user-1")

    @pytest.mark.asyncio
    async def test_stop_all(self, fake_bridge):
        supervisor = _supervisor(fake_bridge)
        await supervisor.start("user-1", "emulator-5554", 27183)
        await supervisor.start("user-2", "emulator-5556", 27184)

        await supervisor.stop_all()

        assert len(supervisor) == 0
        assert all(p.returncode is not None for p in fake_bridge.processes)
        assert sorted(fake_bridge.stopped) == ["user-1", "user-2"]


class TestExitWatcher:

    @pytest.mark.asyncio
    async def test_unexpected_exit_reported_and_entry_kept(self, fake_bridge):
        exits = []

        async def on_exit(session_id, returncode):
            exits.append((session_id, returncode))

        supervisor = _supervisor(fake_bridge, exit_callback=on_exit)
        capture = await supervisor.start("user-1", "emulator-5554", 27183)

        fake_bridge.last_process.exit(137)
        await wait_until(lambda: exits)

        assert exits == [("user-1", 137)]
        assert capture.state == CaptureState.FAILED
        assert supervisor.has_process("user-1")
        assert not supervisor.is_running("user-1")

        await supervisor.stop("user-1")
        assert not supervisor.has_process("user-1")

    @pytest.mark.asyncio
    async def test_requested_stop_is_not_reported(self, fake_bridge):
        exits = []

        async def on_exit(session_id, returncode):
            exits.append(session_id)

        supervisor = _supervisor(fake_bridge, exit_callback=on_exit)
        await supervisor.start("user-1", "emulator-5554", 27183)
        await supervisor.stop("user-1")
        await asyncio.sleep(0.01)

        assert exits == []

    @pytest.mark.asyncio
    async def test_snapshot(self, fake_bridge):
        supervisor = _supervisor(fake_bridge)
        await supervisor.start("user-1", "emulator-5554", 27183)

        snapshot = supervisor.snapshot()
        assert len(snapshot) == 1
        assert snapshot[0]["sessionId"] == "user-1"
        assert snapshot[0]["port"] == 27183
        assert snapshot[0]["state"] == "ready"

        await supervisor.stop_all()


class _SlowLaunchBridge(FakeBridge):
    """FakeBridge whose launch step takes ``launch_delay`` seconds."""

    def __init__(self, launch_delay: float, **kwargs):
        super().__init__(**kwargs)
        self.launch_delay = launch_delay

    async def start_capture_process(self, serial, port, session_id):
        await asyncio.sleep(self.launch_delay)
        return await super().start_capture_process(serial, port, session_id)
