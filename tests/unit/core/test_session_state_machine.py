"""Unit tests for SessionStateMachine."""

import asyncio

import pytest

from device_hub.core.devices.control import key_command, touch_command
from device_hub.core.errors import NoActiveDevice
from device_hub.core.port_allocator import PortAllocator
from device_hub.core.process_supervisor import ProcessSupervisor
from device_hub.core.session import MAX_DEVICE_HISTORY, Session, SessionState
from device_hub.core.session_state_machine import SessionStateMachine
from device_hub.core.video_relay import VideoRelay

from tests.unit.conftest import (
    FAST_STOP_GRACE,
    PNG_BYTES,
    FakeBridge,
    FakeCaptureProcess,
    RecordingChannel,
    wait_until,
)


def _isolated_machine(bridge: FakeBridge, pool_size: int, startup_timeout: float = 0.2, user_id: str = "user-1"):
    allocator = PortAllocator(start=27183, size=pool_size)
    supervisor = ProcessSupervisor(
        bridge, startup_timeout=startup_timeout, settle_delay=0, stop_grace=FAST_STOP_GRACE
    )
    channel = RecordingChannel()
    machine = SessionStateMachine(Session(user_id), allocator, supervisor, VideoRelay(), bridge)
    machine.attach_channel(channel)
    return machine, allocator, supervisor, channel


class TestSwitch:

    @pytest.mark.asyncio
    async def test_successful_switch(self, machine_factory, channel, allocator, supervisor, relay, fake_bridge):
        machine = machine_factory(channel=channel)

        assert await machine.switch_to_device("emulator-5554") is True

        session = machine.session
        assert session.state == SessionState.CONNECTED
        assert session.current_device == "emulator-5554"
        assert session.current_port == 27183
        assert session.switch_in_progress is False
        assert allocator.get_port("user-1") == 27183
        assert supervisor.is_running("user-1")
        assert relay.lookup("emulator-5554").port == 27183
        assert fake_bridge.started == [("emulator-5554", 27183, "user-1")]

        await machine.close()

    @pytest.mark.asyncio
    async def test_progress_sequence(self, machine_factory, channel):
        machine = machine_factory(channel=channel)
        await machine.switch_to_device("emulator-5554")

        progress = [m["progress"] for m in channel.of_type("PROGRESS")]
        assert progress == [10, 40, 60, 80, 100]
        assert channel.types[-1] == "DEVICE_SWITCHED"

        switched = channel.of_type("DEVICE_SWITCHED")[0]
        assert switched["progress"] == 100
        assert switched["device"]["serial"] == "emulator-5554"
        assert switched["device"]["model"] == "Pixel 7"
        assert switched["sessionInfo"]["currentDevice"] == "emulator-5554"
        assert switched["sessionInfo"]["assignedPort"] == 27183
        assert switched["streamUrl"] == "/stream/emulator-5554"

        await machine.close()

    @pytest.mark.asyncio
    async def test_switch_to_current_device_is_noop(self, machine_factory, channel, fake_bridge):
        machine = machine_factory(channel=channel)
        await machine.switch_to_device("emulator-5554")
        channel.messages.clear()

        assert await machine.switch_to_device("emulator-5554") is False
        assert channel.messages == []
        assert len(fake_bridge.started) == 1

        await machine.close()

    @pytest.mark.asyncio
    async def test_switch_between_devices_keeps_one_lease(self, machine_factory, allocator, supervisor, relay, fake_bridge):
        machine = machine_factory()
        await machine.switch_to_device("emulator-5554")
        first = fake_bridge.last_process

        assert await machine.switch_to_device("emulator-5556") is True

        assert first.returncode is not None
        assert allocator.in_use == {"user-1": 27183}
        assert len(supervisor) == 1
        assert not relay.is_registered("emulator-5554")
        assert relay.is_registered("emulator-5556")
        assert machine.session.state == SessionState.CONNECTED
        assert machine.session.stats.switch_count == 2

        await machine.close()

    @pytest.mark.asyncio
    async def test_concurrent_switch_is_dropped(self):
        bridge = FakeBridge(process_factory=lambda s, p: FakeCaptureProcess(ready_line=None))
        machine, allocator, supervisor, channel = _isolated_machine(bridge, pool_size=2, startup_timeout=1.0)

        first = asyncio.create_task(machine.switch_to_device("emulator-5554"))
        await wait_until(lambda: bridge.processes)

        assert machine.session.switch_in_progress is True
        assert machine.state == SessionState.CONNECTING
        assert await machine.switch_to_device("emulator-5556") is False

        bridge.last_process.emit("INFO: Device: ready")
        assert await first is True
        assert machine.session.current_device == "emulator-5554"
        assert len(bridge.started) == 1

        await machine.close()

    @pytest.mark.asyncio
    async def test_failed_switch_releases_everything(self):
        bridge = FakeBridge(process_factory=lambda s, p: FakeCaptureProcess(ready_line=None))
        machine, allocator, supervisor, channel = _isolated_machine(bridge, pool_size=2, startup_timeout=0.05)

        assert await machine.switch_to_device("emulator-5554") is False

        session = machine.session
        assert session.state == SessionState.ERROR
        assert session.current_device is None
        assert session.current_port is None
        assert session.switch_in_progress is False
        assert allocator.in_use == {}
        assert allocator.available == [27183, 27184]
        assert len(supervisor) == 0
        assert bridge.last_process.kill_calls == 1

        errors = channel.of_type("SWITCH_ERROR")
        assert len(errors) == 1
        assert errors[0]["message"].startswith("Switch failed:")
        assert "not ready" in errors[0]["error"]
        assert machine.last_switch_error is not None

    @pytest.mark.asyncio
    async def test_failure_after_connected_drops_previous_lease(self):
        processes = iter([FakeCaptureProcess(), FakeCaptureProcess(ready_line=None, exit_code=1)])
        bridge = FakeBridge(process_factory=lambda s, p: next(processes))
        machine, allocator, supervisor, channel = _isolated_machine(bridge, pool_size=2)

        assert await machine.switch_to_device("emulator-5554") is True
        assert await machine.switch_to_device("emulator-5556") is False

        assert machine.session.current_device is None
        assert machine.state == SessionState.ERROR
        assert allocator.in_use == {}
        assert not machine.relay.is_registered("emulator-5554")
        assert bridge.processes[0].returncode is not None

    @pytest.mark.asyncio
    async def test_pool_starvation(self, fake_bridge):
        allocator = PortAllocator(start=27183, size=1)
        supervisor = ProcessSupervisor(fake_bridge, startup_timeout=0.2, settle_delay=0, stop_grace=FAST_STOP_GRACE)
        relay = VideoRelay()
        channel_a, channel_b = RecordingChannel(), RecordingChannel()
        a = SessionStateMachine(Session("a"), allocator, supervisor, relay, fake_bridge)
        b = SessionStateMachine(Session("b"), allocator, supervisor, relay, fake_bridge)
        a.attach_channel(channel_a)
        b.attach_channel(channel_b)

        assert await a.switch_to_device("emulator-5554") is True
        assert await b.switch_to_device("emulator-5556") is False

        assert b.state == SessionState.ERROR
        assert channel_b.of_type("SWITCH_ERROR")[0]["error"] == "Port pool exhausted, try again later"
        assert len(fake_bridge.started) == 1

        await a.disconnect()
        assert await b.switch_to_device("emulator-5556") is True
        assert b.session.current_port == 27183

        await b.close()

    @pytest.mark.asyncio
    async def test_unknown_device_fails_switch(self, machine_factory, channel, allocator):
        machine = machine_factory(channel=channel)

        assert await machine.switch_to_device("missing") is False
        assert allocator.in_use == {}
        assert "missing" in channel.of_type("SWITCH_ERROR")[0]["error"]

    @pytest.mark.asyncio
    async def test_switch_without_client_still_works(self, machine_factory):
        machine = machine_factory()
        assert await machine.switch_to_device("emulator-5554") is True
        await machine.close()

    @pytest.mark.asyncio
    async def test_closed_channel_does_not_break_switch(self, machine_factory, channel):
        machine = machine_factory(channel=channel)
        channel.closed = True

        assert await machine.switch_to_device("emulator-5554") is True
        assert channel.messages == []
        await machine.close()

    @pytest.mark.asyncio
    async def test_disconnect_during_switch_discards_lease(
        self, machine_factory, allocator, supervisor, relay, fake_bridge
    ):
        """A teardown while the switch is suspended wins; nothing is committed."""
        channel = _GatedChannel(hold_progress=80)
        machine = machine_factory(channel=channel)

        switch = asyncio.create_task(machine.switch_to_device("emulator-5554"))
        await asyncio.wait_for(channel.held.wait(), timeout=1.0)

        await machine.disconnect()
        channel.release.set()

        assert await switch is False
        session = machine.session
        assert session.state == SessionState.DISCONNECTED
        assert session.current_device is None
        assert session.current_port is None
        assert allocator.in_use == {}
        assert not supervisor.has_process("user-1")
        assert relay.active_streams() == []
        assert "DEVICE_SWITCHED" not in channel.types

        # The port went back to the pool and can be leased by exactly one session.
        other = machine_factory(user_id="user-2")
        assert await other.switch_to_device("emulator-5556") is True
        assert allocator.in_use == {"user-2": 27183}
        await other.close()

    @pytest.mark.asyncio
    async def test_close_during_switch_stays_closed(self, machine_factory, allocator, supervisor):
        channel = _GatedChannel(hold_progress=80)
        machine = machine_factory(channel=channel)

        switch = asyncio.create_task(machine.switch_to_device("emulator-5554"))
        await asyncio.wait_for(channel.held.wait(), timeout=1.0)

        await machine.close()
        channel.release.set()

        assert await switch is False
        assert machine.state == SessionState.CLOSED
        assert allocator.in_use == {}
        assert not supervisor.has_process("user-1")


class _GatedChannel(RecordingChannel):
    """Channel that blocks on one PROGRESS value until released."""

    def __init__(self, hold_progress: int):
        super().__init__()
        self.hold_progress = hold_progress
        self.held = asyncio.Event()
        self.release = asyncio.Event()

    async def send_json(self, data: dict) -> None:
        await super().send_json(data)
        if data.get("type") == "PROGRESS" and data.get("progress") == self.hold_progress:
            self.held.set()
            await self.release.wait()


class TestStatsAndHistory:

    @pytest.mark.asyncio
    async def test_history_is_deduplicated_and_capped(self, machine_factory):
        bridge_devices = [f"device-{i}" for i in range(MAX_DEVICE_HISTORY + 2)]
        machine = machine_factory()
        machine.bridge.devices.extend(bridge_devices)

        for serial in bridge_devices:
            assert await machine.switch_to_device(serial)
        await machine.switch_to_device("device-3")

        history = [e.device_serial for e in machine.session.device_history]
        assert len(history) == MAX_DEVICE_HISTORY
        assert history[0] == "device-3"
        assert history.count("device-3") == 1
        assert len(machine.session_info()["deviceHistory"]) == 5

        await machine.close()

    def test_average_switch_duration_smoothing(self):
        session = Session("user-1")
        session.stats.record_switch(1.0, 100)
        assert session.stats.average_switch_duration == 100
        session.stats.record_switch(2.0, 300)
        assert session.stats.average_switch_duration == 200
        session.stats.record_switch(3.0, 100)
        assert session.stats.average_switch_duration == 150
        assert session.stats.switch_count == 3


class TestOtherOperations:

    @pytest.mark.asyncio
    async def test_disconnect(self, machine_factory, channel, allocator, supervisor, relay):
        machine = machine_factory(channel=channel)
        await machine.switch_to_device("emulator-5554")

        await machine.disconnect()

        assert machine.state == SessionState.DISCONNECTED
        assert machine.session.current_device is None
        assert allocator.in_use == {}
        assert len(supervisor) == 0
        assert not relay.is_registered("emulator-5554")
        assert channel.types[-1] == "DISCONNECTED"

    @pytest.mark.asyncio
    async def test_disconnect_without_lease(self, machine_factory, channel):
        machine = machine_factory(channel=channel)
        await machine.disconnect()
        assert machine.state == SessionState.DISCONNECTED
        assert channel.types == ["DISCONNECTED"]

    @pytest.mark.asyncio
    async def test_control_requires_connected_device(self, machine_factory):
        machine = machine_factory()
        with pytest.raises(NoActiveDevice):
            await machine.control_command(touch_command(1, 2))
        with pytest.raises(NoActiveDevice):
            await machine.screenshot()

    @pytest.mark.asyncio
    async def test_control_forwarded_to_current_device(self, machine_factory, fake_bridge):
        machine = machine_factory()
        await machine.switch_to_device("emulator-5554")

        command = key_command("HOME")
        await machine.control_command(command)
        assert fake_bridge.commands == [("emulator-5554", command)]
        assert await machine.screenshot() == PNG_BYTES

        await machine.close()

    @pytest.mark.asyncio
    async def test_reconnect_restarts_capture(self, machine_factory, fake_bridge, allocator):
        machine = machine_factory()
        await machine.switch_to_device("emulator-5554")
        first = fake_bridge.last_process

        assert await machine.reconnect() is True

        assert first.returncode is not None
        assert len(fake_bridge.processes) == 2
        assert machine.session.current_device == "emulator-5554"
        assert allocator.get_port("user-1") == 27183

        await machine.close()

    @pytest.mark.asyncio
    async def test_reconnect_without_device(self, machine_factory):
        with pytest.raises(NoActiveDevice):
            await machine_factory().reconnect()

    @pytest.mark.asyncio
    async def test_heartbeat(self, machine_factory, channel):
        machine = machine_factory(channel=channel)
        machine.session.last_activity = 0

        await machine.heartbeat()

        assert machine.session.last_activity > 0
        message = channel.of_type("HEARTBEAT")[0]
        assert isinstance(message["timestamp"], int)
        assert message["sessionInfo"]["userId"] == "user-1"

    @pytest.mark.asyncio
    async def test_capture_exit_releases_lease(self, machine_factory, channel, allocator, supervisor, relay):
        machine = machine_factory(channel=channel)
        await machine.switch_to_device("emulator-5554")

        await machine.handle_capture_exit(1)

        assert machine.state == SessionState.ERROR
        assert machine.session.current_device is None
        assert allocator.in_use == {}
        assert len(supervisor) == 0
        assert not relay.is_registered("emulator-5554")
        error = channel.of_type("ERROR")[0]
        assert error["code"] == "CAPTURE_EXITED"

    @pytest.mark.asyncio
    async def test_capture_exit_without_device_is_ignored(self, machine_factory, channel):
        machine = machine_factory(channel=channel)
        await machine.handle_capture_exit(1)
        assert machine.state == SessionState.IDLE
        assert channel.messages == []

    @pytest.mark.asyncio
    async def test_close(self, machine_factory, channel, allocator, supervisor):
        machine = machine_factory(channel=channel)
        await machine.switch_to_device("emulator-5554")

        await machine.close()

        assert machine.state == SessionState.CLOSED
        assert channel.closed is True
        assert machine.session.channel is None
        assert allocator.in_use == {}
        assert len(supervisor) == 0

    @pytest.mark.asyncio
    async def test_detach_only_matching_channel(self, machine_factory, channel):
        machine = machine_factory(channel=channel)
        other = RecordingChannel()

        machine.detach_channel(other)
        assert machine.session.channel is channel

        machine.detach_channel(channel)
        assert machine.session.channel is None

    @pytest.mark.asyncio
    async def test_detailed_status_includes_capture(self, machine_factory):
        machine = machine_factory()
        assert machine.detailed_status()["capture"] is None

        await machine.switch_to_device("emulator-5554")
        status = machine.detailed_status()
        assert status["capture"]["port"] == 27183
        assert status["switchingInProgress"] is False
        assert machine.metrics()["isActive"] is True

        await machine.close()

    def test_idle_detection(self, machine_factory):
        machine = machine_factory()
        assert not machine.is_idle()
        machine.session.last_activity -= 301
        assert machine.is_idle()
        assert not machine.is_idle(timeout=600)
