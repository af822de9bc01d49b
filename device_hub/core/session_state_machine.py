import asyncio
import time
from typing import Any, Dict, Optional

from device_hub.core.commands import ServerMessage
from device_hub.core.devices.bridge import DeviceBridge, DeviceInfo
from device_hub.core.devices.control import ControlCommand
from device_hub.core.errors import NoActiveDevice, SwitchAlreadyInProgress
from device_hub.core.logging_utils import get_module_logger
from device_hub.core.port_allocator import PortAllocator
from device_hub.core.process_supervisor import ProcessSupervisor
from device_hub.core.session import DEFAULT_IDLE_TIMEOUT, ClientChannel, Session, SessionState
from device_hub.core.video_relay import VideoRelay


class SessionStateMachine:
    """
    Drives one session through device switches and teardowns.

    A lease is the triple (device, port, capture process). A switch tears
    down the current lease before acquiring the next one; when acquisition
    fails the session ends up with no lease at all and the client is told
    why. The previous device is not restored.

    Port and process bookkeeping are keyed by the session's user id.
    """

    def __init__(
        self,
        session: Session,
        allocator: PortAllocator,
        supervisor: ProcessSupervisor,
        relay: VideoRelay,
        bridge: DeviceBridge,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    ):
        self.session = session
        self.allocator = allocator
        self.supervisor = supervisor
        self.relay = relay
        self.bridge = bridge
        self.idle_timeout = idle_timeout
        self.last_switch_error: Optional[Exception] = None
        # Bumped by every teardown; a switch only commits a lease nobody tore down meanwhile.
        self._lease_generation = 0
        self.logger = get_module_logger("SessionStateMachine").getChild(session.user_id)

    @property
    def user_id(self) -> str:
        return self.session.user_id

    @property
    def state(self) -> SessionState:
        return self.session.state

    # =========================================================================
    # Client channel
    # =========================================================================

    def attach_channel(self, channel: ClientChannel) -> None:
        if self.session.channel is not None and self.session.channel is not channel:
            self.logger.info("Replacing client channel")
        self.session.channel = channel
        self.session.touch()

    def detach_channel(self, channel: Optional[ClientChannel] = None) -> None:
        if channel is None or self.session.channel is channel:
            self.session.channel = None

    async def notify(self, message: Dict[str, Any]) -> bool:
        """Send ``message`` to the attached client. Returns False when nobody is listening."""
        channel = self.session.channel
        if channel is None or channel.closed:
            return False
        try:
            await channel.send_json(message)
            return True
        except (ConnectionError, RuntimeError) as e:
            self.logger.warning("Failed to notify client (%s): %s", message.get("type"), e)
            return False

    async def _progress(self, progress: int, message: str) -> None:
        self.session.switch_progress = progress
        self.session.switch_message = message
        await self.notify(ServerMessage.progress(progress, message))

    # =========================================================================
    # Switching
    # =========================================================================

    def _begin_switch(self, target: str) -> None:
        session = self.session
        if session.switch_in_progress:
            raise SwitchAlreadyInProgress()
        session.switch_in_progress = True
        session.switch_progress = 0
        session.switch_message = ""
        session.state = (
            SessionState.SWITCHING if session.state == SessionState.CONNECTED else SessionState.CONNECTING
        )
        session.touch()
        self.logger.info("Switching %s -> %s", session.current_device or "none", target)

    async def switch_to_device(self, target: str) -> bool:
        """
        Lease ``target`` for this session.

        Returns True on success and False when the request was a no-op or the
        switch failed; failures are reported to the client as SWITCH_ERROR.
        """
        session = self.session
        if target == session.current_device:
            self.logger.debug("Already connected to %s", target)
            return False
        try:
            self._begin_switch(target)
        except SwitchAlreadyInProgress:
            self.logger.debug("Switch to %s ignored, another switch is running", target)
            return False

        started_at = time.time()
        started = time.monotonic()
        new_port: Optional[int] = None

        try:
            await self._progress(10, "Preparing device switch...")

            await self._teardown_lease()
            generation = self._lease_generation
            await self._progress(40, "Disconnecting current device...")

            new_port = self.allocator.allocate(self.user_id)
            await self._progress(60, "Allocating port...")

            await self.supervisor.start(self.user_id, target, new_port)
            await self._progress(80, "Connecting to device...")

        except asyncio.CancelledError:
            self._abort_switch(new_port)
            raise
        except Exception as e:
            self._abort_switch(new_port)
            self.last_switch_error = e
            self.logger.error("Switch to %s failed: %s", target, e)
            await self.notify(ServerMessage.switch_error(str(e)))
            return False

        else:
            if not self._lease_intact(generation, new_port):
                self.logger.warning("Switch to %s interrupted by a teardown, discarding lease", target)
                await self._teardown_lease()
                if session.state in (SessionState.CONNECTING, SessionState.SWITCHING):
                    session.state = SessionState.DISCONNECTED
                self.last_switch_error = None
                return False

            duration_ms = (time.monotonic() - started) * 1000
            session.current_device = target
            session.current_port = new_port
            stream_url = self.relay.register(target, new_port, self.user_id)
            session.add_to_history(target)
            session.stats.record_switch(started_at, duration_ms)
            session.state = SessionState.CONNECTED
            session.touch()
            self.last_switch_error = None
            self.logger.info("Switched to %s on port %d in %.0fms", target, new_port, duration_ms)

            device_info = await self._device_info(target)
            await self._progress(100, "Device switch complete")
            await self.notify(
                ServerMessage.device_switched(device_info.to_dict(), session.session_info(), stream_url)
            )
            return True

        finally:
            session.switch_in_progress = False

    def _lease_intact(self, generation: int, port: int) -> bool:
        return (
            generation == self._lease_generation
            and self.allocator.get_port(self.user_id) == port
            and self.supervisor.has_process(self.user_id)
        )

    def _abort_switch(self, new_port: Optional[int]) -> None:
        if new_port is not None:
            self.allocator.release(self.user_id)
        self.session.current_device = None
        self.session.current_port = None
        self.session.state = SessionState.ERROR

    async def _device_info(self, serial: str) -> DeviceInfo:
        try:
            return await self.bridge.get_device_info(serial)
        except Exception as e:
            self.logger.warning("Device info for %s unavailable: %s", serial, e)
            return DeviceInfo.unknown(serial)

    async def _teardown_lease(self) -> None:
        """Stop the capture process, drop the stream and return the port."""
        self._lease_generation += 1
        session = self.session
        device = session.current_device

        if self.supervisor.has_process(self.user_id):
            await self.supervisor.stop(self.user_id)
        if device is not None:
            self.relay.unregister(device, self.user_id)
        released = self.allocator.release(self.user_id)

        session.current_device = None
        session.current_port = None
        if device is not None or released is not None:
            self.logger.info("Lease released (device=%s, port=%s)", device, released)

    # =========================================================================
    # Other operations
    # =========================================================================

    async def disconnect(self) -> None:
        await self._teardown_lease()
        self.session.state = SessionState.DISCONNECTED
        self.session.touch()
        await self.notify(ServerMessage.disconnected())

    async def reconnect(self) -> bool:
        """Restart capture for the current device."""
        device = self.session.current_device
        if device is None:
            raise NoActiveDevice()
        if self.session.switch_in_progress:
            return False
        self.logger.info("Reconnecting to %s", device)
        await self._teardown_lease()
        return await self.switch_to_device(device)

    def _require_device(self) -> str:
        device = self.session.current_device
        if self.session.state != SessionState.CONNECTED or device is None:
            raise NoActiveDevice()
        return device

    async def control_command(self, command: ControlCommand) -> None:
        device = self._require_device()
        self.session.touch()
        await self.bridge.send_control_command(device, command)

    async def screenshot(self) -> bytes:
        device = self._require_device()
        self.session.touch()
        return await self.bridge.screenshot(device)

    async def heartbeat(self) -> None:
        self.session.touch()
        await self.notify(ServerMessage.heartbeat(self.session.session_info()))

    async def handle_capture_exit(self, returncode: Optional[int]) -> None:
        """The capture process died on its own after becoming ready."""
        session = self.session
        if session.switch_in_progress or session.current_device is None:
            return
        device = session.current_device
        self.logger.warning("Capture for %s exited with code %s, releasing lease", device, returncode)
        await self._teardown_lease()
        session.state = SessionState.ERROR
        await self.notify(
            ServerMessage.error(f"Capture process for {device} exited (code {returncode})", code="CAPTURE_EXITED")
        )

    async def close(self) -> None:
        """Tear down the lease and detach the client. The session is unusable afterwards."""
        await self._teardown_lease()
        channel = self.session.channel
        self.session.channel = None
        self.session.state = SessionState.CLOSED
        if channel is not None and not channel.closed:
            try:
                await channel.close()
            except (ConnectionError, RuntimeError) as e:
                self.logger.debug("Closing client channel failed: %s", e)
        self.logger.info("Session closed")

    # =========================================================================
    # Queries
    # =========================================================================

    def is_idle(self, timeout: Optional[float] = None) -> bool:
        return self.session.is_idle(self.idle_timeout if timeout is None else timeout)

    def session_info(self) -> Dict[str, Any]:
        return self.session.session_info()

    def detailed_status(self) -> Dict[str, Any]:
        status = self.session.detailed_status()
        capture = self.supervisor.get(self.user_id)
        status["capture"] = capture.snapshot() if capture else None
        return status

    def metrics(self) -> Dict[str, Any]:
        return self.session.metrics(self.idle_timeout)
