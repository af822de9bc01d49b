"""
API Controller - Thin wrapper around DeviceHub for the REST and WebSocket routes.

Routes translate HTTP into calls on this class; the controller translates
those calls into session and hub operations without adding rules of its own.
"""

import asyncio
import datetime
import uuid
from typing import Any, Dict, List, Set

from aiohttp import web

from device_hub.core.asyncio_utils import create_logged_task
from device_hub.core.devices.control import ControlCommand, command_from_payload, describe
from device_hub.core.errors import DeviceHubError, InvalidCommand, NoActiveDevice
from device_hub.core.hub import DeviceHub
from device_hub.core.logging_utils import get_module_logger
from device_hub.core.session_state_machine import SessionStateMachine
from device_hub.core.shutdown_coordinator import get_shutdown_coordinator


USER_ID_HEADER = "X-User-Id"
USER_ID_QUERY = "userId"

SERVER_NAME = "Device Hub"
API_VERSION = "1.0.0"


def resolve_user_id(request: web.Request, generate: bool = False) -> str:
    """
    Identify the caller from the ``X-User-Id`` header or ``userId`` query.

    Raises:
        InvalidCommand: no identity supplied and ``generate`` is False.
    """
    user_id = request.headers.get(USER_ID_HEADER) or request.query.get(USER_ID_QUERY)
    if user_id:
        return user_id.strip()
    if generate:
        return f"anonymous-{uuid.uuid4().hex[:8]}"
    raise InvalidCommand(f"Missing {USER_ID_HEADER} header")


class APIController:
    """API controller providing programmatic access to the hub."""

    def __init__(self, hub: DeviceHub):
        self.logger = get_module_logger("APIController")
        self.hub = hub
        self._pending_tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # System Endpoints
    # =========================================================================

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.datetime.now().isoformat(),
            "running": self.hub.is_running,
        }

    async def get_status(self) -> Dict[str, Any]:
        return {
            "server": SERVER_NAME,
            "version": API_VERSION,
            "http_port": self.hub.config.http_port,
            **self.hub.status(),
        }

    async def shutdown(self) -> Dict[str, Any]:
        self.logger.info("Shutdown requested via API")
        coordinator = get_shutdown_coordinator()
        if coordinator.is_shutting_down or coordinator.is_complete:
            return {"status": "shutdown_in_progress"}
        # Respond before the listeners close.
        create_logged_task(
            coordinator.initiate_shutdown("API"),
            logger=self.logger,
            context="api-shutdown",
            pending=self._pending_tasks,
        )
        return {"status": "shutdown_initiated"}

    # =========================================================================
    # Devices
    # =========================================================================

    async def list_devices(self) -> List[Dict[str, Any]]:
        return await self.hub.list_devices()

    async def get_device_info(self, serial: str) -> Dict[str, Any]:
        info = await self.hub.bridge.get_device_info(serial)
        data = info.to_dict()
        data["connected"] = await self.hub.bridge.check_device_connection(serial)
        data["streaming"] = self.hub.relay.is_registered(serial)
        return data

    # =========================================================================
    # Sessions
    # =========================================================================

    def session_for(self, user_id: str) -> SessionStateMachine:
        return self.hub.registry.get_or_create(user_id)

    def existing_session(self, user_id: str) -> SessionStateMachine:
        machine = self.hub.registry.get(user_id)
        if machine is None:
            raise NoActiveDevice(f"No session for user {user_id}")
        return machine

    async def get_session_info(self, user_id: str) -> Dict[str, Any]:
        return self.existing_session(user_id).detailed_status()

    async def switch_device(self, user_id: str, serial: str) -> Dict[str, Any]:
        machine = self.session_for(user_id)
        session = machine.session

        if session.current_device == serial:
            return {
                "success": True,
                "message": f"Already connected to {serial}",
                "sessionInfo": machine.session_info(),
                "streamUrl": self.hub.relay.stream_url(serial),
            }
        if session.switch_in_progress:
            return {
                "success": False,
                "message": "A device switch is already in progress",
                "sessionInfo": machine.session_info(),
            }

        if not await machine.switch_to_device(serial):
            error = machine.last_switch_error
            if error is None:
                return {
                    "success": False,
                    "message": f"Switch to {serial} was interrupted",
                    "sessionInfo": machine.session_info(),
                }
            if isinstance(error, DeviceHubError):
                raise error
            raise RuntimeError(f"Switch to {serial} failed: {error}")

        return {
            "success": True,
            "message": f"Switched to {serial}",
            "sessionInfo": machine.session_info(),
            "streamUrl": self.hub.relay.stream_url(serial),
        }

    async def disconnect_device(self, user_id: str) -> Dict[str, Any]:
        machine = self.existing_session(user_id)
        device = machine.session.current_device
        await machine.disconnect()
        return {"success": True, "device": device, "sessionInfo": machine.session_info()}

    def _session_on_device(self, user_id: str, serial: str) -> SessionStateMachine:
        machine = self.existing_session(user_id)
        if machine.session.current_device != serial:
            raise NoActiveDevice(f"Session is not connected to {serial}")
        return machine

    async def send_control(self, user_id: str, serial: str, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        command: ControlCommand = command_from_payload(kind, payload)
        machine = self._session_on_device(user_id, serial)
        await machine.control_command(command)
        return {"success": True, "command": describe(command)}

    async def screenshot(self, user_id: str, serial: str) -> bytes:
        machine = self._session_on_device(user_id, serial)
        return await machine.screenshot()

    # =========================================================================
    # Admin
    # =========================================================================

    async def admin_sessions(self) -> Dict[str, Any]:
        snapshot = self.hub.registry.admin_snapshot()
        snapshot["captureProcesses"] = self.hub.supervisor.snapshot()
        snapshot["streams"] = self.hub.relay.active_streams()
        return snapshot

    async def admin_cleanup(self, force: bool = False) -> Dict[str, Any]:
        removed = await self.hub.registry.cleanup(force=force)
        return {"success": True, "removed": removed, "count": len(removed), "forced": force}

    async def admin_ports(self) -> Dict[str, Any]:
        status = self.hub.allocator.detailed_status()
        status["integrity"] = self.hub.allocator.validate().to_dict()
        return status

    async def reserve_port(self, port: int) -> Dict[str, Any]:
        ok = self.hub.allocator.reserve(port)
        return {"success": ok, "port": port, "reserved": self.hub.allocator.is_reserved(port)}

    async def unreserve_port(self, port: int) -> Dict[str, Any]:
        ok = self.hub.allocator.unreserve(port)
        return {"success": ok, "port": port, "reserved": self.hub.allocator.is_reserved(port)}

