"""WebSocket Route - One JSON channel per client session at ``GET /ws``."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Set

from aiohttp import WSMsgType, web

from device_hub.core.asyncio_utils import cancel_tasks, create_logged_task
from device_hub.core.commands import ClientAction, ClientMessage, ServerMessage, parse_client_message
from device_hub.core.devices.control import command_from_payload
from device_hub.core.errors import DeviceHubError, InvalidCommand
from device_hub.core.logging_utils import get_module_logger
from device_hub.core.session_state_machine import SessionStateMachine

from ..controller import APIController, resolve_user_id


logger = get_module_logger("WebSocket")

WS_HEARTBEAT = 30.0
NO_DEVICES_MESSAGE = "No connected devices detected"

Handler = Callable[[ClientMessage], Awaitable[None]]


def setup_websocket_routes(app: web.Application, controller: APIController) -> None:
    """Register the client WebSocket."""
    app.router.add_get("/ws", websocket_handler)


class ClientMessageDispatcher:
    """Routes client actions to session operations for one connection."""

    def __init__(self, controller: APIController, machine: SessionStateMachine):
        self.controller = controller
        self.machine = machine
        self.handlers: Dict[ClientAction, Handler] = {
            ClientAction.LIST_DEVICES: self._list_devices,
            ClientAction.SWITCH_DEVICE: self._switch_device,
            ClientAction.TOUCH_EVENT: self._touch_event,
            ClientAction.KEY_EVENT: self._key_event,
            ClientAction.TEXT_INPUT: self._text_input,
            ClientAction.DISCONNECT: self._disconnect,
            ClientAction.HEARTBEAT: self._heartbeat,
            ClientAction.GET_SESSION_INFO: self._session_info,
        }
        missing = set(ClientAction) - set(self.handlers)
        if missing:
            raise RuntimeError(f"No handler for client actions: {sorted(a.value for a in missing)}")

    async def handle_raw(self, raw: str) -> None:
        """Parse and run one text frame; failures go back to the client as ERROR."""
        try:
            message = parse_client_message(raw)
            await self.dispatch(message)
        except DeviceHubError as e:
            logger.warning("[%s] %s: %s", self.machine.user_id, e.code, e)
            await self.machine.notify(ServerMessage.error(e.message, e.code))
        except Exception as e:
            logger.error("[%s] Error handling message: %s", self.machine.user_id, e, exc_info=True)
            await self.machine.notify(ServerMessage.error(f"Failed to handle message: {e}"))

    async def dispatch(self, message: ClientMessage) -> None:
        self.machine.session.touch()
        await self.handlers[message.action](message)

    async def send_device_list(self) -> None:
        devices = await self.controller.list_devices()
        message = None if devices else NO_DEVICES_MESSAGE
        await self.machine.notify(ServerMessage.device_list(devices, message))

    async def _list_devices(self, message: ClientMessage) -> None:
        await self.send_device_list()

    async def _switch_device(self, message: ClientMessage) -> None:
        serial = message.require("deviceSerial")
        if not isinstance(serial, str):
            raise InvalidCommand("'deviceSerial' must be a string")
        await self.machine.switch_to_device(serial)

    async def _touch_event(self, message: ClientMessage) -> None:
        await self.machine.control_command(command_from_payload("touch", message.payload))

    async def _key_event(self, message: ClientMessage) -> None:
        await self.machine.control_command(command_from_payload("key", message.payload))

    async def _text_input(self, message: ClientMessage) -> None:
        await self.machine.control_command(command_from_payload("text", message.payload))

    async def _disconnect(self, message: ClientMessage) -> None:
        await self.machine.disconnect()

    async def _heartbeat(self, message: ClientMessage) -> None:
        await self.machine.heartbeat()

    async def _session_info(self, message: ClientMessage) -> None:
        await self.machine.notify(ServerMessage.session_info(self.machine.detailed_status()))


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    """GET /ws?userId=... - Session channel; anonymous clients get a generated id."""
    controller: APIController = request.app["controller"]
    user_id = resolve_user_id(request, generate=True)

    ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT)
    await ws.prepare(request)

    try:
        machine = controller.session_for(user_id)
    except DeviceHubError as e:
        logger.warning("Rejecting WebSocket for %s: %s", user_id, e)
        await ws.send_json(ServerMessage.error(e.message, e.code))
        await ws.close()
        return ws

    machine.attach_channel(ws)
    dispatcher = ClientMessageDispatcher(controller, machine)
    logger.info("Client connected: %s (session %s)", user_id, machine.session.session_id)

    # Frames run as their own tasks so a long switch never holds up the
    # socket; a second SWITCH_DEVICE meets switch_in_progress and is dropped.
    frame_tasks: Set[asyncio.Task[Any]] = set()

    try:
        await dispatcher.send_device_list()
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                create_logged_task(
                    dispatcher.handle_raw(msg.data),
                    logger=logger,
                    context=f"ws-frame-{user_id}",
                    pending=frame_tasks,
                )
            elif msg.type == WSMsgType.BINARY:
                await machine.notify(ServerMessage.error("Binary frames are not supported", InvalidCommand.code))
            elif msg.type == WSMsgType.ERROR:
                logger.warning("WebSocket error for %s: %s", user_id, ws.exception())
                break
    finally:
        await cancel_tasks(frame_tasks)
        machine.detach_channel(ws)
        logger.info("Client disconnected: %s", user_id)

    return ws
