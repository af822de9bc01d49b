"""
Client protocol - JSON messages exchanged over the session WebSocket.

Client messages carry an ``action`` field, server messages a ``type``
field. Both sets are closed enums; anything else is rejected.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from device_hub.core.errors import InvalidCommand
from device_hub.core.logging_utils import get_module_logger

logger = get_module_logger("ClientProtocol")


class ClientAction(Enum):
    LIST_DEVICES = "LIST_DEVICES"
    SWITCH_DEVICE = "SWITCH_DEVICE"
    TOUCH_EVENT = "TOUCH_EVENT"
    KEY_EVENT = "KEY_EVENT"
    TEXT_INPUT = "TEXT_INPUT"
    DISCONNECT = "DISCONNECT"
    HEARTBEAT = "HEARTBEAT"
    GET_SESSION_INFO = "GET_SESSION_INFO"


class ServerMessageType(Enum):
    DEVICE_LIST = "DEVICE_LIST"
    DEVICE_SWITCHED = "DEVICE_SWITCHED"
    PROGRESS = "PROGRESS"
    SWITCH_ERROR = "SWITCH_ERROR"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"
    HEARTBEAT = "HEARTBEAT"
    SESSION_INFO = "SESSION_INFO"


@dataclass
class ClientMessage:
    action: ClientAction
    payload: Dict[str, Any] = field(default_factory=dict)

    def require(self, key: str) -> Any:
        value = self.payload.get(key)
        if value is None or value == "":
            raise InvalidCommand(f"{self.action.value} requires '{key}'")
        return value


def parse_client_message(raw: str) -> ClientMessage:
    """
    Parse one WebSocket text frame.

    Raises:
        InvalidCommand: malformed JSON, non-object payload or unknown action.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse client message: %s - %s", e, raw[:100])
        raise InvalidCommand(f"Invalid JSON: {e.msg}") from None

    if not isinstance(data, dict):
        raise InvalidCommand("Message must be a JSON object")

    action_name = data.get("action")
    if not isinstance(action_name, str):
        raise InvalidCommand("Message missing 'action'")

    try:
        action = ClientAction(action_name)
    except ValueError:
        raise InvalidCommand(f"Unsupported action: {action_name}") from None

    payload = {k: v for k, v in data.items() if k != "action"}
    return ClientMessage(action, payload)


class ServerMessage:

    @staticmethod
    def create(message_type: ServerMessageType, **kwargs) -> Dict[str, Any]:
        message = {"type": message_type.value}
        message.update(kwargs)
        return message

    @staticmethod
    def device_list(devices: List[Dict[str, Any]], message: Optional[str] = None) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"devices": devices}
        if message:
            kwargs["message"] = message
        return ServerMessage.create(ServerMessageType.DEVICE_LIST, **kwargs)

    @staticmethod
    def device_switched(device: Dict[str, Any], session_info: Dict[str, Any], stream_url: Optional[str] = None) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"device": device, "progress": 100, "sessionInfo": session_info}
        if stream_url:
            kwargs["streamUrl"] = stream_url
        return ServerMessage.create(ServerMessageType.DEVICE_SWITCHED, **kwargs)

    @staticmethod
    def progress(progress: int, message: str) -> Dict[str, Any]:
        return ServerMessage.create(ServerMessageType.PROGRESS, progress=progress, message=message)

    @staticmethod
    def switch_error(error: str) -> Dict[str, Any]:
        return ServerMessage.create(
            ServerMessageType.SWITCH_ERROR,
            message=f"Switch failed: {error}",
            error=error,
        )

    @staticmethod
    def error(message: str, code: Optional[str] = None) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"message": message}
        if code:
            kwargs["code"] = code
        return ServerMessage.create(ServerMessageType.ERROR, **kwargs)

    @staticmethod
    def disconnected(message: str = "Device disconnected") -> Dict[str, Any]:
        return ServerMessage.create(ServerMessageType.DISCONNECTED, message=message)

    @staticmethod
    def heartbeat(session_info: Dict[str, Any]) -> Dict[str, Any]:
        return ServerMessage.create(
            ServerMessageType.HEARTBEAT,
            timestamp=int(time.time() * 1000),
            sessionInfo=session_info,
        )

    @staticmethod
    def session_info(data: Dict[str, Any]) -> Dict[str, Any]:
        return ServerMessage.create(ServerMessageType.SESSION_INFO, data=data)
