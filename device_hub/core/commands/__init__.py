from .protocol import (
    ClientAction,
    ClientMessage,
    ServerMessage,
    ServerMessageType,
    parse_client_message,
)

__all__ = [
    "ClientAction",
    "ClientMessage",
    "ServerMessage",
    "ServerMessageType",
    "parse_client_message",
]
