"""
HTTP surface of the device hub.

REST endpoints under ``/api``, the client WebSocket at ``/ws`` and the video
relay at ``/stream/{deviceId}``, all served by one aiohttp application.
"""

from .controller import APIController
from .server import APIServer, create_app

__all__ = ["APIServer", "APIController", "create_app"]
