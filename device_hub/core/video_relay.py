"""
Video Relay - raw byte streams from capture processes to HTTP viewers.

A stream is registered under its device id once the capture process is
ready. Every viewer request to ``/stream/{deviceId}`` gets its own upstream
TCP connection to the capture port; bytes are forwarded as they arrive and
either side closing tears down the other.
"""

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Dict, List, Optional

from aiohttp import web

from device_hub.core.errors import StreamNotFound
from device_hub.core.logging_utils import get_module_logger


CHUNK_SIZE = 64 * 1024
UPSTREAM_CONNECT_TIMEOUT = 5.0

STREAM_HEADERS = {
    "Content-Type": "application/octet-stream",
    "Cache-Control": "no-cache",
    "Access-Control-Allow-Origin": "*",
}


@dataclass
class StreamRegistration:
    stream_id: str
    port: int
    session_id: Optional[str] = None
    viewers: int = 0


class VideoRelay:
    """Proxies capture output ports to HTTP clients."""

    def __init__(
        self,
        upstream_host: str = "127.0.0.1",
        public_base_url: str = "",
        chunk_size: int = CHUNK_SIZE,
    ):
        self.logger = get_module_logger("VideoRelay")
        self.upstream_host = upstream_host
        self.public_base_url = public_base_url.rstrip("/")
        self.chunk_size = chunk_size

        self._streams: Dict[str, StreamRegistration] = {}

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, stream_id: str, port: int, session_id: Optional[str] = None) -> str:
        existing = self._streams.get(stream_id)
        if existing and existing.session_id != session_id:
            self.logger.warning(
                "Stream %s re-registered: session %s -> %s", stream_id, existing.session_id, session_id
            )
        self._streams[stream_id] = StreamRegistration(stream_id, port, session_id)
        self.logger.info("Stream registered: %s -> port %d", stream_id, port)
        return self.stream_url(stream_id)

    def unregister(self, stream_id: str, session_id: Optional[str] = None) -> bool:
        """
        Remove a registration.

        When ``session_id`` is given, only a registration owned by that
        session is removed, so a session tearing down its lease never drops a
        stream another session registered for the same device since.
        """
        registration = self._streams.get(stream_id)
        if registration is None:
            return False
        if session_id is not None and registration.session_id != session_id:
            return False

        del self._streams[stream_id]
        self.logger.info("Stream unregistered: %s", stream_id)
        return True

    def clear(self) -> None:
        self._streams.clear()

    def lookup(self, stream_id: str) -> StreamRegistration:
        registration = self._streams.get(stream_id)
        if registration is None:
            raise StreamNotFound(stream_id)
        return registration

    def is_registered(self, stream_id: str) -> bool:
        return stream_id in self._streams

    def stream_url(self, stream_id: str) -> str:
        return f"{self.public_base_url}/stream/{stream_id}"

    def active_streams(self) -> List[Dict[str, object]]:
        return [
            {
                "streamId": reg.stream_id,
                "port": reg.port,
                "sessionId": reg.session_id,
                "viewers": reg.viewers,
                "url": self.stream_url(reg.stream_id),
            }
            for reg in self._streams.values()
        ]

    # =========================================================================
    # Serving
    # =========================================================================

    async def serve(self, request: web.Request) -> web.StreamResponse:
        """aiohttp handler for ``GET /stream/{device_id}``."""
        stream_id = request.match_info.get("device_id", "")
        try:
            registration = self.lookup(stream_id)
        except StreamNotFound as e:
            raise web.HTTPNotFound(text=str(e))

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.upstream_host, registration.port),
                timeout=UPSTREAM_CONNECT_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError) as e:
            self.logger.error("Upstream connect failed for %s (port %d): %s", stream_id, registration.port, e)
            raise web.HTTPBadGateway(text=f"Stream {stream_id} is not reachable")

        response = web.StreamResponse(status=200, headers=STREAM_HEADERS)
        registration.viewers += 1
        self.logger.info("Viewer connected to %s (port %d)", stream_id, registration.port)

        forwarded = 0
        try:
            await response.prepare(request)
            while True:
                chunk = await reader.read(self.chunk_size)
                if not chunk:
                    self.logger.info("Upstream ended for %s", stream_id)
                    break
                try:
                    await response.write(chunk)
                except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError, ConnectionError):
                    self.logger.info("Viewer disconnected from %s", stream_id)
                    break
                forwarded += len(chunk)
        except OSError as e:
            self.logger.warning("Upstream error for %s: %s", stream_id, e)
        finally:
            registration.viewers = max(0, registration.viewers - 1)
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
            self.logger.debug("Relay for %s closed after %d bytes", stream_id, forwarded)

        with contextlib.suppress(ConnectionError, RuntimeError):
            await response.write_eof()
        return response


def setup_stream_routes(app: web.Application, relay: VideoRelay) -> None:
    app.router.add_get("/stream/{device_id}", relay.serve)
