"""
API Server - aiohttp server for the hub's REST API, WebSocket and video relay.
"""

from typing import Optional

from aiohttp import web

from device_hub.core.logging_utils import get_module_logger
from device_hub.core.video_relay import setup_stream_routes

from .controller import APIController
from .middleware import error_handling_middleware, request_logging_middleware, set_debug_mode
from .routes import setup_all_routes


logger = get_module_logger("APIServer")


def create_app(controller: APIController) -> web.Application:
    """Create and configure the aiohttp application."""
    # request logging -> error handling -> handler
    app = web.Application(middlewares=[request_logging_middleware, error_handling_middleware])
    app["controller"] = controller

    setup_all_routes(app, controller)
    setup_stream_routes(app, controller.hub.relay)
    return app


class APIServer:
    """
    HTTP front of the hub.

    Serves the REST API, the client WebSocket and the ``/stream/{deviceId}``
    relay from one listener.
    """

    def __init__(
        self,
        controller: APIController,
        host: str = "0.0.0.0",
        port: int = 3000,
        debug: bool = False,
    ):
        self.controller = controller
        self.host = host
        self.port = port
        self.debug = debug

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._running = False

        set_debug_mode(debug)

    async def start(self) -> None:
        """Start the API server (non-blocking)."""
        if self._running:
            logger.warning("API server already running")
            return

        self._app = create_app(self.controller)
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        self._running = True
        mode_info = " (debug mode)" if self.debug else ""
        logger.info("API server started on http://%s:%d%s", self.host, self.port, mode_info)

    async def stop(self) -> None:
        """Stop the API server gracefully."""
        if not self._running:
            return

        logger.info("Stopping API server...")
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self._app = None
        self._running = False
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"
