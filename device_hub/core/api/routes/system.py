"""
System Routes - Health, status, shutdown endpoints.
"""

from aiohttp import web

from ..controller import APIController


def setup_system_routes(app: web.Application, controller: APIController) -> None:
    """Register system routes."""
    app.router.add_get("/api/health", health_handler)
    app.router.add_get("/api/status", status_handler)
    app.router.add_post("/api/shutdown", shutdown_handler)


async def health_handler(request: web.Request) -> web.Response:
    """GET /api/health - Health check."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.health_check())


async def status_handler(request: web.Request) -> web.Response:
    """GET /api/status - Server, session and port pool status."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.get_status())


async def shutdown_handler(request: web.Request) -> web.Response:
    """POST /api/shutdown - Initiate graceful shutdown."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.shutdown())
