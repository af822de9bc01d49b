"""Admin Routes - Session overview, cleanup and port pool management."""

from aiohttp import web

from ..controller import APIController
from ..middleware import create_error_response, parse_json_body


def setup_admin_routes(app: web.Application, controller: APIController) -> None:
    """Register admin routes."""
    app.router.add_get("/api/admin/sessions", sessions_handler)
    app.router.add_post("/api/admin/cleanup", cleanup_handler)
    app.router.add_get("/api/admin/ports", ports_handler)
    app.router.add_post("/api/admin/ports/reserve", reserve_port_handler)
    app.router.add_post("/api/admin/ports/unreserve", unreserve_port_handler)


async def sessions_handler(request: web.Request) -> web.Response:
    """GET /api/admin/sessions - All sessions, capture processes and streams."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.admin_sessions())


async def cleanup_handler(request: web.Request) -> web.Response:
    """POST /api/admin/cleanup - Remove idle sessions, or all with {force: true}."""
    controller: APIController = request.app["controller"]
    body, _ = await parse_json_body(request, required=False)
    force = bool((body or {}).get("force", False))
    return web.json_response(await controller.admin_cleanup(force=force))


async def ports_handler(request: web.Request) -> web.Response:
    """GET /api/admin/ports - Port pool usage and integrity."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.admin_ports())


async def _port_from_body(request: web.Request):
    body, err = await parse_json_body(request)
    if err:
        return None, err
    port = body.get("port")
    if isinstance(port, bool) or not isinstance(port, int):
        return None, create_error_response("VALIDATION_ERROR", "'port' must be an integer", status=400)
    return port, None


async def reserve_port_handler(request: web.Request) -> web.Response:
    """POST /api/admin/ports/reserve - Take {port} out of circulation."""
    controller: APIController = request.app["controller"]
    port, err = await _port_from_body(request)
    if err:
        return err
    result = await controller.reserve_port(port)
    return web.json_response(result, status=200 if result["success"] else 409)


async def unreserve_port_handler(request: web.Request) -> web.Response:
    """POST /api/admin/ports/unreserve - Return {port} to the pool."""
    controller: APIController = request.app["controller"]
    port, err = await _port_from_body(request)
    if err:
        return err
    result = await controller.unreserve_port(port)
    return web.json_response(result, status=200 if result["success"] else 409)
