"""Session Routes - Device switching and the caller's session."""

from aiohttp import web

from ..controller import APIController, resolve_user_id
from ..middleware import create_error_response, parse_json_body


def setup_session_routes(app: web.Application, controller: APIController) -> None:
    """Register session routes."""
    app.router.add_get("/api/session", get_session_handler)
    app.router.add_post("/api/switch-device", switch_device_handler)
    app.router.add_post("/api/disconnect-device", disconnect_device_handler)


async def get_session_handler(request: web.Request) -> web.Response:
    """GET /api/session - The caller's session status."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.get_session_info(resolve_user_id(request)))


async def switch_device_handler(request: web.Request) -> web.Response:
    """POST /api/switch-device - Lease {deviceSerial} for the caller."""
    controller: APIController = request.app["controller"]
    user_id = resolve_user_id(request)
    body, err = await parse_json_body(request)
    if err:
        return err
    serial = body.get("deviceSerial")
    if not serial or not isinstance(serial, str):
        return create_error_response("MISSING_FIELD", "Missing 'deviceSerial' field", status=400)
    return web.json_response(await controller.switch_device(user_id, serial))


async def disconnect_device_handler(request: web.Request) -> web.Response:
    """POST /api/disconnect-device - Release the caller's device."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.disconnect_device(resolve_user_id(request)))
