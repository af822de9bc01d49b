"""Device Routes - Device listing, info, control input and screenshots."""

from aiohttp import web

from ..controller import APIController, resolve_user_id
from ..middleware import parse_json_body


def setup_device_routes(app: web.Application, controller: APIController) -> None:
    """Register device routes."""
    app.router.add_get("/api/devices", list_devices_handler)
    app.router.add_get("/api/device/{serial}/info", device_info_handler)
    app.router.add_post("/api/device/{serial}/touch", touch_handler)
    app.router.add_post("/api/device/{serial}/key", key_handler)
    app.router.add_post("/api/device/{serial}/text", text_handler)
    app.router.add_get("/api/device/{serial}/screenshot", screenshot_handler)


async def list_devices_handler(request: web.Request) -> web.Response:
    """GET /api/devices - List attached devices with their details."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.list_devices())


async def device_info_handler(request: web.Request) -> web.Response:
    """GET /api/device/{serial}/info - Model, version, resolution and battery."""
    controller: APIController = request.app["controller"]
    return web.json_response(await controller.get_device_info(request.match_info["serial"]))


async def _control(request: web.Request, kind: str) -> web.Response:
    controller: APIController = request.app["controller"]
    user_id = resolve_user_id(request)
    body, err = await parse_json_body(request)
    if err:
        return err
    result = await controller.send_control(user_id, request.match_info["serial"], kind, body)
    return web.json_response(result)


async def touch_handler(request: web.Request) -> web.Response:
    """POST /api/device/{serial}/touch - Tap or scroll {x, y, action}."""
    return await _control(request, "touch")


async def key_handler(request: web.Request) -> web.Response:
    """POST /api/device/{serial}/key - Key press {keyCode} or {key}."""
    return await _control(request, "key")


async def text_handler(request: web.Request) -> web.Response:
    """POST /api/device/{serial}/text - Type {text}."""
    return await _control(request, "text")


async def screenshot_handler(request: web.Request) -> web.Response:
    """GET /api/device/{serial}/screenshot - PNG of the current screen."""
    controller: APIController = request.app["controller"]
    user_id = resolve_user_id(request)
    png = await controller.screenshot(user_id, request.match_info["serial"])
    return web.Response(body=png, content_type="image/png", headers={"Cache-Control": "no-cache"})
