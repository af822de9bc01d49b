"""
API Middleware - Error handling and request logging for the REST API.

Every error leaves the API in one shape:
{
    "error": {"code": "ERROR_CODE", "message": "Human-readable message"},
    "status": 400
}
"""

import time
import traceback
from typing import Any, Callable, Dict, Optional, Tuple

from aiohttp import web

from device_hub.core.errors import DeviceHubError
from device_hub.core.logging_utils import get_module_logger


logger = get_module_logger("APIMiddleware")

_debug_mode: bool = False


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable tracebacks in 500 responses."""
    global _debug_mode
    _debug_mode = enabled
    logger.info("API debug mode %s", "enabled" if enabled else "disabled")


def is_debug_mode() -> bool:
    return _debug_mode


def create_error_response(code: str, message: str, status: int = 400, details: Optional[dict] = None) -> web.Response:
    """Create standardized error response."""
    error: Dict[str, Any] = {"error": {"code": code, "message": message}, "status": status}
    if details:
        error["error"]["details"] = details
    return web.json_response(error, status=status)


@web.middleware
async def request_logging_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Log method, path, status and timing of every request."""
    start_time = time.perf_counter()
    try:
        response = await handler(request)
    except web.HTTPException as e:
        logger.info("%s %s -> %d (%.1fms)", request.method, request.path, e.status,
                    (time.perf_counter() - start_time) * 1000)
        raise

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    if request.path.startswith("/stream/") or request.path == "/ws":
        logger.debug("%s %s closed after %.1fms", request.method, request.path, elapsed_ms)
    elif _debug_mode or response.status >= 400:
        logger.info("%s %s -> %d (%.1fms)", request.method, request.path, response.status, elapsed_ms)
    else:
        logger.debug("%s %s -> %d (%.1fms)", request.method, request.path, response.status, elapsed_ms)
    return response


@web.middleware
async def error_handling_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Catch and format all errors as JSON responses."""
    try:
        return await handler(request)
    except DeviceHubError as e:
        log = logger.error if e.status >= 500 else logger.warning
        log("%s %s failed: [%s] %s", request.method, request.path, e.code, e)
        return create_error_response(e.code, e.message, status=e.status)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        return create_error_response(
            e.reason.upper().replace(" ", "_") if e.reason else "HTTP_ERROR",
            e.text or str(e),
            status=e.status,
        )
    except ValueError as e:
        logger.warning("Validation error: %s", e)
        return create_error_response("VALIDATION_ERROR", str(e), status=400)
    except KeyError as e:
        logger.warning("Missing field: %s", e)
        return create_error_response("MISSING_FIELD", f"Missing required field: {e}", status=400)
    except Exception as e:
        tb = traceback.format_exc()
        logger.error("Unexpected error: %s\n%s", e, tb)

        details: Dict[str, Any] = {"type": type(e).__name__, "message": str(e)}
        if _debug_mode:
            details["traceback"] = tb.split("\n")
            details["request"] = {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query) if request.query else None,
            }
        return create_error_response("INTERNAL_ERROR", "An unexpected error occurred", status=500, details=details)


async def parse_json_body(request: web.Request, required: bool = True) -> Tuple[Optional[dict], Optional[web.Response]]:
    """Parse JSON body with error handling. Returns (body, error_response)."""
    try:
        body = await request.json()
    except Exception:
        if required:
            return None, create_error_response("INVALID_BODY", "Request body must be valid JSON", status=400)
        return {}, None
    if not isinstance(body, dict):
        return None, create_error_response("INVALID_BODY", "Request body must be a JSON object", status=400)
    if required and not body:
        return None, create_error_response("EMPTY_BODY", "Request body must contain data", status=400)
    return body, None
