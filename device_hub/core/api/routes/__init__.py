"""
API route modules.

- system: health, status, shutdown
- devices: device listing, info, control input and screenshots
- session: device switching and the caller's session
- admin: sessions, cleanup and the port pool
- websocket: the per-client session channel
"""

from .admin import setup_admin_routes
from .devices import setup_device_routes
from .session import setup_session_routes
from .system import setup_system_routes
from .websocket import setup_websocket_routes


def setup_all_routes(app, controller):
    """Register all API routes with the application."""
    setup_system_routes(app, controller)
    setup_device_routes(app, controller)
    setup_session_routes(app, controller)
    setup_admin_routes(app, controller)
    setup_websocket_routes(app, controller)


__all__ = ["setup_all_routes"]
