"""Pytest fixtures for API unit tests.

The API is exercised against a real DeviceHub whose DeviceBridge is the
in-memory FakeBridge, so routes, controller, sessions and the port pool run
for real while no adb or scrcpy process is ever spawned.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, TypeVar

import pytest
from aiohttp import web

from device_hub.core.api.controller import APIController
from device_hub.core.api.server import create_app
from device_hub.core.config_manager import HubConfig
from device_hub.core.hub import DeviceHub

from tests.unit.conftest import FAST_STARTUP_TIMEOUT, FAST_STOP_GRACE, FakeBridge


T = TypeVar("T")

USER = "user-1"
USER_HEADERS = {"X-User-Id": USER}


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def make_test_config(**overrides: Any) -> HubConfig:
    config = HubConfig(
        port_range_start=27183,
        port_pool_size=5,
        max_sessions=3,
        startup_timeout=FAST_STARTUP_TIMEOUT,
        settle_delay=0,
        stop_grace=FAST_STOP_GRACE,
        cleanup_orphans=False,
    )
    return config.with_overrides(**overrides)


def create_test_app(controller: APIController) -> web.Application:
    """Create the production application around ``controller``."""
    return create_app(controller)


@pytest.fixture
def api_bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture
def hub(api_bridge: FakeBridge) -> DeviceHub:
    return DeviceHub(make_test_config(), bridge=api_bridge)


@pytest.fixture
def controller(hub: DeviceHub) -> APIController:
    return APIController(hub)
