"""
Shutdown Coordinator - Single point of control for graceful shutdown.

Signals, the shutdown endpoint and fatal errors all end up here; the
registered cleanup callbacks run once, in registration order.
"""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from device_hub.core.logging_utils import get_module_logger


class ShutdownState(Enum):
    RUNNING = "running"
    REQUESTED = "requested"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


CleanupCallback = Callable[[], Awaitable[None]]


class ShutdownCoordinator:
    """
    Coordinates hub teardown.

    Shutdown sequence:
    1. A signal, API call or fatal error calls initiate_shutdown()
    2. State transitions to REQUESTED, later calls become no-ops
    3. Cleanup callbacks run in order; a failing callback does not stop the rest
    4. State transitions to COMPLETE and waiters are released
    """

    def __init__(self):
        self.logger = get_module_logger("ShutdownCoordinator")
        self._state = ShutdownState.RUNNING
        self._shutdown_event = asyncio.Event()
        self._cleanup_callbacks: List[CleanupCallback] = []
        self.source: Optional[str] = None

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def is_shutting_down(self) -> bool:
        return self._state in (ShutdownState.REQUESTED, ShutdownState.IN_PROGRESS)

    @property
    def is_complete(self) -> bool:
        return self._state == ShutdownState.COMPLETE

    def register_cleanup(self, callback: CleanupCallback) -> None:
        self._cleanup_callbacks.append(callback)
        self.logger.debug("Registered cleanup callback: %s", getattr(callback, "__name__", repr(callback)))

    async def initiate_shutdown(self, source: str = "unknown") -> None:
        """
        Run the shutdown sequence once.

        Args:
            source: What triggered shutdown (for logging)
        """
        if self._state != ShutdownState.RUNNING:
            self.logger.debug(
                "Shutdown already initiated (state=%s), ignoring request from %s",
                self._state.value, source,
            )
            return

        shutdown_start = time.time()
        self.source = source
        self._state = ShutdownState.REQUESTED
        self.logger.info("=" * 60)
        self.logger.info("SHUTDOWN INITIATED by: %s", source)
        self.logger.info("=" * 60)

        await self._execute_cleanup()

        self._state = ShutdownState.COMPLETE
        self._shutdown_event.set()
        self.logger.info("Shutdown complete in %.3fs", time.time() - shutdown_start)

    async def _execute_cleanup(self) -> None:
        self._state = ShutdownState.IN_PROGRESS
        total = len(self._cleanup_callbacks)
        self.logger.info("Running %d cleanup callbacks...", total)

        for i, callback in enumerate(self._cleanup_callbacks, 1):
            name = getattr(callback, "__name__", repr(callback))
            callback_start = time.time()
            try:
                self.logger.info("Starting cleanup %d/%d: %s", i, total, name)
                await callback()
                self.logger.info("Completed %s in %.3fs", name, time.time() - callback_start)
            except Exception as e:
                self.logger.error("Error in cleanup callback %s: %s", name, e, exc_info=True)

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()


_coordinator: Optional[ShutdownCoordinator] = None


def get_shutdown_coordinator() -> ShutdownCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = ShutdownCoordinator()
    return _coordinator


def reset_shutdown_coordinator() -> None:
    """Reset the global coordinator (mainly for testing)."""
    global _coordinator
    _coordinator = None
