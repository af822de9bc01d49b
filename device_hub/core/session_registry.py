import asyncio
from typing import Any, Dict, List, Optional, Set

from device_hub.core.asyncio_utils import cancel_tasks, create_periodic_task
from device_hub.core.devices.bridge import DeviceBridge
from device_hub.core.errors import SessionCapacityExceeded
from device_hub.core.logging_utils import get_module_logger
from device_hub.core.port_allocator import PoolIntegrityReport, PortAllocator
from device_hub.core.process_supervisor import ProcessSupervisor
from device_hub.core.session import DEFAULT_IDLE_TIMEOUT, Session
from device_hub.core.session_state_machine import SessionStateMachine
from device_hub.core.video_relay import VideoRelay


DEFAULT_MAX_SESSIONS = 50
DEFAULT_SWEEP_INTERVAL = 60.0
DEFAULT_POOL_CHECK_INTERVAL = 300.0


class SessionRegistry:
    """
    Owns every live session, keyed by user id.

    Creation and lookup never await, so two requests for the same user
    always land on the same session. Removal takes the entry out of the map
    before tearing it down.
    """

    def __init__(
        self,
        allocator: PortAllocator,
        supervisor: ProcessSupervisor,
        relay: VideoRelay,
        bridge: DeviceBridge,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        pool_check_interval: float = DEFAULT_POOL_CHECK_INTERVAL,
    ):
        self.logger = get_module_logger("SessionRegistry")
        self.allocator = allocator
        self.supervisor = supervisor
        self.relay = relay
        self.bridge = bridge
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self.pool_check_interval = pool_check_interval

        self._sessions: Dict[str, SessionStateMachine] = {}
        self._background_tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        if self._background_tasks:
            return
        create_periodic_task(
            self.sweep_interval,
            self.cleanup,
            logger=self.logger,
            context="idle-session-sweep",
            pending=self._background_tasks,
        )
        create_periodic_task(
            self.pool_check_interval,
            self.check_pool_integrity,
            logger=self.logger,
            context="port-pool-check",
            pending=self._background_tasks,
        )
        self.logger.info(
            "Background checks started (sweep every %.0fs, pool check every %.0fs)",
            self.sweep_interval, self.pool_check_interval,
        )

    async def stop(self) -> None:
        await cancel_tasks(self._background_tasks)
        self._background_tasks.clear()

    async def shutdown(self) -> None:
        """Close every session and return all resources to their pools."""
        await self.stop()

        user_ids = list(self._sessions.keys())
        self.logger.info("Shutting down %d session(s)", len(user_ids))
        results = await asyncio.gather(*(self.remove(uid) for uid in user_ids), return_exceptions=True)
        for uid, result in zip(user_ids, results):
            if isinstance(result, Exception):
                self.logger.error("Error closing session %s: %s", uid, result)

        await self.supervisor.stop_all()
        self.relay.clear()
        self.allocator.release_all()

    # =========================================================================
    # Sessions
    # =========================================================================

    def get_or_create(self, user_id: str) -> SessionStateMachine:
        machine = self._sessions.get(user_id)
        if machine is not None:
            machine.session.touch()
            return machine

        if len(self._sessions) >= self.max_sessions:
            self.logger.warning("Rejecting session for %s: limit of %d reached", user_id, self.max_sessions)
            raise SessionCapacityExceeded(self.max_sessions)

        machine = SessionStateMachine(
            Session(user_id),
            self.allocator,
            self.supervisor,
            self.relay,
            self.bridge,
            idle_timeout=self.idle_timeout,
        )
        self._sessions[user_id] = machine
        self.logger.info("Created session %s for %s (%d active)", machine.session.session_id, user_id, len(self._sessions))
        return machine

    def get(self, user_id: str) -> Optional[SessionStateMachine]:
        return self._sessions.get(user_id)

    async def remove(self, user_id: str) -> bool:
        machine = self._sessions.pop(user_id, None)
        if machine is None:
            return False
        try:
            await machine.close()
        finally:
            self.allocator.forget_sticky(user_id)
        self.logger.info("Removed session for %s (%d remaining)", user_id, len(self._sessions))
        return True

    async def cleanup(self, force: bool = False) -> List[str]:
        """
        Remove idle sessions, or every session when ``force`` is set.

        A session in the middle of a switch is never idle.
        """
        victims = [
            uid for uid, machine in self._sessions.items()
            if force or (not machine.session.switch_in_progress and machine.is_idle())
        ]
        removed = []
        for uid in victims:
            try:
                if await self.remove(uid):
                    removed.append(uid)
            except Exception as e:
                self.logger.error("Failed to remove session %s: %s", uid, e, exc_info=True)

        if removed:
            self.logger.info("Cleaned up %d session(s)%s", len(removed), " (forced)" if force else "")
        return removed

    async def check_pool_integrity(self) -> PoolIntegrityReport:
        report = self.allocator.validate()

        for uid, port in self.allocator.in_use.items():
            machine = self._sessions.get(uid)
            if machine is None:
                self.logger.warning("Port %d held by unknown session %s", port, uid)
            elif not machine.session.switch_in_progress and machine.session.current_port != port:
                self.logger.warning(
                    "Session %s holds port %d but records %s", uid, port, machine.session.current_port
                )

        if report.ok:
            self.logger.debug("Port pool healthy: %s", self.allocator.usage_stats())
        return report

    async def handle_capture_exit(self, user_id: str, returncode: Optional[int]) -> None:
        """Exit callback for ProcessSupervisor."""
        machine = self._sessions.get(user_id)
        if machine is None:
            self.logger.warning("Capture exit for unknown session %s", user_id)
            await self.supervisor.stop(user_id, grace=0)
            self.allocator.release(user_id)
            return
        await machine.handle_capture_exit(returncode)

    # =========================================================================
    # Queries
    # =========================================================================

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def sessions(self) -> List[SessionStateMachine]:
        return list(self._sessions.values())

    def active_count(self) -> int:
        return sum(1 for machine in self._sessions.values() if machine.session.is_active(self.idle_timeout))

    def stats(self) -> Dict[str, Any]:
        machines = list(self._sessions.values())
        total_switches = sum(m.session.stats.switch_count for m in machines)
        averages = [m.session.stats.average_switch_duration for m in machines if m.session.stats.switch_count]
        return {
            "totalSessions": len(machines),
            "activeSessions": self.active_count(),
            "maxSessions": self.max_sessions,
            "totalSwitches": total_switches,
            "averageSwitchTime": sum(averages) / len(averages) if averages else 0,
        }

    def admin_snapshot(self) -> Dict[str, Any]:
        return {
            "stats": self.stats(),
            "sessions": [m.detailed_status() for m in self._sessions.values()],
        }
