"""
Device Hub - composition root for the orchestration core.

DeviceHub wires the port pool, capture supervisor, video relay and session
registry around one DeviceBridge and exposes the operations the API layer
needs. It owns no business rules of its own.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import psutil

from device_hub.core.config_manager import HubConfig
from device_hub.core.devices.adb_bridge import AdbDeviceBridge
from device_hub.core.devices.bridge import DeviceBridge
from device_hub.core.logging_utils import get_module_logger
from device_hub.core.orphan_cleanup import cleanup_orphaned_capture_processes
from device_hub.core.port_allocator import PortAllocator
from device_hub.core.process_supervisor import ProcessSupervisor
from device_hub.core.readiness import ReadinessDetector
from device_hub.core.session_registry import SessionRegistry
from device_hub.core.video_relay import VideoRelay


class DeviceHub:
    """
    Facade over the hub's managers.

    - PortAllocator: capture port pool
    - ProcessSupervisor: capture process lifecycle
    - VideoRelay: device id -> capture port streams
    - SessionRegistry: per-client sessions and their state machines
    """

    def __init__(
        self,
        config: Optional[HubConfig] = None,
        bridge: Optional[DeviceBridge] = None,
        detector: Optional[ReadinessDetector] = None,
    ):
        self.logger = get_module_logger("DeviceHub")
        self.config = config or HubConfig()
        self.bridge: DeviceBridge = bridge or AdbDeviceBridge(
            adb_path=self.config.adb_path,
            scrcpy_path=self.config.scrcpy_path,
            bit_rate=self.config.scrcpy_bit_rate,
            max_fps=self.config.scrcpy_max_fps,
        )

        self.allocator = PortAllocator(self.config.port_range_start, self.config.port_pool_size)
        self.relay = VideoRelay()
        self.supervisor = ProcessSupervisor(
            self.bridge,
            detector=detector,
            startup_timeout=self.config.startup_timeout,
            settle_delay=self.config.settle_delay,
            stop_grace=self.config.stop_grace,
            exit_callback=self._on_capture_exit,
        )
        self.registry = SessionRegistry(
            self.allocator,
            self.supervisor,
            self.relay,
            self.bridge,
            max_sessions=self.config.max_sessions,
            idle_timeout=self.config.idle_timeout,
            sweep_interval=self.config.idle_sweep_interval,
            pool_check_interval=self.config.pool_check_interval,
        )

        self.started_at: Optional[float] = None
        self._running = False

    async def _on_capture_exit(self, session_id: str, returncode: Optional[int]) -> None:
        await self.registry.handle_capture_exit(session_id, returncode)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def async_init(self) -> None:
        """Startup work that has to run inside the event loop."""
        if self.config.cleanup_orphans:
            executable = getattr(self.bridge, "scrcpy_path", self.config.scrcpy_path)
            killed = await asyncio.to_thread(
                cleanup_orphaned_capture_processes, self.config.port_range, executable
            )
            if killed:
                self.logger.info("Cleaned up %d orphaned capture process(es)", killed)

    async def start(self) -> None:
        if self._running:
            return
        await self.async_init()
        self.registry.start()
        self.started_at = time.time()
        self._running = True
        self.logger.info(
            "Device hub started: ports %d-%d, max %d sessions",
            self.allocator.start, self.allocator.end, self.config.max_sessions,
        )

    async def shutdown(self) -> None:
        """Stop all sessions, release every port and close capture processes."""
        self.logger.info("Device hub shutting down...")
        await self.registry.shutdown()
        self._running = False
        self.logger.info("Device hub stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Devices
    # =========================================================================

    async def list_devices(self, with_info: bool = True) -> List[Dict[str, Any]]:
        devices = await self.bridge.list_devices()
        if not with_info:
            return devices

        online = [d for d in devices if d.get("status") == "device"]
        infos = await asyncio.gather(*(self.bridge.get_device_info(d["serial"]) for d in online))
        by_serial = {info.serial: info.to_dict() for info in infos}

        result = []
        for device in devices:
            entry = dict(by_serial.get(device["serial"], {}))
            entry.update(device)
            entry["streaming"] = self.relay.is_registered(device["serial"])
            result.append(entry)
        return result

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        process = psutil.Process()
        memory = process.memory_info()
        return {
            "status": "running" if self._running else "stopped",
            "uptime": time.time() - self.started_at if self.started_at else 0,
            "sessions": self.registry.stats(),
            "ports": self.allocator.usage_stats(),
            "captureProcesses": len(self.supervisor),
            "streams": len(self.relay.active_streams()),
            "memory": {
                "rss_mb": round(memory.rss / (1024 ** 2), 1),
                "vms_mb": round(memory.vms / (1024 ** 2), 1),
            },
        }
