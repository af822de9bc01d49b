import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from device_hub.core.devices.bridge import DeviceBridge
from device_hub.core.errors import ProcessStartFailure, ProcessStartTimeout
from device_hub.core.logging_utils import get_module_logger
from device_hub.core.readiness import ReadinessDetector


DEFAULT_STARTUP_TIMEOUT = 10.0
DEFAULT_SETTLE_DELAY = 2.0
DEFAULT_STOP_GRACE = 3.0

ExitCallback = Callable[[str, Optional[int]], Awaitable[None]]


class CaptureState(Enum):
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class CaptureProcess:
    """One supervised capture process, bound to exactly one session."""

    def __init__(
        self,
        session_id: str,
        device: str,
        port: int,
        process: asyncio.subprocess.Process,
    ):
        self.session_id = session_id
        self.device = device
        self.port = port
        self.process = process
        self.started_at = time.time()
        self.state = CaptureState.STARTING
        self.forced = False
        self.ready_line: Optional[str] = None

        self.logger = get_module_logger("Capture").getChild(session_id)

        self.ready_event = asyncio.Event()
        self.stopped_event = asyncio.Event()

        self.stdout_task: Optional[asyncio.Task] = None
        self.stderr_task: Optional[asyncio.Task] = None
        self.monitor_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def is_alive(self) -> bool:
        return self.process.returncode is None

    def start_readers(self, detector: ReadinessDetector) -> None:
        self.stdout_task = asyncio.create_task(
            self._output_reader(self.process.stdout, "stdout", detector),
            name=f"capture-stdout-{self.session_id}",
        )
        self.stderr_task = asyncio.create_task(
            self._output_reader(self.process.stderr, "stderr", detector),
            name=f"capture-stderr-{self.session_id}",
        )

    async def _output_reader(
        self,
        stream: Optional[asyncio.StreamReader],
        stream_name: str,
        detector: ReadinessDetector,
    ) -> None:
        if stream is None:
            return

        try:
            while True:
                line = await stream.readline()
                if not line:
                    break

                line_str = line.decode(errors="replace").strip()
                if not line_str:
                    continue

                self.logger.debug("%s: %s", stream_name, line_str)
                if not self.ready_event.is_set() and detector.matches(line_str):
                    self.ready_line = line_str
                    self.ready_event.set()

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("%s reader error: %s", stream_name, e)

    async def cancel_tasks(self) -> None:
        for task in (self.stdout_task, self.stderr_task, self.monitor_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    def snapshot(self) -> Dict[str, object]:
        return {
            "sessionId": self.session_id,
            "device": self.device,
            "port": self.port,
            "pid": self.pid,
            "state": self.state.value,
            "startedAt": self.started_at,
            "uptime": time.time() - self.started_at,
            "returncode": self.returncode,
        }


class ProcessSupervisor:
    """
    Starts, watches and stops capture processes, one per session.

    ``start`` only returns once the process is ready: a readiness line was
    seen on its output and it survived the settle delay. ``stop`` escalates
    from SIGTERM to SIGKILL after ``stop_grace`` seconds and always removes
    the session's entry, whatever happened to the process.
    """

    def __init__(
        self,
        bridge: DeviceBridge,
        detector: Optional[ReadinessDetector] = None,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        stop_grace: float = DEFAULT_STOP_GRACE,
        exit_callback: Optional[ExitCallback] = None,
    ):
        self.logger = get_module_logger("ProcessSupervisor")
        self.bridge = bridge
        self.detector = detector or ReadinessDetector()
        self.startup_timeout = startup_timeout
        self.settle_delay = settle_delay
        self.stop_grace = stop_grace
        self.exit_callback = exit_callback

        self._processes: Dict[str, CaptureProcess] = {}

    # =========================================================================
    # Start
    # =========================================================================

    async def start(self, session_id: str, device: str, port: int) -> CaptureProcess:
        """
        Launch a capture process for ``session_id`` and wait until it is ready.

        Raises:
            ProcessStartTimeout: not launched and ready within ``startup_timeout``.
            ProcessStartFailure: the process exited before becoming ready.
            DeviceUnavailable: raised by the bridge when the device is gone.
        """
        if session_id in self._processes:
            self.logger.warning("Session %s already has a capture process, stopping it first", session_id)
            await self.stop(session_id)

        self.logger.info("Starting capture for session %s: device=%s port=%d", session_id, device, port)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        try:
            process = await asyncio.wait_for(
                self.bridge.start_capture_process(device, port, session_id),
                timeout=self.startup_timeout,
            )
        except asyncio.TimeoutError:
            self.logger.error("Launching capture for session %s timed out", session_id)
            await self._bridge_cleanup(session_id)
            raise ProcessStartTimeout(self.startup_timeout) from None

        capture = CaptureProcess(session_id, device, port, process)
        self._processes[session_id] = capture
        capture.start_readers(self.detector)

        try:
            await self._wait_until_ready(capture, max(0.0, deadline - loop.time()))
        except BaseException as e:
            capture.state = CaptureState.FAILED
            self.logger.error("Capture for session %s failed to start: %s", session_id, e)
            await self.stop(session_id, grace=0)
            raise

        capture.state = CaptureState.READY
        capture.monitor_task = asyncio.create_task(
            self._process_monitor(capture),
            name=f"capture-monitor-{session_id}",
        )
        self.logger.info(
            "Capture ready for session %s (pid=%s, marker=%r)",
            session_id, capture.pid, capture.ready_line,
        )
        return capture

    async def _wait_until_ready(self, capture: CaptureProcess, timeout: float) -> None:
        ready_waiter = asyncio.create_task(capture.ready_event.wait())
        exit_waiter = asyncio.create_task(capture.process.wait())

        try:
            done, _ = await asyncio.wait(
                {ready_waiter, exit_waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in (ready_waiter, exit_waiter):
                if not waiter.done():
                    waiter.cancel()

        if ready_waiter in done:
            # Late-stage initialization still happens after the marker line.
            await asyncio.sleep(self.settle_delay)
            if capture.process.returncode is not None:
                raise ProcessStartFailure(capture.process.returncode)
            return

        if exit_waiter in done:
            raise ProcessStartFailure(capture.process.returncode)

        raise ProcessStartTimeout(self.startup_timeout)

    async def _process_monitor(self, capture: CaptureProcess) -> None:
        returncode = await capture.process.wait()

        if capture.state != CaptureState.READY:
            return

        capture.state = CaptureState.FAILED
        self.logger.error(
            "Capture process for session %s exited unexpectedly with code %s",
            capture.session_id, returncode,
        )
        if self.exit_callback:
            try:
                await self.exit_callback(capture.session_id, returncode)
            except Exception as e:
                self.logger.error("Exit callback error for %s: %s", capture.session_id, e, exc_info=True)

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop(self, session_id: str, grace: Optional[float] = None) -> bool:
        """
        Stop the session's capture process. Returns False if none is registered.

        ``grace`` overrides ``stop_grace``; zero skips SIGTERM and kills.
        """
        capture = self._processes.get(session_id)
        if capture is None:
            self.logger.debug("No capture process for session %s", session_id)
            return False

        if capture.state == CaptureState.STOPPING:
            await capture.stopped_event.wait()
            return True

        grace = self.stop_grace if grace is None else grace
        capture.state = CaptureState.STOPPING
        self.logger.info("Stopping capture for session %s (pid=%s)", session_id, capture.pid)

        try:
            await self._terminate(capture, grace)
        except Exception as e:
            self.logger.error("Error stopping capture for %s: %s", session_id, e, exc_info=True)
        finally:
            await capture.cancel_tasks()
            if self._processes.get(session_id) is capture:
                del self._processes[session_id]
            capture.state = CaptureState.STOPPED
            capture.stopped_event.set()
            await self._bridge_cleanup(session_id)
            self.logger.info("Capture stopped for session %s (forced=%s)", session_id, capture.forced)

        return True

    async def _bridge_cleanup(self, session_id: str) -> None:
        try:
            await self.bridge.stop_capture_process(session_id)
        except Exception as e:
            self.logger.error("Bridge cleanup failed for %s: %s", session_id, e)

    async def _terminate(self, capture: CaptureProcess, grace: float) -> None:
        process = capture.process
        if process.returncode is not None:
            return

        if grace > 0:
            try:
                process.terminate()
            except ProcessLookupError:
                return
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
                self.logger.debug("Capture for %s exited after SIGTERM", capture.session_id)
                return
            except asyncio.TimeoutError:
                self.logger.warning(
                    "Capture for %s ignored SIGTERM for %.1fs, killing...",
                    capture.session_id, grace,
                )

        capture.forced = True
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def stop_all(self) -> None:
        session_ids = list(self._processes.keys())
        if not session_ids:
            return
        self.logger.info("Stopping %d capture process(es)", len(session_ids))
        await asyncio.gather(*(self.stop(sid) for sid in session_ids), return_exceptions=True)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, session_id: str) -> Optional[CaptureProcess]:
        return self._processes.get(session_id)

    def is_running(self, session_id: str) -> bool:
        capture = self._processes.get(session_id)
        return capture is not None and capture.is_alive()

    def has_process(self, session_id: str) -> bool:
        return session_id in self._processes

    def snapshot(self) -> List[Dict[str, object]]:
        return [capture.snapshot() for capture in self._processes.values()]

    def __len__(self) -> int:
        return len(self._processes)
