"""ADB/scrcpy implementation of the DeviceBridge protocol."""

import asyncio
import re
import shlex
from typing import Dict, List, Optional, Sequence, Tuple

from device_hub.core.errors import DeviceUnavailable
from device_hub.core.logging_utils import get_module_logger

from .bridge import UNKNOWN_MODEL, UNKNOWN_VALUE, DeviceInfo
from .control import ControlCommand, describe


ADB_TIMEOUT = 5.0
SCREENSHOT_TIMEOUT = 10.0

_BATTERY_LEVEL_RE = re.compile(r"^\s*level:\s*(\d+)", re.MULTILINE)


def parse_adb_devices(raw_output: str) -> List[Dict[str, str]]:
    """Parse ``adb devices`` output, keeping only devices in the "device" state."""
    devices = []
    for line in raw_output.strip().splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "device":
            devices.append({"serial": parts[0], "status": parts[1]})
    return devices


def parse_wm_size(raw_output: str) -> str:
    # "Physical size: 1080x2400" possibly followed by "Override size: ..."
    for line in raw_output.strip().splitlines():
        if ":" in line:
            return line.split(":", 1)[1].strip() or UNKNOWN_VALUE
    return UNKNOWN_VALUE


def parse_battery_level(raw_output: str) -> Optional[int]:
    match = _BATTERY_LEVEL_RE.search(raw_output)
    return int(match.group(1)) if match else None


class AdbDeviceBridge:
    """
    Talks to devices through the ``adb`` and ``scrcpy`` executables.

    Every external call goes through ``asyncio.create_subprocess_exec`` with
    an explicit argv; nothing is interpolated into a shell command line.
    """

    def __init__(
        self,
        adb_path: str = "adb",
        scrcpy_path: str = "scrcpy",
        bit_rate: str = "2M",
        max_fps: int = 15,
    ):
        self.logger = get_module_logger("AdbBridge")
        self.adb_path = adb_path
        self.scrcpy_path = scrcpy_path
        self.bit_rate = bit_rate
        self.max_fps = max_fps

        self._capture_processes: Dict[str, asyncio.subprocess.Process] = {}

    async def _run(self, args: Sequence[str], timeout: float = ADB_TIMEOUT) -> Tuple[int, bytes, bytes]:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        return process.returncode, stdout, stderr

    async def _adb(self, serial: Optional[str], *args: str, timeout: float = ADB_TIMEOUT) -> str:
        argv = [self.adb_path]
        if serial:
            argv += ["-s", serial]
        argv += list(args)

        returncode, stdout, stderr = await self._run(argv, timeout=timeout)
        if returncode != 0:
            raise RuntimeError(
                f"{' '.join(argv)} failed ({returncode}): {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")

    # =========================================================================
    # Enumeration
    # =========================================================================

    async def list_devices(self) -> List[Dict[str, str]]:
        try:
            output = await self._adb(None, "devices")
        except (OSError, RuntimeError, asyncio.TimeoutError) as e:
            self.logger.error("Error listing ADB devices: %s", e)
            raise RuntimeError("Unable to list devices, make sure adb is installed and on PATH") from e

        devices = parse_adb_devices(output)
        self.logger.debug("Found %d connected devices", len(devices))
        return devices

    async def get_device_info(self, serial: str) -> DeviceInfo:
        results = await asyncio.gather(
            self._adb(serial, "shell", "getprop", "ro.product.model"),
            self._adb(serial, "shell", "getprop", "ro.build.version.release"),
            self._adb(serial, "shell", "wm", "size"),
            self._adb(serial, "shell", "dumpsys", "battery"),
            return_exceptions=True,
        )
        model_out, version_out, size_out, battery_out = (
            None if isinstance(result, BaseException) else result for result in results
        )

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            self.logger.warning("Partial device info for %s: %s", serial, failures[0])

        return DeviceInfo(
            id=serial,
            serial=serial,
            model=(model_out or "").strip() or UNKNOWN_MODEL,
            version=(version_out or "").strip() or UNKNOWN_VALUE,
            resolution=parse_wm_size(size_out) if size_out else UNKNOWN_VALUE,
            battery=parse_battery_level(battery_out) if battery_out else None,
        )

    async def check_device_connection(self, serial: str) -> bool:
        try:
            output = await self._adb(serial, "get-state")
        except (OSError, RuntimeError, asyncio.TimeoutError) as e:
            self.logger.debug("Device %s not reachable: %s", serial, e)
            return False
        return output.strip() == "device"

    # =========================================================================
    # Capture processes
    # =========================================================================

    def capture_args(self, serial: str, port: int) -> List[str]:
        return [
            self.scrcpy_path,
            "-s", serial,
            "--no-display",
            "--port", str(port),
            "--bit-rate", self.bit_rate,
            "--max-fps", str(self.max_fps),
        ]

    async def start_capture_process(self, serial: str, port: int, session_id: str) -> asyncio.subprocess.Process:
        if not await self.check_device_connection(serial):
            raise DeviceUnavailable(serial)

        args = self.capture_args(serial, port)
        self.logger.info("Starting capture for %s (session %s): %s", serial, session_id, " ".join(args))

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DeviceUnavailable(serial, f"Failed to launch {self.scrcpy_path}: {e}") from e

        self._capture_processes[session_id] = process
        return process

    async def stop_capture_process(self, session_id: str) -> None:
        process = self._capture_processes.pop(session_id, None)
        if process is not None and process.returncode is None:
            self.logger.warning("Capture process for %s still alive after stop, killing", session_id)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    # =========================================================================
    # Control
    # =========================================================================

    async def send_control_command(self, serial: str, command: ControlCommand) -> None:
        self.logger.debug("Sending %s to %s", describe(command), serial)
        # adb joins shell arguments with spaces before the device shell parses
        # them, so each argument is quoted for that shell.
        args = [shlex.quote(arg) for arg in command.input_args()]
        await self._adb(serial, "shell", "input", *args)

    async def screenshot(self, serial: str) -> bytes:
        returncode, stdout, stderr = await self._run(
            [self.adb_path, "-s", serial, "exec-out", "screencap", "-p"],
            timeout=SCREENSHOT_TIMEOUT,
        )
        if returncode != 0 or not stdout:
            raise DeviceUnavailable(serial, f"Screenshot failed: {stderr.decode(errors='replace').strip()}")
        return stdout
