"""Cleanup of capture processes orphaned by a previous hub run.

A hub that crashed or was killed leaves its scrcpy children running, still
bound to ports in the pool range. They are found by command line and
stopped before the pool hands those ports out again.
"""

import os
from typing import Iterable, List, Optional

import psutil

from device_hub.core.logging_utils import get_module_logger

logger = get_module_logger("OrphanCleanup")

CAPTURE_MARKER = "--no-display"
PORT_FLAG = "--port"


def _capture_port(cmdline: List[str]) -> Optional[int]:
    """Return the ``--port`` value of a capture command line, if it is one."""
    if CAPTURE_MARKER not in cmdline or PORT_FLAG not in cmdline:
        return None
    index = cmdline.index(PORT_FLAG)
    if index + 1 >= len(cmdline):
        return None
    try:
        return int(cmdline[index + 1])
    except ValueError:
        return None


def _is_orphaned(proc: psutil.Process) -> bool:
    try:
        parent = proc.parent()
    except psutil.NoSuchProcess:
        return True
    return parent is None or parent.pid == 1


def find_orphaned_capture_processes(
    port_range: Iterable[int],
    executable: str = "scrcpy",
) -> List[psutil.Process]:
    """Find capture processes whose parent died and whose port lies in ``port_range``.

    Args:
        port_range: Ports owned by this hub's pool
        executable: Capture binary name to match

    Returns:
        List of psutil.Process objects
    """
    ports = set(port_range)
    exe_name = os.path.basename(executable)
    current_pid = os.getpid()
    orphaned = []

    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            if proc.pid == current_pid:
                continue

            cmdline = proc.info.get("cmdline") or []
            if not cmdline or os.path.basename(cmdline[0]) != exe_name:
                continue

            port = _capture_port(cmdline)
            if port is None or port not in ports:
                continue

            if _is_orphaned(proc):
                orphaned.append(proc)
                logger.debug("Found orphaned capture process: pid=%d port=%d", proc.pid, port)

        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return orphaned


def cleanup_orphaned_capture_processes(
    port_range: Iterable[int],
    executable: str = "scrcpy",
    timeout: float = 3.0,
) -> int:
    """Terminate orphaned capture processes, killing those that ignore SIGTERM.

    Returns:
        Number of processes signalled
    """
    orphaned = find_orphaned_capture_processes(port_range, executable)
    if not orphaned:
        return 0

    logger.info("Found %d orphaned capture process(es)", len(orphaned))
    signalled = 0
    for proc in orphaned:
        try:
            logger.warning("Terminating orphaned capture process: pid=%d", proc.pid)
            proc.terminate()
            signalled += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    gone, alive = psutil.wait_procs(orphaned, timeout=timeout)
    if gone:
        logger.debug("Gracefully terminated %d process(es)", len(gone))

    for proc in alive:
        try:
            logger.warning("Force killing unresponsive capture process: pid=%d", proc.pid)
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    if alive:
        psutil.wait_procs(alive, timeout=1.0)

    return signalled
