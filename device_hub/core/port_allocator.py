"""
Port Allocator - exclusive leases over a fixed range of control ports.

At every quiescent point the configured range partitions exactly into
``available``, ``in_use`` (one port per session) and ``reserved``. All
methods are synchronous so no coroutine can interleave between reading and
mutating the pool.
"""

import bisect
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from device_hub.core.errors import PoolExhausted
from device_hub.core.logging_utils import get_module_logger


DEFAULT_PORT_START = 27183
DEFAULT_POOL_SIZE = 100


@dataclass
class PoolIntegrityReport:
    """Result of recomputing the pool partition."""
    missing: List[int] = field(default_factory=list)
    unexpected: List[int] = field(default_factory=list)
    duplicated: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing or self.unexpected or self.duplicated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "missing": self.missing,
            "unexpected": self.unexpected,
            "duplicated": self.duplicated,
        }


class PortAllocator:
    """
    Hands out control ports to sessions.

    Allocation prefers the port a session released most recently (sticky
    reuse) and otherwise takes the lowest-numbered free port.
    """

    def __init__(self, start: int = DEFAULT_PORT_START, size: int = DEFAULT_POOL_SIZE):
        if size <= 0:
            raise ValueError(f"Port pool size must be positive, got {size}")

        self.logger = get_module_logger("PortAllocator")
        self.start = start
        self.size = size

        self._available: List[int] = list(range(start, start + size))
        self._in_use: Dict[str, int] = {}
        self._reserved: Set[int] = set()
        self._last_used: Dict[str, int] = {}

        self.logger.info("Port pool initialized: %d-%d", self.start, self.end)

    @property
    def end(self) -> int:
        return self.start + self.size - 1

    @property
    def expected_ports(self) -> range:
        return range(self.start, self.start + self.size)

    # =========================================================================
    # Leasing
    # =========================================================================

    def allocate(self, session_id: str) -> int:
        """
        Lease a port to ``session_id``.

        Raises:
            PoolExhausted: if no port is available.
        """
        current = self._in_use.get(session_id)
        if current is not None:
            self.logger.warning("Session %s already holds port %d", session_id, current)
            return current

        sticky = self._last_used.get(session_id)
        if sticky is not None and self._take_available(sticky):
            self._in_use[session_id] = sticky
            self.logger.info("Session %s reusing port %d", session_id, sticky)
            return sticky

        if not self._available:
            self.logger.warning("Port pool exhausted, cannot allocate for %s", session_id)
            raise PoolExhausted()

        port = self._available.pop(0)
        self._in_use[session_id] = port
        self.logger.info("Session %s allocated port %d", session_id, port)
        return port

    def release(self, session_id: str) -> Optional[int]:
        """Return the session's port to the pool. No-op if it holds none."""
        port = self._in_use.pop(session_id, None)
        if port is None:
            return None

        self._put_available(port)
        self._last_used[session_id] = port
        self.logger.info("Session %s released port %d", session_id, port)
        return port

    def reserve(self, port: int) -> bool:
        """Carve ``port`` out of the available set. False if it is not free."""
        if not self._take_available(port):
            return False
        self._reserved.add(port)
        self.logger.info("Port %d reserved", port)
        return True

    def unreserve(self, port: int) -> bool:
        """Return a reserved port to the available set."""
        if port not in self._reserved:
            return False
        self._reserved.discard(port)
        self._put_available(port)
        self.logger.info("Reserved port %d released", port)
        return True

    def release_all(self) -> None:
        """Force every leased and reserved port back to available (shutdown only)."""
        self.logger.info("Force releasing all ports...")

        for session_id, port in self._in_use.items():
            self._last_used[session_id] = port

        merged = set(self._available) | set(self._in_use.values()) | self._reserved
        self._in_use.clear()
        self._reserved.clear()
        self._available = sorted(merged)

        self.logger.info("All ports released, %d available", len(self._available))

    def forget_sticky(self, session_id: str) -> None:
        self._last_used.pop(session_id, None)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_port(self, session_id: str) -> Optional[int]:
        return self._in_use.get(session_id)

    def is_available(self, port: int) -> bool:
        index = bisect.bisect_left(self._available, port)
        return index < len(self._available) and self._available[index] == port

    def is_in_use(self, port: int) -> bool:
        return port in self._in_use.values()

    def is_reserved(self, port: int) -> bool:
        return port in self._reserved

    @property
    def available(self) -> List[int]:
        return list(self._available)

    @property
    def in_use(self) -> Dict[str, int]:
        return dict(self._in_use)

    @property
    def reserved(self) -> Set[int]:
        return set(self._reserved)

    @property
    def sticky_last_used(self) -> Dict[str, int]:
        return dict(self._last_used)

    def validate(self) -> PoolIntegrityReport:
        """Recompute the partition and report any inconsistency."""
        seen: Dict[int, int] = {}
        for port in self._available:
            seen[port] = seen.get(port, 0) + 1
        for port in self._in_use.values():
            seen[port] = seen.get(port, 0) + 1
        for port in self._reserved:
            seen[port] = seen.get(port, 0) + 1

        expected = set(self.expected_ports)
        report = PoolIntegrityReport(
            missing=sorted(expected - seen.keys()),
            unexpected=sorted(seen.keys() - expected),
            duplicated=sorted(port for port, count in seen.items() if count > 1),
        )

        if report.ok:
            self.logger.debug("Port pool integrity check passed")
        else:
            self.logger.warning(
                "Port pool integrity check failed: missing=%s unexpected=%s duplicated=%s",
                report.missing, report.unexpected, report.duplicated,
            )
        return report

    def usage_stats(self) -> Dict[str, Any]:
        in_use = len(self._in_use)
        reserved = len(self._reserved)
        return {
            "total": self.size,
            "inUse": in_use,
            "reserved": reserved,
            "available": len(self._available),
            "utilizationRate": f"{(in_use + reserved) / self.size * 100:.1f}%",
            "activeUsers": list(self._in_use.keys()),
            "portRange": {"start": self.start, "end": self.end},
        }

    def detailed_status(self) -> Dict[str, Any]:
        return {
            **self.usage_stats(),
            "userPorts": dict(self._in_use),
            "availablePorts": list(self._available),
            "reservedPorts": sorted(self._reserved),
            "lastUsedPorts": dict(self._last_used),
        }

    # =========================================================================
    # Internal helpers
    # =========================================================================

    def _take_available(self, port: int) -> bool:
        index = bisect.bisect_left(self._available, port)
        if index < len(self._available) and self._available[index] == port:
            del self._available[index]
            return True
        return False

    def _put_available(self, port: int) -> None:
        if not self.is_available(port):
            bisect.insort(self._available, port)
