"""
Readiness detection for capture processes.

A capture process announces that it is up by printing a recognizable line on
stdout or stderr. The supervisor does not care which line that is; it feeds
every decoded output line to a ReadinessDetector and waits for the first
match (or its own startup timeout).
"""

from typing import Callable, Iterable, Optional, Tuple

LineMatcher = Callable[[str], bool]

DEFAULT_READY_MARKERS: Tuple[str, ...] = (
    "Device:",
    "INFO:",
    "device info",
    "started",
)


class ReadinessDetector:
    """
    Decides whether an output line marks a capture process as ready.

    By default a line matches when it contains any of ``markers``
    (case-sensitive substring match). A custom ``matcher`` replaces the
    marker scan entirely.
    """

    def __init__(
        self,
        markers: Iterable[str] = DEFAULT_READY_MARKERS,
        matcher: Optional[LineMatcher] = None,
    ):
        self.markers = tuple(markers)
        self._matcher = matcher

        if not self.markers and matcher is None:
            raise ValueError("ReadinessDetector needs markers or a matcher")

    def matches(self, line: str) -> bool:
        if self._matcher is not None:
            return self._matcher(line)
        return any(marker in line for marker in self.markers)

    def __repr__(self) -> str:
        if self._matcher is not None:
            return f"ReadinessDetector(matcher={self._matcher!r})"
        return f"ReadinessDetector(markers={self.markers!r})"
