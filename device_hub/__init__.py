"""Device Hub - multi-user Android device switching with a video relay."""

from __future__ import annotations

from importlib import metadata
from typing import Optional, Sequence

try:
    __version__ = metadata.version("device-hub")
except metadata.PackageNotFoundError:  # pragma: no cover - local dev
    __version__ = "0.0.0"


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Convenience wrapper around the async master entry point."""
    from .app.master import run as _run

    return _run(list(argv) if argv is not None else None)


__all__ = ["__version__", "run"]
