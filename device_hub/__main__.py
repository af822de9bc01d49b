"""Allow ``python -m device_hub`` to launch the hub."""

from __future__ import annotations

import sys


def main() -> None:
    from device_hub import run

    raise SystemExit(run(sys.argv[1:]))


if __name__ == "__main__":
    main()
