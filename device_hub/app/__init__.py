"""Application entrypoint for the device hub."""

from .master import build_config, main, parse_args, run, run_server

__all__ = ["build_config", "main", "parse_args", "run", "run_server"]
