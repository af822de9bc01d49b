import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from device_hub.core.api import APIController, APIServer
from device_hub.core.config_manager import HubConfig, get_config_manager
from device_hub.core.hub import DeviceHub
from device_hub.core.logging_config import configure_logging
from device_hub.core.logging_utils import get_module_logger
from device_hub.core.paths import CAPTURE_LOG_FILE, CONFIG_PATH, HUB_LOG_FILE, ensure_directories
from device_hub.core.shutdown_coordinator import get_shutdown_coordinator


logger = get_module_logger(__name__)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments. Anything left unset falls back to config.txt."""
    parser = argparse.ArgumentParser(
        description="Device Hub - multi-user Android device switching and video relay"
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH,
        help="Path to config.txt (default: project root)"
    )
    parser.add_argument("--host", type=str, default=None, help="Address to bind (default: 0.0.0.0)")
    parser.add_argument("--port", dest="http_port", type=int, default=None, help="HTTP port (default: 3000)")
    parser.add_argument(
        "--port-range-start",
        type=int,
        default=None,
        help="First capture port of the pool (default: 27183)"
    )
    parser.add_argument("--pool-size", dest="port_pool_size", type=int, default=None,
                        help="Number of capture ports (default: 100)")
    parser.add_argument("--max-sessions", type=int, default=None, help="Session limit (default: 50)")
    parser.add_argument("--idle-timeout", type=float, default=None,
                        help="Seconds of inactivity before a session is removed (default: 300)")
    parser.add_argument("--adb-path", type=str, default=None, help="adb executable")
    parser.add_argument("--scrcpy-path", type=str, default=None, help="scrcpy executable")

    parser.add_argument(
        "--log-level",
        choices=['debug', 'info', 'warning', 'error', 'critical'],
        default=None,
        help="Logging level (default: info)"
    )
    parser.add_argument(
        "--console",
        dest="console_output",
        action="store_true",
        default=None,
        help="Also log to console"
    )
    parser.add_argument(
        "--no-console",
        dest="console_output",
        action="store_false",
        help="Log to file only"
    )
    parser.add_argument(
        "--api-debug",
        action="store_true",
        default=None,
        help="Include tracebacks in 500 responses"
    )
    parser.add_argument(
        "--no-orphan-cleanup",
        dest="cleanup_orphans",
        action="store_false",
        default=None,
        help="Leave capture processes from a previous run alone"
    )

    return parser.parse_args(argv)


async def build_config(args: argparse.Namespace) -> HubConfig:
    """Config file values, overridden by whatever was given on the command line."""
    config = await get_config_manager().load_hub_config_async(args.config)
    return config.with_overrides(**{k: v for k, v in vars(args).items() if k != "config"})


async def run_server(config: HubConfig) -> None:
    hub = DeviceHub(config)
    controller = APIController(hub)
    server = APIServer(controller, host=config.host, port=config.http_port, debug=config.api_debug)
    shutdown_coordinator = get_shutdown_coordinator()
    shutdown_task: Optional[asyncio.Task] = None

    async def stop_api_server():
        await server.stop()

    async def stop_hub():
        await hub.shutdown()

    # Listeners close first so no new switch starts while sessions unwind.
    shutdown_coordinator.register_cleanup(stop_api_server)
    shutdown_coordinator.register_cleanup(stop_hub)

    loop = asyncio.get_running_loop()

    def signal_handler():
        nonlocal shutdown_task
        if shutdown_task is None or shutdown_task.done():
            shutdown_task = asyncio.create_task(
                shutdown_coordinator.initiate_shutdown("signal")
            )

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass  # Windows doesn't support add_signal_handler

    def exception_handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        nonlocal shutdown_task
        logger.critical("Unhandled error in event loop: %s", context.get("message"),
                        exc_info=context.get("exception"))
        if shutdown_task is None or shutdown_task.done():
            shutdown_task = loop.create_task(shutdown_coordinator.initiate_shutdown("fatal error"))

    loop.set_exception_handler(exception_handler)

    try:
        await hub.start()
        await server.start()
        await shutdown_coordinator.wait_for_shutdown()
    except KeyboardInterrupt:
        await shutdown_coordinator.initiate_shutdown("keyboard interrupt")
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        await shutdown_coordinator.initiate_shutdown("exception")
    finally:
        if not shutdown_coordinator.is_complete:
            await shutdown_coordinator.initiate_shutdown("finally block")


async def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for the device hub.

    Shutdown sequence:
    1. A signal, POST /api/shutdown, or an unhandled error requests shutdown
    2. ShutdownCoordinator runs the registered cleanups once
    3. The API server stops accepting connections
    4. Every session is closed, capture processes are stopped and ports released
    """
    args = parse_args(argv)
    config = await build_config(args)

    ensure_directories()
    configure_logging(
        config.log_level,
        force=True,
        console=config.console_output,
        log_file=HUB_LOG_FILE,
        capture_log_file=CAPTURE_LOG_FILE,
    )

    logger.info("=" * 60)
    logger.info("Device Hub Starting")
    logger.info("=" * 60)
    logger.info("HTTP: %s:%d", config.host, config.http_port)
    logger.info("Capture ports: %d-%d", config.port_range_start, config.port_range_start + config.port_pool_size - 1)
    logger.info("Log file: %s", HUB_LOG_FILE)
    logger.info("Capture output: %s", CAPTURE_LOG_FILE)
    logger.info("=" * 60)

    await run_server(config)

    logger.info("=" * 60)
    logger.info("Device Hub Stopped")
    logger.info("=" * 60)


def run(argv: Optional[list[str]] = None) -> int:
    try:
        asyncio.run(main(argv))
        return 0
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130
    except Exception as exc:  # pragma: no cover - fatal guard
        print(f"Fatal error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(run())
