"""Configuration loading for the device hub.

The hub reads a flat ``key = value`` file (``config.txt`` at the project
root). Unknown keys are ignored, malformed values fall back to defaults with a
warning, and command line flags override whatever the file says.
"""

import asyncio
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import aiofiles

from device_hub.core.logging_utils import get_module_logger
from device_hub.core.paths import CONFIG_PATH


logger = get_module_logger("ConfigManager")


@dataclass(frozen=True)
class HubConfig:
    """Effective runtime settings for one hub process."""

    host: str = "0.0.0.0"
    http_port: int = 3000

    # Port pool
    port_range_start: int = 27183
    port_pool_size: int = 100

    # Sessions
    max_sessions: int = 50
    idle_timeout: float = 300.0
    idle_sweep_interval: float = 60.0
    pool_check_interval: float = 300.0

    # Capture process supervision
    startup_timeout: float = 10.0
    settle_delay: float = 2.0
    stop_grace: float = 3.0

    # Collaborator tooling
    adb_path: str = "adb"
    scrcpy_path: str = "scrcpy"
    scrcpy_bit_rate: str = "2M"
    scrcpy_max_fps: int = 15

    # Process
    log_level: str = "info"
    console_output: bool = True
    api_debug: bool = False
    cleanup_orphans: bool = True

    @property
    def port_range(self) -> range:
        return range(self.port_range_start, self.port_range_start + self.port_pool_size)

    def with_overrides(self, **overrides: Any) -> "HubConfig":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        applied = {k: v for k, v in overrides.items() if k in known and v is not None}
        return replace(self, **applied)


class ConfigManager:

    def __init__(self):
        self.logger = get_module_logger("ConfigManager")
        self.lock = asyncio.Lock()

    def _parse_config_lines(self, lines: Iterable[str]) -> Dict[str, str]:
        config: Dict[str, str] = {}

        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith('#'):
                continue
            if '=' not in line:
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip()

            if '#' in value:
                value = value.split('#')[0].strip()

            if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                value = value[1:-1]

            config[key] = value

        return config

    def read_config(self, config_path: Path) -> Dict[str, str]:
        """Read a config file synchronously. Missing files yield an empty dict."""
        if not config_path.exists():
            return {}

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                return self._parse_config_lines(f)
        except OSError as e:
            self.logger.error("Failed to read config %s: %s", config_path, e)
            return {}

    async def read_config_async(self, config_path: Path) -> Dict[str, str]:
        """Async version for use inside the running hub."""
        if not await asyncio.to_thread(config_path.exists):
            return {}

        async with self.lock:
            try:
                async with aiofiles.open(config_path, 'r', encoding='utf-8') as f:
                    lines = await f.readlines()
            except OSError as e:
                self.logger.error("Failed to read config %s: %s", config_path, e)
                return {}

        return self._parse_config_lines(lines)

    def get_bool(self, config: Dict[str, str], key: str, default: bool = False) -> bool:
        if key not in config:
            return default

        value = config[key].lower()
        return value in ('true', '1', 'yes', 'on')

    def get_int(self, config: Dict[str, str], key: str, default: int = 0) -> int:
        if key not in config:
            return default

        try:
            return int(config[key])
        except ValueError:
            self.logger.warning("Invalid int value for %s: %s, using default %d", key, config[key], default)
            return default

    def get_float(self, config: Dict[str, str], key: str, default: float = 0.0) -> float:
        if key not in config:
            return default

        try:
            return float(config[key])
        except ValueError:
            self.logger.warning("Invalid float value for %s: %s, using default %f", key, config[key], default)
            return default

    def get_str(self, config: Dict[str, str], key: str, default: str = "") -> str:
        return config.get(key, default)

    def build_hub_config(self, raw: Dict[str, str]) -> HubConfig:
        """Convert parsed ``key = value`` pairs into a typed HubConfig."""
        defaults = HubConfig()
        values: Dict[str, Any] = {}

        for f in fields(HubConfig):
            default = getattr(defaults, f.name)
            if isinstance(default, bool):
                values[f.name] = self.get_bool(raw, f.name, default)
            elif isinstance(default, int):
                values[f.name] = self.get_int(raw, f.name, default)
            elif isinstance(default, float):
                values[f.name] = self.get_float(raw, f.name, default)
            else:
                values[f.name] = self.get_str(raw, f.name, default)

        config = HubConfig(**values)
        if config.port_pool_size <= 0:
            raise ValueError(f"port_pool_size must be positive, got {config.port_pool_size}")
        if config.max_sessions <= 0:
            raise ValueError(f"max_sessions must be positive, got {config.max_sessions}")
        return config

    def load_hub_config(self, config_path: Optional[Path] = None) -> HubConfig:
        path = config_path or CONFIG_PATH
        config = self.build_hub_config(self.read_config(path))
        self.logger.debug("Loaded hub config from %s: %s", path, config)
        return config

    async def load_hub_config_async(self, config_path: Optional[Path] = None) -> HubConfig:
        path = config_path or CONFIG_PATH
        config = self.build_hub_config(await self.read_config_async(path))
        self.logger.debug("Loaded hub config from %s: %s", path, config)
        return config


_config_manager = ConfigManager()


def get_config_manager() -> ConfigManager:
    return _config_manager


def load_hub_config(config_path: Optional[Path] = None) -> HubConfig:
    return get_config_manager().load_hub_config(config_path)
