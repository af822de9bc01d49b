"""Device tooling consumed by the orchestration core."""

from .adb_bridge import AdbDeviceBridge
from .bridge import DeviceBridge, DeviceInfo
from .control import (
    ControlCommand,
    ControlKind,
    KeyCode,
    NamedKey,
    Scroll,
    Swipe,
    Tap,
    TextInput,
    command_from_payload,
    key_command,
    text_command,
    touch_command,
)

__all__ = [
    "AdbDeviceBridge",
    "DeviceBridge",
    "DeviceInfo",
    "ControlCommand",
    "ControlKind",
    "KeyCode",
    "NamedKey",
    "Scroll",
    "Swipe",
    "Tap",
    "TextInput",
    "command_from_payload",
    "key_command",
    "text_command",
    "touch_command",
]
