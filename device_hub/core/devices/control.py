"""
Control commands forwarded to a leased device.

The set of commands is closed: every command is one of the dataclasses
below and knows how to express itself as an ``adb shell input`` argument
list. Arguments are passed as separate argv entries, never through a shell.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Union

from device_hub.core.errors import InvalidCommand


SCROLL_DISTANCE = 200


class NamedKey(Enum):
    """Android key codes exposed by name."""
    HOME = 3
    BACK = 4
    VOLUME_UP = 24
    VOLUME_DOWN = 25
    POWER = 26
    MENU = 82
    WAKEUP = 224


class ControlKind(Enum):
    TAP = "tap"
    SWIPE = "swipe"
    SCROLL = "scroll"
    KEYCODE = "keycode"
    TEXT = "text"


@dataclass(frozen=True)
class Tap:
    x: int
    y: int

    kind = ControlKind.TAP

    def input_args(self) -> List[str]:
        return ["tap", str(self.x), str(self.y)]


@dataclass(frozen=True)
class Swipe:
    x1: int
    y1: int
    x2: int
    y2: int
    duration_ms: int = 300

    kind = ControlKind.SWIPE

    def input_args(self) -> List[str]:
        return [
            "swipe",
            str(self.x1), str(self.y1),
            str(self.x2), str(self.y2),
            str(self.duration_ms),
        ]


@dataclass(frozen=True)
class Scroll:
    x: int
    y: int
    direction: str

    kind = ControlKind.SCROLL

    def to_swipe(self) -> Swipe:
        dx, dy = {
            "up": (0, -SCROLL_DISTANCE),
            "down": (0, SCROLL_DISTANCE),
            "left": (-SCROLL_DISTANCE, 0),
            "right": (SCROLL_DISTANCE, 0),
        }[self.direction]
        return Swipe(self.x, self.y, self.x + dx, self.y + dy)

    def input_args(self) -> List[str]:
        return self.to_swipe().input_args()


@dataclass(frozen=True)
class KeyCode:
    key_code: int

    kind = ControlKind.KEYCODE

    def input_args(self) -> List[str]:
        return ["keyevent", str(self.key_code)]


@dataclass(frozen=True)
class TextInput:
    text: str

    kind = ControlKind.TEXT

    def input_args(self) -> List[str]:
        # `input text` treats a literal space as an argument separator on the
        # device side; %s is its escape for a space.
        return ["text", self.text.replace(" ", "%s")]


ControlCommand = Union[Tap, Swipe, Scroll, KeyCode, TextInput]


def _as_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise InvalidCommand(f"'{field_name}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidCommand(f"'{field_name}' must be an integer, got {value!r}") from None


def touch_command(x: Any, y: Any, action: str = "tap") -> ControlCommand:
    """Build the command for a TOUCH_EVENT payload."""
    px, py = _as_int(x, "x"), _as_int(y, "y")
    action = (action or "tap").lower()
    if action == "tap":
        return Tap(px, py)
    if action.startswith("scroll_"):
        direction = action[len("scroll_"):]
        if direction not in ("up", "down", "left", "right"):
            raise InvalidCommand(f"Unknown scroll direction: {direction}")
        return Scroll(px, py, direction)
    raise InvalidCommand(f"Unsupported touch action: {action}")


def key_command(key: Any) -> KeyCode:
    """Build the command for a KEY_EVENT payload (numeric code or key name)."""
    if isinstance(key, str) and not key.strip().lstrip("-").isdigit():
        try:
            return KeyCode(NamedKey[key.strip().upper()].value)
        except KeyError:
            raise InvalidCommand(f"Unknown key name: {key}") from None
    code = _as_int(key, "keyCode")
    if code < 0:
        raise InvalidCommand(f"Invalid key code: {code}")
    return KeyCode(code)


def text_command(text: Any) -> TextInput:
    if not isinstance(text, str) or not text:
        raise InvalidCommand("'text' must be a non-empty string")
    return TextInput(text)


def command_from_payload(kind: str, payload: Dict[str, Any]) -> ControlCommand:
    """Build a command from a REST route name (touch/key/text) and JSON body."""
    if kind == "touch":
        return touch_command(payload.get("x"), payload.get("y"), payload.get("action", "tap"))
    if kind == "key":
        return key_command(payload.get("keyCode", payload.get("key")))
    if kind == "text":
        return text_command(payload.get("text"))
    raise InvalidCommand(f"Unknown control kind: {kind}")


def describe(command: ControlCommand) -> Dict[str, Any]:
    """Small JSON-friendly summary used in logs and API responses."""
    if isinstance(command, TextInput):
        return {"kind": command.kind.value, "length": len(command.text)}
    return {"kind": command.kind.value, "args": command.input_args()[1:]}
