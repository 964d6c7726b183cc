from __future__ import annotations

import re
from typing import Any, Dict

FRIENDLY_KEYS: Dict[str, str] = {
    # navigation
    "up": "KEY_UP",
    "arrowup": "KEY_UP",
    "down": "KEY_DOWN",
    "arrowdown": "KEY_DOWN",
    "left": "KEY_LEFT",
    "arrowleft": "KEY_LEFT",
    "right": "KEY_RIGHT",
    "arrowright": "KEY_RIGHT",
    "enter": "KEY_ENTER",
    "ok": "KEY_ENTER",
    "back": "KEY_RETURN",
    "return": "KEY_RETURN",
    # system
    "home": "KEY_HOME",
    "source": "KEY_SOURCE",
    "menu": "KEY_MENU",
    "info": "KEY_INFO",
    "guide": "KEY_GUIDE",
    "exit": "KEY_EXIT",
    # volume / channel
    "volup": "KEY_VOLUP",
    "volumeup": "KEY_VOLUP",
    "voldown": "KEY_VOLDOWN",
    "volumedown": "KEY_VOLDOWN",
    "mute": "KEY_MUTE",
    "chup": "KEY_CHUP",
    "channelup": "KEY_CHUP",
    "chdown": "KEY_CHDOWN",
    "channeldown": "KEY_CHDOWN",
    # media
    "play": "KEY_PLAY",
    "pause": "KEY_PAUSE",
    "stop": "KEY_STOP",
    "rewind": "KEY_REWIND",
    "ff": "KEY_FF",
    "fastforward": "KEY_FF",
    "record": "KEY_REC",
    # color
    "red": "KEY_RED",
    "green": "KEY_GREEN",
    "yellow": "KEY_YELLOW",
    "blue": "KEY_BLUE",
}
FRIENDLY_KEYS.update({str(digit): f"KEY_{digit}" for digit in range(10)})

_WHITESPACE = re.compile(r"\s+")


def normalize_key_input(value: Any) -> str:
    """Translate user input into a Samsung remote key code.

    ``KEY_*`` codes pass through (upper-cased), friendly short forms are looked up,
    anything else is upper-cased and passed on as a literal.
    """
    if not isinstance(value, str):
        return ""
    raw = value.strip()
    if not raw:
        return ""
    upper = raw.upper()
    if upper.startswith("KEY_"):
        return upper
    return FRIENDLY_KEYS.get(_WHITESPACE.sub("", raw.lower()), upper)


def source_key(source: str) -> str:
    upper = source.strip().upper()
    return upper if upper.startswith("KEY_") else f"KEY_{upper}"


def is_truthy(value: Any) -> bool:
    return value is True or value == 1 or value == "true"
