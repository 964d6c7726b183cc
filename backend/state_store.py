"""JSON-file object/state tree addressed by dotted ids.

Layout per TV: ``<name>`` (device) / ``<name>.info|state|control`` (channels) /
``<name>.<channel>.<state>`` (states). State values carry an ``ack`` flag; a write
with ``ack=False`` below ``<name>.control`` is handed to the registered control
handler, which settles it by writing back with ``ack=True``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

SAVE_DEBOUNCE_SECONDS = 1.0

ControlHandler = Callable[[str, str, Any], Awaitable[None]]

INFO_STATES: Dict[str, Dict[str, Any]] = {
    "id": {"type": "string", "role": "info.serial"},
    "ip": {"type": "string", "role": "info.ip"},
    "mac": {"type": "string", "role": "info.mac"},
    "model": {"type": "string", "role": "info.model"},
    "uuid": {"type": "string", "role": "info.uuid"},
    "api": {"type": "string", "role": "info.api"},
    "lastSeen": {"type": "number", "role": "value.time"},
    "paired": {"type": "boolean", "role": "indicator"},
    "online": {"type": "boolean", "role": "indicator.reachable"},
    "tokenAuthSupport": {"type": "boolean", "role": "indicator"},
}

STATUS_STATES: Dict[str, Dict[str, Any]] = {
    "power": {"type": "boolean", "role": "switch.power"},
    "volume": {"type": "number", "role": "level.volume", "min": 0, "max": 100},
    "muted": {"type": "boolean", "role": "media.mute"},
    "app": {"type": "string", "role": "media.app"},
    "source": {"type": "string", "role": "media.input"},
}

CONTROL_STATES: Dict[str, Dict[str, Any]] = {
    "power": {"type": "boolean", "role": "switch.power", "write": True},
    "wol": {"type": "boolean", "role": "button", "write": True},
    "key": {"type": "string", "role": "text", "write": True},
    "volumeUp": {"type": "boolean", "role": "button", "write": True},
    "volumeDown": {"type": "boolean", "role": "button", "write": True},
    "mute": {"type": "boolean", "role": "button", "write": True},
    "channelUp": {"type": "boolean", "role": "button", "write": True},
    "channelDown": {"type": "boolean", "role": "button", "write": True},
    "launchApp": {"type": "string", "role": "text", "write": True},
    "source": {"type": "string", "role": "text", "write": True},
}

CHANNELS = {"info": INFO_STATES, "state": STATUS_STATES, "control": CONTROL_STATES}


@dataclass
class StateValue:
    val: Any
    ack: bool = True
    ts: float = 0.0


def _under(object_id: str, prefix: str) -> bool:
    return object_id == prefix or object_id.startswith(prefix + ".")


class ObjectStore:
    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.states: Dict[str, StateValue] = {}
        self.control_handler: Optional[ControlHandler] = None
        self._save_task: Optional[asyncio.Task] = None

    def load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text())
        except (OSError, ValueError):
            logger.warning("Object store %s unreadable; starting empty", self._path)
            return
        self.objects = dict(data.get("objects") or {})
        self.states = {
            key: StateValue(**value)
            for key, value in (data.get("states") or {}).items()
            if isinstance(value, dict)
        }

    def save(self) -> None:
        payload = {
            "objects": self.objects,
            "states": {key: asdict(value) for key, value in self.states.items()},
        }
        try:
            self._path.write_text(json.dumps(payload, indent=2))
        except OSError as exc:
            logger.warning("Failed to persist object store: %s", exc)

    def _schedule_save(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save()
            return
        if self._save_task is None or self._save_task.done():
            self._save_task = loop.create_task(self._save_later())

    async def _save_later(self) -> None:
        await asyncio.sleep(SAVE_DEBOUNCE_SECONDS)
        self.save()

    def flush(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = None
        self.save()

    # objects

    def get_object(self, object_id: str) -> Optional[Dict[str, Any]]:
        return self.objects.get(object_id)

    def get_objects(self, prefix: str) -> Dict[str, Dict[str, Any]]:
        return {key: obj for key, obj in self.objects.items() if _under(key, prefix)}

    def set_object(self, object_id: str, obj: Dict[str, Any]) -> None:
        self.objects[object_id] = obj
        self._schedule_save()

    def set_object_not_exists(self, object_id: str, obj: Dict[str, Any]) -> bool:
        if object_id in self.objects:
            return False
        self.set_object(object_id, obj)
        return True

    def extend_object(self, object_id: str, common: Dict[str, Any], native: Optional[Dict[str, Any]] = None) -> None:
        obj = self.objects.setdefault(object_id, {"type": "state", "common": {}, "native": {}})
        obj.setdefault("common", {}).update(common)
        if native:
            obj.setdefault("native", {}).update(native)
        self._schedule_save()

    def del_object(self, object_id: str, recursive: bool = True) -> None:
        doomed = [key for key in self.objects if _under(key, object_id)] if recursive else [object_id]
        for key in doomed:
            self.objects.pop(key, None)
            self.states.pop(key, None)
        self._schedule_save()

    # states

    def get_state(self, state_id: str) -> Optional[StateValue]:
        return self.states.get(state_id)

    def get_value(self, state_id: str, default: Any = None) -> Any:
        state = self.states.get(state_id)
        return default if state is None else state.val

    async def set_state(self, state_id: str, val: Any, ack: bool = True) -> None:
        self.states[state_id] = StateValue(val=val, ack=ack, ts=time.time())
        self._schedule_save()
        if ack:
            return
        parts = state_id.split(".")
        if len(parts) == 3 and parts[1] == "control" and self.control_handler is not None:
            await self.control_handler(parts[0], parts[2], val)

    def set_ack(self, state_id: str, val: Any) -> None:
        """Synchronous acknowledged write for status updates."""
        self.states[state_id] = StateValue(val=val, ack=True, ts=time.time())
        self._schedule_save()

    # device subtrees

    def device_names(self) -> Dict[str, str]:
        """``{object name: declared device id}`` for every device object."""
        result = {}
        for key, obj in self.objects.items():
            if "." in key or obj.get("type") != "device":
                continue
            result[key] = str((obj.get("native") or {}).get("id") or "")
        return result

    def rename_prefix(self, old: str, new: str) -> None:
        """Recreate every object and state below ``old`` under ``new``, then drop ``old``."""
        for key, obj in list(self.get_objects(old).items()):
            target = new + key[len(old):]
            self.objects[target] = json.loads(json.dumps(obj))
            if key in self.states:
                self.states[target] = StateValue(**asdict(self.states[key]))
        self.del_object(old, recursive=True)
        logger.info("Renamed device objects %s -> %s", old, new)

    def ensure_device_objects(self, name: str, device_id: str, display_name: str) -> None:
        self.set_object_not_exists(name, {"type": "device", "common": {"name": display_name}, "native": {"id": device_id}})
        self.extend_object(name, {"name": display_name}, {"id": device_id})
        self.objects[name]["type"] = "device"
        for channel, states in CHANNELS.items():
            self.set_object_not_exists(f"{name}.{channel}", {"type": "channel", "common": {"name": channel}, "native": {}})
            for state, common in states.items():
                entry = {"name": state, "read": True, "write": False}
                entry.update(common)
                self.set_object_not_exists(f"{name}.{channel}.{state}", {"type": "state", "common": entry, "native": {}})

    def reconcile_devices(self, expected: Dict[str, str]) -> None:
        """Drop stale device subtrees and migrate renamed ones.

        ``expected`` maps device id to its current object name.
        """
        for name, device_id in self.device_names().items():
            target = expected.get(device_id)
            if target is None:
                logger.info("Removing stale device objects %s", name)
                self.del_object(name, recursive=True)
            elif target != name:
                if target in self.objects:
                    self.del_object(name, recursive=True)
                else:
                    self.rename_prefix(name, target)
