from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from controllers.base import ApiKind
from identity import (
    ensure_unique_name,
    looks_like_ip,
    normalize_device_id,
    normalize_mac,
    resolve_identity,
    sanitize_name,
)

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1
SAVE_DEBOUNCE_SECONDS = 1.5


@dataclass
class AudioTelemetry:
    """Per-session audio state used by the reconciliation heuristics."""

    last_known_volume: Optional[int] = None
    last_known_muted: Optional[bool] = None
    expected_volume: Optional[int] = None
    expected_volume_until: Optional[float] = None
    expected_muted: Optional[bool] = None
    expected_muted_until: Optional[float] = None
    volume_telemetry_reliable: Optional[bool] = None
    muted_telemetry_reliable: Optional[bool] = None
    muted_shadow_until: float = 0.0


@dataclass
class DiscoveredCandidate:
    ip: str
    source: Set[str] = field(default_factory=set)
    id: str = ""
    name: str = ""
    model: str = ""
    uuid: str = ""
    mac: str = ""
    api: ApiKind = ApiKind.UNKNOWN
    protocol: str = ""
    port: int = 0
    upnp_location: str = ""
    rendering_control_url: str = ""
    rendering_control_event_url: str = ""
    token_auth_support: Optional[bool] = None
    hj_available: Optional[bool] = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "id": self.id,
            "ip": self.ip,
            "name": self.name,
            "model": self.model,
            "uuid": self.uuid,
            "mac": self.mac,
            "api": self.api.value,
            "protocol": self.protocol,
            "port": self.port,
            "source": sorted(self.source),
            "upnpLocation": self.upnp_location,
            "renderingControlUrl": self.rendering_control_url,
            "renderingControlEventUrl": self.rendering_control_event_url,
        }
        if self.token_auth_support is not None:
            payload["tokenAuthSupport"] = self.token_auth_support
        if self.hj_available is not None:
            payload["hjAvailable"] = self.hj_available
        return payload


@dataclass
class Device:
    id: str
    name: str
    display_name: str = ""
    ip: str = ""
    mac: str = ""
    model: str = ""
    uuid: str = ""
    api: ApiKind = ApiKind.UNKNOWN
    protocol: str = ""
    port: int = 0
    source: str = "config"
    upnp_location: str = ""
    rendering_control_url: str = ""
    rendering_control_event_url: str = ""
    token_auth_support: Optional[bool] = None
    hj_available: Optional[bool] = None
    telemetry: AudioTelemetry = field(default_factory=AudioTelemetry, repr=False, compare=False)
    rendering_control_lookup_ts: float = field(default=0.0, repr=False, compare=False)

    def to_dict(self) -> Dict[str, object]:
        """Persisted (config) representation; runtime telemetry is not included."""
        payload: Dict[str, object] = {
            "id": self.id,
            "name": self.display_name or self.name,
            "ip": self.ip,
            "mac": self.mac,
            "model": self.model,
            "uuid": self.uuid,
            "api": self.api.value,
            "protocol": self.protocol,
            "port": self.port,
            "source": self.source,
            "upnpLocation": self.upnp_location,
            "renderingControlUrl": self.rendering_control_url,
            "renderingControlEventUrl": self.rendering_control_event_url,
        }
        if self.token_auth_support is not None:
            payload["tokenAuthSupport"] = self.token_auth_support
        if self.hj_available is not None:
            payload["hjAvailable"] = self.hj_available
        return payload

    @classmethod
    def from_raw(cls, raw: Dict[str, Any], name: str, device_id: str) -> "Device":
        token_auth = raw.get("tokenAuthSupport")
        hj_available = raw.get("hjAvailable")
        try:
            port = int(raw.get("port") or 0)
        except (TypeError, ValueError):
            port = 0
        return cls(
            id=device_id,
            name=name,
            display_name=str(raw.get("name") or raw.get("friendlyName") or raw.get("model") or name),
            ip=str(raw.get("ip") or ""),
            mac=normalize_mac(raw.get("mac") or ""),
            model=str(raw.get("model") or ""),
            uuid=str(raw.get("uuid") or ""),
            api=ApiKind.parse(raw.get("api")),
            protocol=str(raw.get("protocol") or ""),
            port=port,
            source=str(raw.get("source") or "config"),
            upnp_location=str(raw.get("upnpLocation") or ""),
            rendering_control_url=str(raw.get("renderingControlUrl") or ""),
            rendering_control_event_url=str(raw.get("renderingControlEventUrl") or ""),
            token_auth_support=token_auth if isinstance(token_auth, bool) else None,
            hj_available=hj_available if isinstance(hj_available, bool) else None,
        )


def raw_identity(raw: Dict[str, Any]) -> str:
    return resolve_identity(
        explicit=raw.get("id"), uuid=raw.get("uuid"), usn=raw.get("usn"), mac=raw.get("mac"), ip=raw.get("ip")
    )


def configured_devices(raw_list: Iterable[Any]) -> List[Device]:
    """Build devices from raw config records.

    Records without any resolvable identity are skipped with a warning; names are
    slugged and de-duplicated with a numeric suffix.
    """
    names: Set[str] = set()
    seen_ids: Set[str] = set()
    result: List[Device] = []
    for raw in raw_list or []:
        if not isinstance(raw, dict):
            continue
        device_id = raw_identity(raw)
        if not device_id:
            logger.warning("Skipping device without stable id in config.")
            continue
        if device_id in seen_ids:
            logger.warning("Skipping duplicate config entry for %s", device_id)
            continue
        fallback = f"tv-{device_id[:6]}"
        raw_name = raw.get("name") or raw.get("friendlyName") or raw.get("model") or "tv"
        name = ensure_unique_name(sanitize_name(str(raw_name)) or fallback, names, fallback)
        names.add(name)
        seen_ids.add(device_id)
        result.append(Device.from_raw(raw, name, device_id))
    return result


def is_durable_id(value: str) -> bool:
    return bool(value) and not looks_like_ip(value)


def matches(device: Device, candidate: DiscoveredCandidate) -> bool:
    """Identity match: id, then MAC, then IP when the device has nothing better."""
    candidate_id = normalize_device_id(candidate.id)
    if candidate_id and candidate_id == device.id:
        return True
    candidate_mac = normalize_mac(candidate.mac)
    if candidate_mac and device.mac and candidate_mac == normalize_mac(device.mac):
        return True
    device_anchored = is_durable_id(device.id) or bool(device.mac)
    return not device_anchored and bool(candidate.ip) and candidate.ip == device.ip


def merge_candidate(device: Device, candidate: DiscoveredCandidate) -> bool:
    """Copy observed attributes onto ``device``; never blank a known value.

    Returns ``True`` when anything changed.
    """
    changed = False

    def put(attr: str, value: Any) -> None:
        nonlocal changed
        if value is None or value == "" or (type(value) is int and value == 0):
            return
        if getattr(device, attr) != value:
            setattr(device, attr, value)
            changed = True

    put("ip", candidate.ip)
    put("mac", normalize_mac(candidate.mac))
    put("model", candidate.model)
    put("uuid", candidate.uuid)
    put("upnp_location", candidate.upnp_location)
    put("rendering_control_url", candidate.rendering_control_url)
    put("rendering_control_event_url", candidate.rendering_control_event_url)
    put("token_auth_support", candidate.token_auth_support)
    put("hj_available", candidate.hj_available)

    downgraded = device.api is ApiKind.HJ and device.hj_available is True
    if candidate.api is not ApiKind.UNKNOWN and not (downgraded and candidate.api is ApiKind.TIZEN):
        put("api", candidate.api)
        put("protocol", candidate.protocol)
        put("port", candidate.port)
    return changed


class DebouncedSave:
    """Coalesces bursts of mutations into one ``save()``; saves inline outside a loop."""

    _save_task: Optional[asyncio.Task] = None

    def save(self) -> None:
        raise NotImplementedError

    def schedule_save(self, delay: float = SAVE_DEBOUNCE_SECONDS) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save()
            return
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = loop.create_task(self._save_later(delay))

    async def _save_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._save_task = None
        self.save()

    def flush(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
            self._save_task = None
            self.save()

    @property
    def pending(self) -> bool:
        return self._save_task is not None and not self._save_task.done()


class ConfigStore(DebouncedSave):
    """JSON config document (settings + device list) with debounced saves."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.data: Dict[str, Any] = {"version": CONFIG_VERSION, "settings": {}, "devices": []}

    def load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return self.data
        try:
            data = json.loads(self._path.read_text())
        except (OSError, ValueError):
            logger.warning("Could not read config store %s; starting empty", self._path)
            return self.data
        if isinstance(data, dict):
            self.data.update(data)
        if not isinstance(self.data.get("devices"), list):
            self.data["devices"] = []
        if not isinstance(self.data.get("settings"), dict):
            self.data["settings"] = {}
        return self.data

    def save(self) -> None:
        self.data["version"] = CONFIG_VERSION
        self.data["saved_at"] = datetime.utcnow().isoformat()
        try:
            self._path.write_text(json.dumps(self.data, indent=2))
            logger.debug("Persisted updated device config.")
        except OSError as exc:
            logger.warning("Failed to persist device config: %s", exc)


class DeviceRegistry:
    """In-memory device registry indexed by id, name and MAC."""

    def __init__(self, store: ConfigStore) -> None:
        self.store = store
        self.by_id: Dict[str, Device] = {}
        self.by_name: Dict[str, Device] = {}
        self.by_mac: Dict[str, Device] = {}

    def load(self) -> List[Device]:
        devices = configured_devices(self.store.data.get("devices", []))
        self.by_id, self.by_name, self.by_mac = {}, {}, {}
        for device in devices:
            self._index(device)
        return devices

    def _index(self, device: Device) -> None:
        self.by_id[device.id] = device
        self.by_name[device.name] = device
        if device.mac:
            self.by_mac[normalize_mac(device.mac)] = device

    def reindex(self, device: Device) -> None:
        """Refresh the MAC index after a poll learned a new address."""
        mac = normalize_mac(device.mac)
        for key, indexed in list(self.by_mac.items()):
            if indexed is device and key != mac:
                self.by_mac.pop(key)
        self._index(device)

    def __iter__(self):
        return iter(list(self.by_id.values()))

    def __len__(self) -> int:
        return len(self.by_id)

    def get(self, device_id: str) -> Optional[Device]:
        return self.by_id.get(normalize_device_id(device_id)) if device_id else None

    def find(self, candidate: DiscoveredCandidate) -> Optional[Device]:
        match = self.by_id.get(normalize_device_id(candidate.id))
        if match is None and candidate.mac:
            match = self.by_mac.get(normalize_mac(candidate.mac))
        if match is None:
            match = next((device for device in self if matches(device, candidate)), None)
        return match

    def reconcile(self, candidate: DiscoveredCandidate) -> Optional[Device]:
        """Merge a probed candidate into the matching device, if any."""
        device = self.find(candidate)
        if device is None:
            return None
        old_id = device.id
        old_mac = normalize_mac(device.mac)
        changed = merge_candidate(device, candidate)
        if old_mac and old_mac != normalize_mac(device.mac):
            self.by_mac.pop(old_mac, None)
        if not is_durable_id(device.id):
            new_id = resolve_identity(uuid=device.uuid, mac=device.mac, ip=device.ip)
            if is_durable_id(new_id) and new_id not in self.by_id:
                self.by_id.pop(old_id, None)
                device.id = new_id
                changed = True
                logger.info("Device %s identity upgraded %s -> %s", device.name, old_id, new_id)
        if changed:
            self._index(device)
            self.persist(device, old_id)
        return device

    def persist(self, device: Device, old_id: Optional[str] = None) -> None:
        """Upsert ``device`` into the config list (debounced)."""
        raw_list: List[Dict[str, Any]] = self.store.data.setdefault("devices", [])
        lookup = {old_id or device.id, device.id}
        for index, raw in enumerate(raw_list):
            if isinstance(raw, dict) and raw_identity(raw) in lookup:
                merged = dict(raw)
                merged.update(device.to_dict())
                merged["name"] = raw.get("name") or device.display_name or device.name
                raw_list[index] = merged
                break
        else:
            raw_list.append(device.to_dict())
        self.store.schedule_save()

    def add(self, raw: Dict[str, Any]) -> Device:
        """Add or replace a configured device record; names stay unique."""
        device_id = raw_identity(raw)
        if not device_id:
            raise ValueError("Device needs an id, uuid, mac or ip")
        existing = self.by_id.get(device_id)
        taken = {name for name, dev in self.by_name.items() if dev.id != device_id}
        fallback = f"tv-{device_id[:6]}"
        raw_name = raw.get("name") or raw.get("friendlyName") or raw.get("model") or "tv"
        name = ensure_unique_name(sanitize_name(str(raw_name)) or fallback, taken, fallback)
        device = Device.from_raw(raw, name, device_id)
        if existing is not None:
            device.telemetry = existing.telemetry
            self.by_name.pop(existing.name, None)
            if existing.mac:
                self.by_mac.pop(normalize_mac(existing.mac), None)
        self._index(device)
        raw_list = self.store.data.setdefault("devices", [])
        raw_list[:] = [r for r in raw_list if not (isinstance(r, dict) and raw_identity(r) == device_id)]
        entry = device.to_dict()
        entry["name"] = raw_name
        raw_list.append(entry)
        self.store.schedule_save()
        return device

    def remove(self, device_id: str) -> Optional[Device]:
        device = self.by_id.pop(normalize_device_id(device_id), None)
        if device is None:
            return None
        self.by_name.pop(device.name, None)
        if device.mac:
            self.by_mac.pop(normalize_mac(device.mac), None)
        raw_list = self.store.data.setdefault("devices", [])
        raw_list[:] = [r for r in raw_list if not (isinstance(r, dict) and raw_identity(r) == device.id)]
        self.store.schedule_save()
        return device
