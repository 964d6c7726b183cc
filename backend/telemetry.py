"""Power/volume/mute status checks and audio-state reconciliation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from controllers.base import ApiKind
from identity import normalize_mac
from net_probes import NetworkProbes, check_port
from probe import HJ_PORT, LEGACY_PORT, fetch_hj_info, fetch_tizen_info
from registry import AudioTelemetry, Device

logger = logging.getLogger(__name__)

STATUS_TIMEOUT = 1.5
EXPECTED_WINDOW_SECONDS = 12.0
MUTE_SHADOW_SECONDS = 120.0

SOURCE_API = "api"
SOURCE_UPNP = "upnp"

_POWER_ON = {"on", "active", "wake", "awake"}
_POWER_OFF = {"standby", "off", "inactive", "sleep"}
_MUTED_TRUE = {"1", "true", "on", "yes", "muted"}
_MUTED_FALSE = {"0", "false", "off", "no", "unmuted"}

AudioReader = Callable[[Device], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class DeviceStatus:
    online: bool = False
    power: bool = False
    volume: Optional[int] = None
    muted: Optional[bool] = None
    volume_source: Optional[str] = None
    muted_source: Optional[str] = None
    seen: bool = False


def _info_scopes(info: Any):
    if not isinstance(info, dict):
        return []
    device = info.get("device")
    return [device, info] if isinstance(device, dict) else [info]


def extract_power_state(info: Any) -> str:
    for scope in _info_scopes(info):
        for key in ("PowerState", "powerState", "powerstate"):
            value = scope.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip().lower()
    return ""


def interpret_power_state(value: str) -> Optional[bool]:
    value = (value or "").lower()
    if value in _POWER_ON:
        return True
    if value in _POWER_OFF:
        return False
    return None


def extract_volume(info: Any) -> Optional[int]:
    for scope in _info_scopes(info):
        for key in ("volume", "Volume", "currentVolume", "CurrentVolume"):
            value = scope.get(key)
            if value is None or isinstance(value, bool):
                continue
            try:
                number = int(str(value).strip())
            except ValueError:
                continue
            return max(0, min(100, number))
    return None


def normalize_muted(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _MUTED_TRUE:
            return True
        if lowered in _MUTED_FALSE:
            return False
    return None


def extract_muted(info: Any) -> Optional[bool]:
    for scope in _info_scopes(info):
        for key in ("mute", "Mute", "muted", "Muted", "currentMute", "CurrentMute"):
            normalized = normalize_muted(scope.get(key))
            if normalized is not None:
                return normalized
    return None


def status_from_info(info: Dict[str, Any]) -> DeviceStatus:
    power = interpret_power_state(extract_power_state(info))
    status = DeviceStatus(online=True, power=True if power is None else power, seen=True)
    volume = extract_volume(info)
    if volume is not None:
        status.volume, status.volume_source = volume, SOURCE_API
    muted = extract_muted(info)
    if muted is not None:
        status.muted, status.muted_source = muted, SOURCE_API
    return status


def note_expected_volume(telemetry: AudioTelemetry, volume: int, now: Optional[float] = None) -> None:
    now = time.monotonic() if now is None else now
    telemetry.expected_volume = volume
    telemetry.expected_volume_until = now + EXPECTED_WINDOW_SECONDS
    telemetry.last_known_volume = volume


def note_expected_muted(telemetry: AudioTelemetry, muted: bool, now: Optional[float] = None) -> None:
    now = time.monotonic() if now is None else now
    telemetry.expected_muted = muted
    telemetry.expected_muted_until = now + EXPECTED_WINDOW_SECONDS
    telemetry.muted_shadow_until = now + MUTE_SHADOW_SECONDS
    telemetry.last_known_muted = muted


def resolve_audio_states(telemetry: AudioTelemetry, status: DeviceStatus, now: Optional[float] = None):
    """Reconcile reported audio values against what the channel has proven.

    Values reported through UPnP are only trusted once the channel has shown a
    non-zero volume (or mute=true) for this set; until then zero/false readings
    keep the last known value. Returns ``(volume, muted)``.
    """
    now = time.monotonic() if now is None else now
    previous_volume = telemetry.last_known_volume
    volume = status.volume
    muted = status.muted
    from_upnp_volume = status.volume_source == SOURCE_UPNP
    from_upnp_muted = status.muted_source == SOURCE_UPNP

    if telemetry.expected_volume_until is not None and now >= telemetry.expected_volume_until:
        telemetry.expected_volume = None
        telemetry.expected_volume_until = None

    if from_upnp_volume and volume is not None:
        if telemetry.expected_volume is not None:
            telemetry.volume_telemetry_reliable = volume == telemetry.expected_volume
        if volume > 0:
            telemetry.volume_telemetry_reliable = True

    if from_upnp_volume and telemetry.volume_telemetry_reliable is False:
        volume = previous_volume
    elif from_upnp_volume and telemetry.volume_telemetry_reliable is not True and volume == 0:
        volume = previous_volume

    if volume is not None:
        telemetry.last_known_volume = volume

    if telemetry.expected_muted_until is not None and now >= telemetry.expected_muted_until:
        telemetry.expected_muted = None
        telemetry.expected_muted_until = None

    if from_upnp_muted and muted is not None:
        if telemetry.expected_muted is not None:
            telemetry.muted_telemetry_reliable = muted == telemetry.expected_muted
        if muted:
            telemetry.muted_telemetry_reliable = True

    if from_upnp_muted and telemetry.muted_telemetry_reliable is False:
        muted = telemetry.last_known_muted
    if from_upnp_muted and telemetry.muted_telemetry_reliable is not True and muted is False:
        muted = telemetry.last_known_muted

    # a local mute holds against an unmuted readback until the shadow expires
    if from_upnp_muted and muted is False and telemetry.last_known_muted is True:
        if now < telemetry.muted_shadow_until:
            muted = True

    if muted is not None:
        telemetry.last_known_muted = muted

    return volume, muted


class StatusChecker:
    """Protocol-specific liveness ladder with UPnP audio enrichment."""

    def __init__(self, probes: NetworkProbes, audio_reader: Optional[AudioReader] = None) -> None:
        self.probes = probes
        self.audio_reader = audio_reader

    async def check(self, device: Device) -> DeviceStatus:
        if not device.ip:
            await self.refresh_ip_from_mac(device)
            if not device.ip:
                return DeviceStatus()
        status = await self._check_with_ip(device)
        if not status.online and device.mac and await self.refresh_ip_from_mac(device):
            status = await self._check_with_ip(device)
        if status.online:
            await self._enrich_audio(device, status)
        return status

    async def refresh_ip_from_mac(self, device: Device) -> bool:
        if not device.mac:
            return False
        ip = await self.probes.get_ip_for_mac(device.mac)
        if ip and ip != device.ip:
            logger.debug("IP updated for %s via MAC %s: %s", device.name, device.mac, ip)
            device.ip = ip
            return True
        return False

    async def _check_with_ip(self, device: Device) -> DeviceStatus:
        ip = device.ip
        if device.api is ApiKind.TIZEN:
            attempts = [(device.protocol or "wss", device.port or 8002)]
            if attempts[0] != ("ws", 8001):
                attempts.append(("ws", 8001))
            for protocol, port in attempts:
                info = await fetch_tizen_info(ip, protocol, port, STATUS_TIMEOUT)
                if info is None:
                    continue
                if not device.mac:
                    scope = info.get("device") if isinstance(info.get("device"), dict) else {}
                    device.mac = normalize_mac(scope.get("wifiMac") or scope.get("mac") or "")
                return status_from_info(info)
        elif device.api is ApiKind.HJ:
            info = await fetch_hj_info(ip, STATUS_TIMEOUT)
            if info is not None:
                return status_from_info(info)
            # reachable without info means the set is in network standby
            if await self.probes.ping(ip, 1.2) is True:
                return DeviceStatus(online=True, power=False, seen=True)
            if await check_port(ip, HJ_PORT, 1.0):
                return DeviceStatus(online=True, power=False, seen=True)
        elif device.api is ApiKind.LEGACY:
            if await check_port(ip, LEGACY_PORT, STATUS_TIMEOUT):
                return DeviceStatus(online=True, power=True, seen=True)

        if await check_port(ip, 8001, 1.0):
            return DeviceStatus(online=True, power=True, seen=True)
        return DeviceStatus()

    async def _enrich_audio(self, device: Device, status: DeviceStatus) -> None:
        if self.audio_reader is None:
            return
        if status.volume is not None and status.muted is not None:
            return
        audio = await self.audio_reader(device)
        if not audio:
            return
        if status.volume is None and audio.get("volume") is not None:
            status.volume, status.volume_source = int(audio["volume"]), SOURCE_UPNP
        if status.muted is None and audio.get("muted") is not None:
            status.muted, status.muted_source = bool(audio["muted"]), SOURCE_UPNP
