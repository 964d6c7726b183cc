from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, Set

import wakeonlan

from config import CONFIG_FILE, LOG_DIR, OBJECTS_FILE, SECRETS_FILE, VERBOSE, Settings
from controllers import HJController, LegacyController, TizenController
from controllers.base import ApiKind, ControlError, PairingError, ProtocolUnsupported
from discovery import discover_all, parse_mdns_services, search_location_for_ip
from identity import resolve_identity, sanitize_name
from keys import is_truthy, normalize_key_input, source_key
from net_probes import NetworkProbes, check_port, first_local_ip, local_ip_for_target
from probe import HJ_PORT, DeviceClassifier, fetch_tizen_info, parse_token_auth_support
from registry import ConfigStore, Device, DeviceRegistry, DiscoveredCandidate
from secret_store import SecretStore
from state_store import CONTROL_STATES, ObjectStore
from telemetry import (
    SOURCE_UPNP,
    DeviceStatus,
    StatusChecker,
    note_expected_muted,
    note_expected_volume,
    resolve_audio_states,
)
from upnp import (
    RENDERING_CONTROL,
    RenderingControlServices,
    UpnpEventManager,
    derive_event_url,
    fetch_description,
    read_audio_status,
)

logger = logging.getLogger(__name__)

CONTROL_REPOLL_DELAY = 1.2
MIN_POLL_DELAY = 0.5
RENDERING_LOOKUP_INTERVAL = 300.0
RENDERING_SEARCH_TARGETS = (
    RENDERING_CONTROL,
    "urn:schemas-upnp-org:device:MediaRenderer:1",
    "ssdp:all",
)


class UnknownDevice(LookupError):
    pass


class DeviceManager:
    """Discovery, registry, control and telemetry for all configured TVs."""

    def __init__(
        self,
        *,
        config_path: Path = CONFIG_FILE,
        secrets_path: Path = SECRETS_FILE,
        objects_path: Path = OBJECTS_FILE,
        verbose: bool = VERBOSE,
    ) -> None:
        self.config = ConfigStore(config_path)
        self.registry = DeviceRegistry(self.config)
        self.secrets = SecretStore(secrets_path)
        self.objects = ObjectStore(objects_path)
        self.objects.control_handler = self.handle_control
        self.settings = Settings()
        self.probes = NetworkProbes()
        self.classifier = DeviceClassifier(self.probes)
        self.status = StatusChecker(self.probes, self.read_upnp_audio)
        self.rendering = RenderingControlServices()
        self.upnp = UpnpEventManager(self._on_upnp_notify, self.rendering.requester)
        self.tizen = TizenController(name=self.settings.remote_name, verbose=verbose, log_dir=LOG_DIR)
        self.hj = HJController()
        self.legacy = LegacyController(name=self.settings.remote_name)
        self.discovered_by_ip: Dict[str, DiscoveredCandidate] = {}
        self.last_scan: Optional[float] = None
        self._scan_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._scan_task: Optional[asyncio.Task] = None

    # lifecycle

    async def startup(self) -> None:
        self.config.load()
        self._apply_settings(Settings.from_dict(self.config.data.get("settings", {})))
        self.secrets.load()
        self.objects.load()
        devices = self.registry.load()
        self.objects.reconcile_devices({device.id: device.name for device in devices})
        for device in devices:
            self._ensure_objects(device)
        logger.info("Loaded %d configured TV(s)", len(devices))
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._restart_scan_loop()

    async def shutdown(self) -> None:
        tasks = [task for task in (self._poll_task, self._scan_task, *self._tasks) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._poll_task = self._scan_task = None
        await self.upnp.shutdown()
        await self.hj.close()
        self.secrets.flush()
        self.config.flush()
        self.objects.flush()
        logger.info("Device manager stopped")

    def _apply_settings(self, settings: Settings) -> None:
        self.settings = settings
        self.config.data["settings"] = settings.to_dict()
        self.tizen.name = settings.remote_name
        self.legacy.name = settings.remote_name

    def _restart_scan_loop(self) -> None:
        if self._scan_task is not None:
            self._scan_task.cancel()
            self._scan_task = None
        if self.settings.auto_scan:
            self._scan_task = asyncio.create_task(self._scan_loop())

    def _spawn(self, coro: Awaitable[Any], label: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable[Any], label: str) -> None:
        try:
            await coro
        except ControlError as exc:
            logger.warning("%s failed: %s", label, exc)
        except Exception:
            logger.exception("%s failed", label)

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_all()
            await asyncio.sleep(self.settings.poll_interval)

    async def _scan_loop(self) -> None:
        while True:
            try:
                await self.discover()
            except Exception:
                logger.exception("Auto-scan failed")
            await asyncio.sleep(self.settings.auto_scan_interval)

    # object tree

    def _ensure_objects(self, device: Device) -> None:
        self.objects.ensure_device_objects(device.name, device.id, device.display_name or device.name)
        self._update_info_states(device)

    def _update_info_states(self, device: Device) -> None:
        prefix = f"{device.name}.info"
        self.objects.set_ack(f"{prefix}.id", device.id)
        self.objects.set_ack(f"{prefix}.ip", device.ip)
        self.objects.set_ack(f"{prefix}.mac", device.mac)
        self.objects.set_ack(f"{prefix}.model", device.model)
        self.objects.set_ack(f"{prefix}.uuid", device.uuid)
        self.objects.set_ack(f"{prefix}.api", device.api.value)
        self.objects.set_ack(f"{prefix}.tokenAuthSupport", device.token_auth_support)
        self.objects.set_ack(f"{prefix}.paired", self.is_paired(device))

    def _mark_seen(self, device: Device) -> None:
        if self._registered(device):
            self.objects.set_ack(f"{device.name}.info.lastSeen", int(time.time() * 1000))

    def _registered(self, device: Device) -> bool:
        return self.registry.get(device.id) is device

    def is_paired(self, device: Device) -> bool:
        return self.secrets.is_paired(device.id, device.api.value, device.token_auth_support)

    # discovery

    async def discover(self, timeout: Optional[Any] = None) -> List[Dict[str, object]]:
        seconds = max(2, int(timeout or self.settings.discovery_timeout))
        async with self._scan_lock:
            logger.debug(
                "Discovery started (ssdp=%s, mdns=%s, timeout=%ss)",
                self.settings.enable_ssdp, self.settings.enable_mdns, seconds,
            )
            raw = await discover_all(
                timeout=seconds,
                enable_ssdp=self.settings.enable_ssdp,
                enable_mdns=self.settings.enable_mdns,
                mdns_services=parse_mdns_services(self.settings.mdns_services),
            )
            probed = await asyncio.gather(
                *(
                    self.classifier.probe(
                        record.ip, location=record.location, usn=record.usn, name=record.name, source=record.source
                    )
                    for record in raw.values()
                ),
                return_exceptions=True,
            )
            results: List[DiscoveredCandidate] = []
            for candidate in probed:
                if isinstance(candidate, Exception):
                    logger.debug("Probe failed: %s", candidate)
                    continue
                if candidate is None:
                    continue
                self.discovered_by_ip[candidate.ip] = candidate
                results.append(candidate)
                await self._reconcile(candidate)
            self.last_scan = time.time()
        logger.info("Discovery finished: %d TV(s) found", len(results))
        return [self._candidate_dict(candidate) for candidate in results]

    def get_discovered(self) -> List[Dict[str, object]]:
        return [self._candidate_dict(candidate) for candidate in self.discovered_by_ip.values()]

    def _candidate_dict(self, candidate: DiscoveredCandidate) -> Dict[str, object]:
        payload = candidate.to_dict()
        payload["added"] = self.registry.find(candidate) is not None
        return payload

    async def _reconcile(self, candidate: DiscoveredCandidate) -> Optional[Device]:
        device = self.registry.find(candidate)
        if device is None:
            return None
        old_id = device.id
        self.registry.reconcile(candidate)
        if device.id != old_id:
            self.secrets.rekey(old_id, device.id)
            self.objects.extend_object(device.name, {}, {"id": device.id})
            await self.upnp.drop(old_id)
        self._update_info_states(device)
        return device

    # polling

    async def poll_all(self) -> None:
        await asyncio.gather(*(self.poll_device(device) for device in self.registry))

    def schedule_poll(self, device: Device, delay: float) -> None:
        self._spawn(self._delayed_poll(device.id, max(MIN_POLL_DELAY, delay)), f"Poll of {device.name}")

    async def _delayed_poll(self, device_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        device = self.registry.get(device_id)
        if device is not None:
            await self.poll_device(device)

    async def poll_device(self, device: Device) -> Optional[DeviceStatus]:
        try:
            before = (device.ip, device.mac)
            status = await self.status.check(device)
            if (device.ip, device.mac) != before:
                self.registry.persist(device)
                self.registry.reindex(device)
                self._update_info_states(device)
            self._apply_status(device, status)
            if status.online and device.api is ApiKind.HJ:
                self._spawn(self.ensure_upnp_subscription(device), f"UPnP subscribe for {device.name}")
            elif device.id in self.upnp.subscriptions:
                await self.upnp.drop(device.id)
            return status
        except Exception as exc:
            logger.debug("Poll failed for %s: %s", device.name, exc)
            return None

    def _apply_status(self, device: Device, status: DeviceStatus) -> None:
        volume, muted = resolve_audio_states(device.telemetry, status)
        name = device.name
        self.objects.set_ack(f"{name}.info.online", status.online)
        self.objects.set_ack(f"{name}.state.power", status.power)
        self.objects.set_ack(f"{name}.control.power", status.power)
        if volume is not None:
            self.objects.set_ack(f"{name}.state.volume", volume)
        if muted is not None:
            self.objects.set_ack(f"{name}.state.muted", muted)
        if status.seen:
            self._mark_seen(device)

    # UPnP

    async def read_upnp_audio(self, device: Device) -> Optional[Dict[str, object]]:
        await self.ensure_rendering_control_urls(device)
        if not device.rendering_control_url:
            return None
        service = await self.rendering.service(device.upnp_location)
        if service is None:
            return None
        return await read_audio_status(service)

    async def ensure_rendering_control_urls(self, device: Device) -> None:
        if not device.ip:
            return
        changed = False

        def fill(control_url: str, event_url: str, location: str = "") -> None:
            nonlocal changed
            if location and not device.upnp_location:
                device.upnp_location = location
                changed = True
            if control_url and not device.rendering_control_url:
                device.rendering_control_url = control_url
                changed = True
            if event_url and not device.rendering_control_event_url:
                device.rendering_control_event_url = event_url
                changed = True

        def complete() -> bool:
            return bool(device.upnp_location and device.rendering_control_url and device.rendering_control_event_url)

        fill("", derive_event_url(device.rendering_control_url))
        cached = self.discovered_by_ip.get(device.ip)
        if not complete() and cached is not None:
            fill(cached.rendering_control_url, cached.rendering_control_event_url, cached.upnp_location)

        now = time.monotonic()
        recently = device.rendering_control_lookup_ts and now - device.rendering_control_lookup_ts < RENDERING_LOOKUP_INTERVAL
        if not complete() and not recently:
            device.rendering_control_lookup_ts = now
            location = ""
            for target in RENDERING_SEARCH_TARGETS:
                location = await search_location_for_ip(device.ip, target)
                if location:
                    break
            description = await fetch_description(location) if location else None
            if description is not None:
                fill(description.rendering_control_url, description.rendering_control_event_url, location)
                fill("", derive_event_url(device.rendering_control_url))

        if changed and self._registered(device):
            self.registry.persist(device)

    async def ensure_upnp_subscription(self, device: Device) -> bool:
        await self.ensure_rendering_control_urls(device)
        if not device.rendering_control_event_url:
            return False
        service = await self.rendering.service(device.upnp_location)
        if service is None:
            return False
        host = local_ip_for_target(device.ip) or first_local_ip()
        return await self.upnp.ensure_subscription(device.id, service, host)

    def _on_upnp_notify(self, device_id: str, volume: Optional[int], muted: Optional[bool]) -> None:
        device = self.registry.get(device_id)
        if device is None or (volume is None and muted is None):
            return
        status = DeviceStatus(online=True, power=True, volume=volume, muted=muted, seen=True)
        status.volume_source = SOURCE_UPNP if volume is not None else None
        status.muted_source = SOURCE_UPNP if muted is not None else None
        resolved_volume, resolved_muted = resolve_audio_states(device.telemetry, status)
        if resolved_volume is not None:
            self.objects.set_ack(f"{device.name}.state.volume", resolved_volume)
        if resolved_muted is not None:
            self.objects.set_ack(f"{device.name}.state.muted", resolved_muted)
        self.objects.set_ack(f"{device.name}.info.online", True)
        self._mark_seen(device)

    # control

    async def send_key(self, device: Device, key: str) -> None:
        """Dispatch on the device's protocol family.

        A Tizen "unsupported" answer switches the device to HJ when the HJ port
        answers and the same key is retried there.
        """
        if device.api is ApiKind.HJ:
            await self._hj_send(device, key)
        elif device.api is ApiKind.LEGACY:
            await self.legacy.send_key(ip=device.ip, key=key)
        else:
            try:
                await self._tizen_send(device, key)
            except ProtocolUnsupported:
                if await self._downgrade_to_hj(device):
                    await self._hj_send(device, key)
                elif device.api is ApiKind.TIZEN:
                    raise
                else:
                    await self.legacy.send_key(ip=device.ip, key=key)
            except ControlError:
                if device.api is ApiKind.TIZEN:
                    raise
                await self.legacy.send_key(ip=device.ip, key=key)
        self._mark_seen(device)

    async def _tizen_send(self, device: Device, key: str) -> None:
        await self.tizen.send_key(
            ip=device.ip,
            key=key,
            token=self.secrets.tizen_token(device.id),
            protocol=device.protocol,
            port=device.port,
            token_auth_support=device.token_auth_support,
        )

    async def _hj_send(self, device: Device, key: str) -> None:
        await self.hj.send_key(ip=device.ip, key=key, identity=self.secrets.hj_identity(device.id), name=device.name)

    async def _downgrade_to_hj(self, device: Device) -> bool:
        reachable = device.hj_available is True or await check_port(device.ip, HJ_PORT, 1.5)
        if not reachable:
            return False
        device.hj_available = True
        device.api = ApiKind.HJ
        device.protocol = "ws"
        device.port = HJ_PORT
        logger.warning("Tizen remote unsupported for %s, switching to HJ", device.name)
        if self._registered(device):
            self.registry.persist(device)
            self._update_info_states(device)
        return True

    async def launch_app(self, device: Device, app_id: str) -> None:
        if device.api is not ApiKind.TIZEN:
            raise ValueError(f"launchApp only supported for Tizen devices ({device.name})")
        await self.tizen.launch_app(
            ip=device.ip,
            app_id=app_id,
            token=self.secrets.tizen_token(device.id),
            protocol=device.protocol,
            port=device.port,
            token_auth_support=device.token_auth_support,
        )
        self._mark_seen(device)

    def wake(self, device: Device) -> bool:
        if not self.settings.enable_wol or not device.mac:
            return False
        wakeonlan.send_magic_packet(device.mac)
        logger.debug("WOL sent to %s (%s)", device.name, device.mac)
        return True

    async def set_power(self, device: Device, on: bool) -> None:
        status = await self.status.check(device)
        logger.debug(
            "Power request for %s: target=%s api=%s online=%s power=%s",
            device.name, on, device.api.value, status.online, status.power,
        )
        if on:
            await self._power_on(device, status)
        elif status.power:
            await self._power_off(device)

    async def _power_on(self, device: Device, status: DeviceStatus) -> None:
        if status.power:
            return
        if device.api is ApiKind.HJ:
            if self.wake(device):
                self.schedule_poll(device, 6.0)
                self._schedule_power_fallback(device, True, "KEY_POWER", 8.0)
                return
            if status.online:
                try:
                    await self.send_key(device, "KEY_POWERON")
                    self.schedule_poll(device, 4.0)
                    self._schedule_power_fallback(device, True, "KEY_POWER", 6.0)
                    return
                except ControlError as exc:
                    logger.debug("KEY_POWERON failed for %s: %s", device.name, exc)
                try:
                    await self.send_key(device, "KEY_POWER")
                    self.schedule_poll(device, 4.0)
                    return
                except ControlError as exc:
                    logger.debug("KEY_POWER failed for %s: %s", device.name, exc)
        elif status.online:
            try:
                await self.send_key(device, "KEY_POWER")
                self.schedule_poll(device, 4.0)
                return
            except ControlError as exc:
                logger.debug("KEY_POWER failed for %s, trying WOL: %s", device.name, exc)
        self.wake(device)
        self.schedule_poll(device, 6.0)

    async def _power_off(self, device: Device) -> None:
        if device.api is ApiKind.HJ:
            try:
                await self.send_key(device, "KEY_POWER")
            except ControlError as exc:
                logger.debug("KEY_POWER failed for %s, retrying: %s", device.name, exc)
                await self.send_key(device, "KEY_POWER")
            else:
                self._schedule_power_fallback(device, False, "KEY_POWEROFF", 5.0)
        else:
            await self.send_key(device, "KEY_POWER")
        self.schedule_poll(device, 3.0)

    def _schedule_power_fallback(self, device: Device, target_on: bool, key: str, delay: float) -> None:
        async def fallback() -> None:
            await asyncio.sleep(max(1.0, delay))
            status = await self.status.check(device)
            if status.power == target_on or not status.online:
                return
            logger.debug("Power fallback for %s: key=%s", device.name, key)
            await self.send_key(device, key)
            self.schedule_poll(device, 3.0)

        self._spawn(fallback(), f"Power fallback for {device.name}")

    async def control(self, name: str, command: str, value: Any) -> None:
        """Write a command to ``<name>.control.<command>``; the write triggers the handler."""
        if self.registry.by_name.get(name) is None:
            raise UnknownDevice(name)
        if command not in CONTROL_STATES:
            raise ValueError(f"Unknown control '{command}'")
        await self.objects.set_state(f"{name}.control.{command}", value, ack=False)

    async def handle_control(self, name: str, command: str, value: Any) -> None:
        device = self.registry.by_name.get(name)
        if device is None:
            logger.warning("Unknown device for control write: %s", name)
            return
        state_id = f"{name}.control.{command}"
        if command == "power":
            on = is_truthy(value)
            await self.set_power(device, on)
            self.objects.set_ack(state_id, on)
            self.objects.set_ack(f"{name}.state.power", on)
        elif command == "wol":
            if not self.wake(device):
                logger.warning("WOL not possible for %s (disabled or MAC unknown)", name)
            self.objects.set_ack(state_id, False)
        elif command == "key":
            if isinstance(value, str) and value.strip():
                key = normalize_key_input(value)
                if key:
                    await self.send_key(device, key)
            self.objects.set_ack(state_id, "")
        elif command in ("volumeUp", "volumeDown"):
            delta = 1 if command == "volumeUp" else -1
            await self._volume_step(device, state_id, "KEY_VOLUP" if delta > 0 else "KEY_VOLDOWN", delta, value)
        elif command == "mute":
            await self._mute_toggle(device, state_id, value)
        elif command in ("channelUp", "channelDown"):
            if is_truthy(value):
                await self.send_key(device, "KEY_CHUP" if command == "channelUp" else "KEY_CHDOWN")
            self.objects.set_ack(state_id, False)
        elif command == "launchApp":
            if isinstance(value, str) and value.strip():
                await self.launch_app(device, value.strip())
            self.objects.set_ack(state_id, "")
        elif command == "source":
            if isinstance(value, str) and value.strip():
                await self.send_key(device, source_key(value.strip()))
            self.objects.set_ack(state_id, "")

    async def _volume_step(self, device: Device, state_id: str, key: str, delta: int, value: Any) -> None:
        if not is_truthy(value):
            self.objects.set_ack(state_id, False)
            return
        await self.send_key(device, key)
        self.objects.set_ack(state_id, False)
        current = self.objects.get_value(f"{device.name}.state.volume")
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            current = device.telemetry.last_known_volume
        if current is not None:
            target = max(0, min(100, int(current) + delta))
            note_expected_volume(device.telemetry, target)
            self.objects.set_ack(f"{device.name}.state.volume", target)
        self.schedule_poll(device, CONTROL_REPOLL_DELAY)

    async def _mute_toggle(self, device: Device, state_id: str, value: Any) -> None:
        if not is_truthy(value):
            self.objects.set_ack(state_id, False)
            return
        await self.send_key(device, "KEY_MUTE")
        self.objects.set_ack(state_id, False)
        current = self.objects.get_value(f"{device.name}.state.muted")
        if not isinstance(current, bool):
            current = bool(device.telemetry.last_known_muted)
        target = not current
        note_expected_muted(device.telemetry, target)
        self.objects.set_ack(f"{device.name}.state.muted", target)
        self.schedule_poll(device, CONTROL_REPOLL_DELAY)

    # pairing

    async def pair(self, device_id: str, pin: Optional[str] = None, record: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        device = self.registry.get(device_id) if device_id else None
        if device is None and record:
            device = self._adhoc_device(device_id, record)
        if device is None:
            return {"ok": False, "error": "Unknown device"}
        logger.debug("Pairing request received for %s", device.name)
        if device.api is ApiKind.HJ:
            return await self._pair_hj(device, pin)
        try:
            await self._refresh_tizen_capabilities(device)
            token = await self.tizen.pair(
                ip=device.ip, protocol=device.protocol, port=device.port, token_auth_support=device.token_auth_support
            )
        except PairingError as exc:
            logger.debug("Pairing failed for %s: %s", device.name, exc)
            result: Dict[str, Any] = {"ok": False, "error": str(exc)}
            if exc.hint:
                result["hint"] = exc.hint
            return result
        self.secrets.set_tizen_token(device.id, token)
        if device.api is not ApiKind.TIZEN:
            device.api = ApiKind.TIZEN
            if self._registered(device):
                self.registry.persist(device)
        if self._registered(device):
            self._update_info_states(device)
        return {"ok": True, "token": token}

    async def _pair_hj(self, device: Device, pin: Optional[str]) -> Dict[str, Any]:
        try:
            if not pin:
                await self.hj.request_pin(device.id, device.ip)
                return {"ok": True, "needsPin": True}
            identity = await self.hj.confirm_pin(device.id, pin)
        except ControlError as exc:
            logger.warning("HJ pairing failed for %s: %s", device.name, exc)
            return {"ok": False, "error": f"HJ pairing failed: {exc}"}
        self.secrets.set_hj_identity(device.id, identity)
        if self._registered(device):
            self._update_info_states(device)
        return {"ok": True, "identity": identity.to_dict()}

    def _adhoc_device(self, device_id: str, record: Dict[str, Any]) -> Device:
        resolved = resolve_identity(
            explicit=record.get("id") or device_id,
            uuid=record.get("uuid"),
            usn=record.get("usn"),
            mac=record.get("mac"),
            ip=record.get("ip"),
        )
        name = sanitize_name(str(record.get("name") or "")) or f"tv-{resolved[:6]}"
        device = Device.from_raw(record, name, resolved)
        if device.api is ApiKind.UNKNOWN:
            device.api = ApiKind.TIZEN
        device.source = str(record.get("source") or "pair")
        return device

    async def _refresh_tizen_capabilities(self, device: Device) -> None:
        info = await fetch_tizen_info(device.ip, "wss", 8002) or await fetch_tizen_info(device.ip, "ws", 8001)
        if info is None:
            return
        token_auth = parse_token_auth_support(info)
        if token_auth is None or token_auth == device.token_auth_support:
            return
        device.token_auth_support = token_auth
        if self._registered(device):
            self.registry.persist(device)
            self._update_info_states(device)

    # devices and settings

    def describe(self, device: Device) -> Dict[str, object]:
        payload = device.to_dict()
        payload["name"] = device.name
        payload["displayName"] = device.display_name or device.name
        payload["paired"] = self.is_paired(device)
        for channel in ("info", "state"):
            prefix = f"{device.name}.{channel}."
            payload[channel] = {
                key[len(prefix):]: value.val for key, value in self.objects.states.items() if key.startswith(prefix)
            }
        return payload

    def list_devices(self) -> List[Dict[str, object]]:
        return [self.describe(device) for device in self.registry]

    def get_device(self, name: str) -> Dict[str, object]:
        device = self.registry.by_name.get(name)
        if device is None:
            raise UnknownDevice(name)
        return self.describe(device)

    def add_device(self, record: Dict[str, Any]) -> Dict[str, object]:
        device = self.registry.add(record)
        self.objects.reconcile_devices({d.id: d.name for d in self.registry})
        self._ensure_objects(device)
        self.schedule_poll(device, MIN_POLL_DELAY)
        logger.info("Device %s (%s) saved", device.name, device.id)
        return self.describe(device)

    async def remove_device(self, device_id: str) -> None:
        device = self.registry.remove(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        await self.upnp.drop(device.id)
        self.rendering.forget(device.upnp_location)
        self.objects.del_object(device.name, recursive=True)
        self.secrets.forget(device.id)
        logger.info("Device %s (%s) removed", device.name, device.id)

    def get_settings(self) -> Dict[str, Any]:
        return self.settings.to_dict()

    def update_settings(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        merged = self.settings.to_dict()
        merged.update(patch or {})
        auto_scan = self.settings.auto_scan
        self._apply_settings(Settings.from_dict(merged))
        self.config.schedule_save()
        if self.settings.auto_scan != auto_scan:
            self._restart_scan_loop()
        return self.settings.to_dict()

    def health(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "devices": len(self.registry),
            "subscriptions": len(self.upnp.subscriptions),
            "lastScan": self.last_scan,
            "pingAvailable": not self.probes.ping_unavailable,
        }
