from __future__ import annotations

import asyncio
import functools
import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Optional, Sequence
from urllib.parse import urljoin, urlsplit, urlunsplit

import aiohttp
from async_upnp_client.aiohttp import AiohttpNotifyServer, AiohttpRequester
from async_upnp_client.client import UpnpDevice, UpnpService, UpnpStateVariable
from async_upnp_client.client_factory import UpnpFactory
from async_upnp_client.exceptions import UpnpError

from identity import normalize_id

logger = logging.getLogger(__name__)

RENDERING_CONTROL = "urn:schemas-upnp-org:service:RenderingControl:1"
DEFAULT_SUBSCRIPTION_SECONDS = 300
RENEW_FLOOR_SECONDS = 30
KEEP_MARGIN_SECONDS = 20

UPNP_ERRORS = (UpnpError, aiohttp.ClientError, asyncio.TimeoutError, OSError)

NotifyCallback = Callable[[str, Optional[int], Optional[bool]], None]


@dataclass
class UpnpDescription:
    location: str = ""
    friendly_name: str = ""
    manufacturer: str = ""
    model_name: str = ""
    udn: str = ""
    rendering_control_url: str = ""
    rendering_control_event_url: str = ""


def absolute_url(base_url: str, path_or_url: str) -> str:
    if not path_or_url:
        return ""
    try:
        return urljoin(base_url, path_or_url)
    except ValueError:
        return ""


def rendering_control_service(device: UpnpDevice) -> Optional[UpnpService]:
    for service in device.all_services:
        if "renderingcontrol" in (service.service_type or "").lower():
            return service
    return None


def describe_device(device: UpnpDevice, location: str) -> UpnpDescription:
    desc = UpnpDescription(
        location=location,
        friendly_name=device.friendly_name or "",
        manufacturer=device.manufacturer or "",
        model_name=device.model_name or "",
        udn=normalize_id(device.udn or ""),
    )
    service = rendering_control_service(device)
    if service is not None:
        desc.rendering_control_url = absolute_url(location, service.control_url)
        desc.rendering_control_event_url = absolute_url(location, service.event_sub_url)
    return desc


async def fetch_device(location: str, requester: Optional[AiohttpRequester] = None, timeout: float = 2.0) -> Optional[UpnpDevice]:
    factory = UpnpFactory(requester or AiohttpRequester(timeout=timeout), non_strict=True)
    try:
        return await factory.async_create_device(location)
    except UPNP_ERRORS + (ValueError,) as exc:
        logger.debug("UPnP description fetch failed for %s: %s", location, exc)
        return None


async def fetch_description(location: str, timeout: float = 2.0) -> Optional[UpnpDescription]:
    device = await fetch_device(location, timeout=timeout)
    if device is None:
        return None
    return describe_device(device, location)


def derive_event_url(control_url: str) -> str:
    """``/upnp/control/`` -> ``/upnp/event/``; empty when the path does not match."""
    if not control_url:
        return ""
    try:
        parts = urlsplit(control_url)
    except ValueError:
        return ""
    if "/upnp/control/" not in parts.path:
        return ""
    path = parts.path.replace("/upnp/control/", "/upnp/event/")
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


class RenderingControlServices:
    """RenderingControl services built from device descriptions, one per location."""

    def __init__(self, timeout: float = 1.5) -> None:
        self.requester = AiohttpRequester(timeout=timeout)
        self._services: Dict[str, UpnpService] = {}

    async def service(self, location: str) -> Optional[UpnpService]:
        if not location:
            return None
        cached = self._services.get(location)
        if cached is not None:
            return cached
        device = await fetch_device(location, self.requester)
        service = rendering_control_service(device) if device is not None else None
        if service is not None:
            self._services[location] = service
        return service

    def forget(self, location: str) -> None:
        self._services.pop(location, None)


async def _master_value(service: UpnpService, action_name: str, out_name: str) -> Optional[object]:
    if not service.has_action(action_name):
        return None
    try:
        result = await service.action(action_name).async_call(InstanceID=0, Channel="Master")
    except UPNP_ERRORS as exc:
        logger.debug("%s failed for %s: %s", action_name, service.control_url, exc)
        return None
    return result.get(out_name)


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes")


async def read_audio_status(service: UpnpService) -> Optional[Dict[str, object]]:
    """GetVolume/GetMute over RenderingControl; ``None`` when neither answered."""
    volume, muted = await asyncio.gather(
        _master_value(service, "GetVolume", "CurrentVolume"),
        _master_value(service, "GetMute", "CurrentMute"),
    )
    try:
        volume = int(volume) if volume is not None else None
    except (TypeError, ValueError):
        volume = None
    if volume is None and muted is None:
        return None
    return {
        "volume": max(0, min(100, volume)) if volume is not None else None,
        "muted": _as_bool(muted) if muted is not None else None,
    }


def parse_last_change(last_change: str) -> Dict[str, Optional[object]]:
    """Master-channel Volume/Mute from a RenderingControl ``LastChange`` event document."""
    result: Dict[str, Optional[object]] = {"volume": None, "muted": None}
    if not last_change:
        return result
    try:
        root = ET.fromstring(last_change)
    except ET.ParseError:
        return result
    for node in root.iter():
        tag = node.tag.rsplit("}", 1)[-1]
        if tag not in ("Volume", "Mute") or node.get("channel", "").lower() != "master":
            continue
        try:
            value = int(node.get("val", ""))
        except ValueError:
            continue
        if tag == "Volume":
            result["volume"] = max(0, min(100, value))
        else:
            result["muted"] = value != 0
    return result


def granted_seconds(granted: Optional[timedelta]) -> int:
    seconds = int(granted.total_seconds()) if granted else 0
    return seconds if seconds > 0 else DEFAULT_SUBSCRIPTION_SECONDS


def renew_delay(seconds: int) -> float:
    return float(max(RENEW_FLOOR_SECONDS, int(seconds * 0.8)))


@dataclass
class Subscription:
    sid: str
    service: UpnpService
    event_url: str
    callback_host: str
    expires_at: float
    renew_task: Optional[asyncio.Task] = None


class UpnpEventManager:
    """RenderingControl event subscriptions, keyed by device id.

    One notify server runs per local callback address. A failed renewal drops the
    subscription; the next poll re-establishes it.
    """

    def __init__(
        self,
        on_notify: NotifyCallback,
        requester: Optional[AiohttpRequester] = None,
        *,
        server_factory: Callable[..., AiohttpNotifyServer] = AiohttpNotifyServer,
    ) -> None:
        self._on_notify = on_notify
        self._requester = requester or AiohttpRequester(timeout=3)
        self._server_factory = server_factory
        self._servers: Dict[str, AiohttpNotifyServer] = {}
        self._lock = asyncio.Lock()
        self.subscriptions: Dict[str, Subscription] = {}

    async def ensure_server(self, host: str) -> AiohttpNotifyServer:
        async with self._lock:
            server = self._servers.get(host)
            if server is None:
                server = self._server_factory(requester=self._requester, source=(host, 0))
                await server.async_start_server()
                self._servers[host] = server
                logger.debug("UPnP notify server listening at %s", server.callback_url)
            return server

    def has_live_subscription(self, device_id: str, event_url: str) -> bool:
        existing = self.subscriptions.get(device_id)
        return bool(
            existing
            and existing.sid
            and existing.event_url == event_url
            and time.time() < existing.expires_at - KEEP_MARGIN_SECONDS
        )

    async def ensure_subscription(self, device_id: str, service: UpnpService, callback_host: str) -> bool:
        event_url = service.event_sub_url or ""
        if not event_url or not callback_host:
            return False
        if self.has_live_subscription(device_id, event_url):
            return True
        try:
            server = await self.ensure_server(callback_host)
        except OSError as exc:
            logger.debug("UPnP notify server on %s failed: %s", callback_host, exc)
            return False
        if device_id in self.subscriptions:
            await self.drop(device_id)

        service.on_event = functools.partial(self._service_event, device_id)
        try:
            sid, granted = await server.event_handler.async_subscribe(
                service, timeout=timedelta(seconds=DEFAULT_SUBSCRIPTION_SECONDS)
            )
        except UPNP_ERRORS as exc:
            logger.debug("SUBSCRIBE failed for %s: %s", event_url, exc)
            return False
        seconds = granted_seconds(granted)
        subscription = Subscription(
            sid=sid,
            service=service,
            event_url=event_url,
            callback_host=callback_host,
            expires_at=time.time() + seconds,
        )
        self.subscriptions[device_id] = subscription
        self._schedule_renewal(device_id, subscription, seconds)
        logger.debug("UPnP subscribed for %s: sid=%s timeout=%ss", device_id, sid, seconds)
        return True

    def _schedule_renewal(self, device_id: str, subscription: Subscription, seconds: int) -> None:
        previous = subscription.renew_task
        if previous is not None and previous is not asyncio.current_task():
            previous.cancel()
        subscription.renew_task = asyncio.create_task(self._renew_later(device_id, renew_delay(seconds)))

    async def _renew_later(self, device_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.renew(device_id)

    async def renew(self, device_id: str) -> bool:
        subscription = self.subscriptions.get(device_id)
        if subscription is None:
            return False
        server = self._servers.get(subscription.callback_host)
        if server is None:
            self.subscriptions.pop(device_id, None)
            return False
        try:
            _, granted = await server.event_handler.async_resubscribe(
                subscription.sid, timeout=timedelta(seconds=DEFAULT_SUBSCRIPTION_SECONDS)
            )
        except UPNP_ERRORS + (KeyError,) as exc:
            logger.debug("UPnP renew failed for %s: %s", device_id, exc)
            await self.drop(device_id)
            return False
        seconds = granted_seconds(granted)
        subscription.expires_at = time.time() + seconds
        self._schedule_renewal(device_id, subscription, seconds)
        logger.debug("UPnP renewed for %s: sid=%s timeout=%ss", device_id, subscription.sid, seconds)
        return True

    def _service_event(self, device_id: str, service: UpnpService, state_variables: Sequence[UpnpStateVariable]) -> None:
        if device_id not in self.subscriptions:
            return
        last_change = next((var.value for var in state_variables if var.name == "LastChange"), None)
        if not last_change:
            return
        values = parse_last_change(str(last_change))
        try:
            self._on_notify(device_id, values["volume"], values["muted"])
        except Exception:
            logger.exception("UPnP event handling failed for %s", device_id)

    async def drop(self, device_id: str) -> None:
        subscription = self.subscriptions.pop(device_id, None)
        if subscription is None:
            return
        task = subscription.renew_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        server = self._servers.get(subscription.callback_host)
        if server is None:
            return
        try:
            await server.event_handler.async_unsubscribe(subscription.sid)
        except UPNP_ERRORS + (KeyError,) as exc:
            logger.debug("UNSUBSCRIBE failed for %s: %s", device_id, exc)

    async def shutdown(self) -> None:
        for device_id in list(self.subscriptions):
            await self.drop(device_id)
        servers, self._servers = list(self._servers.values()), {}
        for server in servers:
            await server.async_stop_server()
