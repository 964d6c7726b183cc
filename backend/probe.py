"""Classify a candidate IP into a protocol family.

The decision is layered: Tizen info endpoints first, the HJ info endpoint and the
UPnP description as backfill, then a model-name heuristic that can override a
Tizen answer because HJ-series sets expose a non-functional Tizen stub.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Optional

from controllers.base import ApiKind
from identity import looks_like_ip, normalize_id, normalize_mac
from net_probes import NetworkProbes, check_port, fetch_json
from registry import DiscoveredCandidate
from upnp import fetch_description

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 2.0
HJ_INFO_TIMEOUT = 4.0
HJ_PORT = 8000
LEGACY_PORT = 55000

_HJ_YEAR_CODE = re.compile(r"\b1[45]_")
_HJ_MODEL_CODE = re.compile(r"\b[A-Z]{2}\d{2}[HJ][A-Z]?\d*")
_HJ_EU_CODE = re.compile(r"\b(?:UE|GQ|QE)\d{2}J")


def is_likely_hj_series(model: Optional[str], uuid: Optional[str] = None) -> bool:
    """Model/UUID heuristic for 2014-2015 (H/J generation) sets."""
    model_name = (model or "").upper()
    combined = f"{model_name} {(uuid or '').upper()}"
    if _HJ_YEAR_CODE.search(combined):
        return True
    if _HJ_MODEL_CODE.search(model_name) or _HJ_EU_CODE.search(model_name):
        return True
    return "JU" in model_name or "JS" in model_name


def tizen_info_url(ip: str, protocol: str, port: int) -> str:
    scheme = "https" if protocol == "wss" else "http"
    return f"{scheme}://{ip}:{port}/api/v2/"


def hj_info_url(ip: str) -> str:
    return f"http://{ip}:8001/ms/1.0/"


async def fetch_tizen_info(ip: str, protocol: str, port: int, timeout: float = PROBE_TIMEOUT) -> Optional[Dict[str, Any]]:
    if not ip:
        return None
    return await fetch_json(tizen_info_url(ip, protocol, port), timeout)


async def fetch_hj_info(ip: str, timeout: float = HJ_INFO_TIMEOUT) -> Optional[Dict[str, Any]]:
    if not ip:
        return None
    return await fetch_json(hj_info_url(ip), timeout)


def parse_token_auth_support(info: Any) -> Optional[bool]:
    if not isinstance(info, dict):
        return None
    device = info.get("device") if isinstance(info.get("device"), dict) else info
    for source in (device, info):
        for key in ("TokenAuthSupport", "tokenAuthSupport", "tokenAuthSupported"):
            raw = source.get(key)
            if isinstance(raw, bool):
                return raw
            if isinstance(raw, str):
                return raw.strip().lower() == "true"
    return None


def apply_tizen_info(candidate: DiscoveredCandidate, info: Dict[str, Any]) -> None:
    device = info.get("device") if isinstance(info.get("device"), dict) else info
    candidate.name = candidate.name or str(device.get("name") or info.get("name") or "")
    candidate.model = str(device.get("modelName") or device.get("model") or candidate.model or "")
    raw_id = device.get("id") or device.get("udn") or device.get("uuid")
    candidate.uuid = str(raw_id or candidate.uuid or "")
    candidate.id = normalize_id(raw_id or info.get("id") or candidate.id)
    candidate.mac = normalize_mac(device.get("wifiMac") or device.get("mac") or candidate.mac)
    token_auth = parse_token_auth_support(info)
    if token_auth is not None:
        candidate.token_auth_support = token_auth


def apply_hj_info(candidate: DiscoveredCandidate, info: Dict[str, Any]) -> None:
    candidate.name = candidate.name or str(info.get("DeviceName") or "")
    candidate.model = candidate.model or str(info.get("ModelName") or info.get("Model") or "")
    candidate.uuid = candidate.uuid or str(info.get("UDN") or info.get("DUID") or info.get("DeviceID") or "")
    if not candidate.id:
        candidate.id = normalize_id(info.get("DeviceID") or info.get("DUID") or info.get("UDN"))


class DeviceClassifier:
    def __init__(self, probes: NetworkProbes) -> None:
        self.probes = probes

    async def probe(
        self,
        ip: str,
        *,
        location: str = "",
        usn: str = "",
        name: str = "",
        source: Iterable[str] = (),
    ) -> Optional[DiscoveredCandidate]:
        logger.debug("Probing device %s", ip)
        candidate = DiscoveredCandidate(ip=ip, source=set(source), name=name or "")

        for protocol, port in (("wss", 8002), ("ws", 8001)):
            info = await fetch_tizen_info(ip, protocol, port)
            if info is None:
                continue
            candidate.api = ApiKind.TIZEN
            candidate.protocol = protocol
            candidate.port = port
            apply_tizen_info(candidate, info)
            logger.debug("Probe result %s: api=tizen protocol=%s port=%s", ip, protocol, port)
            break

        hj_info = await fetch_hj_info(ip)
        if hj_info is not None:
            candidate.hj_available = True
            apply_hj_info(candidate, hj_info)

        if location:
            description = await fetch_description(location)
            if description is not None:
                candidate.upnp_location = location
                candidate.model = candidate.model or description.model_name
                candidate.name = candidate.name or description.friendly_name
                candidate.uuid = candidate.uuid or description.udn
                candidate.rendering_control_url = (
                    candidate.rendering_control_url or description.rendering_control_url
                )
                candidate.rendering_control_event_url = (
                    candidate.rendering_control_event_url or description.rendering_control_event_url
                )
                logger.debug("UPnP description for %s: model=%s name=%s", ip, candidate.model or "-", candidate.name or "-")

        if not candidate.id:
            candidate.id = normalize_id(candidate.uuid or usn or ip)

        mac = await self.probes.get_mac_for_ip(ip)
        if mac:
            candidate.mac = mac
            if not candidate.id or looks_like_ip(candidate.id):
                candidate.id = mac

        if not candidate.name and candidate.id:
            candidate.name = f"tv-{candidate.id[:6]}"

        await self._decide_api(candidate)

        if not candidate.id:
            logger.debug("Probe failed for %s", ip)
            return None
        logger.debug(
            "Probe result %s: id=%s mac=%s model=%s api=%s",
            ip, candidate.id, candidate.mac or "-", candidate.model or "-", candidate.api.value,
        )
        return candidate

    async def _decide_api(self, candidate: DiscoveredCandidate) -> None:
        hj_series = is_likely_hj_series(candidate.model, candidate.uuid)
        logger.debug(
            "HJ check %s: model=%s uuid=%s hjSeries=%s hjAvailable=%s",
            candidate.ip, candidate.model or "-", candidate.uuid or "-", hj_series, candidate.hj_available,
        )
        if candidate.api is not ApiKind.UNKNOWN and not hj_series:
            return
        if hj_series and not candidate.hj_available:
            if await check_port(candidate.ip, HJ_PORT, 1.2):
                candidate.hj_available = True
            else:
                logger.warning(
                    "Model suggests H/J-series but HJ port not reachable for %s; forcing HJ", candidate.ip
                )
        if hj_series or candidate.hj_available:
            candidate.api = ApiKind.HJ
            candidate.protocol = "ws"
            candidate.port = HJ_PORT
            logger.debug("Probe result %s: api=hj protocol=ws port=%s", candidate.ip, HJ_PORT)
        elif await check_port(candidate.ip, LEGACY_PORT, 1.2):
            candidate.api = ApiKind.LEGACY
            candidate.protocol = "tcp"
            candidate.port = LEGACY_PORT
            logger.debug("Probe result %s: api=legacy port=%s", candidate.ip, LEGACY_PORT)
