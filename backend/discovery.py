"""SSDP and mDNS discovery of Samsung TVs.

Both transports are time-boxed and best-effort: a transport that cannot start
(no multicast route, zeroconf failure) contributes an empty batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set
from urllib.parse import urlsplit

from async_upnp_client.search import async_search
from zeroconf import ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

logger = logging.getLogger(__name__)

SAMSUNG = "samsung"


@dataclass
class RawRecord:
    ip: str
    source: Set[str] = field(default_factory=set)
    usn: str = ""
    location: str = ""
    st: str = ""
    server: str = ""
    name: str = ""
    mdns: str = ""

    def merge(self, other: "RawRecord") -> None:
        self.source |= other.source
        for attr in ("usn", "location", "st", "server", "name", "mdns"):
            value = getattr(other, attr)
            if value:
                setattr(self, attr, value)


def _header(headers: Any, name: str) -> str:
    value = headers.get(name) or headers.get(name.upper()) or headers.get(name.lower())
    return str(value or "")


def _host_of(headers: Any) -> str:
    host = _header(headers, "_host")
    if host:
        return host
    location = _header(headers, "location")
    try:
        return urlsplit(location).hostname or ""
    except ValueError:
        return ""


def ssdp_record_from_headers(headers: Any) -> Optional[RawRecord]:
    server = _header(headers, "server")
    st = _header(headers, "st")
    usn = _header(headers, "usn")
    if SAMSUNG not in f"{server} {st} {usn}".lower():
        return None
    ip = _host_of(headers)
    if not ip:
        return None
    return RawRecord(
        ip=ip,
        source={"ssdp"},
        usn=usn,
        location=_header(headers, "location"),
        st=st,
        server=server,
    )


async def discover_ssdp(timeout: float) -> List[RawRecord]:
    results: List[RawRecord] = []

    async def on_response(headers: Any) -> None:
        record = ssdp_record_from_headers(headers)
        if record is None:
            return
        logger.debug(
            "SSDP response: ip=%s st=%s usn=%s server=%s",
            record.ip, record.st or "-", record.usn or "-", record.server or "-",
        )
        results.append(record)

    try:
        await async_search(async_callback=on_response, timeout=int(max(1, timeout)), search_target="ssdp:all")
    except OSError as exc:
        logger.debug("SSDP discovery unavailable: %s", exc)
    return results


async def search_location_for_ip(ip: str, search_target: str, timeout: float = 1.2) -> str:
    """LOCATION header of the first SSDP answer coming from ``ip``."""
    if not ip:
        return ""
    found: List[str] = []

    async def on_response(headers: Any) -> None:
        if found or _host_of(headers) != ip:
            return
        location = _header(headers, "location")
        if location:
            found.append(location)

    try:
        await async_search(async_callback=on_response, timeout=int(max(1, timeout)), search_target=search_target)
    except OSError as exc:
        logger.debug("Targeted SSDP search failed for %s: %s", ip, exc)
    return found[0] if found else ""


def parse_mdns_services(value: str) -> List[str]:
    """``"samsungmsf._tcp, _foo._tcp"`` -> bare ``["samsungmsf._tcp", "foo._tcp"]``."""
    services = []
    for item in (value or "").split(","):
        item = item.strip().lstrip("_")
        if item:
            services.append(item)
    return services


def full_service_type(service: str) -> str:
    """``samsungmsf._tcp`` -> ``_samsungmsf._tcp.local.``; bare names default to ``_tcp``."""
    labels = [label.lstrip("_") for label in service.strip(".").split(".") if label and label != "local"]
    if not labels:
        return ""
    protocol = labels[1] if len(labels) > 1 and labels[1] in ("tcp", "udp") else "tcp"
    return f"_{labels[0]}._{protocol}.local."


def _txt(properties: Dict[Any, Any], key: str) -> str:
    for raw_key, raw_value in (properties or {}).items():
        name = raw_key.decode("utf-8", "ignore") if isinstance(raw_key, bytes) else str(raw_key)
        if name.lower() != key:
            continue
        if isinstance(raw_value, bytes):
            return raw_value.decode("utf-8", "ignore")
        return str(raw_value or "")
    return ""


def mdns_records(service: str, name: str, properties: Dict[Any, Any], addresses: Iterable[str]) -> List[RawRecord]:
    manufacturer = (_txt(properties, "manufacturer") or _txt(properties, "mf")).lower()
    if SAMSUNG not in (name or "").lower() and SAMSUNG not in manufacturer and SAMSUNG not in service.lower():
        return []
    records = []
    for ip in addresses:
        # IPv4 only
        if not ip or ":" in ip:
            continue
        records.append(RawRecord(ip=ip, source={"mdns"}, name=name or "", mdns=service))
    return records


async def discover_mdns(services: List[str], timeout: float) -> List[RawRecord]:
    if not services:
        return []
    logger.debug("mDNS discovery started for services: %s", ", ".join(services))
    by_type = {full_service_type(svc): svc for svc in services if full_service_type(svc)}
    results: Dict[str, RawRecord] = {}
    pending: List[asyncio.Task] = []

    try:
        aiozc = AsyncZeroconf()
    except OSError as exc:
        logger.debug("mDNS discovery unavailable: %s", exc)
        return []

    async def resolve(service_type: str, name: str) -> None:
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(aiozc.zeroconf, 3000):
            return
        service = by_type.get(service_type, service_type)
        instance = name[: -len(service_type) - 1] if name.endswith(service_type) else name
        for record in mdns_records(service, instance, info.properties, info.parsed_addresses()):
            logger.debug("mDNS service: %s name=%s ip=%s", service, instance or "-", record.ip)
            results[record.ip] = record

    def on_change(zeroconf, service_type: str, name: str, state_change: ServiceStateChange) -> None:
        if state_change is not ServiceStateChange.Added:
            return
        pending.append(asyncio.ensure_future(resolve(service_type, name)))

    browser = AsyncServiceBrowser(aiozc.zeroconf, list(by_type), handlers=[on_change])
    try:
        await asyncio.sleep(timeout)
    finally:
        await browser.async_cancel()
        for task in pending:
            if not task.done():
                task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await aiozc.async_close()
    return list(results.values())


def merge_records(records: Iterable[RawRecord]) -> Dict[str, RawRecord]:
    """Merge raw records by IP with ``source`` as a set union."""
    by_ip: Dict[str, RawRecord] = {}
    for record in records:
        if not record.ip:
            continue
        existing = by_ip.get(record.ip)
        if existing is None:
            by_ip[record.ip] = RawRecord(ip=record.ip, source=set(record.source))
            existing = by_ip[record.ip]
        existing.merge(record)
    return by_ip


async def discover_all(
    *, timeout: float, enable_ssdp: bool, enable_mdns: bool, mdns_services: List[str]
) -> Dict[str, RawRecord]:
    """Run both transports concurrently, each with its own deadline."""
    jobs = []
    if enable_ssdp:
        jobs.append(asyncio.wait_for(discover_ssdp(timeout), timeout + 2))
    if enable_mdns:
        jobs.append(asyncio.wait_for(discover_mdns(mdns_services, timeout), timeout + 2))
    batches = await asyncio.gather(*jobs, return_exceptions=True)
    records: List[RawRecord] = []
    for batch in batches:
        if isinstance(batch, BaseException):
            logger.debug("Discovery transport failed: %s", batch)
            continue
        records.extend(batch)
    merged = merge_records(records)
    logger.debug("Discovery transports finished: raw=%d unique=%d", len(records), len(merged))
    return merged
