"""One-shot network probes with their own deadlines.

Every helper here is best-effort: failures come back as ``None``/``False``/``""``
rather than exceptions, so callers can walk a fallback ladder.
"""

from __future__ import annotations

import asyncio
import logging
import re
import socket
import subprocess
import time
from typing import Any, Dict, Optional

import aiohttp

from identity import normalize_mac

logger = logging.getLogger(__name__)

ARP_CACHE_SECONDS = 10.0

_NEIGH_LINE = re.compile(r"^([0-9.]+)\s+.*lladdr\s+([0-9a-f:]{17})", re.IGNORECASE)
_ARP_LINE = re.compile(r"\((\d{1,3}(?:\.\d{1,3}){3})\)\s+at\s+([0-9a-f:]{17})", re.IGNORECASE)
_LLADDR = re.compile(r"lladdr\s+([0-9a-f:]{17})", re.IGNORECASE)
_ANY_MAC = re.compile(r"([0-9a-f]{2}(?::[0-9a-f]{2}){5})", re.IGNORECASE)


def create_probe_session(timeout_seconds: float = 2.0) -> aiohttp.ClientSession:
    """Short-lived session for LAN probes.

    TVs present self-signed certificates on 8002, so TLS verification is off.
    """
    connector = aiohttp.TCPConnector(
        limit_per_host=2,
        ssl=False,
        force_close=True,
        enable_cleanup_closed=True,
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds),
    )


async def fetch_json(url: str, timeout: float = 2.0) -> Optional[Dict[str, Any]]:
    try:
        async with create_probe_session(timeout) as session:
            async with session.get(url) as response:
                if response.status != 200:
                    return None
                data = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, OSError):
        return None
    return data if isinstance(data, dict) else None


async def check_port(ip: str, port: int, timeout: float = 1.5) -> bool:
    if not ip:
        return False
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout=timeout)
    except (asyncio.TimeoutError, OSError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


def local_ip_for_target(target_ip: str) -> str:
    """Local address the kernel would use to reach ``target_ip``."""
    if not target_ip:
        return ""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect((target_ip, 1900))
        return sock.getsockname()[0]
    except OSError:
        return ""
    finally:
        sock.close()


def first_local_ip() -> str:
    try:
        for info in socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET):
            address = info[4][0]
            if not address.startswith("127."):
                return address
    except OSError:
        pass
    return ""


class NetworkProbes:
    """ICMP and neighbour-table probes with per-instance caches."""

    def __init__(self) -> None:
        self.ping_unavailable = False
        self._arp_cache: Dict[str, str] = {}
        self._arp_cache_ts = 0.0

    async def ping(self, ip: str, timeout: float = 1.2) -> Optional[bool]:
        """``True``/``False`` for reachability, ``None`` when ``ping`` is missing."""
        if self.ping_unavailable:
            return None
        wait_seconds = max(1, int(timeout + 0.999))
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                ["ping", "-c", "1", "-W", str(wait_seconds), ip],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=timeout + 0.5,
            )
        except FileNotFoundError:
            self.ping_unavailable = True
            logger.debug("ping command not available; skipping ICMP power checks.")
            return None
        except subprocess.TimeoutExpired:
            return False
        return result.returncode == 0

    async def get_mac_for_ip(self, ip: str) -> str:
        if not ip:
            return ""
        output = await self._run(["ip", "neigh", "show", ip])
        match = _LLADDR.search(output)
        if match:
            return normalize_mac(match.group(1))
        output = await self._run(["arp", "-n", ip])
        match = _ANY_MAC.search(output)
        if match:
            return normalize_mac(match.group(1))
        return ""

    async def get_ip_for_mac(self, mac: str) -> str:
        if not mac:
            return ""
        table = await self.arp_table()
        return table.get(normalize_mac(mac), "")

    async def arp_table(self) -> Dict[str, str]:
        now = time.monotonic()
        if self._arp_cache and now - self._arp_cache_ts < ARP_CACHE_SECONDS:
            return self._arp_cache

        table: Dict[str, str] = {}
        for line in (await self._run(["ip", "neigh"])).splitlines():
            match = _NEIGH_LINE.match(line)
            if match:
                table[normalize_mac(match.group(2))] = match.group(1)
        if not table:
            for line in (await self._run(["arp", "-an"])).splitlines():
                match = _ARP_LINE.search(line)
                if match:
                    table[normalize_mac(match.group(2))] = match.group(1)

        self._arp_cache = table
        self._arp_cache_ts = now
        return table

    async def _run(self, argv: list) -> str:
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                argv,
                capture_output=True,
                text=True,
                timeout=3,
            )
        except (OSError, subprocess.TimeoutExpired):
            return ""
        if result.returncode != 0:
            return ""
        return result.stdout or ""
