from __future__ import annotations

import re
from typing import Any, Iterable, Optional, Set

_IP_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")
_MAC_RE = re.compile(r"^([0-9a-f]{2}:){5}[0-9a-f]{2}$", re.IGNORECASE)
_UUID_PREFIX = re.compile(r"^(urn:)?uuid:", re.IGNORECASE)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def looks_like_ip(value: Any) -> bool:
    return bool(_IP_RE.match(_text(value)))


def normalize_id(value: Any) -> str:
    """Strip ``uuid:``/``urn:uuid:`` prefixes."""
    return _UUID_PREFIX.sub("", _text(value)).strip()


def normalize_mac(value: Any) -> str:
    return _text(value).lower()


def normalize_device_id(value: Any) -> str:
    norm = normalize_id(value)
    if _MAC_RE.match(norm):
        return normalize_mac(norm)
    return norm


def resolve_identity(
    *, uuid: Any = "", usn: Any = "", mac: Any = "", ip: Any = "", explicit: Any = ""
) -> str:
    """Pick the durable id: UUID/USN, then MAC, then IP as a last resort."""
    candidate = normalize_id(explicit or uuid or usn)
    mac_norm = normalize_mac(mac)
    if (not candidate or looks_like_ip(candidate)) and mac_norm:
        candidate = mac_norm
    if not candidate:
        candidate = normalize_id(ip)
    return normalize_device_id(candidate)


def sanitize_name(name: Any) -> str:
    """Namespace-safe slug: lower-case, ``[a-z0-9-_]`` only."""
    if not isinstance(name, str):
        return ""
    cleaned = re.sub(r"[^a-z0-9-_]+", "-", name.strip().lower())
    cleaned = cleaned.strip("-")
    return re.sub(r"--+", "-", cleaned)


def ensure_unique_name(desired: str, existing: Iterable[str], fallback: Optional[str] = None) -> str:
    taken: Set[str] = set(existing)
    name = desired or fallback or "tv"
    if name not in taken:
        return name
    suffix = 2
    while f"{name}-{suffix}" in taken:
        suffix += 1
    return f"{name}-{suffix}"
