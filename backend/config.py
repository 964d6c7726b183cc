from __future__ import annotations

import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


STATE_DIR = Path(os.getenv("SAMSUNGTV_STATE_DIR", "state"))
CONFIG_FILE = Path(os.getenv("SAMSUNGTV_CONFIG_FILE", str(STATE_DIR / "config.json")))
SECRETS_FILE = Path(os.getenv("SAMSUNGTV_SECRETS_FILE", str(STATE_DIR / "tokens.json")))
OBJECTS_FILE = Path(os.getenv("SAMSUNGTV_OBJECTS_FILE", str(STATE_DIR / "objects.json")))
HTTP_HOST = os.getenv("SAMSUNGTV_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("SAMSUNGTV_PORT", "8000"))
VERBOSE = _env_flag("SAMSUNGTV_VERBOSE")
LOG_DIR = os.getenv("SAMSUNGTV_LOG_DIR", "/var/log/samsungtv-hub")
LOG_LEVEL = os.getenv("SAMSUNGTV_LOG_LEVEL", "INFO").upper()


def _int(value: Any, default: int, minimum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, number)


def _bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass
class Settings:
    poll_interval: int = 30
    auto_scan: bool = False
    auto_scan_interval: int = 300
    discovery_timeout: int = 5
    enable_ssdp: bool = True
    enable_mdns: bool = True
    mdns_services: str = "_samsungmsf._tcp"
    enable_wol: bool = True
    remote_name: str = "SamsungTV Hub"

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Settings":
        raw = raw or {}
        defaults = cls()
        return cls(
            poll_interval=_int(raw.get("pollInterval"), defaults.poll_interval, 10),
            auto_scan=_bool(raw.get("autoScan"), defaults.auto_scan),
            auto_scan_interval=_int(raw.get("autoScanInterval"), defaults.auto_scan_interval, 30),
            discovery_timeout=_int(raw.get("discoveryTimeout"), defaults.discovery_timeout, 2),
            enable_ssdp=_bool(raw.get("enableSsdp"), defaults.enable_ssdp),
            enable_mdns=_bool(raw.get("enableMdns"), defaults.enable_mdns),
            mdns_services=str(raw.get("mdnsServices") or defaults.mdns_services),
            enable_wol=_bool(raw.get("enableWol"), defaults.enable_wol),
            remote_name=str(raw.get("remoteName") or defaults.remote_name),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "pollInterval": data["poll_interval"],
            "autoScan": data["auto_scan"],
            "autoScanInterval": data["auto_scan_interval"],
            "discoveryTimeout": data["discovery_timeout"],
            "enableSsdp": data["enable_ssdp"],
            "enableMdns": data["enable_mdns"],
            "mdnsServices": data["mdns_services"],
            "enableWol": data["enable_wol"],
            "remoteName": data["remote_name"],
        }
