import pytest

from device_manager import DeviceManager
from registry import ConfigStore, DeviceRegistry


class FakeProbes:
    def __init__(self, ping=None, arp=None):
        self.ping_result = ping
        self.arp = dict(arp or {})
        self.ping_unavailable = False

    async def ping(self, ip, timeout=1.2):
        return self.ping_result

    async def get_mac_for_ip(self, ip):
        return self.arp.get(ip, "")

    async def get_ip_for_mac(self, mac):
        for ip, known in self.arp.items():
            if known == mac:
                return ip
        return ""


@pytest.fixture
def fake_probes():
    return FakeProbes()


@pytest.fixture
def config_store(tmp_path):
    return ConfigStore(tmp_path / "config.json")


@pytest.fixture
def registry(config_store):
    return DeviceRegistry(config_store)


@pytest.fixture
def manager(tmp_path, monkeypatch):
    mgr = DeviceManager(
        config_path=tmp_path / "config.json",
        secrets_path=tmp_path / "tokens.json",
        objects_path=tmp_path / "objects.json",
    )
    scheduled = []
    monkeypatch.setattr(mgr, "schedule_poll", lambda device, delay: scheduled.append((device.id, delay)))
    mgr.scheduled_polls = scheduled
    return mgr
