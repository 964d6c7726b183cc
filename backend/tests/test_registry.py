import json

import pytest

from controllers.base import ApiKind
from registry import ConfigStore, DeviceRegistry, DiscoveredCandidate, configured_devices, merge_candidate


def test_configured_devices_skips_invalid_and_duplicate_records():
    devices = configured_devices(
        [
            {"name": "Living Room", "ip": "10.0.0.5"},
            {"name": "Living Room", "uuid": "uuid:abc-1"},
            {"name": "nothing"},
            {"name": "again", "ip": "10.0.0.5"},
            "garbage",
        ]
    )
    assert [d.id for d in devices] == ["10.0.0.5", "abc-1"]
    assert [d.name for d in devices] == ["living-room", "living-room-2"]
    assert devices[0].display_name == "Living Room"


def test_configured_devices_fallback_name():
    devices = configured_devices([{"name": "!!!", "mac": "AA:BB:CC:DD:EE:FF"}])
    assert devices[0].id == "aa:bb:cc:dd:ee:ff"
    assert devices[0].name == "tv-aa:bb:"


def test_merge_candidate_never_blanks_fields():
    device = configured_devices([{"id": "abc", "ip": "10.0.0.5", "model": "QE55Q80T", "api": "tizen"}])[0]
    candidate = DiscoveredCandidate(ip="10.0.0.5", id="abc", model="", api=ApiKind.UNKNOWN)
    assert merge_candidate(device, candidate) is False
    assert device.model == "QE55Q80T"
    assert device.api is ApiKind.TIZEN


def test_merge_candidate_records_false_capabilities():
    device = configured_devices([{"id": "abc", "ip": "10.0.0.5"}])[0]
    candidate = DiscoveredCandidate(ip="10.0.0.5", id="abc", token_auth_support=False)
    assert merge_candidate(device, candidate) is True
    assert device.token_auth_support is False


def test_merge_candidate_keeps_downgraded_hj_device():
    device = configured_devices([{"id": "abc", "ip": "10.0.0.5", "api": "hj", "hjAvailable": True, "port": 8000}])[0]
    candidate = DiscoveredCandidate(ip="10.0.0.5", id="abc", api=ApiKind.TIZEN, protocol="wss", port=8002)
    merge_candidate(device, candidate)
    assert device.api is ApiKind.HJ
    assert device.port == 8000


@pytest.mark.asyncio
async def test_reconcile_upgrades_ip_identity_to_mac(tmp_path):
    store = ConfigStore(tmp_path / "config.json")
    store.data["devices"] = [{"name": "Bedroom", "ip": "10.0.0.7"}]
    registry = DeviceRegistry(store)
    registry.load()

    candidate = DiscoveredCandidate(ip="10.0.0.7", id="10.0.0.7", mac="AA:BB:CC:00:11:22", api=ApiKind.TIZEN)
    device = registry.reconcile(candidate)

    assert device.id == "aa:bb:cc:00:11:22"
    assert registry.get("aa:bb:cc:00:11:22") is device
    assert registry.get("10.0.0.7") is None
    store.flush()
    saved = json.loads((tmp_path / "config.json").read_text())
    assert saved["devices"][0]["id"] == "aa:bb:cc:00:11:22"
    assert saved["devices"][0]["name"] == "Bedroom"


@pytest.mark.asyncio
async def test_reconcile_never_downgrades_durable_id(registry):
    registry.store.data["devices"] = [{"id": "uuid-1", "name": "tv", "ip": "10.0.0.9", "mac": "aa:bb:cc:dd:ee:ff"}]
    registry.load()
    candidate = DiscoveredCandidate(ip="10.0.0.12", id="10.0.0.12", mac="aa:bb:cc:dd:ee:ff")

    device = registry.reconcile(candidate)

    assert device.id == "uuid-1"
    assert device.ip == "10.0.0.12"


def test_anchored_device_is_not_matched_by_ip_alone(registry):
    registry.store.data["devices"] = [{"id": "uuid-1", "name": "tv", "ip": "10.0.0.9"}]
    registry.load()
    candidate = DiscoveredCandidate(ip="10.0.0.9", id="uuid-other", mac="11:22:33:44:55:66")
    assert registry.find(candidate) is None


def test_add_replaces_record_and_keeps_names_unique(registry):
    registry.add({"id": "one", "name": "TV"})
    second = registry.add({"id": "two", "name": "TV"})
    assert second.name == "tv-2"

    updated = registry.add({"id": "one", "name": "TV", "ip": "10.0.0.3"})
    assert updated.name == "tv"
    assert updated.ip == "10.0.0.3"
    assert len(registry) == 2
    assert len(registry.store.data["devices"]) == 2


def test_add_requires_identity(registry):
    with pytest.raises(ValueError):
        registry.add({"name": "nameless"})


def test_remove(registry):
    registry.add({"id": "one", "name": "TV", "mac": "aa:bb:cc:dd:ee:ff"})
    removed = registry.remove("one")
    assert removed is not None
    assert registry.by_mac == {}
    assert registry.store.data["devices"] == []
    assert registry.remove("one") is None
