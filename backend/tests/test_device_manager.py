import json

import pytest

import device_manager
from controllers.base import ApiKind, HjIdentity, PairingError, ProtocolUnsupported, TransportError
from device_manager import UnknownDevice
from discovery import RawRecord
from registry import DiscoveredCandidate
from telemetry import DeviceStatus


class Recorder:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error


def add(manager, expect="living-room", **record):
    record.setdefault("name", "Living Room")
    record.setdefault("ip", "10.0.0.5")
    manager.add_device(record)
    return manager.registry.by_name[expect]


@pytest.mark.asyncio
async def test_unsupported_tizen_downgrades_to_hj_and_persists(manager, monkeypatch):
    device = add(manager, id="uuid-1", api="tizen", protocol="wss", port=8002)
    tizen_send = Recorder(ProtocolUnsupported("unrecognized method"))
    hj_send = Recorder()
    monkeypatch.setattr(manager.tizen, "send_key", tizen_send)
    monkeypatch.setattr(manager.hj, "send_key", hj_send)

    async def hj_port_open(ip, port, timeout=1.5):
        return port == 8000

    monkeypatch.setattr(device_manager, "check_port", hj_port_open)

    await manager.send_key(device, "KEY_MUTE")

    assert device.api is ApiKind.HJ
    assert (device.protocol, device.port, device.hj_available) == ("ws", 8000, True)
    assert hj_send.calls[0]["key"] == "KEY_MUTE"
    assert manager.config.data["devices"][0]["api"] == "hj"
    assert manager.objects.get_value("living-room.info.api") == "hj"

    manager.config.flush()
    saved = json.loads(manager.config._path.read_text())
    assert saved["devices"][0]["api"] == "hj"
    await manager.shutdown()


@pytest.mark.asyncio
async def test_unsupported_tizen_without_hj_port_raises(manager, monkeypatch):
    device = add(manager, id="uuid-1", api="tizen")
    monkeypatch.setattr(manager.tizen, "send_key", Recorder(ProtocolUnsupported("unrecognized method")))

    async def closed(ip, port, timeout=1.5):
        return False

    monkeypatch.setattr(device_manager, "check_port", closed)

    with pytest.raises(ProtocolUnsupported):
        await manager.send_key(device, "KEY_MUTE")
    assert device.api is ApiKind.TIZEN
    await manager.shutdown()


@pytest.mark.asyncio
async def test_unknown_api_falls_back_to_legacy(manager, monkeypatch):
    device = add(manager, id="uuid-1")
    legacy_send = Recorder()
    monkeypatch.setattr(manager.tizen, "send_key", Recorder(TransportError("refused")))
    monkeypatch.setattr(manager.legacy, "send_key", legacy_send)

    await manager.send_key(device, "KEY_HOME")

    assert legacy_send.calls == [{"ip": "10.0.0.5", "key": "KEY_HOME"}]
    assert manager.objects.get_value("living-room.info.lastSeen") is not None
    await manager.shutdown()


@pytest.mark.asyncio
async def test_volume_step_updates_state_optimistically(manager, monkeypatch):
    device = add(manager, id="uuid-1", api="tizen")
    tizen_send = Recorder()
    monkeypatch.setattr(manager.tizen, "send_key", tizen_send)
    manager.objects.set_ack("living-room.state.volume", 20)

    await manager.control("living-room", "volumeUp", True)

    assert tizen_send.calls[0]["key"] == "KEY_VOLUP"
    assert manager.objects.get_value("living-room.state.volume") == 21
    assert manager.objects.get_state("living-room.control.volumeUp").ack is True
    assert manager.objects.get_value("living-room.control.volumeUp") is False
    assert device.telemetry.expected_volume == 21
    assert ("uuid-1", device_manager.CONTROL_REPOLL_DELAY) in manager.scheduled_polls
    await manager.shutdown()


@pytest.mark.asyncio
async def test_mute_toggle_sets_shadow(manager, monkeypatch):
    device = add(manager, id="uuid-1", api="tizen")
    monkeypatch.setattr(manager.tizen, "send_key", Recorder())
    manager.objects.set_ack("living-room.state.muted", False)

    await manager.control("living-room", "mute", True)

    assert manager.objects.get_value("living-room.state.muted") is True
    assert device.telemetry.expected_muted is True
    assert device.telemetry.muted_shadow_until > 0
    await manager.shutdown()


@pytest.mark.asyncio
async def test_key_and_source_controls(manager, monkeypatch):
    add(manager, id="uuid-1", api="tizen")
    tizen_send = Recorder()
    monkeypatch.setattr(manager.tizen, "send_key", tizen_send)

    await manager.control("living-room", "key", "ok")
    await manager.control("living-room", "source", "hdmi2")

    assert [call["key"] for call in tizen_send.calls] == ["KEY_ENTER", "KEY_HDMI2"]
    assert manager.objects.get_value("living-room.control.key") == ""
    await manager.shutdown()


@pytest.mark.asyncio
async def test_launch_app_requires_tizen(manager):
    add(manager, id="uuid-1", api="legacy")
    with pytest.raises(ValueError):
        await manager.control("living-room", "launchApp", "3201907018807")
    await manager.shutdown()


@pytest.mark.asyncio
async def test_control_validates_device_and_command(manager):
    add(manager, id="uuid-1", api="tizen")
    with pytest.raises(UnknownDevice):
        await manager.control("nope", "power", True)
    with pytest.raises(ValueError):
        await manager.control("living-room", "explode", True)
    await manager.shutdown()


@pytest.mark.asyncio
async def test_power_on_offline_tizen_uses_wol(manager, monkeypatch):
    device = add(manager, id="uuid-1", api="tizen", mac="aa:bb:cc:dd:ee:ff")
    woken = []

    async def offline(dev):
        return DeviceStatus()

    monkeypatch.setattr(manager.status, "check", offline)
    monkeypatch.setattr(device_manager.wakeonlan, "send_magic_packet", lambda mac: woken.append(mac))

    await manager.control("living-room", "power", True)

    assert woken == ["aa:bb:cc:dd:ee:ff"]
    assert manager.objects.get_value("living-room.control.power") is True
    assert (device.id, 6.0) in manager.scheduled_polls
    await manager.shutdown()


@pytest.mark.asyncio
async def test_power_off_sends_power_key(manager, monkeypatch):
    add(manager, id="uuid-1", api="tizen")
    tizen_send = Recorder()

    async def on(dev):
        return DeviceStatus(online=True, power=True, seen=True)

    monkeypatch.setattr(manager.status, "check", on)
    monkeypatch.setattr(manager.tizen, "send_key", tizen_send)

    await manager.control("living-room", "power", False)

    assert [call["key"] for call in tizen_send.calls] == ["KEY_POWER"]
    assert manager.objects.get_value("living-room.state.power") is False
    await manager.shutdown()


@pytest.mark.asyncio
async def test_hj_pairing_is_two_phase(manager, monkeypatch):
    add(manager, id="uuid-hj", api="hj")
    requested = []

    async def request_pin(device_id, ip):
        requested.append((device_id, ip))

    async def confirm_pin(device_id, pin):
        return HjIdentity(token="abc", session_id="1")

    monkeypatch.setattr(manager.hj, "request_pin", request_pin)
    monkeypatch.setattr(manager.hj, "confirm_pin", confirm_pin)

    assert await manager.pair("uuid-hj") == {"ok": True, "needsPin": True}
    result = await manager.pair("uuid-hj", pin="1234")

    assert requested == [("uuid-hj", "10.0.0.5")]
    assert result == {"ok": True, "identity": {"token": "abc", "sessionId": "1"}}
    assert manager.secrets.hj_identity("uuid-hj") == HjIdentity(token="abc", session_id="1")
    assert manager.objects.get_value("living-room.info.paired") is True
    await manager.shutdown()


@pytest.mark.asyncio
async def test_hj_confirm_without_request_reports_error(manager):
    add(manager, id="uuid-hj", api="hj")
    result = await manager.pair("uuid-hj", pin="1234")
    assert result["ok"] is False
    assert result["error"].startswith("HJ pairing failed")
    await manager.shutdown()


@pytest.mark.asyncio
async def test_tizen_pairing_refreshes_capabilities_and_stores_token(manager, monkeypatch):
    device = add(manager, id="uuid-1")

    async def info(ip, protocol, port, timeout=2.0):
        return {"device": {"TokenAuthSupport": "true"}}

    async def pair(**kwargs):
        assert kwargs["token_auth_support"] is True
        return "87654321"

    monkeypatch.setattr(device_manager, "fetch_tizen_info", info)
    monkeypatch.setattr(manager.tizen, "pair", pair)

    result = await manager.pair("uuid-1")

    assert result == {"ok": True, "token": "87654321"}
    assert device.api is ApiKind.TIZEN
    assert device.token_auth_support is True
    assert manager.secrets.tizen_token("uuid-1") == "87654321"
    assert manager.objects.get_value("living-room.info.paired") is True
    await manager.shutdown()


@pytest.mark.asyncio
async def test_tizen_pairing_failure_carries_hint(manager, monkeypatch):
    add(manager, id="uuid-1", api="tizen")

    async def no_info(ip, protocol, port, timeout=2.0):
        return None

    async def pair(**kwargs):
        raise PairingError("WebSocket timeout", hint="Accept the prompt on the TV")

    monkeypatch.setattr(device_manager, "fetch_tizen_info", no_info)
    monkeypatch.setattr(manager.tizen, "pair", pair)

    result = await manager.pair("uuid-1")

    assert result == {"ok": False, "error": "WebSocket timeout", "hint": "Accept the prompt on the TV"}
    await manager.shutdown()


@pytest.mark.asyncio
async def test_pair_unknown_device(manager):
    assert await manager.pair("missing") == {"ok": False, "error": "Unknown device"}


@pytest.mark.asyncio
async def test_discover_reconciles_identity_and_rekeys_secrets(manager, monkeypatch):
    add(manager, id="10.0.0.7", ip="10.0.0.7", name="Bedroom", expect="bedroom")
    manager.secrets.set_tizen_token("10.0.0.7", "tok")

    async def fake_discover_all(**kwargs):
        return {"10.0.0.7": RawRecord(ip="10.0.0.7", source={"ssdp"}, usn="uuid:ignored")}

    async def fake_probe(ip, **kwargs):
        return DiscoveredCandidate(
            ip=ip, source=set(kwargs["source"]), id="10.0.0.7", mac="aa:bb:cc:00:11:22", api=ApiKind.TIZEN,
            protocol="wss", port=8002,
        )

    monkeypatch.setattr(device_manager, "discover_all", fake_discover_all)
    dropped = []

    async def fake_drop(device_id):
        dropped.append(device_id)

    monkeypatch.setattr(manager.classifier, "probe", fake_probe)
    monkeypatch.setattr(manager.upnp, "drop", fake_drop)

    found = await manager.discover(2)

    assert dropped == ["10.0.0.7"]

    device = manager.registry.by_name["bedroom"]
    assert device.id == "aa:bb:cc:00:11:22"
    assert manager.secrets.tizen_token("aa:bb:cc:00:11:22") == "tok"
    assert manager.secrets.tizen_token("10.0.0.7") is None
    assert manager.objects.get_value("bedroom.info.id") == "aa:bb:cc:00:11:22"
    assert found[0]["added"] is True
    assert manager.get_discovered()[0]["api"] == "tizen"
    assert manager.last_scan is not None
    await manager.shutdown()


@pytest.mark.asyncio
async def test_upnp_notify_updates_states(manager):
    device = add(manager, id="uuid-1", api="hj")
    device.telemetry.last_known_volume = 30

    manager._on_upnp_notify("uuid-1", 25, True)

    assert manager.objects.get_value("living-room.state.volume") == 25
    assert manager.objects.get_value("living-room.state.muted") is True
    assert manager.objects.get_value("living-room.info.online") is True
    await manager.shutdown()


@pytest.mark.asyncio
async def test_remove_device_drops_objects_and_secrets(manager):
    add(manager, id="uuid-1", api="tizen")
    manager.secrets.set_tizen_token("uuid-1", "tok")

    await manager.remove_device("uuid-1")

    assert manager.list_devices() == []
    assert manager.objects.get_objects("living-room") == {}
    assert manager.secrets.tizen_token("uuid-1") is None
    with pytest.raises(UnknownDevice):
        await manager.remove_device("uuid-1")
    await manager.shutdown()


def test_update_settings_clamps_values(manager):
    settings = manager.update_settings({"pollInterval": 1, "remoteName": "Den"})
    assert settings["pollInterval"] == 10
    assert manager.tizen.name == "Den"
    assert manager.config.data["settings"]["remoteName"] == "Den"


@pytest.mark.asyncio
async def test_upnp_subscription_uses_description_service(manager, monkeypatch):
    device = add(manager, id="uuid-1", api="hj")
    device.upnp_location = "http://10.0.0.5:7676/smp_2_"
    device.rendering_control_url = "http://10.0.0.5:7676/upnp/control/RenderingControl1"
    service = object()
    requested, subscribed = [], []

    async def fake_service(location):
        requested.append(location)
        return service

    async def fake_subscribe(device_id, svc, host):
        subscribed.append((device_id, svc, host))
        return True

    monkeypatch.setattr(manager.rendering, "service", fake_service)
    monkeypatch.setattr(manager.upnp, "ensure_subscription", fake_subscribe)
    monkeypatch.setattr(device_manager, "local_ip_for_target", lambda ip: "10.0.0.2")

    assert await manager.ensure_upnp_subscription(device) is True
    assert device.rendering_control_event_url == "http://10.0.0.5:7676/upnp/event/RenderingControl1"
    assert requested == ["http://10.0.0.5:7676/smp_2_"]
    assert subscribed == [("uuid-1", service, "10.0.0.2")]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_secret_writes_are_debounced_until_shutdown(manager, tmp_path):
    add(manager, id="uuid-1", api="tizen")
    manager.secrets.set_tizen_token("uuid-1", "tok")
    manager.secrets.set_hj_identity("uuid-2", HjIdentity(token="abc", session_id="1"))

    assert manager.secrets.pending is True
    assert not (tmp_path / "tokens.json").exists()

    await manager.shutdown()

    data = json.loads((tmp_path / "tokens.json").read_text())
    assert data["tizen"] == {"uuid-1": "tok"}
    assert data["hj"] == {"uuid-2": {"token": "abc", "sessionId": "1"}}
