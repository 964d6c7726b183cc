import json
import stat

import pytest

from controllers.base import NO_TOKEN, HjIdentity
from secret_store import SecretStore
from state_store import ObjectStore


@pytest.fixture
def objects(tmp_path):
    return ObjectStore(tmp_path / "objects.json")


def test_ensure_device_objects_creates_tree(objects):
    objects.ensure_device_objects("living-room", "uuid-1", "Living Room")
    assert objects.get_object("living-room")["native"] == {"id": "uuid-1"}
    assert objects.get_object("living-room.info")["type"] == "channel"
    assert objects.get_object("living-room.control.power")["common"]["write"] is True
    assert objects.get_object("living-room.state.volume")["common"]["write"] is False
    assert objects.device_names() == {"living-room": "uuid-1"}


def test_reconcile_devices_removes_stale_and_renames(objects):
    objects.ensure_device_objects("old-name", "uuid-1", "TV")
    objects.ensure_device_objects("gone", "uuid-2", "Gone")
    objects.set_ack("old-name.state.volume", 12)

    objects.reconcile_devices({"uuid-1": "new-name"})

    assert objects.get_objects("gone") == {}
    assert objects.get_objects("old-name") == {}
    assert objects.get_value("new-name.state.volume") == 12
    assert objects.device_names() == {"new-name": "uuid-1"}


def test_del_object_is_prefix_safe(objects):
    objects.ensure_device_objects("tv", "a", "TV")
    objects.ensure_device_objects("tv-2", "b", "TV 2")
    objects.del_object("tv")
    assert set(objects.device_names()) == {"tv-2"}


@pytest.mark.asyncio
async def test_unacked_control_write_reaches_handler(objects):
    calls = []

    async def handler(name, command, value):
        calls.append((name, command, value))
        objects.set_ack(f"{name}.control.{command}", False)

    objects.control_handler = handler
    await objects.set_state("tv.control.mute", True, ack=False)
    await objects.set_state("tv.state.muted", True, ack=False)
    await objects.set_state("tv.control.mute", True)

    assert calls == [("tv", "mute", True)]
    assert objects.get_state("tv.control.mute").ack is True
    objects.flush()


def test_object_store_round_trip(tmp_path, objects):
    objects.ensure_device_objects("tv", "a", "TV")
    objects.set_ack("tv.info.online", True)
    objects.flush()

    reloaded = ObjectStore(tmp_path / "objects.json")
    reloaded.load()
    assert reloaded.get_value("tv.info.online") is True
    assert reloaded.device_names() == {"tv": "a"}


def test_secret_store_persists_privately(tmp_path):
    store = SecretStore(tmp_path / "tokens.json")
    store.set_tizen_token("dev-1", "12345678")
    store.set_hj_identity("dev-2", HjIdentity(token="abc", session_id="1"))

    mode = stat.S_IMODE((tmp_path / "tokens.json").stat().st_mode)
    assert mode == 0o600

    reloaded = SecretStore(tmp_path / "tokens.json")
    reloaded.load()
    assert reloaded.tizen_token("dev-1") == "12345678"
    assert reloaded.hj_identity("dev-2") == HjIdentity(token="abc", session_id="1")


def test_secret_store_ignores_corrupt_blob(tmp_path):
    (tmp_path / "tokens.json").write_text("{not json")
    store = SecretStore(tmp_path / "tokens.json")
    store.load()
    assert store.tizen_token("dev-1") is None


def test_is_paired_rules(tmp_path):
    store = SecretStore(tmp_path / "tokens.json")
    store.set_tizen_token("tv", "")
    assert store.tizen_token("tv") == NO_TOKEN
    assert store.is_paired("tv", "tizen", None) is True
    assert store.is_paired("tv", "tizen", False) is True
    assert store.is_paired("tv", "tizen", True) is False
    assert store.is_paired("other", "tizen", None) is False
    assert store.is_paired("tv", "hj", None) is False


def test_rekey_and_forget(tmp_path):
    store = SecretStore(tmp_path / "tokens.json")
    store.set_tizen_token("10.0.0.7", "tok")
    store.rekey("10.0.0.7", "aa:bb:cc:dd:ee:ff")
    assert store.tizen_token("10.0.0.7") is None
    assert store.tizen_token("aa:bb:cc:dd:ee:ff") == "tok"

    store.forget("aa:bb:cc:dd:ee:ff")
    data = json.loads((tmp_path / "tokens.json").read_text())
    assert data == {"tizen": {}, "hj": {}}
