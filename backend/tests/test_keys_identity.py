import pytest

from identity import ensure_unique_name, looks_like_ip, normalize_device_id, resolve_identity, sanitize_name
from keys import is_truthy, normalize_key_input, source_key


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("KEY_VOLUP", "KEY_VOLUP"),
        ("key_home", "KEY_HOME"),
        ("ok", "KEY_ENTER"),
        ("Volume Up", "KEY_VOLUP"),
        ("back", "KEY_RETURN"),
        ("7", "KEY_7"),
        ("netflix", "NETFLIX"),
        ("   ", ""),
    ],
)
def test_normalize_key_input(raw, expected):
    assert normalize_key_input(raw) == expected


def test_normalize_key_input_ignores_non_strings():
    assert normalize_key_input(None) == ""
    assert normalize_key_input(5) == ""


def test_source_key():
    assert source_key("hdmi1") == "KEY_HDMI1"
    assert source_key("KEY_TV") == "KEY_TV"


def test_is_truthy():
    assert is_truthy(True)
    assert is_truthy(1)
    assert is_truthy("true")
    assert not is_truthy("false")
    assert not is_truthy(0)
    assert not is_truthy(None)


def test_resolve_identity_prefers_uuid_then_mac_then_ip():
    assert resolve_identity(uuid="uuid:1234-abcd", mac="AA:BB:CC:DD:EE:FF", ip="10.0.0.2") == "1234-abcd"
    assert resolve_identity(mac="AA:BB:CC:DD:EE:FF", ip="10.0.0.2") == "aa:bb:cc:dd:ee:ff"
    assert resolve_identity(ip="10.0.0.2") == "10.0.0.2"


def test_resolve_identity_upgrades_ip_like_explicit_id_to_mac():
    assert resolve_identity(explicit="10.0.0.2", mac="aa:bb:cc:dd:ee:ff") == "aa:bb:cc:dd:ee:ff"


def test_normalize_device_id():
    assert normalize_device_id("urn:uuid:ABC") == "ABC"
    assert normalize_device_id("AA:BB:CC:DD:EE:FF") == "aa:bb:cc:dd:ee:ff"
    assert looks_like_ip("192.168.1.20")
    assert not looks_like_ip("aa:bb:cc:dd:ee:ff")


def test_sanitize_and_unique_names():
    assert sanitize_name("  Living Room TV!! ") == "living-room-tv"
    assert ensure_unique_name("tv", {"tv", "tv-2"}) == "tv-3"
    assert ensure_unique_name("", set(), "tv-abc123") == "tv-abc123"
