import asyncio
import json

import pytest

from controllers import tizen
from controllers.base import NO_TOKEN, AuthorizationError, NotPairedError, PairingError, ProtocolUnsupported
from controllers.tizen import TizenController, build_ws_candidates, safe_url

CONNECT = {"event": "ms.channel.connect", "data": {"id": "client-1"}}
CONNECT_WITH_TOKEN = {"event": "ms.channel.connect", "data": {"id": "client-1", "token": "12345678"}}
UNSUPPORTED = {"event": "ms.error", "data": {"message": "unrecognized method value : ms.remote.control"}}


class FakeSocket:
    def __init__(self, incoming, replies=()):
        self.incoming = [json.dumps(message) for message in incoming]
        self.replies = [json.dumps(message) for message in replies]
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.incoming:
            return self.incoming.pop(0)
        raise StopAsyncIteration

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def recv(self):
        if self.replies:
            return self.replies.pop(0)
        raise asyncio.TimeoutError


class FakeConnect:
    def __init__(self, incoming, replies=()):
        self.script = (incoming, replies)
        self.urls = []
        self.sockets = []

    def __call__(self, url, **kwargs):
        self.urls.append(url)
        socket = FakeSocket(*self.script)
        self.sockets.append(socket)
        return socket


@pytest.fixture
def controller(monkeypatch):
    monkeypatch.setattr(tizen, "WS_SEND_DELAY", 0.01)
    return TizenController(name="SamsungTV Hub")


def install(monkeypatch, incoming, replies=()):
    fake = FakeConnect(incoming, replies)
    monkeypatch.setattr(tizen.websockets, "connect", fake)
    return fake


def test_build_ws_candidates_orders_known_endpoint_first():
    urls = build_ws_candidates("10.0.0.5", name="Hub", protocol="ws", port=8001, token="abc")
    assert urls[0].startswith("ws://10.0.0.5:8001/api/v2/channels/samsung.remote.control?")
    assert "token=abc" in urls[0]
    assert urls[2].startswith("wss://10.0.0.5:8002/api/v2/")
    assert len(urls) == len(set(urls)) == 4


def test_build_ws_candidates_omits_no_token_marker():
    urls = build_ws_candidates("10.0.0.5", name="Hub", token=NO_TOKEN)
    assert all("token=" not in url for url in urls)


def test_safe_url_masks_token():
    assert safe_url("wss://tv:8002/api/v2/x?name=SHVi&token=secret") == "wss://tv:8002/api/v2/x?name=SHVi&token=***"


@pytest.mark.asyncio
async def test_send_key_after_ready_event(monkeypatch, controller):
    fake = install(monkeypatch, [CONNECT_WITH_TOKEN])

    result = await controller.send_key(ip="10.0.0.5", key="KEY_MUTE", token="12345678", protocol="wss", port=8002)

    assert result.ok
    assert len(fake.urls) == 1
    assert fake.sockets[0].sent[0]["params"]["DataOfCmd"] == "KEY_MUTE"


@pytest.mark.asyncio
async def test_unsupported_answer_stops_immediately(monkeypatch, controller):
    fake = install(monkeypatch, [CONNECT], [UNSUPPORTED])

    with pytest.raises(ProtocolUnsupported):
        await controller.send_key(ip="10.0.0.5", key="KEY_MUTE", token=None)

    assert len(fake.urls) == 1


@pytest.mark.asyncio
async def test_denied_on_every_candidate_raises_authorization_error(monkeypatch, controller):
    fake = install(monkeypatch, [{"event": "ms.channel.unauthorized"}])

    with pytest.raises(AuthorizationError):
        await controller.send_key(ip="10.0.0.5", key="KEY_HOME", token="stale")

    assert len(fake.urls) == len(build_ws_candidates("10.0.0.5", name="SamsungTV Hub"))


@pytest.mark.asyncio
async def test_send_requires_token_when_tv_enforces_auth(monkeypatch, controller):
    fake = install(monkeypatch, [CONNECT])

    with pytest.raises(NotPairedError):
        await controller.send_key(ip="10.0.0.5", key="KEY_HOME", token=NO_TOKEN, token_auth_support=True)

    assert fake.urls == []


@pytest.mark.asyncio
async def test_pair_returns_granted_token(monkeypatch, controller):
    install(monkeypatch, [CONNECT_WITH_TOKEN])
    assert await controller.pair(ip="10.0.0.5") == "12345678"


@pytest.mark.asyncio
async def test_pair_accepts_tokenless_grant_when_capability_unknown(monkeypatch, controller):
    install(monkeypatch, [CONNECT])
    assert await controller.pair(ip="10.0.0.5", token_auth_support=None) == NO_TOKEN


@pytest.mark.asyncio
async def test_pair_rejects_tokenless_grant_when_token_required(monkeypatch, controller):
    install(monkeypatch, [CONNECT])

    with pytest.raises(PairingError) as excinfo:
        await controller.pair(ip="10.0.0.5", token_auth_support=True)

    assert "not granted" in str(excinfo.value)
    assert excinfo.value.hint == tizen.PAIRING_HINT


@pytest.mark.asyncio
async def test_connection_closed_before_ready_is_transport_error(monkeypatch, controller):
    install(monkeypatch, [])
    result = await controller.exchange("ws://10.0.0.5:8001/api/v2/channels/samsung.remote.control", {"x": 1})
    assert result.outcome.value == "transport_error"
