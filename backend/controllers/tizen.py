from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import re
import ssl
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlencode, urlsplit

import websockets

from controllers.base import (
    NO_TOKEN,
    AuthorizationError,
    ControlError,
    ExchangeResult,
    NotPairedError,
    Outcome,
    PairingError,
    TransportError,
    error_for,
)

WS_CONNECT_TIMEOUT = 5.0
WS_SEND_DELAY = 0.2
PAIRING_TIMEOUT = 20.0
API_VERSIONS = ("v2", "v3")

DENY_EVENTS = frozenset({"ms.channel.timeOut", "ms.channel.unauthorized", "ms.channel.error"})
READY_EVENTS = frozenset({"ms.channel.connect", "ms.channel.ready"})

PAIRING_HINT = (
    "No prompt/authorization from TV. Check Device Connection Manager > Access Notification, "
    "clear the Device List, and ensure the TV is on the same subnet."
)

_TOKEN_RE = re.compile(r"token=[^&]+", re.IGNORECASE)


class ExchangeState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_READY = "awaiting_ready"
    SETTLING = "settling"


def safe_url(url: str) -> str:
    return _TOKEN_RE.sub("token=***", url)


def encode_name(name: str) -> str:
    return base64.b64encode(name.encode("utf-8")).decode("ascii")


def build_ws_candidates(
    ip: str,
    *,
    name: str,
    protocol: str = "",
    port: int = 0,
    token: Optional[str] = None,
    versions: Iterable[str] = API_VERSIONS,
) -> List[str]:
    """Channel URLs to try: the device's known endpoint first, then wss/8002 and ws/8001."""
    versions = list(versions)
    params = {"name": encode_name(name)}
    if token and token != NO_TOKEN:
        params["token"] = token
    query = urlencode(params)

    endpoints = []
    if protocol and port:
        endpoints.extend((protocol, port, version) for version in versions)
    for version in versions:
        endpoints.append(("wss", 8002, version))
        endpoints.append(("ws", 8001, version))

    urls: List[str] = []
    for scheme, port_, version in endpoints:
        url = f"{scheme}://{ip}:{port_}/api/{version}/channels/samsung.remote.control?{query}"
        if url not in urls:
            urls.append(url)
    return urls


def remote_key_payload(key: str, action: str = "Click") -> Dict[str, Any]:
    return {
        "method": "ms.remote.control",
        "params": {
            "Cmd": action,
            "DataOfCmd": key,
            "Option": "false",
            "TypeOfRemote": "SendRemoteKey",
        },
    }


def launch_app_payload(app_id: str) -> Dict[str, Any]:
    return {
        "method": "ms.channel.emit",
        "params": {
            "event": "ed.apps.launch",
            "to": "host",
            "data": {"action_type": "NATIVE_LAUNCH", "appId": app_id},
        },
    }


def is_unsupported_message(message: str) -> bool:
    lowered = (message or "").lower()
    return "unrecognized method" in lowered or "ms.remote.control" in lowered


class TizenController:
    """Samsung SmartView (Tizen) websocket remote.

    Every command is one short-lived exchange: connect, wait for the channel to
    become ready, send the payload, settle. Certificate validation is disabled
    because the TVs ship a self-signed SmartViewSDK CA.
    """

    def __init__(self, *, name: str, verbose: bool = False, log_dir: str = "/var/log/samsungtv-hub") -> None:
        self.name = name
        self._ssl = ssl.create_default_context()
        self._ssl.check_hostname = False
        self._ssl.verify_mode = ssl.CERT_NONE
        self._locks: Dict[str, asyncio.Lock] = {}
        self._logger = logging.getLogger("controllers.tizen")
        self._verbose = bool(verbose)
        if self._verbose:
            try:
                os.makedirs(log_dir, exist_ok=True)
                handler = logging.FileHandler(os.path.join(log_dir, "tizen.log"))
                handler.setLevel(logging.DEBUG)
                self._logger.addHandler(handler)
            except OSError:
                self._logger.debug("Verbose log directory %s not writable", log_dir)

    async def exchange(self, url: str, payload: Optional[Dict[str, Any]], *, timeout: float = WS_CONNECT_TIMEOUT) -> ExchangeResult:
        """Run one exchange under a single deadline.

        ``payload=None`` stops after the ready event (pairing).
        """
        messages: List[Dict[str, Any]] = []
        try:
            return await asyncio.wait_for(self._run(url, payload, messages), timeout=timeout)
        except asyncio.TimeoutError:
            self._logger.debug("WS timeout: %s", safe_url(url))
            return ExchangeResult(Outcome.TIMED_OUT, messages=messages, error="WebSocket timeout")
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            self._logger.debug("WS error: %s: %s", safe_url(url), exc)
            return ExchangeResult(Outcome.TRANSPORT_ERROR, messages=messages, error=str(exc) or type(exc).__name__)

    async def _run(self, url: str, payload: Optional[Dict[str, Any]], messages: List[Dict[str, Any]]) -> ExchangeResult:
        state = ExchangeState.CONNECTING
        parts = urlsplit(url)
        secure = parts.scheme == "wss"
        origin = f"{'https' if secure else 'http'}://{parts.netloc}"
        kwargs: Dict[str, Any] = {
            "origin": origin,
            "ping_interval": None,
            "close_timeout": 1.0,
            "max_size": 4 * 1024 * 1024,
            "compression": None,
        }
        if secure:
            kwargs["ssl"] = self._ssl

        async with websockets.connect(url, **kwargs) as websocket:
            self._logger.debug("WS connected: %s", safe_url(url))
            state = ExchangeState.AWAITING_READY
            async for raw in websocket:
                message = self._maybe_parse(raw)
                if message is None:
                    continue
                messages.append(message)
                if self._verbose:
                    self._logger.debug("WS message: %s", json.dumps(message))
                terminal = self._classify(message)
                if terminal is not None:
                    return terminal
                if state is ExchangeState.AWAITING_READY and message.get("event") in READY_EVENTS:
                    token = self._extract_token([message])
                    if payload is None:
                        return ExchangeResult(Outcome.SUCCEEDED, token=token, messages=messages)
                    await asyncio.sleep(WS_SEND_DELAY)
                    await websocket.send(json.dumps(payload))
                    state = ExchangeState.SETTLING
                    return await self._settle(websocket, messages, token)
        return ExchangeResult(
            Outcome.TRANSPORT_ERROR, messages=messages, error=f"Connection closed while {state.value}"
        )

    async def _settle(self, websocket, messages: List[Dict[str, Any]], token: Optional[str]) -> ExchangeResult:
        for message in await self._drain_until_idle(websocket, timeout=WS_SEND_DELAY, limit=4):
            messages.append(message)
            terminal = self._classify(message)
            if terminal is not None:
                return terminal
        return ExchangeResult(Outcome.SUCCEEDED, token=token, messages=messages)

    def _classify(self, message: Dict[str, Any]) -> Optional[ExchangeResult]:
        event = message.get("event")
        if event in DENY_EVENTS:
            return ExchangeResult(Outcome.DENIED, error=f"Tizen WS denied: {event}")
        if event == "ms.error":
            data = message.get("data") if isinstance(message.get("data"), dict) else {}
            text = str(data.get("message") or "Tizen error")
            if is_unsupported_message(text):
                return ExchangeResult(Outcome.UNSUPPORTED, error=f"Tizen remote unsupported: {text}")
            return ExchangeResult(Outcome.TRANSPORT_ERROR, error=f"Tizen error: {text}")
        return None

    async def _drain_until_idle(self, websocket, *, timeout: float = 1.5, limit: int = 6) -> List[Dict[str, Any]]:
        responses: List[Dict[str, Any]] = []
        for _ in range(limit):
            try:
                raw = await asyncio.wait_for(websocket.recv(), timeout=timeout)
            except asyncio.TimeoutError:
                break
            except websockets.exceptions.ConnectionClosed:
                break
            parsed = self._maybe_parse(raw)
            if parsed is not None:
                responses.append(parsed)
        return responses

    async def send(self, *, ip: str, payload: Dict[str, Any], token: Optional[str], protocol: str = "", port: int = 0,
                   token_auth_support: Optional[bool] = None) -> ExchangeResult:
        """Walk the candidate URLs until one exchange succeeds.

        Transport failures and denials move on to the next candidate; a
        protocol-unsupported answer stops immediately.
        """
        if not ip:
            raise TransportError("No IP")
        usable = "" if token in (None, NO_TOKEN) else token
        if token_auth_support is True and not usable:
            raise NotPairedError("Not paired (Tizen)")

        lock = self._locks.setdefault(ip, asyncio.Lock())
        async with lock:
            failures: List[ExchangeResult] = []
            for url in build_ws_candidates(ip, name=self.name, protocol=protocol, port=port, token=usable):
                result = await self.exchange(url, payload)
                if result.ok:
                    return result
                if result.outcome is Outcome.UNSUPPORTED:
                    raise error_for(result)
                failures.append(result)
        denied = next((r for r in failures if r.outcome is Outcome.DENIED), None)
        raise error_for(denied or failures[-1])

    async def send_key(self, *, ip: str, key: str, token: Optional[str], protocol: str = "", port: int = 0,
                       token_auth_support: Optional[bool] = None) -> ExchangeResult:
        return await self.send(
            ip=ip, payload=remote_key_payload(key), token=token, protocol=protocol, port=port,
            token_auth_support=token_auth_support,
        )

    async def launch_app(self, *, ip: str, app_id: str, token: Optional[str], protocol: str = "", port: int = 0,
                         token_auth_support: Optional[bool] = None) -> ExchangeResult:
        return await self.send(
            ip=ip, payload=launch_app_payload(app_id), token=token, protocol=protocol, port=port,
            token_auth_support=token_auth_support,
        )

    async def pair(self, *, ip: str, protocol: str = "", port: int = 0, token_auth_support: Optional[bool] = None) -> str:
        """Open a channel without a token and wait for the TV to grant one.

        Returns the token, or ``NO_TOKEN`` when the TV accepted the client without
        issuing one. When token-auth support is unknown a token-less grant is
        accepted.
        """
        if not ip:
            raise PairingError("No IP")
        last_error: Optional[ControlError] = None
        for url in build_ws_candidates(ip, name=self.name, protocol=protocol, port=port):
            result = await self.exchange(url, None, timeout=PAIRING_TIMEOUT)
            described = describe(url)
            if result.ok:
                token = result.token or NO_TOKEN
                if token == NO_TOKEN and token_auth_support is True:
                    self._logger.debug("Pairing (Tizen) via %s: token required but not granted", described)
                    last_error = AuthorizationError("Token required but not granted by TV")
                    continue
                self._logger.debug(
                    "Pairing (Tizen) succeeded%s via %s", " without token" if token == NO_TOKEN else "", described
                )
                return token
            self._logger.debug("Pairing (Tizen) failed via %s: %s", described, result.error)
            last_error = error_for(result)

        message = str(last_error) if last_error else "Pairing failed"
        hint = None
        if re.search(r"timeout|timeOut|unauthorized|not granted", message):
            hint = PAIRING_HINT
            self._logger.warning("Pairing failed: %s", PAIRING_HINT)
        raise PairingError(message, hint=hint)

    def _extract_token(self, messages: List[Dict[str, Any]]) -> Optional[str]:
        for entry in messages:
            if not isinstance(entry, dict):
                continue
            token = entry.get("token")
            if isinstance(token, (str, int)) and str(token):
                return str(token)
            data = entry.get("data")
            if isinstance(data, dict):
                token = data.get("token")
                if isinstance(token, (str, int)) and str(token):
                    return str(token)
        return None

    def _maybe_parse(self, payload: Any) -> Optional[Dict[str, Any]]:
        if isinstance(payload, dict):
            return payload
        if isinstance(payload, (bytes, bytearray)):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                return None
        if isinstance(payload, str):
            payload = payload.strip()
            if not payload:
                return None
            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError:
                return None
            if isinstance(parsed, dict):
                return parsed
        return None


def describe(url: str) -> str:
    scheme = "wss" if url.startswith("wss://") else "ws"
    version = "v3" if "/api/v3/" in url else "v2"
    return f"{scheme} {version}"
