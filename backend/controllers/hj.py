from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

import aiohttp
from samsungtvws.encrypted.authenticator import SamsungTVEncryptedWSAsyncAuthenticator
from samsungtvws.encrypted.command import SamsungTVEncryptedPostCommand
from samsungtvws.encrypted.remote import SamsungTVEncryptedWSAsyncRemote
from samsungtvws.exceptions import ConnectionFailure
from websockets.exceptions import WebSocketException

from controllers.base import POWER_KEYS, HjIdentity, NotPairedError, PairingError, TransportError

HJ_PORT = 8000
PRESS_RELEASE_DELAY = 0.15
HJ_TIMEOUT = 5.0
HJ_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, ConnectionFailure, WebSocketException)


def remote_key(action: str, key: str) -> SamsungTVEncryptedPostCommand:
    """``Click``, ``Press`` or ``Release`` of ``key`` as one encrypted RemoteControl command."""
    return SamsungTVEncryptedPostCommand(
        {
            "plugin": "RemoteControl",
            "param1": "uuid:12345",
            "param2": action,
            "param3": key,
            "param4": False,
            "api": "SendRemoteKey",
            "version": "1.000",
        }
    )


class HJController:
    """Encrypted-session remote for 2014/2015 (H/J) sets.

    Pairing is two-phase: ``request_pin`` makes the TV show a PIN,
    ``confirm_pin`` trades it for a token/session id pair.
    """

    def __init__(self) -> None:
        self._logger = logging.getLogger("controllers.hj")
        self._session: Optional[aiohttp.ClientSession] = None
        self._pending: Dict[str, SamsungTVEncryptedWSAsyncAuthenticator] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _web_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=HJ_TIMEOUT))
        return self._session

    async def close(self) -> None:
        self._pending.clear()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def has_pending_pin(self, device_id: str) -> bool:
        return device_id in self._pending

    async def request_pin(self, device_id: str, ip: str) -> None:
        if not ip:
            raise PairingError("No IP")
        authenticator = SamsungTVEncryptedWSAsyncAuthenticator(ip, web_session=self._web_session())
        try:
            await authenticator.start_pairing()
        except HJ_ERRORS as exc:
            raise PairingError(f"PIN request failed: {exc}") from exc
        self._pending[device_id] = authenticator
        self._logger.debug("HJ PIN requested for %s (%s)", device_id, ip)

    async def confirm_pin(self, device_id: str, pin: str) -> HjIdentity:
        authenticator = self._pending.get(device_id)
        if authenticator is None:
            raise PairingError("PIN not requested. Request a PIN first.")
        try:
            token = await authenticator.try_pin(str(pin).strip())
            if not token:
                raise PairingError("PIN rejected by TV")
            session_id = await authenticator.get_session_id_and_close()
        except HJ_ERRORS as exc:
            raise PairingError(f"PIN confirmation failed: {exc}") from exc
        self._pending.pop(device_id, None)
        if not session_id:
            raise PairingError("TV did not return a session id")
        self._logger.debug("HJ pairing completed for %s", device_id)
        return HjIdentity(token=str(token), session_id=str(session_id))

    async def send_key(self, *, ip: str, key: str, identity: Optional[HjIdentity], name: str = "") -> None:
        if not ip:
            raise TransportError("No IP")
        if identity is None:
            raise NotPairedError("Not paired (HJ)")
        lock = self._locks.setdefault(ip, asyncio.Lock())
        async with lock:
            try:
                await self._send_once(ip, key, identity)
                self._logger.debug("HJ sendKey %s to %s", key, name or ip)
                return
            except HJ_ERRORS as exc:  # one reconnect-and-send before giving up
                self._logger.debug("HJ sendKey failed (%s) for %s: %s", key, name or ip, exc)
            try:
                await self._send_once(ip, key, identity)
            except HJ_ERRORS as exc:
                raise TransportError(f"HJ sendKey failed: {exc}") from exc
            self._logger.debug("HJ sendKey retry %s to %s", key, name or ip)

    async def _send_once(self, ip: str, key: str, identity: HjIdentity) -> None:
        remote = SamsungTVEncryptedWSAsyncRemote(
            host=ip,
            web_session=self._web_session(),
            token=identity.token,
            session_id=identity.session_id,
            port=HJ_PORT,
        )
        try:
            await asyncio.wait_for(remote.start_listening(), HJ_TIMEOUT)
            if key in POWER_KEYS:
                # some firmware ignores a single click for power keys
                commands = [remote_key("Press", key), remote_key("Release", key)]
            else:
                commands = [remote_key("Click", key)]
            await remote.send_commands(commands, key_press_delay=PRESS_RELEASE_DELAY)
        finally:
            await remote.close()
