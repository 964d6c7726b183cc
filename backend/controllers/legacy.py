from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

import samsungctl
from samsungctl.exceptions import AccessDenied, ConnectionClosed, UnhandledResponse

from controllers.base import AuthorizationError, TransportError

logger = logging.getLogger(__name__)

LEGACY_PORT = 55000


class LegacyController:
    """Pre-2014 remote on port 55000.

    ``samsungctl`` is blocking, so every command runs in a worker thread with
    its own socket timeout.
    """

    def __init__(self, *, name: str, timeout: float = 3.0) -> None:
        self.name = name
        self.timeout = timeout

    def _config(self, ip: str) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.name,
            "id": "samsungtv-hub",
            "host": ip,
            "port": LEGACY_PORT,
            "method": "legacy",
            "timeout": self.timeout,
        }

    def _send_blocking(self, ip: str, key: str) -> None:
        with samsungctl.Remote(self._config(ip)) as remote:
            remote.control(key)

    async def send_key(self, *, ip: str, key: str) -> None:
        if not ip:
            raise TransportError("No IP")
        try:
            await asyncio.to_thread(self._send_blocking, ip, key)
        except (OSError, ConnectionClosed, UnhandledResponse) as exc:
            raise TransportError(f"Legacy sendKey failed: {exc}") from exc
        except AccessDenied as exc:
            raise AuthorizationError("Legacy remote access denied on TV") from exc
        logger.debug("Legacy sendKey %s to %s", key, ip)
