from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Optional

from controllers.base import NO_TOKEN, HjIdentity
from registry import DebouncedSave

logger = logging.getLogger(__name__)


@dataclass
class Secrets:
    tizen: Dict[str, str] = field(default_factory=dict)
    hj: Dict[str, Dict[str, str]] = field(default_factory=dict)


class SecretStore(DebouncedSave):
    """Tizen tokens and HJ pairing identities, kept as one serialized blob.

    The file is written with owner-only permissions; its content is never logged.
    Mutations are coalesced the same way as the config store.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._secrets = Secrets()

    def load(self) -> None:
        self._secrets = self.parse_blob(self._read())

    def _read(self) -> str:
        if not self._path.exists():
            return ""
        try:
            return self._path.read_text()
        except OSError:
            logger.warning("Secret store %s unreadable; starting unpaired", self._path)
            return ""

    @staticmethod
    def parse_blob(blob: str) -> Secrets:
        if not blob:
            return Secrets()
        try:
            data = json.loads(blob)
        except ValueError:
            logger.warning("Failed to parse stored tokens.")
            return Secrets()
        if not isinstance(data, dict):
            return Secrets()
        tizen = data.get("tizen") if isinstance(data.get("tizen"), dict) else {}
        hj = data.get("hj") if isinstance(data.get("hj"), dict) else {}
        return Secrets(
            tizen={str(k): str(v) for k, v in tizen.items() if v},
            hj={str(k): v for k, v in hj.items() if isinstance(v, dict)},
        )

    def blob(self) -> str:
        return json.dumps(asdict(self._secrets))

    def save(self) -> None:
        try:
            self._path.write_text(self.blob())
            self._path.chmod(0o600)
        except OSError as exc:
            logger.warning("Failed to persist tokens: %s", exc)

    def tizen_token(self, device_id: str) -> Optional[str]:
        return self._secrets.tizen.get(device_id)

    def set_tizen_token(self, device_id: str, token: str) -> None:
        self._secrets.tizen[device_id] = token or NO_TOKEN
        self.schedule_save()

    def hj_identity(self, device_id: str) -> Optional[HjIdentity]:
        return HjIdentity.from_dict(self._secrets.hj.get(device_id))

    def set_hj_identity(self, device_id: str, identity: HjIdentity) -> None:
        self._secrets.hj[device_id] = identity.to_dict()
        self.schedule_save()

    def rekey(self, old_id: str, new_id: str) -> None:
        """Move secrets after a device identity upgrade."""
        if old_id == new_id:
            return
        moved = False
        if old_id in self._secrets.tizen and new_id not in self._secrets.tizen:
            self._secrets.tizen[new_id] = self._secrets.tizen.pop(old_id)
            moved = True
        if old_id in self._secrets.hj and new_id not in self._secrets.hj:
            self._secrets.hj[new_id] = self._secrets.hj.pop(old_id)
            moved = True
        if moved:
            self.schedule_save()

    def forget(self, device_id: str) -> None:
        removed = self._secrets.tizen.pop(device_id, None) is not None
        removed = self._secrets.hj.pop(device_id, None) is not None or removed
        if removed:
            self.schedule_save()

    def is_paired(self, device_id: str, api: str, token_auth_support: Optional[bool]) -> bool:
        if api == "hj":
            return self.hj_identity(device_id) is not None
        token = self.tizen_token(device_id)
        if not token:
            return False
        if token == NO_TOKEN and token_auth_support is True:
            return False
        return True
