from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


NO_TOKEN = "__no_token__"

POWER_KEYS = frozenset({"KEY_POWER", "KEY_POWEROFF", "KEY_POWERON"})


class ApiKind(str, Enum):
    """Control protocol family of a TV."""

    TIZEN = "tizen"
    HJ = "hj"
    LEGACY = "legacy"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "ApiKind":
        if isinstance(value, ApiKind):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Outcome(str, Enum):
    """Terminal states of a websocket exchange."""

    SUCCEEDED = "succeeded"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    TRANSPORT_ERROR = "transport_error"
    UNSUPPORTED = "unsupported"


@dataclass
class ExchangeResult:
    outcome: Outcome
    token: Optional[str] = None
    messages: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED


class ControlError(Exception):
    """Base class for failures talking to a TV."""


class TransportError(ControlError):
    """Timeout, refused or reset connection."""


class ProtocolUnsupported(ControlError):
    """The TV answered but does not implement the requested protocol method."""


class AuthorizationError(ControlError):
    """The TV denied the session (deny event, missing or rejected token)."""


class NotPairedError(AuthorizationError):
    pass


class PairingError(AuthorizationError):
    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.hint = hint


def error_for(result: ExchangeResult) -> ControlError:
    message = result.error or result.outcome.value
    if result.outcome is Outcome.UNSUPPORTED:
        return ProtocolUnsupported(message)
    if result.outcome is Outcome.DENIED:
        return AuthorizationError(message)
    return TransportError(message)


@dataclass
class HjIdentity:
    """Pairing identity of an HJ-series set (token plus session id)."""

    token: str
    session_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"token": self.token, "sessionId": self.session_id}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["HjIdentity"]:
        if not isinstance(data, dict):
            return None
        token = data.get("token")
        session_id = data.get("sessionId") or data.get("session_id")
        if not token or not session_id:
            return None
        return cls(token=str(token), session_id=str(session_id))
