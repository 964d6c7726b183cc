"""Protocol controllers for Samsung TVs."""

from .base import ApiKind, ControlError  # noqa: F401
from .hj import HJController  # noqa: F401
from .legacy import LegacyController  # noqa: F401
from .tizen import TizenController  # noqa: F401
