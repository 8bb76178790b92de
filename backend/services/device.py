"""Best-effort device descriptor for refresh credentials."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class DeviceClass(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    UNKNOWN = "unknown"


_MOBILE_MARKERS = ("mobile", "android", "iphone")
_TABLET_MARKERS = ("tablet", "ipad")


def classify_device(user_agent: Optional[str]) -> DeviceClass:
    """
    Coarse device class from a User-Agent string.

    Not correctness-critical; only used to label sessions.
    """
    if not user_agent:
        return DeviceClass.UNKNOWN

    ua = user_agent.lower()
    # Tablet markers win: iPad and Android tablet UAs can also mention "mobile"
    if any(marker in ua for marker in _TABLET_MARKERS):
        return DeviceClass.TABLET
    if any(marker in ua for marker in _MOBILE_MARKERS):
        return DeviceClass.MOBILE
    return DeviceClass.DESKTOP


@dataclass
class DeviceInfo:
    """Client context captured when a refresh credential is created."""
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @property
    def device_type(self) -> DeviceClass:
        return classify_device(self.user_agent)
