from __future__ import annotations

import hashlib
import ipaddress
from typing import Optional

from warden.api.schemas import DeviceInfo

UNKNOWN_DEVICE = "Unknown Device"
LOCAL_NETWORK = "Local Network"
UNKNOWN_LOCATION = "Unknown Location"

# Order matters: iPad user agents also mention "Mac OS X", Android ones "Linux"
_PLATFORM_MARKERS = (
    ("iphone", "iPhone"),
    ("ipad", "iPad"),
    ("android", "Android Device"),
    ("windows", "Windows Device"),
    ("macintosh", "Mac Device"),
    ("mac os", "Mac Device"),
    ("linux", "Linux Device"),
)

_BROWSER_MARKERS = (
    ("edg/", "Edge Browser"),
    ("edge", "Edge Browser"),
    ("firefox", "Firefox Browser"),
    ("chrome", "Chrome Browser"),
    ("safari", "Safari Browser"),
)


def device_fingerprint(device: DeviceInfo) -> str:
    """Stable opaque identifier derived from client-supplied signals."""
    signals = "|".join(
        [
            device.user_agent or "",
            device.timezone or "",
            device.platform or "",
        ]
    )
    return hashlib.sha256(signals.encode("utf-8")).hexdigest()[:32]


def device_label(user_agent: Optional[str]) -> str:
    """Best-effort human-readable device name from a user agent string."""
    if not user_agent:
        return UNKNOWN_DEVICE
    lowered = user_agent.lower()
    for marker, label in _PLATFORM_MARKERS:
        if marker in lowered:
            return label
    for marker, label in _BROWSER_MARKERS:
        if marker in lowered:
            return label
    return UNKNOWN_DEVICE


def coarse_location(ip: Optional[str]) -> str:
    """Only distinguishes private networks; no geolocation lookup is performed."""
    if not ip:
        return UNKNOWN_LOCATION
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return UNKNOWN_LOCATION
    if parsed.is_private or parsed.is_loopback or parsed.is_link_local:
        return LOCAL_NETWORK
    return UNKNOWN_LOCATION
