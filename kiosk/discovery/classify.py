"""Device-type guess from merged discovery metadata.

Evaluated in priority order, first match wins:
advertised services → open ports → OS string → hardware vendor.
"""

from __future__ import annotations

from kiosk.discovery.models import DiscoveredDevice

UNKNOWN = "Unknown"

_SERVICE_RULES = (
    (("printer", "ipp"), "Printer"),
    (("airplay", "raop"), "Media Device"),
    (("smb", "afp"), "File Server"),
    (("http", "https"), "Web Server"),
)

_OS_RULES = (
    (("windows",), "Windows PC"),
    (("linux",), "Linux Device"),
    (("mac", "darwin"), "Mac"),
    (("ios",), "iOS Device"),
    (("android",), "Android Device"),
)

_VENDOR_RULES = (
    (("raspberry",), "Raspberry Pi"),
    (("apple",), "Apple Device"),
    (("samsung",), "Samsung Device"),
    (("cisco",), "Network Device"),
    (("tp-link", "d-link"), "Router/Switch"),
    (("vmware", "virtualbox"), "Virtual Machine"),
)


def _match(text: str, rules) -> str | None:
    for needles, label in rules:
        if any(n in text for n in needles):
            return label
    return None


def _by_ports(ports: list[dict]) -> str | None:
    numbers = {p.get("port") for p in ports}
    names = [str(p.get("service") or "").lower() for p in ports]
    if 3389 in numbers:
        return "Windows PC"
    if 5900 in numbers:
        return "VNC Server"
    if 22 in numbers and any("ssh" in s for s in names):
        return "Linux/Unix Server"
    if 80 in numbers or 443 in numbers:
        return "Web Server"
    if any("printer" in s for s in names):
        return "Printer"
    return None


def identify_device_type(device: DiscoveredDevice) -> str:
    if device.services:
        types = [str(s.get("type") or "").lower() for s in device.services]
        for needles, label in _SERVICE_RULES:
            if any(n in t for t in types for n in needles):
                return label

    if device.ports:
        label = _by_ports(device.ports)
        if label:
            return label

    if device.os:
        label = _match(device.os.lower(), _OS_RULES)
        if label:
            return label

    if device.vendor:
        label = _match(device.vendor.lower(), _VENDOR_RULES)
        if label:
            return label

    return UNKNOWN
