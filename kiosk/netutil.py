"""Address, URL and MAC helpers shared across the console."""

from __future__ import annotations

import ipaddress
from urllib.parse import urlparse

_URL_SCHEMES = {"http", "https", "file"}


def normalize_ip(ip: str | None) -> str:
    """Strip the IPv4-mapped IPv6 prefix (``::ffff:10.0.0.5`` → ``10.0.0.5``)."""
    if not ip:
        return ""
    ip = ip.strip()
    if ip.lower().startswith("::ffff:"):
        tail = ip[7:]
        if is_valid_ip(tail):
            return tail
    return ip


def is_valid_ip(ip: str | None) -> bool:
    if not ip:
        return False
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return False
    return True


def is_valid_url(url: object) -> bool:
    """Accept http(s) URLs with a host, and file: URLs."""
    if not isinstance(url, str) or not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in _URL_SCHEMES:
        return False
    if parsed.scheme == "file":
        return bool(parsed.path or parsed.netloc)
    return bool(parsed.netloc)


def normalize_mac(mac: str | None) -> str:
    if not mac:
        return ""
    return mac.strip().lower().replace("-", ":")


def is_unicast_ipv4(ip: str | None) -> bool:
    """True for a plain IPv4 host address: no multicast, broadcast, network or loopback."""
    try:
        addr = ipaddress.IPv4Address(ip or "")
    except ValueError:
        return False
    last_octet = int(str(addr).rsplit(".", 1)[1])
    if last_octet in (0, 255):
        return False
    if addr.is_multicast or addr.is_loopback or addr.is_reserved or addr.is_unspecified:
        return False
    return True


def is_valid_device_address(ip: str, mac: str) -> bool:
    """Filter out broadcast/multicast MACs and non-unicast IPs from ARP-style rows."""
    if not ip or not mac:
        return False
    mac = normalize_mac(mac)
    if mac == "ff:ff:ff:ff:ff:ff":
        return False
    try:
        first_octet = int(mac[:2], 16)
    except ValueError:
        return False
    if first_octet & 0x01:
        return False
    return is_unicast_ipv4(ip)
