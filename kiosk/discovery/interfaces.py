"""Local network interface enumeration (psutil)."""

from __future__ import annotations

import ipaddress
import socket

import psutil

DEFAULT_SUBNET = "192.168.1.0/24"


def list_interfaces() -> list[dict]:
    """IPv4 addresses of every non-loopback interface that is up."""
    stats = psutil.net_if_stats()
    result = []
    for name, addrs in psutil.net_if_addrs().items():
        if name in stats and not stats[name].isup:
            continue
        mac = next(
            (a.address for a in addrs if a.family == psutil.AF_LINK), ""
        )
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            if addr.address.startswith("127."):
                continue
            network = ipaddress.IPv4Network(
                f"{addr.address}/{addr.netmask}", strict=False
            )
            result.append({
                "name": name,
                "address": addr.address,
                "netmask": addr.netmask,
                "cidr": str(network),
                "mac": mac,
            })
    return result


def default_subnet() -> str:
    """Subnet of the first usable interface, or a common home-LAN default."""
    for iface in list_interfaces():
        network = ipaddress.IPv4Network(iface["cidr"])
        # Don't hand nmap anything wider than a /16
        if network.prefixlen >= 16:
            return iface["cidr"]
    return DEFAULT_SUBNET
