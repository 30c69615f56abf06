"""DiscoveryAggregator: runs the available sources and merges their reports.

Sources run concurrently, each under its own timeout.  A source that fails
or times out contributes nothing; the scan itself only fails when there is
no usable source at all.

Merge rule: records are keyed by IP.  Sources are visited in priority order
(the order they were registered) and for each field the first non-empty
value wins.  ``sources`` lists every source that reported the address.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from typing import Sequence

from kiosk.discovery.classify import identify_device_type
from kiosk.discovery.hostname import HostnameResolver
from kiosk.discovery.models import SCAN_MODES, DiscoveredDevice, ScanRequest, ScanResult
from kiosk.discovery.sources import (
    ArpSource,
    DiscoverySource,
    MdnsSource,
    NeighborSource,
    NmapSource,
    probe_ports,
)
from kiosk.discovery.vendor import lookup_vendor
from kiosk.errors import InvalidInput, Unavailable
from kiosk.netutil import is_valid_ip, normalize_ip

logger = logging.getLogger(__name__)

_SCALAR_FIELDS = ("mac", "hostname", "vendor", "os", "device_type")
_LIST_FIELDS = ("ports", "services")
_UNKNOWN_VENDORS = ("", "Unknown", "Unknown Vendor")


def default_sources() -> list[DiscoverySource]:
    return [MdnsSource(), ArpSource(), NmapSource()]


def merge_devices(reports: Sequence[tuple[str, list[DiscoveredDevice]]]) -> list[DiscoveredDevice]:
    """Merge per-source device lists, visited in the given priority order."""
    merged: dict[str, DiscoveredDevice] = {}
    for source_name, devices in reports:
        for found in devices:
            ip = normalize_ip(found.ip)
            if not ip:
                continue
            current = merged.get(ip)
            if current is None:
                current = merged[ip] = DiscoveredDevice(ip=ip)
            for name in _SCALAR_FIELDS:
                if not getattr(current, name) and getattr(found, name):
                    setattr(current, name, getattr(found, name))
            if not current.os_accuracy and found.os and current.os == found.os:
                current.os_accuracy = found.os_accuracy
            for name in _LIST_FIELDS:
                if not getattr(current, name) and getattr(found, name):
                    setattr(current, name, list(getattr(found, name)))
            if source_name not in current.sources:
                current.sources.append(source_name)
    return list(merged.values())


def _ip_sort_key(device: DiscoveredDevice):
    try:
        return (0, int(ipaddress.ip_address(device.ip)))
    except ValueError:
        return (1, device.ip)


class DiscoveryAggregator:
    """Scans the LAN through whichever sources are installed."""

    def __init__(
        self,
        sources: list[DiscoverySource] | None = None,
        fallback: DiscoverySource | None = None,
        resolver: HostnameResolver | None = None,
    ) -> None:
        candidates = default_sources() if sources is None else sources
        self.sources = [s for s in candidates if s.available()]
        fallback = NeighborSource() if fallback is None else fallback
        self.fallback = fallback if fallback.available() else None
        self.resolver = resolver or HostnameResolver()
        logger.info(
            "Discovery sources: %s (fallback: %s)",
            ", ".join(s.name for s in self.sources) or "none",
            self.fallback.name if self.fallback else "none",
        )

    @property
    def is_available(self) -> bool:
        return bool(self.sources) or self.fallback is not None

    # ── Scans ──────────────────────────────────────────────────────

    async def scan(
        self,
        mode: str = "fast",
        subnet: str | None = None,
        ports: str | None = None,
    ) -> ScanResult:
        if mode not in SCAN_MODES:
            raise InvalidInput(f"Unknown scan mode: {mode}")
        if subnet:
            try:
                ipaddress.ip_network(subnet, strict=False)
            except ValueError:
                raise InvalidInput(f"Invalid subnet: {subnet}")
        if not self.is_available:
            raise Unavailable("No discovery source available")

        request = ScanRequest(mode=mode, subnet=subnet, ports=ports)
        started = time.monotonic()

        outcomes = await asyncio.gather(
            *(self._run_source(s, request) for s in self.sources)
        )
        reports = [
            (source.name, devices)
            for source, devices in zip(self.sources, outcomes)
            if devices is not None
        ]

        if not any(devices for _, devices in reports) and self.fallback is not None:
            devices = await self._run_source(self.fallback, request)
            if devices is not None:
                reports.append((self.fallback.name, devices))

        merged = merge_devices(reports)
        await self._enrich(merged)
        merged.sort(key=_ip_sort_key)

        result = ScanResult(
            devices=merged,
            scan_time_ms=int((time.monotonic() - started) * 1000),
            methods_used=[name for name, _ in reports],
            mode=mode,
        )
        logger.info(
            "%s scan: %d device(s) in %d ms via %s",
            mode, len(merged), result.scan_time_ms, ", ".join(result.methods_used) or "nothing",
        )
        return result

    async def scan_host(self, ip: str) -> DiscoveredDevice:
        """Detailed look at a single address."""
        ip = normalize_ip(ip)
        if not is_valid_ip(ip):
            raise InvalidInput("Invalid IP address")

        reports: list[tuple[str, list[DiscoveredDevice]]] = []
        request = ScanRequest(mode="detailed", subnet=ip)
        arp = next((s for s in self.sources if isinstance(s, ArpSource)), None)
        if arp is not None:
            rows = await self._run_source(arp, request)
            if rows:
                reports.append((arp.name, [d for d in rows if d.ip == ip]))

        nmap = next((s for s in self.sources if isinstance(s, NmapSource)), None)
        if nmap is not None:
            found = await self._run_source(nmap, request)
            if found:
                reports.append((nmap.name, found))
        else:
            open_ports = await probe_ports(ip)
            reports.append(("tcp", [DiscoveredDevice(ip=ip, ports=open_ports)]))

        merged = merge_devices(reports) or [DiscoveredDevice(ip=ip)]
        device = next((d for d in merged if d.ip == ip), merged[0])
        await self._enrich([device])
        return device

    async def arp_table(self) -> list[dict]:
        arp = next((s for s in self.sources if isinstance(s, ArpSource)), None)
        if arp is None:
            raise Unavailable("arp is not installed")
        return await arp.read_table()

    async def resolve(self, ip: str) -> dict:
        ip = normalize_ip(ip)
        if not is_valid_ip(ip):
            raise InvalidInput("Invalid IP address")
        hostname = await self.resolver.resolve(ip)
        return {"ip": ip, "hostname": hostname or None}

    # ── Internal ───────────────────────────────────────────────────

    async def _run_source(
        self, source: DiscoverySource, request: ScanRequest
    ) -> list[DiscoveredDevice] | None:
        """Devices from *source*, or ``None`` if it failed or timed out."""
        try:
            return await asyncio.wait_for(source.scan(request), timeout=request.timeout)
        except asyncio.TimeoutError:
            logger.warning("Discovery source %s timed out after %.0fs", source.name, request.timeout)
        except Exception as e:
            logger.warning("Discovery source %s failed: %s", source.name, e)
        return None

    async def _enrich(self, devices: list[DiscoveredDevice]) -> None:
        missing = [d.ip for d in devices if not d.hostname]
        if missing:
            names = await self.resolver.resolve_many(missing)
            for d in devices:
                if not d.hostname and d.ip in names:
                    d.hostname = names[d.ip]

        for d in devices:
            if d.mac and d.vendor in _UNKNOWN_VENDORS:
                d.vendor = lookup_vendor(d.mac)
            vendor = d.vendor if d.vendor not in _UNKNOWN_VENDORS else ""
            d.name = d.hostname or vendor or "Unknown Device"
            if not d.device_type:
                d.device_type = identify_device_type(d)
