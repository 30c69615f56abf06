"""Discovery sources.

Each source answers one question, "which endpoints can you see?", and
returns best-effort :class:`DiscoveredDevice` records.  Sources never merge,
resolve names or classify; the aggregator does that.

  mdns       zeroconf browse of every advertised service type
  arp        the kernel ARP cache via ``arp -a``
  nmap       ping/port/OS scan, XML output
  neighbor   ``ip neigh`` fallback, consulted when nothing else found devices
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import threading
import time
import xml.etree.ElementTree as ET
from typing import Protocol

from zeroconf import ServiceBrowser, Zeroconf, ZeroconfServiceTypes

from kiosk.discovery.interfaces import default_subnet
from kiosk.discovery.models import MDNS_BROWSE_SECONDS, DiscoveredDevice, ScanRequest
from kiosk.netutil import is_valid_device_address, normalize_mac

logger = logging.getLogger(__name__)


class DiscoverySource(Protocol):
    name: str

    def available(self) -> bool:
        ...

    async def scan(self, request: ScanRequest) -> list[DiscoveredDevice]:
        ...


async def _run(*argv: str) -> str:
    """Run *argv* and return stdout; kills the child if the caller is cancelled."""
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        raise
    if proc.returncode != 0:
        logger.debug(
            "%s exited %s: %s", argv[0], proc.returncode,
            stderr.decode(errors="replace").strip(),
        )
    return stdout.decode(errors="replace")


# ── ARP ───────────────────────────────────────────────────────────

_ARP_WINDOWS = re.compile(
    r"^\s*(\d+\.\d+\.\d+\.\d+)\s+([0-9a-fA-F:\-]{11,17})\s+\w+"
)
_ARP_UNIX = re.compile(r"\((\d+\.\d+\.\d+\.\d+)\)\s+at\s+([0-9a-fA-F:]{11,17})")


def parse_arp_table(text: str) -> list[dict]:
    """Parse ``arp -a`` output (Windows or Unix flavour) into ``{ip, mac}`` rows.

    Rows for broadcast, multicast and network addresses are dropped and each
    IP appears at most once.
    """
    seen: set[str] = set()
    rows = []
    for line in text.splitlines():
        match = _ARP_UNIX.search(line) or _ARP_WINDOWS.search(line)
        if not match:
            continue
        ip, mac = match.group(1), normalize_mac(match.group(2))
        if ip in seen or not is_valid_device_address(ip, mac):
            continue
        seen.add(ip)
        rows.append({"ip": ip, "mac": mac})
    return rows


class ArpSource:
    name = "arp"

    def available(self) -> bool:
        return shutil.which("arp") is not None

    async def read_table(self) -> list[dict]:
        return parse_arp_table(await _run("arp", "-a"))

    async def scan(self, request: ScanRequest) -> list[DiscoveredDevice]:
        return [
            DiscoveredDevice(ip=row["ip"], mac=row["mac"])
            for row in await self.read_table()
        ]


# ── Neighbour table (fallback) ────────────────────────────────────


def parse_neighbors(text: str) -> list[dict]:
    """Parse ``ip neigh show`` output, skipping FAILED/INCOMPLETE entries."""
    rows = []
    seen: set[str] = set()
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 5 or "lladdr" not in parts:
            continue
        if parts[-1] in ("FAILED", "INCOMPLETE"):
            continue
        ip = parts[0]
        mac = normalize_mac(parts[parts.index("lladdr") + 1])
        if ip in seen or not is_valid_device_address(ip, mac):
            continue
        seen.add(ip)
        rows.append({"ip": ip, "mac": mac})
    return rows


class NeighborSource:
    name = "neighbor"

    def available(self) -> bool:
        return shutil.which("ip") is not None

    async def scan(self, request: ScanRequest) -> list[DiscoveredDevice]:
        text = await _run("ip", "-4", "neigh", "show")
        return [DiscoveredDevice(ip=r["ip"], mac=r["mac"]) for r in parse_neighbors(text)]


# ── mDNS ──────────────────────────────────────────────────────────


def _decode(value) -> str:
    return value.decode(errors="replace") if isinstance(value, bytes) else str(value or "")


class _Collector:
    """ServiceBrowser listener gathering one device per advertised address."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.devices: dict[str, DiscoveredDevice] = {}

    def add_service(self, zc, type_: str, name: str) -> None:
        info = zc.get_service_info(type_, name, timeout=1500)
        if not info:
            return
        addresses = [a for a in info.parsed_addresses() if ":" not in a]
        if not addresses:
            return
        ip = addresses[0]
        hostname = (info.server or "").rstrip(".")
        service_type = type_.split(".")[0].lstrip("_")
        protocol = "udp" if "._udp." in type_ else "tcp"
        props = {_decode(k): _decode(v) for k, v in (info.properties or {}).items()}
        with self._lock:
            device = self.devices.setdefault(ip, DiscoveredDevice(ip=ip))
            if hostname and not device.hostname:
                device.hostname = hostname
            if props.get("mac") and not device.mac:
                device.mac = normalize_mac(props["mac"])
            device.services.append({
                "type": service_type,
                "name": name.replace(f".{type_}", ""),
                "port": info.port,
                "protocol": protocol,
            })

    def remove_service(self, zc, type_: str, name: str) -> None:
        pass

    def update_service(self, zc, type_: str, name: str) -> None:
        pass


class MdnsSource:
    name = "mdns"

    def available(self) -> bool:
        return True

    async def scan(self, request: ScanRequest) -> list[DiscoveredDevice]:
        seconds = MDNS_BROWSE_SECONDS.get(request.mode, 3.0)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._browse, seconds)

    @staticmethod
    def _browse(seconds: float) -> list[DiscoveredDevice]:
        zc = Zeroconf()
        try:
            types = ZeroconfServiceTypes.find(zc=zc, timeout=min(seconds, 2.0))
            collector = _Collector()
            browsers = [ServiceBrowser(zc, t, collector) for t in types]
            time.sleep(seconds)
            for browser in browsers:
                browser.cancel()
            logger.debug("mDNS: %d service type(s), %d device(s)", len(types), len(collector.devices))
            return list(collector.devices.values())
        finally:
            zc.close()


# ── nmap ──────────────────────────────────────────────────────────

NMAP_ARGS = {
    "fast": (["-sn", "-PR"], None),
    "detailed": (["-O", "--osscan-guess", "-sV"], "22,80,443,3389,5900"),
    "aggressive": (["-A", "--osscan-guess"], "1-1000"),
}


def parse_nmap_xml(text: str) -> list[DiscoveredDevice]:
    """Turn ``nmap -oX -`` output into devices for every host that is up."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        logger.warning("Unparseable nmap output: %s", e)
        return []

    devices = []
    for host in root.findall("host"):
        status = host.find("status")
        if status is not None and status.get("state") != "up":
            continue
        device = None
        for addr in host.findall("address"):
            kind = addr.get("addrtype")
            if kind == "ipv4":
                device = device or DiscoveredDevice(ip=addr.get("addr", ""))
                device.ip = addr.get("addr", "")
            elif kind == "mac":
                device = device or DiscoveredDevice(ip="")
                device.mac = normalize_mac(addr.get("addr"))
                device.vendor = addr.get("vendor", "") or device.vendor
        if device is None or not device.ip:
            continue

        hostname = host.find("hostnames/hostname")
        if hostname is not None:
            device.hostname = hostname.get("name", "")

        osmatch = host.find("os/osmatch")
        if osmatch is not None:
            device.os = osmatch.get("name", "")
            try:
                device.os_accuracy = int(osmatch.get("accuracy", "0"))
            except ValueError:
                device.os_accuracy = 0

        for port in host.findall("ports/port"):
            state = port.find("state")
            if state is None or state.get("state") != "open":
                continue
            service = port.find("service")
            device.ports.append({
                "port": int(port.get("portid", "0")),
                "protocol": port.get("protocol", "tcp"),
                "service": service.get("name", "") if service is not None else "",
                "version": " ".join(
                    filter(None, [
                        service.get("product", "") if service is not None else "",
                        service.get("version", "") if service is not None else "",
                    ])
                ),
            })
        devices.append(device)
    return devices


class NmapSource:
    name = "nmap"

    def available(self) -> bool:
        return shutil.which("nmap") is not None

    def build_args(self, request: ScanRequest, target: str) -> list[str]:
        flags, default_ports = NMAP_ARGS.get(request.mode, NMAP_ARGS["fast"])
        args = ["nmap", *flags]
        ports = request.ports or default_ports
        if ports and request.mode != "fast":
            args += ["-p", ports]
        args += ["-oX", "-", target]
        return args

    async def scan(self, request: ScanRequest) -> list[DiscoveredDevice]:
        target = request.subnet or default_subnet()
        return parse_nmap_xml(await _run(*self.build_args(request, target)))


# ── Direct TCP probe ──────────────────────────────────────────────

COMMON_PORTS = {
    22: "ssh",
    80: "http",
    443: "https",
    631: "ipp",
    3389: "ms-wbt-server",
    5900: "vnc",
    8080: "http-proxy",
}


async def _probe_tcp(ip: str, port: int, timeout: float) -> bool:
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(ip, port), timeout=timeout
        )
        writer.close()
        await writer.wait_closed()
        return True
    except (asyncio.TimeoutError, OSError):
        return False


async def probe_ports(ip: str, ports: dict[int, str] = COMMON_PORTS, timeout: float = 1.0) -> list[dict]:
    """TCP-connect each port concurrently; returns the open ones."""
    numbers = sorted(ports)
    results = await asyncio.gather(*(_probe_tcp(ip, p, timeout) for p in numbers))
    return [
        {"port": p, "protocol": "tcp", "service": ports[p], "version": ""}
        for p, is_open in zip(numbers, results)
        if is_open
    ]
