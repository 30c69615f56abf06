"""Data models shared by discovery sources and the aggregator."""

from __future__ import annotations

from dataclasses import dataclass, field

SCAN_MODES = ("fast", "detailed", "aggressive")

# Per-source timeout (seconds) by scan mode
SOURCE_TIMEOUTS = {"fast": 8.0, "detailed": 90.0, "aggressive": 240.0}
MDNS_BROWSE_SECONDS = {"fast": 3.0, "detailed": 5.0, "aggressive": 5.0}


@dataclass
class ScanRequest:
    mode: str = "fast"
    subnet: str | None = None
    ports: str | None = None

    @property
    def timeout(self) -> float:
        return SOURCE_TIMEOUTS.get(self.mode, SOURCE_TIMEOUTS["fast"])


@dataclass
class DiscoveredDevice:
    """One network endpoint, possibly reported by several sources."""

    ip: str
    mac: str = ""
    hostname: str = ""
    name: str = ""
    vendor: str = ""
    os: str = ""
    os_accuracy: int = 0
    device_type: str = ""
    ports: list[dict] = field(default_factory=list)
    services: list[dict] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "ip": self.ip,
            "mac": self.mac,
            "hostname": self.hostname,
            "name": self.name,
            "vendor": self.vendor,
            "os": self.os,
            "osAccuracy": self.os_accuracy,
            "deviceType": self.device_type,
            "ports": self.ports,
            "services": self.services,
            "sources": self.sources,
        }


@dataclass
class ScanResult:
    devices: list[DiscoveredDevice]
    scan_time_ms: int
    methods_used: list[str]
    mode: str = "fast"

    def to_dict(self) -> dict:
        return {
            "devices": [d.to_dict() for d in self.devices],
            "scanMode": self.mode,
            "scanTime": self.scan_time_ms,
            "methods": self.methods_used,
            "totalDevices": len(self.devices),
        }
