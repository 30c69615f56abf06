"""MAC address → hardware vendor lookup.

Uses nmap's ``nmap-mac-prefixes`` database when it is installed, falling back
to a small built-in OUI table.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

_PREFIX_FILES = (
    Path("/usr/share/nmap/nmap-mac-prefixes"),
    Path("/usr/local/share/nmap/nmap-mac-prefixes"),
)

_BUILTIN_OUI: dict[str, str] = {
    "005056": "VMware",
    "000C29": "VMware",
    "000569": "VMware",
    "001C42": "VMware",
    "080027": "VirtualBox",
    "00155D": "Microsoft (Hyper-V)",
    "0003FF": "Microsoft",
    "B0924A": "D-Link",
    "E8DE27": "TP-Link",
    "50C7BF": "TP-Link",
    "A0F3C1": "TP-Link",
    "2028BC": "Samsung",
    "34CDBE": "Samsung",
    "F8D0AC": "Samsung",
    "08D23E": "LG Electronics",
    "0C8BFD": "Apple",
    "001CB3": "Apple",
    "000393": "Apple",
    "406C8F": "Apple",
    "9801A7": "Apple",
    "ACDE48": "Apple",
    "B827EB": "Raspberry Pi",
    "DCA632": "Raspberry Pi",
    "E45F01": "Raspberry Pi",
    "001B44": "Intel",
    "001320": "Intel",
    "001517": "Intel",
    "D89EF3": "Intel",
    "94C691": "Intel",
    "A4BB6D": "Intel",
    "0050F2": "Realtek",
    "00E04C": "Realtek",
    "525400": "QEMU/KVM",
    "00163E": "Xen",
    "001A4D": "Cisco",
    "000AB8": "Cisco",
    "00180A": "Cisco",
    "887556": "Huawei",
    "F07959": "Huawei",
    "001E10": "Huawei",
}

_SUFFIX_RE = re.compile(
    r"\s+(Inc\.?|Corp\.?|Corporation|Ltd\.?|Limited|Co\.?,?\s*Ltd\.?|GmbH|S\.A\.?"
    r"|LLC|L\.L\.C\.|PLC|AG)$",
    re.IGNORECASE,
)
_TRAILING_WORDS = (
    re.compile(r"\s+Technologies?$", re.IGNORECASE),
    re.compile(r"\s+Electronics?$", re.IGNORECASE),
    re.compile(r"\s+International$", re.IGNORECASE),
    re.compile(r"\s+Company$", re.IGNORECASE),
)


def clean_vendor_name(vendor: str | None) -> str:
    """Shorten an OUI registry name to something display-friendly."""
    if not vendor:
        return "Unknown"
    cleaned = re.split(r"[,\n\r]", vendor)[0].strip()
    cleaned = _SUFFIX_RE.sub("", cleaned)
    for pattern in _TRAILING_WORDS:
        cleaned = pattern.sub("", cleaned)
    cleaned = cleaned.strip()
    if len(cleaned) > 30:
        cleaned = cleaned[:27] + "..."
    return cleaned or "Unknown"


def _oui(mac: str) -> str:
    return re.sub(r"[^0-9A-Fa-f]", "", mac).upper()[:6]


@lru_cache(maxsize=1)
def _prefix_database() -> dict[str, str]:
    for path in _PREFIX_FILES:
        if not path.exists():
            continue
        table: dict[str, str] = {}
        try:
            with path.open("r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    if line.startswith("#") or " " not in line:
                        continue
                    prefix, name = line.rstrip("\n").split(" ", 1)
                    table[prefix.upper()] = name.strip()
        except OSError as e:
            logger.warning("Failed to read %s: %s", path, e)
            continue
        logger.debug("Loaded %d OUI prefixes from %s", len(table), path)
        return table
    return {}


def lookup_vendor(mac: str | None) -> str:
    """Best-effort manufacturer for *mac*; ``Unknown Vendor`` when not found."""
    if not mac:
        return "Unknown"
    prefix = _oui(mac)
    if len(prefix) != 6:
        return "Unknown"
    found = _prefix_database().get(prefix)
    if found:
        return clean_vendor_name(found)
    return _BUILTIN_OUI.get(prefix, "Unknown Vendor")
