"""LAN discovery: mDNS, ARP and nmap sources behind one aggregator."""

from kiosk.discovery.aggregator import DiscoveryAggregator, merge_devices
from kiosk.discovery.models import DiscoveredDevice, ScanResult

__all__ = ["DiscoveryAggregator", "DiscoveredDevice", "ScanResult", "merge_devices"]
