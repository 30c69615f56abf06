"""Kiosk Console: fleet management for kiosk displays.

Server-side components:
  - ConfigStore: global kiosk config + per-address overrides
  - EventBroadcaster: push sessions (event stream) and fan-out
  - PresenceRegistry: poll agents (heartbeat check-ins) and merged fleet view
  - CommandQueue: per-agent command mailboxes
  - DiscoveryAggregator: LAN scanning across mDNS / ARP / nmap
  - RemoteExecutor: SSH deploy and restart of fleet members
"""

__version__ = "1.0.0"
