"""Poll-agent presence registry.

Bash-based kiosk agents call in periodically (``POST /api/heartbeat``).  Each
check-in upserts the agent's record, persists the whole table, resolves the
agent's config and drains its command queue.  Records are keyed by the
agent-declared id (falling back to its address) so DHCP renewals don't
split one agent into two.

Two staleness cutoffs apply:
  - ``stale_evict_after``: evicted only when the table is full and a new key
    wants in
  - ``sweep_evict_after``: evicted by the periodic background sweep
Online status is derived at read time from ``online_window``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable

from kiosk.commands import CommandQueue, QueuedCommand
from kiosk.config_store import ConfigStore
from kiosk.errors import CapacityExceeded
from kiosk.netutil import normalize_ip
from kiosk.ratelimit import RateLimiter
from kiosk.store import JsonStore

logger = logging.getLogger(__name__)

# Incoming field name → PollAgent attribute
_AGENT_FIELDS = {
    "hostname": "hostname",
    "version": "version",
    "status": "status",
    "tags": "tags",
    "metrics": "metrics",
    "currentUrl": "current_url",
}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _parse_iso(value: Any) -> float:
    if not isinstance(value, str) or not value:
        return 0.0
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


@dataclass
class PollAgent:
    key: str
    ip: str
    id: str | None = None
    hostname: str | None = None
    version: str | None = None
    status: Any = None
    tags: Any = None
    metrics: Any = None
    current_url: str | None = None
    last_seen: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ip": self.ip,
            "hostname": self.hostname,
            "version": self.version,
            "status": self.status,
            "tags": self.tags,
            "metrics": self.metrics,
            "currentUrl": self.current_url,
            "lastSeen": _iso(self.last_seen),
        }

    @classmethod
    def from_dict(cls, key: str, data: dict) -> PollAgent:
        return cls(
            key=key,
            ip=data.get("ip") or "",
            id=data.get("id"),
            hostname=data.get("hostname"),
            version=data.get("version"),
            status=data.get("status"),
            tags=data.get("tags"),
            metrics=data.get("metrics"),
            current_url=data.get("currentUrl"),
            last_seen=_parse_iso(data.get("lastSeen")),
        )


@dataclass
class CheckInResult:
    config: dict
    commands: list[QueuedCommand]
    agent: PollAgent


class PresenceRegistry:
    """Owns the poll-agent table."""

    def __init__(
        self,
        config: ConfigStore,
        commands: CommandQueue,
        limiter: RateLimiter,
        store: JsonStore,
        max_agents: int = 200,
        online_window: float = 600.0,
        stale_evict_after: float = 300.0,
        sweep_evict_after: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._commands = commands
        self._limiter = limiter
        self._store = store
        self.max_agents = max_agents
        self.online_window = online_window
        self.stale_evict_after = stale_evict_after
        self.sweep_evict_after = sweep_evict_after
        self._clock = clock
        self._agents: dict[str, PollAgent] = {}
        self._lock = threading.Lock()

        raw = store.load(default={})
        if isinstance(raw, dict):
            for key, data in raw.items():
                if isinstance(data, dict):
                    self._agents[key] = PollAgent.from_dict(key, data)
        if self._agents:
            logger.info("Loaded %d poll agent(s) from %s", len(self._agents), store.path)

    @staticmethod
    def resolve_key(agent_id: Any, address: str) -> str:
        """Agent-declared id if present, else its address."""
        if agent_id is not None and str(agent_id).strip():
            return str(agent_id).strip()
        return normalize_ip(address)

    # ── Check-in ───────────────────────────────────────────────────

    def check_in(self, key: str, address: str, fields: dict) -> CheckInResult:
        """Record a check-in and return the agent's config and queued commands.

        Raises :class:`RateLimited` or :class:`CapacityExceeded` before any
        state is touched.
        """
        address = normalize_ip(address)
        self._limiter.hit(address)

        now = self._clock()
        with self._lock:
            if key not in self._agents and len(self._agents) >= self.max_agents:
                self._evict_locked(now - self.stale_evict_after)
                if len(self._agents) >= self.max_agents:
                    raise CapacityExceeded("Too many tracked agents")

            agent = self._agents.get(key)
            if agent is None:
                agent = PollAgent(key=key, ip=address)
                self._agents[key] = agent
                logger.info("New poll agent: %s at %s", key, address)

            agent.ip = address
            agent_id = fields.get("id")
            if not _is_empty(agent_id):
                agent.id = str(agent_id)
            for name, attr in _AGENT_FIELDS.items():
                value = fields.get(name)
                if not _is_empty(value):
                    setattr(agent, attr, value)
            agent.last_seen = now
            self._persist_locked()
            snapshot = replace(agent)

        config = self._config.get_for_target(address)
        commands = self._commands.drain(key)
        if commands:
            logger.info("Delivering %d command(s) to %s", len(commands), key)
        return CheckInResult(config=config, commands=commands, agent=snapshot)

    # ── Admin views ────────────────────────────────────────────────

    def is_online(self, agent: PollAgent, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        return agent.last_seen > 0 and (now - agent.last_seen) < self.online_window

    def list_agents(self) -> list[dict]:
        now = self._clock()
        with self._lock:
            agents = list(self._agents.values())
        return [
            {"key": a.key, "online": self.is_online(a, now), **a.to_dict()}
            for a in agents
        ]

    def get_agent(self, key: str) -> PollAgent | None:
        with self._lock:
            return self._agents.get(key)

    def merged_view(self, sessions: list[dict]) -> list[dict]:
        """Join push sessions and poll agents by network address."""
        now = self._clock()
        by_address: dict[str, dict] = {}

        def entry(address: str) -> dict:
            return by_address.setdefault(
                address,
                {"ip": address, "online": False, "sessions": [], "agents": []},
            )

        for s in sessions:
            e = entry(s.get("ip", ""))
            e["sessions"].append(s)
            e["online"] = True

        with self._lock:
            agents = list(self._agents.values())
        for a in agents:
            e = entry(a.ip)
            online = self.is_online(a, now)
            e["agents"].append({"key": a.key, "online": online, **a.to_dict()})
            e["online"] = e["online"] or online
            if a.hostname and not e.get("hostname"):
                e["hostname"] = a.hostname

        return sorted(by_address.values(), key=lambda e: e["ip"])

    # ── Eviction ───────────────────────────────────────────────────

    def sweep(self) -> int:
        """Remove agents silent past ``sweep_evict_after``. Returns the count."""
        cutoff = self._clock() - self.sweep_evict_after
        with self._lock:
            removed = self._evict_locked(cutoff)
        if removed:
            logger.info("Swept %d stale poll agent(s)", removed)
        return removed

    def _evict_locked(self, cutoff: float) -> int:
        stale = [k for k, a in self._agents.items() if a.last_seen < cutoff]
        for key in stale:
            del self._agents[key]
            self._commands.discard(key)
        if stale:
            self._persist_locked()
        return len(stale)

    def _persist_locked(self) -> None:
        self._store.save({k: a.to_dict() for k, a in self._agents.items()})

    def __len__(self) -> int:
        return len(self._agents)
