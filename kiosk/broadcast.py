"""Push-session registry and event fan-out.

Each connected display holds one :class:`PushSession`.  The broadcaster only
talks to an :class:`OutboundChannel` (``send`` / ``close``); the event-stream
transport lives in the API layer and drains a :class:`QueueChannel`.

  Server → display events:
    config   full resolved KioskConfig
    action   {"type": "reload" | "blackout" | ..., "value": ...}
    ping     keep-alive comment, also the liveness probe
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from kiosk.errors import CapacityExceeded
from kiosk.netutil import normalize_ip

logger = logging.getLogger(__name__)

PING = "ping"


@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: Any = None

    def encode(self) -> str:
        """Server-Sent Events wire form."""
        if self.event == PING:
            return ": ping\n\n"
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"


class ChannelClosed(Exception):
    """Raised by a channel whose peer has gone away."""


class OutboundChannel(Protocol):
    """Per-session outbound channel: the event stream queue or a test double."""

    def send(self, event: StreamEvent) -> None:
        ...

    def close(self) -> None:
        ...


class QueueChannel:
    """Bounded asyncio queue drained by the event-stream response.

    A consumer that falls ``maxsize`` events behind is treated as dead.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, event: StreamEvent) -> None:
        if self.closed:
            raise ChannelClosed("channel closed")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.close()
            raise ChannelClosed("consumer too slow")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def receive(self, timeout: float | None = None) -> StreamEvent | None:
        """Next event; ``None`` once closed. Raises ``asyncio.TimeoutError`` on timeout."""
        if self.closed and self._queue.empty():
            return None
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)


@dataclass
class PushSession:
    """One long-lived push-connected display."""

    id: str
    address: str
    user_agent: str
    channel: OutboundChannel
    connected_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    current_url: str | None = None
    seq: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ip": self.address,
            "userAgent": self.user_agent,
            "connectedAt": self.connected_at,
            "currentUrl": self.current_url or "Unknown",
        }


class EventBroadcaster:
    """Owns the session table and fans events out to it.

    Writes happen under the table lock, so each session sees broadcasts in
    the order they were issued.  A failed write reaps that session only.
    """

    def __init__(self, max_sessions: int = 100) -> None:
        self.max_sessions = max_sessions
        self._sessions: dict[str, PushSession] = {}
        self._lock = threading.RLock()
        self._seq = 0

    # ── Session lifecycle ──────────────────────────────────────────

    def register_session(
        self,
        address: str,
        user_agent: str,
        channel: OutboundChannel,
    ) -> str:
        """Add a session; raise :class:`CapacityExceeded` when the table is full."""
        with self._lock:
            if len(self._sessions) >= self.max_sessions:
                raise CapacityExceeded("Too many connections, try again later")
            self._seq += 1
            session_id = f"sess-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"
            self._sessions[session_id] = PushSession(
                id=session_id,
                address=normalize_ip(address),
                user_agent=user_agent or "",
                channel=channel,
                seq=self._seq,
            )
        logger.info("Push session connected: %s from %s", session_id, address)
        return session_id

    def unregister_session(self, session_id: str) -> bool:
        """Remove a session. Safe to call repeatedly."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        try:
            session.channel.close()
        except Exception:
            logger.debug("Error closing channel for %s", session_id, exc_info=True)
        logger.info("Push session disconnected: %s", session_id)
        return True

    def get_session(self, session_id: str) -> PushSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Fan-out ────────────────────────────────────────────────────

    def broadcast_config(
        self,
        config: dict,
        resolve: Callable[[str], dict] | None = None,
    ) -> int:
        """Send a config event to every session.

        With *resolve*, each session receives ``resolve(session.address)``
        instead, so per-address overrides survive a global update.
        """
        if resolve is None:
            return self._deliver(lambda s: StreamEvent("config", config))
        return self._deliver(lambda s: StreamEvent("config", resolve(s.address)))

    def broadcast_action(self, type: str, value: Any = True) -> int:
        event = StreamEvent("action", {"type": type, "value": value})
        return self._deliver(lambda s: event)

    def send_to_address(self, address: str, config: dict) -> int:
        """Send a config event only to sessions recorded at *address*."""
        address = normalize_ip(address)
        event = StreamEvent("config", config)
        return self._deliver(lambda s: event, only=lambda s: s.address == address)

    def send_to_session(self, session_id: str, event: StreamEvent) -> bool:
        return self._deliver(lambda s: event, only=lambda s: s.id == session_id) == 1

    def heartbeat(self) -> int:
        """Ping every session; returns how many were reaped."""
        before = len(self._sessions)
        ping = StreamEvent(PING)
        delivered = self._deliver(lambda s: ping)
        return max(0, before - delivered)

    def _deliver(
        self,
        build: Callable[[PushSession], StreamEvent],
        only: Callable[[PushSession], bool] | None = None,
    ) -> int:
        delivered = 0
        dead: list[str] = []
        with self._lock:
            for session in list(self._sessions.values()):
                if only is not None and not only(session):
                    continue
                try:
                    session.channel.send(build(session))
                    delivered += 1
                except ChannelClosed:
                    dead.append(session.id)
                except Exception:
                    logger.warning("Write to session %s failed", session.id, exc_info=True)
                    dead.append(session.id)
            for session_id in dead:
                self.unregister_session(session_id)
        if dead:
            logger.info("Reaped %d dead push session(s)", len(dead))
        return delivered

    # ── Admin view / out-of-band registration ──────────────────────

    def list_sessions(self) -> list[dict]:
        with self._lock:
            return [s.to_dict() for s in self._sessions.values()]

    def update_session_url(self, address: str, url: str | None) -> int:
        """Record *url* on the most recently registered session at *address*."""
        address = normalize_ip(address)
        with self._lock:
            matches = [s for s in self._sessions.values() if s.address == address]
            if not matches:
                return 0
            newest = max(matches, key=lambda s: s.seq)
            newest.current_url = url or "Unknown"
        logger.info("Session %s at %s reports URL %s", newest.id, address, newest.current_url)
        return 1
