"""Per-agent outbound command mailboxes, drained on the agent's next check-in."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from kiosk.errors import QueueFull


@dataclass
class QueuedCommand:
    type: str
    payload: Any = field(default_factory=dict)
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return {"type": self.type, "payload": self.payload, "createdAt": self.created_at}


class CommandQueue:
    """Bounded FIFO of :class:`QueuedCommand` per agent key."""

    def __init__(self, max_depth: int = 100) -> None:
        self.max_depth = max_depth
        self._queues: dict[str, list[QueuedCommand]] = {}
        self._lock = threading.Lock()

    def enqueue(self, key: str, type: str, payload: Any = None) -> int:
        """Append a command for *key*; return the new queue length."""
        with self._lock:
            queue = self._queues.setdefault(key, [])
            if len(queue) >= self.max_depth:
                raise QueueFull("Command queue full for target")
            queue.append(QueuedCommand(type=type, payload=payload if payload is not None else {}))
            return len(queue)

    def drain(self, key: str) -> list[QueuedCommand]:
        """Return and clear everything queued for *key*."""
        with self._lock:
            return self._queues.pop(key, [])

    def discard(self, key: str) -> None:
        with self._lock:
            self._queues.pop(key, None)

    def depth(self, key: str) -> int:
        with self._lock:
            return len(self._queues.get(key, ()))
