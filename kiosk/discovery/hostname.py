"""Reverse hostname resolution with a short-lived cache.

Lookups go through reverse DNS first and ``avahi-resolve`` second (when it
is installed).  Results, including misses, are cached for an hour so that
repeated scans of the same subnet don't re-query every address.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import socket
import threading
import time
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

CACHE_TTL = 3600.0


class HostnameResolver:
    def __init__(
        self,
        ttl: float = CACHE_TTL,
        concurrency: int = 10,
        timeout: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.concurrency = concurrency
        self.timeout = timeout
        self._clock = clock
        self._cache: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def cached(self, ip: str) -> str | None:
        """Cached name for *ip*, or ``None`` when absent or expired."""
        with self._lock:
            entry = self._cache.get(ip)
            if entry is None:
                return None
            name, stored_at = entry
            if self._clock() - stored_at > self.ttl:
                del self._cache[ip]
                return None
            return name

    def remember(self, ip: str, name: str) -> None:
        with self._lock:
            self._cache[ip] = (name, self._clock())

    async def resolve(self, ip: str) -> str:
        hit = self.cached(ip)
        if hit is not None:
            return hit
        name = await self._lookup(ip)
        self.remember(ip, name)
        return name

    async def resolve_many(self, ips: Iterable[str]) -> dict[str, str]:
        """Resolve several addresses with at most ``concurrency`` in flight."""
        sem = asyncio.Semaphore(self.concurrency)

        async def one(ip: str) -> tuple[str, str]:
            async with sem:
                return ip, await self.resolve(ip)

        pairs = await asyncio.gather(*(one(ip) for ip in set(ips)))
        return {ip: name for ip, name in pairs if name}

    # ── Lookup methods ─────────────────────────────────────────────

    async def _lookup(self, ip: str) -> str:
        name = await self._reverse_dns(ip)
        if not name and shutil.which("avahi-resolve"):
            name = await self._avahi(ip)
        return name

    async def _reverse_dns(self, ip: str) -> str:
        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, socket.gethostbyaddr, ip),
                timeout=self.timeout,
            )
        except (socket.herror, socket.gaierror, OSError, asyncio.TimeoutError):
            return ""
        name = result[0]
        return "" if name == ip else name

    async def _avahi(self, ip: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "avahi-resolve", "-a", ip,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            return ""
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ""
        parts = stdout.decode(errors="replace").split()
        if len(parts) >= 2:
            logger.debug("avahi resolved %s -> %s", ip, parts[1])
            return parts[1]
        return ""
