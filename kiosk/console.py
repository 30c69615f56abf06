"""KioskConsole wires the registries together and runs background loops.

This is what the HTTP layer talks to.  One instance per process, created by
the app factory and stored on ``app.state.console``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from kiosk.broadcast import EventBroadcaster, QueueChannel, StreamEvent
from kiosk.commands import CommandQueue
from kiosk.config_store import ConfigStore
from kiosk.discovery import DiscoveryAggregator
from kiosk.presence import PresenceRegistry
from kiosk.ratelimit import RateLimiter
from kiosk.remote import RemoteExecutor
from kiosk.settings import Settings
from kiosk.store import JsonStore

logger = logging.getLogger(__name__)


class KioskConsole:
    def __init__(
        self,
        settings: Settings,
        discovery: DiscoveryAggregator | None = None,
        executor: RemoteExecutor | None = None,
    ) -> None:
        self.settings = settings
        self.config = ConfigStore(
            defaults=settings.kiosk_defaults,
            config_store=JsonStore(settings.config_file),
            overrides_store=JsonStore(settings.overrides_file),
        )
        self.limiter = RateLimiter(limit=settings.max_checkin_rate)
        self.commands = CommandQueue(max_depth=settings.max_queue_depth)
        self.broadcaster = EventBroadcaster(max_sessions=settings.max_sessions)
        self.presence = PresenceRegistry(
            config=self.config,
            commands=self.commands,
            limiter=self.limiter,
            store=JsonStore(settings.agents_file),
            max_agents=settings.max_agents,
            online_window=settings.online_window,
            stale_evict_after=settings.stale_evict_after,
            sweep_evict_after=settings.sweep_evict_after,
        )
        self._discovery = discovery
        self._executor = executor
        self._tasks: list[asyncio.Task] = []

        self.config.on_change(self._on_config_change)

    # Discovery probes the host for installed tools, so build it on first use
    @property
    def discovery(self) -> DiscoveryAggregator:
        if self._discovery is None:
            self._discovery = DiscoveryAggregator()
        return self._discovery

    @property
    def executor(self) -> RemoteExecutor:
        if self._executor is None:
            self._executor = RemoteExecutor(
                discovery=self.discovery,
                connect_timeout=self.settings.ssh_connect_timeout,
            )
        return self._executor

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._every(self.settings.ping_interval, self._ping), name="kiosk-ping"
            ),
            asyncio.create_task(
                self._every(self.settings.sweep_interval, self.sweep), name="kiosk-sweep"
            ),
        ]
        logger.info(
            "KioskConsole started (sessions<=%d, agents<=%d)",
            self.settings.max_sessions, self.settings.max_agents,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        for session in self.broadcaster.list_sessions():
            self.broadcaster.unregister_session(session["id"])
        logger.info("KioskConsole stopped")

    async def _every(self, interval: float, fn: Callable[[], object]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                fn()
            except Exception:
                logger.exception("Background task %s failed", getattr(fn, "__name__", fn))

    def _ping(self) -> None:
        reaped = self.broadcaster.heartbeat()
        if reaped:
            logger.debug("Heartbeat reaped %d session(s)", reaped)

    def sweep(self) -> None:
        """Drop long-silent poll agents and expired rate-limit windows."""
        self.presence.sweep()
        purged = self.limiter.purge()
        if purged:
            logger.debug("Purged %d expired rate-limit window(s)", purged)

    # ── Push sessions ──────────────────────────────────────────────

    def open_session(self, address: str, user_agent: str) -> tuple[str, QueueChannel]:
        """Register a push session and queue its initial config.

        Raises :class:`CapacityExceeded` before any channel is handed out.
        """
        channel = QueueChannel()
        session_id = self.broadcaster.register_session(address, user_agent, channel)
        session = self.broadcaster.get_session(session_id)
        channel.send(StreamEvent("config", self.config.get_for_target(session.address)))
        return session_id, channel

    def close_session(self, session_id: str) -> None:
        self.broadcaster.unregister_session(session_id)

    # ── Config propagation ─────────────────────────────────────────

    def _on_config_change(self, config: dict, address: str | None) -> None:
        if address is None:
            sent = self.broadcaster.broadcast_config(config, resolve=self.config.get_for_target)
            logger.info("Global config pushed to %d session(s)", sent)
        else:
            sent = self.broadcaster.send_to_address(address, config)
            logger.info("Override for %s pushed to %d session(s)", address, sent)
