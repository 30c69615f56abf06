"""Kiosk configuration store.

Holds the global :data:`KioskConfig` mapping and the per-address override map.
Both are persisted as whole JSON records on every mutation.  Listeners
registered with :meth:`ConfigStore.on_change` are told about every successful
update so the broadcaster can push fresh config to push sessions.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable

from kiosk.errors import InvalidInput
from kiosk.netutil import is_valid_ip, is_valid_url, normalize_ip
from kiosk.store import JsonStore

logger = logging.getLogger(__name__)

CONFIG_FIELDS = (
    "kioskUrl",
    "title",
    "footerText",
    "timezone",
    "disableContextMenu",
    "disableShortcuts",
)
OVERRIDE_FIELDS = CONFIG_FIELDS

# (config, address); address is None for a global update
ChangeListener = Callable[[dict, "str | None"], None]


def _filter(fields: dict, allowed: tuple[str, ...]) -> dict:
    return {k: fields[k] for k in allowed if k in fields}


def _validate(fields: dict) -> None:
    url = fields.get("kioskUrl")
    if url and not is_valid_url(url):
        raise InvalidInput("Invalid URL format")


class ConfigStore:
    """Global config + per-address overrides, persisted to two JSON records."""

    def __init__(
        self,
        defaults: dict,
        config_store: JsonStore,
        overrides_store: JsonStore,
    ) -> None:
        self._lock = threading.Lock()
        self._config_store = config_store
        self._overrides_store = overrides_store
        self._listeners: list[ChangeListener] = []

        persisted = config_store.load(default=None)
        self._config: dict[str, Any] = _filter(defaults, CONFIG_FIELDS)
        if isinstance(persisted, dict):
            self._config.update(_filter(persisted, CONFIG_FIELDS))
        elif persisted is not None:
            logger.warning("Ignoring persisted config with unexpected shape")

        self._overrides: dict[str, dict] = {}
        raw = overrides_store.load(default={})
        if isinstance(raw, dict):
            for address, override in raw.items():
                if isinstance(override, dict):
                    self._overrides[address] = _filter(override, OVERRIDE_FIELDS)

    # ── Listeners ──────────────────────────────────────────────────

    def on_change(self, callback: ChangeListener) -> None:
        """Register a callback fired after each successful update."""
        self._listeners.append(callback)

    def _notify(self, config: dict, address: str | None) -> None:
        for cb in self._listeners:
            try:
                cb(config, address)
            except Exception:
                logger.exception("Error in config change listener")

    # ── Reads ──────────────────────────────────────────────────────

    def get(self) -> dict:
        with self._lock:
            return dict(self._config)

    def get_for_target(self, address: str) -> dict:
        """Base config with any override for *address* applied on top."""
        address = normalize_ip(address)
        with self._lock:
            resolved = dict(self._config)
            resolved.update(self._overrides.get(address, {}))
            return resolved

    def list_overrides(self) -> list[dict]:
        with self._lock:
            return [
                {"ip": address, "config": dict(override)}
                for address, override in self._overrides.items()
            ]

    # ── Mutations ──────────────────────────────────────────────────

    def update(self, fields: dict) -> dict:
        """Merge allow-listed *fields* into the global config and persist it."""
        if not isinstance(fields, dict):
            raise InvalidInput("Config update must be an object")
        _validate(fields)
        accepted = _filter(fields, CONFIG_FIELDS)

        with self._lock:
            self._config.update(accepted)
            snapshot = dict(self._config)
            self._config_store.save(snapshot)

        logger.info("Global config updated: %s", sorted(accepted))
        self._notify(snapshot, None)
        return snapshot

    def set_target_override(self, address: str, fields: dict) -> dict:
        """Merge allow-listed *fields* into the override for *address*."""
        address = normalize_ip(address)
        if not is_valid_ip(address):
            raise InvalidInput("Invalid IP address format")
        if not isinstance(fields, dict):
            raise InvalidInput("Override must be an object")
        _validate(fields)
        accepted = _filter(fields, OVERRIDE_FIELDS)

        with self._lock:
            merged = dict(self._overrides.get(address, {}))
            merged.update(accepted)
            self._overrides[address] = merged
            self._overrides_store.save(copy.deepcopy(self._overrides))
            resolved = dict(self._config)
            resolved.update(merged)

        logger.info("Override for %s updated: %s", address, sorted(accepted))
        self._notify(resolved, address)
        return dict(merged)
