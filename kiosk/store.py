"""File-backed JSON record store.

Each persisted record (global config, override map, poll-agent table) is one
JSON file.  Loads tolerate a missing or corrupt file; saves never raise, the
in-memory copy stays authoritative and the next successful save recovers
durability.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class JsonStore:
    """Load/save one JSON document at *path*."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self, default: Any = None) -> Any:
        """Return the stored document, or *default* if absent or unreadable."""
        if not self.path.exists():
            return default
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to load %s, using defaults: %s", self.path, e)
            return default

    def save(self, data: Any) -> bool:
        """Write *data* atomically. Returns False (after logging) on failure."""
        with self._lock:
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp, self.path)
                return True
            except (OSError, TypeError, ValueError) as e:
                logger.warning("Failed to persist %s: %s", self.path, e)
                return False
