"""Environment-derived settings for the kiosk console.

Everything tunable lives here.  ``Settings.from_env()`` is read once at app
creation; tests build ``Settings(...)`` directly with the fields they need.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


@dataclass
class Settings:
    """Kiosk console configuration."""

    # Admin gate; empty disables the check
    admin_token: str = ""
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    force_https: bool = False

    # Capacity limits
    max_sessions: int = 100
    max_agents: int = 200
    max_checkin_rate: int = 120  # per address per minute
    max_queue_depth: int = 100

    # Liveness thresholds (seconds)
    online_window: float = 600.0
    stale_evict_after: float = 300.0  # capacity-pressure eviction
    sweep_evict_after: float = 1800.0  # background sweep eviction
    sweep_interval: float = 300.0
    ping_interval: float = 25.0

    # Files
    config_dir: Path = Path("./config")
    static_dir: Path = Path("public")
    client_script: Path = Path("../kiosk-client/start-kiosk.sh")

    # Client artifacts / admin UI prefill
    server_base: str = ""
    default_ssh_username: str = ""
    default_ssh_password: str = ""
    ssh_connect_timeout: float = 12.0

    # Bind address for main()
    host: str = "0.0.0.0"
    port: int = 4000

    # KioskConfig defaults
    kiosk_defaults: dict = field(default_factory=lambda: {
        "kioskUrl": "",
        "title": "Kiosk Display",
        "footerText": " 2025 Kiosk System",
        "timezone": "UTC",
        "disableContextMenu": True,
        "disableShortcuts": True,
    })

    @classmethod
    def from_env(cls) -> Settings:
        origins = os.environ.get("CORS_ORIGIN", "*")
        return cls(
            admin_token=os.environ.get("ADMIN_TOKEN", ""),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()] or ["*"],
            force_https=(
                _env_bool("FORCE_HTTPS", False)
                or os.environ.get("KIOSK_ENV", "").lower() == "production"
            ),
            max_sessions=_env_int("KIOSK_MAX_SESSIONS", 100),
            max_agents=_env_int("KIOSK_MAX_AGENTS", 200),
            max_checkin_rate=_env_int("KIOSK_MAX_CHECKIN_RATE", 120),
            max_queue_depth=_env_int("KIOSK_MAX_QUEUE_DEPTH", 100),
            online_window=_env_float("KIOSK_ONLINE_WINDOW", 600.0),
            stale_evict_after=_env_float("KIOSK_STALE_EVICT_AFTER", 300.0),
            sweep_evict_after=_env_float("KIOSK_SWEEP_EVICT_AFTER", 1800.0),
            sweep_interval=_env_float("KIOSK_SWEEP_INTERVAL", 300.0),
            ping_interval=_env_float("KIOSK_PING_INTERVAL", 25.0),
            config_dir=Path(os.environ.get("KIOSK_CONFIG_DIR", "./config")),
            static_dir=Path(os.environ.get("STATIC_DIR", "public")),
            client_script=Path(
                os.environ.get("KIOSK_CLIENT_SCRIPT", "../kiosk-client/start-kiosk.sh")
            ),
            server_base=os.environ.get("SERVER_BASE", ""),
            default_ssh_username=os.environ.get("DEFAULT_SSH_USERNAME", ""),
            default_ssh_password=os.environ.get("DEFAULT_SSH_PASSWORD", ""),
            ssh_connect_timeout=_env_float("KIOSK_SSH_CONNECT_TIMEOUT", 12.0),
            host=os.environ.get("KIOSK_HOST", "0.0.0.0"),
            port=_env_int("KIOSK_PORT", 4000),
            kiosk_defaults={
                "kioskUrl": os.environ.get("KIOSK_URL", ""),
                "title": os.environ.get("KIOSK_TITLE", "Kiosk Display"),
                "footerText": os.environ.get("KIOSK_FOOTER_TEXT", " 2025 Kiosk System"),
                "timezone": os.environ.get("TIMEZONE", "UTC"),
                "disableContextMenu": _env_bool("DISABLE_CONTEXT_MENU", True),
                "disableShortcuts": _env_bool("DISABLE_SHORTCUTS", True),
            },
        )

    @property
    def config_file(self) -> Path:
        return self.config_dir / "kiosk-config.json"

    @property
    def overrides_file(self) -> Path:
        return self.config_dir / "client-configs.json"

    @property
    def agents_file(self) -> Path:
        return self.config_dir / "heartbeat-clients.json"
