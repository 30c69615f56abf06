"""Command builders for fleet jobs and client-script templating.

A :class:`RemoteJob` is everything the executor needs for one host: files to
upload, one shell command line, and how to judge success.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from kiosk.errors import Unavailable

REMOTE_TMP = "/tmp/start-kiosk.sh"
INSTALL_PATH = "/usr/local/bin/start-kiosk.sh"
CLIENT_CONF = "/etc/kiosk-client.conf"
SETUP_MARKER = "Setup complete!"

_SERVER_BASE_LINE = re.compile(r'^(\s*SERVER_BASE=)"[^"]*"', re.MULTILINE)


@dataclass
class Credentials:
    username: str
    password: str | None = None
    key_path: str | None = None
    port: int = 22


@dataclass
class RemoteJob:
    command: str
    uploads: list[tuple[str, str]] = field(default_factory=list)
    # The command takes the host down (reboot); a dropped link is not a failure
    ends_session: bool = False
    # Any exit status counts as success once the command was dispatched
    ignore_exit_code: bool = False
    success_marker: str | None = None


def sudo_prefix(password: str | None) -> str:
    if password:
        return f'echo {shlex.quote(password)} | sudo -S -p ""'
    return "sudo"


def build_restart_job(credentials: Credentials) -> RemoteJob:
    return RemoteJob(
        command=f"{sudo_prefix(credentials.password)} reboot",
        ends_session=True,
        ignore_exit_code=True,
    )


def client_config_lines(
    server_base: str,
    credentials: Credentials,
    ssh_config: dict | None = None,
) -> list[str]:
    """Lines for ``/etc/kiosk-client.conf``.

    SSH seeding keys are written when *ssh_config* enables it, or by default
    whenever a password was supplied.
    """
    lines = [f'SERVER_BASE="{server_base}"']
    sc = ssh_config or {}
    enable = sc.get("enable")
    if enable is None:
        enable = bool(credentials.password)
    if str(enable).lower() != "true":
        return lines

    lines.append('SSH_ENABLE="true"')
    user = sc.get("user") or credentials.username
    if user:
        lines.append(f'SSH_USER="{user}"')
    password = credentials.password or sc.get("password")
    if isinstance(password, str) and password:
        lines.append(f'SSH_PASSWORD="{password}"')
        lines.append('SSH_PASSWORD_AUTH="yes"')
    if sc.get("authorizedKey"):
        key = str(sc["authorizedKey"]).replace('"', '\\"')
        lines.append(f'SSH_AUTHORIZED_KEY="{key}"')
    if sc.get("passwordAuth") in ("yes", "no"):
        lines.append(f'SSH_PASSWORD_AUTH="{sc["passwordAuth"]}"')
    return lines


def build_deploy_job(
    credentials: Credentials,
    server_base: str,
    script_path: Path,
    run_setup: bool = False,
    reboot: bool = False,
    ssh_config: dict | None = None,
) -> RemoteJob:
    """Install the client script and its config file, then restart browsers."""
    sudo = sudo_prefix(credentials.password)
    conf = " ".join(
        shlex.quote(line) for line in client_config_lines(server_base, credentials, ssh_config)
    )
    cmds = [
        f"{sudo} mkdir -p /usr/local/bin",
        f"{sudo} mv {REMOTE_TMP} {INSTALL_PATH}",
        f"{sudo} chown root:root {INSTALL_PATH}",
        f"{sudo} chmod +x {INSTALL_PATH}",
        f"printf '%s\\n' {conf} | {sudo} tee {CLIENT_CONF} > /dev/null",
    ]
    if run_setup:
        cmds.append(f"{sudo} bash {INSTALL_PATH}")
    # Grouped so a missing browser process cannot mask a failed install step
    cmds.append("{ pkill -f 'google-chrome' >/dev/null 2>&1 || true; }")
    cmds.append("{ pkill -f 'firefox' >/dev/null 2>&1 || true; }")
    if reboot:
        cmds.append(f"{sudo} reboot")

    return RemoteJob(
        command=" && ".join(cmds),
        uploads=[(str(script_path), REMOTE_TMP)],
        ends_session=reboot,
        success_marker=SETUP_MARKER if run_setup else None,
    )


# ── Client script ─────────────────────────────────────────────────


def load_client_script(path: Path) -> str:
    if not path.is_file():
        raise Unavailable(f"Client script not found: {path}")
    return path.read_text(encoding="utf-8")


def render_client_script(content: str, server_base: str, now: datetime | None = None) -> str:
    """Point the script's ``SERVER_BASE="..."`` line at *server_base*."""
    now = now or datetime.now(timezone.utc)
    content = _SERVER_BASE_LINE.sub(lambda m: f'{m.group(1)}"{server_base}"', content, count=1)
    header = (
        f"# --- Templated by kiosk-server at {now.isoformat()} ---\n"
        f"# SERVER_BASE={server_base}\n"
    )
    if content.startswith("#!/bin/bash\n"):
        content = "#!/bin/bash\n" + header + content[len("#!/bin/bash\n"):]
    return content
