"""SSH abstraction for fleet commands.

Uses asyncssh for real SSH; :class:`MockSSHConnection` is provided for tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import asyncssh

logger = logging.getLogger(__name__)

# Reported when the channel closed without an exit status
NO_EXIT_STATUS = -1


class SessionLost(Exception):
    """The remote end dropped the connection mid-command (e.g. on reboot)."""


@dataclass
class SSHResult:
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0


class SSHConnection(Protocol):
    """Protocol for SSH connections (asyncssh or the mock)."""

    async def run(self, command: str) -> SSHResult:
        ...

    async def put_file(self, local_path: str, remote_path: str) -> None:
        ...

    async def close(self) -> None:
        ...


class AsyncSSHConnection:
    """Real SSH connection using asyncssh."""

    def __init__(self, conn) -> None:
        self._conn = conn

    async def run(self, command: str) -> SSHResult:
        try:
            result = await self._conn.run(f"cd /tmp && {command}", check=False)
        except (asyncssh.ConnectionLost, asyncssh.DisconnectError, asyncssh.ChannelOpenError) as e:
            raise SessionLost(str(e)) from e
        return SSHResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            returncode=result.returncode if result.returncode is not None else NO_EXIT_STATUS,
        )

    async def put_file(self, local_path: str, remote_path: str) -> None:
        async with self._conn.start_sftp_client() as sftp:
            await sftp.put(local_path, remote_path)

    async def close(self) -> None:
        self._conn.close()
        await self._conn.wait_closed()


class MockSSHConnection:
    """Mock SSH for testing; returns pre-configured responses."""

    def __init__(
        self,
        responses: dict[str, SSHResult] | None = None,
        drop_on: str | None = None,
    ) -> None:
        self._responses = responses or {}
        self._default = SSHResult(stdout="", returncode=1)
        self._drop_on = drop_on
        self.commands: list[str] = []
        self.uploads: list[tuple[str, str]] = []
        self.closed = False

    async def run(self, command: str) -> SSHResult:
        self.commands.append(command)
        if self._drop_on and self._drop_on in command:
            raise SessionLost("connection closed by remote host")
        # Check exact match first, then prefix match
        if command in self._responses:
            return self._responses[command]
        for key, val in self._responses.items():
            if command.startswith(key):
                return val
        return self._default

    async def put_file(self, local_path: str, remote_path: str) -> None:
        self.uploads.append((local_path, remote_path))

    async def close(self) -> None:
        self.closed = True


async def connect_ssh(
    host: str,
    username: str,
    password: str | None = None,
    key_path: str | None = None,
    port: int = 22,
    connect_timeout: float = 12.0,
) -> AsyncSSHConnection:
    """Open an asyncssh connection to a fleet host."""
    kwargs: dict = {
        "host": host,
        "port": port,
        "username": username,
        "known_hosts": None,  # Fleet hosts are re-imaged; don't pin keys
        "connect_timeout": connect_timeout,
    }
    if password:
        kwargs["password"] = password
    if key_path:
        kwargs["client_keys"] = [key_path]

    conn = await asyncssh.connect(**kwargs)
    logger.debug("SSH connected to %s@%s:%d", username, host, port)
    return AsyncSSHConnection(conn)
