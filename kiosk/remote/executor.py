"""RemoteExecutor: run one job on many fleet hosts.

Every host gets its own SSH session.  A host that can't be reached, rejects
the credentials, or fails its command only fails its own result entry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from kiosk.discovery import DiscoveryAggregator
from kiosk.errors import InvalidInput, KioskError, RemoteExecutionFailure
from kiosk.netutil import is_unicast_ipv4, normalize_ip
from kiosk.remote.scripts import Credentials, RemoteJob
from kiosk.remote.ssh import NO_EXIT_STATUS, SessionLost, SSHConnection, SSHResult, connect_ssh

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[SSHConnection]]
CommandBuilder = Callable[[str], RemoteJob]


@dataclass
class HostResult:
    host: str
    ok: bool
    code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    def to_dict(self) -> dict:
        data = {
            "host": self.host,
            "ok": self.ok,
            "code": self.code,
            "output": self.stdout,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


class RemoteExecutor:
    def __init__(
        self,
        discovery: DiscoveryAggregator | None = None,
        connect: Connector = connect_ssh,
        connect_timeout: float = 12.0,
        concurrency: int = 8,
    ) -> None:
        self._discovery = discovery
        self._connect = connect
        self.connect_timeout = connect_timeout
        self.concurrency = concurrency

    async def resolve_hosts(self, hosts: list[str] | None) -> list[str]:
        """Explicit *hosts*, or every device a fast scan can see.

        Only unicast IPv4 addresses survive; order is preserved, duplicates
        dropped.
        """
        candidates: list[str] = []
        if hosts:
            candidates = [normalize_ip(h) for h in hosts if h]
        elif self._discovery is not None:
            try:
                result = await self._discovery.scan("fast")
                candidates = [d.ip for d in result.devices]
            except KioskError as e:
                logger.warning("LAN scan for remote targets failed: %s", e.message)

        seen: set[str] = set()
        ips = []
        for ip in candidates:
            if ip in seen or not is_unicast_ipv4(ip):
                continue
            seen.add(ip)
            ips.append(ip)
        return ips

    async def run_on_hosts(
        self,
        hosts: list[str] | None,
        credentials: Credentials,
        command_builder: CommandBuilder,
    ) -> list[HostResult]:
        if not credentials.username:
            raise InvalidInput("username is required")
        ips = await self.resolve_hosts(hosts)
        if not ips:
            raise InvalidInput("No target hosts found")

        sem = asyncio.Semaphore(self.concurrency)

        async def one(ip: str) -> HostResult:
            async with sem:
                return await self._run_one(ip, credentials, command_builder(ip))

        results = await asyncio.gather(*(one(ip) for ip in ips))
        ok = sum(1 for r in results if r.ok)
        logger.info("Remote job finished: %d/%d host(s) ok", ok, len(results))
        return list(results)

    # ── Per host ───────────────────────────────────────────────────

    async def _run_one(self, ip: str, credentials: Credentials, job: RemoteJob) -> HostResult:
        label = f"{credentials.username}@{ip}"
        try:
            return await self._execute(ip, label, credentials, job)
        except RemoteExecutionFailure as e:
            logger.warning("%s: %s", label, e.message)
            return HostResult(host=label, ok=False, error=e.message)
        except Exception as e:
            logger.exception("Unexpected error running remote job on %s", label)
            return HostResult(host=label, ok=False, error=str(e))

    async def _execute(
        self, ip: str, label: str, credentials: Credentials, job: RemoteJob
    ) -> HostResult:
        try:
            ssh = await self._connect(
                ip,
                username=credentials.username,
                password=credentials.password,
                key_path=credentials.key_path,
                port=credentials.port,
                connect_timeout=self.connect_timeout,
            )
        except Exception as e:
            raise RemoteExecutionFailure(label, f"Connection failed: {e}") from e

        try:
            for local_path, remote_path in job.uploads:
                try:
                    await ssh.put_file(local_path, remote_path)
                except Exception as e:
                    raise RemoteExecutionFailure(label, f"Upload failed: {e}") from e

            try:
                result = await ssh.run(job.command)
            except SessionLost:
                if not job.ends_session:
                    raise RemoteExecutionFailure(label, "Connection lost during command")
                result = SSHResult(returncode=NO_EXIT_STATUS)
        finally:
            try:
                await ssh.close()
            except Exception:
                logger.debug("Error closing SSH session to %s", label, exc_info=True)

        ok = (
            result.returncode == 0
            or job.ignore_exit_code
            or (job.ends_session and result.returncode == NO_EXIT_STATUS)
        )
        if not ok and job.success_marker:
            ok = job.success_marker in result.stdout or job.success_marker in result.stderr
        logger.info("%s: exit %s (%s)", label, result.returncode, "ok" if ok else "failed")
        return HostResult(
            host=label,
            ok=ok,
            code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
