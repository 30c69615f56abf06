"""HTTP API for the kiosk console.

Displays and agents talk to the unauthenticated endpoints (config, stream,
register, heartbeat).  Everything that changes fleet state or reveals it is
gated by :func:`kiosk.auth.require_admin`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, ConfigDict

from kiosk.auth import get_console, require_admin
from kiosk.console import KioskConsole
from kiosk.discovery.interfaces import list_interfaces
from kiosk.errors import InvalidInput, Unavailable
from kiosk.netutil import normalize_ip
from kiosk.remote.scripts import (
    Credentials,
    build_deploy_job,
    build_restart_job,
    load_client_script,
    render_client_script,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["kiosk"])
client_router = APIRouter(prefix="/client", tags=["client"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _client_ip(request: Request) -> str:
    return normalize_ip(request.client.host if request.client else "")


# ══════════════════════════════════════════════════════════════════
# CONFIG
# ══════════════════════════════════════════════════════════════════


@router.get("/time")
async def get_time():
    return {"time": _now()}


@router.get("/config")
async def get_config(request: Request, console: KioskConsole = Depends(get_console)):
    return console.config.get_for_target(_client_ip(request))


@router.post("/config", dependencies=[Depends(require_admin)])
async def update_config(update: dict, console: KioskConsole = Depends(get_console)):
    config = console.config.update(update)
    return {"ok": True, "config": config}


@router.post("/config/ip/{address}", dependencies=[Depends(require_admin)])
async def set_override(address: str, update: dict, console: KioskConsole = Depends(get_console)):
    merged = console.config.set_target_override(address, update)
    return {"ok": True, "ip": normalize_ip(address), "config": merged}


@router.get("/config/clients", dependencies=[Depends(require_admin)])
async def list_overrides(console: KioskConsole = Depends(get_console)):
    return console.config.list_overrides()


@router.get("/ui-defaults")
async def ui_defaults(console: KioskConsole = Depends(get_console)):
    s = console.settings
    return {
        "serverBase": s.server_base,
        "defaultSshUsername": s.default_ssh_username,
        "defaultSshPassword": s.default_ssh_password,
    }


# ══════════════════════════════════════════════════════════════════
# PUSH SESSIONS
# ══════════════════════════════════════════════════════════════════


class ActionRequest(BaseModel):
    type: str | None = None
    value: Any = None


class RegisterRequest(BaseModel):
    currentUrl: str | None = None


@router.get("/stream")
async def stream(request: Request, console: KioskConsole = Depends(get_console)):
    session_id, channel = console.open_session(
        _client_ip(request), request.headers.get("user-agent", "")
    )

    async def events():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await channel.receive(timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                if event is None:
                    break
                yield event.encode()
        finally:
            console.close_session(session_id)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
    )


@router.post("/action", dependencies=[Depends(require_admin)])
async def action(req: ActionRequest, console: KioskConsole = Depends(get_console)):
    if not req.type:
        raise InvalidInput("type is required")
    value = True if req.value is None else req.value
    sent = console.broadcaster.broadcast_action(req.type, value)
    logger.info("Action %s=%r sent to %d session(s)", req.type, value, sent)
    return {"ok": True, "delivered": sent}


@router.post("/register")
async def register(
    request: Request,
    req: RegisterRequest | None = None,
    console: KioskConsole = Depends(get_console),
):
    ip = _client_ip(request)
    console.broadcaster.update_session_url(ip, req.currentUrl if req else None)
    return {"ok": True, "ip": ip}


@router.get("/devices", dependencies=[Depends(require_admin)])
async def list_devices(console: KioskConsole = Depends(get_console)):
    return console.broadcaster.list_sessions()


# ══════════════════════════════════════════════════════════════════
# POLL AGENTS
# ══════════════════════════════════════════════════════════════════


class HeartbeatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | int | None = None
    hostname: str | None = None
    version: str | None = None
    status: Any = None
    tags: Any = None
    metrics: Any = None
    currentUrl: str | None = None


class CommandRequest(BaseModel):
    target: str | None = None
    type: str | None = None
    payload: Any = None


@router.post("/heartbeat")
async def heartbeat(
    request: Request,
    req: HeartbeatRequest | None = None,
    console: KioskConsole = Depends(get_console),
):
    req = req or HeartbeatRequest()
    ip = _client_ip(request)
    key = console.presence.resolve_key(req.id, ip)
    result = console.presence.check_in(key, ip, req.model_dump(exclude_none=True))
    return {
        "ok": True,
        "time": _now(),
        "config": result.config,
        "commands": [c.to_dict() for c in result.commands],
    }


@router.get("/heartbeat/clients", dependencies=[Depends(require_admin)])
async def list_agents(console: KioskConsole = Depends(get_console)):
    return console.presence.list_agents()


@router.post("/heartbeat/command", dependencies=[Depends(require_admin)])
async def queue_command(req: CommandRequest, console: KioskConsole = Depends(get_console)):
    if not req.target or not req.type:
        raise InvalidInput("target and type are required")
    queued = console.commands.enqueue(req.target, req.type, req.payload)
    return {"ok": True, "queued": queued}


@router.get("/fleet", dependencies=[Depends(require_admin)])
async def fleet(console: KioskConsole = Depends(get_console)):
    return console.presence.merged_view(console.broadcaster.list_sessions())


# ══════════════════════════════════════════════════════════════════
# LAN DISCOVERY
# ══════════════════════════════════════════════════════════════════


@router.get("/lan/interfaces")
async def interfaces():
    return list_interfaces()


@router.get("/lan/arp")
async def arp_table(console: KioskConsole = Depends(get_console)):
    try:
        rows = await console.discovery.arp_table()
    except Unavailable as e:
        return {"parsed": [], "count": 0, "error": e.message}
    return {"parsed": rows, "count": len(rows)}


@router.get("/lan/scan")
async def scan(
    mode: str = Query("fast"),
    subnet: str | None = Query(None),
    ports: str | None = Query(None),
    console: KioskConsole = Depends(get_console),
):
    try:
        result = await console.discovery.scan(mode, subnet, ports)
    except Unavailable as e:
        logger.warning("LAN scan unavailable: %s", e.message)
        return {
            "devices": [],
            "scanMode": mode,
            "scanTime": 0,
            "methods": [],
            "totalDevices": 0,
            "error": e.message,
        }
    return result.to_dict()


@router.get("/lan/scan/{address}")
async def scan_host(address: str, console: KioskConsole = Depends(get_console)):
    device = await console.discovery.scan_host(address)
    return {**device.to_dict(), "scannedAt": _now()}


@router.get("/lan/resolve/{address}")
async def resolve(address: str, console: KioskConsole = Depends(get_console)):
    return await console.discovery.resolve(address)


# ══════════════════════════════════════════════════════════════════
# REMOTE EXECUTION
# ══════════════════════════════════════════════════════════════════


class RestartRequest(BaseModel):
    username: str | None = None
    password: str | None = None
    hosts: list[str] | None = None


class DeployRequest(RestartRequest):
    privateKeyPath: str | None = None
    serverBase: str | None = None
    runSetup: bool = False
    reboot: bool = False
    sshConfig: dict | None = None


@router.post("/restart", dependencies=[Depends(require_admin)])
async def restart(req: RestartRequest, console: KioskConsole = Depends(get_console)):
    if not req.username:
        raise InvalidInput("username is required")
    creds = Credentials(username=req.username, password=req.password)
    job = build_restart_job(creds)
    results = await console.executor.run_on_hosts(req.hosts, creds, lambda host: job)
    return {"ok": True, "count": len(results), "results": [r.to_dict() for r in results]}


@router.post("/deploy", dependencies=[Depends(require_admin)])
async def deploy(req: DeployRequest, console: KioskConsole = Depends(get_console)):
    if not req.username:
        raise InvalidInput("username is required")
    if not req.serverBase:
        raise InvalidInput("serverBase is required")
    script = console.settings.client_script
    # Fails with 503 rather than an empty result: nothing to deploy
    load_client_script(script)

    creds = Credentials(
        username=req.username, password=req.password, key_path=req.privateKeyPath
    )
    job = build_deploy_job(
        creds,
        server_base=req.serverBase,
        script_path=script,
        run_setup=req.runSetup,
        reboot=req.reboot,
        ssh_config=req.sshConfig,
    )
    results = await console.executor.run_on_hosts(req.hosts, creds, lambda host: job)
    return {"ok": True, "count": len(results), "results": [r.to_dict() for r in results]}


# ══════════════════════════════════════════════════════════════════
# CLIENT SCRIPT
# ══════════════════════════════════════════════════════════════════


@client_router.get("/start-kiosk.sh")
async def client_script(
    request: Request,
    serverBase: str | None = Query(None),
    console: KioskConsole = Depends(get_console),
):
    content = load_client_script(console.settings.client_script)
    host = request.headers.get("x-forwarded-host") or request.headers.get("host", "")
    proto = (request.headers.get("x-forwarded-proto") or request.url.scheme).split(",")[0]
    base = serverBase or console.settings.server_base or f"{proto}://{host}"
    return Response(
        render_client_script(content, base),
        media_type="text/x-shellscript",
        headers={"Content-Disposition": 'attachment; filename="start-kiosk.sh"'},
    )
