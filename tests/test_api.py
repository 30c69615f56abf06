"""HTTP-level tests for the kiosk console API and the console orchestrator."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from kiosk.console import KioskConsole
from kiosk.discovery.aggregator import DiscoveryAggregator
from kiosk.discovery.hostname import HostnameResolver
from kiosk.discovery.models import DiscoveredDevice
from kiosk.remote.executor import RemoteExecutor
from kiosk.remote.ssh import MockSSHConnection, SSHResult
from kiosk import server
from kiosk.server import create_app


class _Source:
    def __init__(self, name, devices=(), available=True):
        self.name = name
        self._devices = list(devices)
        self._available = available

    def available(self):
        return self._available

    async def scan(self, request):
        return [DiscoveredDevice(ip=d.ip, mac=d.mac, hostname=d.hostname) for d in self._devices]


class _Resolver(HostnameResolver):
    async def _lookup(self, ip):
        return ""


def _discovery(*sources):
    return DiscoveryAggregator(
        sources=list(sources),
        fallback=_Source("neighbor", available=False),
        resolver=_Resolver(),
    )


@pytest.fixture()
def ssh_hosts():
    return {}


@pytest.fixture()
def console(settings, ssh_hosts):
    async def connect(host, **kwargs):
        target = ssh_hosts[host]
        if isinstance(target, Exception):
            raise target
        return target

    discovery = _discovery(_Source("arp", [DiscoveredDevice(ip="10.0.0.20", mac="b8:27:eb:00:00:20")]))
    return KioskConsole(
        settings,
        discovery=discovery,
        executor=RemoteExecutor(discovery=discovery, connect=connect),
    )


@pytest.fixture()
def client(settings, console):
    return TestClient(create_app(settings, console))


def make_client(settings, **overrides):
    for key, value in overrides.items():
        setattr(settings, key, value)
    console = KioskConsole(settings, discovery=_discovery())
    return TestClient(create_app(settings, console), raise_server_exceptions=False), console


# ══════════════════════════════════════════════════════════════════
# CONFIG
# ══════════════════════════════════════════════════════════════════


class TestConfigAPI:
    def test_time(self, client):
        assert "time" in client.get("/api/time").json()

    def test_get_defaults(self, client):
        cfg = client.get("/api/config").json()
        assert cfg["title"] == "Kiosk Display"
        assert cfg["disableShortcuts"] is True

    def test_update_broadcasts_to_every_session(self, client, console, channel_factory):
        channels = [channel_factory() for _ in range(3)]
        for i, ch in enumerate(channels):
            console.broadcaster.register_session(f"10.0.0.{i + 5}", "ua", ch)

        resp = client.post("/api/config", json={"kioskUrl": "https://example.com"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["config"]["kioskUrl"] == "https://example.com"
        for ch in channels:
            assert ch.of_type("config")[-1].data["kioskUrl"] == "https://example.com"

    def test_unknown_fields_dropped(self, client, settings):
        body = client.post("/api/config", json={"title": "Lobby", "rogue": 1}).json()
        assert "rogue" not in body["config"]
        assert "rogue" not in settings.config_file.read_text()

    def test_invalid_url(self, client):
        resp = client.post("/api/config", json={"kioskUrl": "nope"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_input"
        assert client.get("/api/config").json()["kioskUrl"] == ""

    def test_non_object_body(self, client):
        resp = client.post("/api/config", json=[1, 2, 3])
        assert resp.status_code == 400
        assert resp.json()["ok"] is False

    def test_override_goes_only_to_matching_address(self, client, console, channel_factory):
        target, other = channel_factory(), channel_factory()
        console.broadcaster.register_session("10.0.0.5", "ua", target)
        console.broadcaster.register_session("10.0.0.6", "ua", other)

        resp = client.post("/api/config/ip/10.0.0.5", json={"kioskUrl": "https://lobby.example"})
        assert resp.json() == {
            "ok": True,
            "ip": "10.0.0.5",
            "config": {"kioskUrl": "https://lobby.example"},
        }
        assert target.events[-1].data["kioskUrl"] == "https://lobby.example"
        assert target.events[-1].data["title"] == "Kiosk Display"
        assert other.events == []

    def test_global_update_keeps_overrides(self, client, console, channel_factory):
        target, other = channel_factory(), channel_factory()
        console.broadcaster.register_session("10.0.0.5", "ua", target)
        console.broadcaster.register_session("10.0.0.6", "ua", other)
        client.post("/api/config/ip/10.0.0.5", json={"kioskUrl": "https://lobby.example"})
        client.post("/api/config", json={"kioskUrl": "https://all.example", "title": "New"})

        assert target.events[-1].data["kioskUrl"] == "https://lobby.example"
        assert target.events[-1].data["title"] == "New"
        assert other.events[-1].data["kioskUrl"] == "https://all.example"

    def test_override_invalid_address(self, client):
        resp = client.post("/api/config/ip/not-an-ip", json={"title": "x"})
        assert resp.status_code == 400

    def test_list_overrides(self, client):
        client.post("/api/config/ip/10.0.0.5", json={"title": "A"})
        assert client.get("/api/config/clients").json() == [
            {"ip": "10.0.0.5", "config": {"title": "A"}}
        ]

    def test_ui_defaults(self, settings):
        settings.server_base = "http://10.0.0.2:4000"
        settings.default_ssh_username = "pi"
        client, _ = make_client(settings)
        assert client.get("/api/ui-defaults").json() == {
            "serverBase": "http://10.0.0.2:4000",
            "defaultSshUsername": "pi",
            "defaultSshPassword": "",
        }


class TestAdminGate:
    def test_gated_endpoints_reject(self, settings):
        client, _ = make_client(settings, admin_token="secret")
        for method, path in [
            ("post", "/api/config"),
            ("post", "/api/config/ip/10.0.0.5"),
            ("post", "/api/action"),
            ("get", "/api/devices"),
            ("get", "/api/heartbeat/clients"),
            ("post", "/api/heartbeat/command"),
            ("get", "/api/config/clients"),
            ("get", "/api/fleet"),
            ("post", "/api/deploy"),
            ("post", "/api/restart"),
        ]:
            kwargs = {"json": {}} if method == "post" else {}
            resp = getattr(client, method)(path, headers={"X-Admin-Token": "wrong"}, **kwargs)
            assert resp.status_code == 401, path
            assert resp.json()["code"] == "unauthorized"

    def test_gate_rejects_before_validation(self, settings):
        client, _ = make_client(settings, admin_token="secret")
        resp = client.post("/api/config", json={"kioskUrl": "nope"})
        assert resp.status_code == 401

    def test_correct_token(self, settings):
        client, _ = make_client(settings, admin_token="secret")
        resp = client.post("/api/config", json={"title": "T"}, headers={"X-Admin-Token": "secret"})
        assert resp.status_code == 200

    def test_open_endpoints(self, settings):
        client, _ = make_client(settings, admin_token="secret")
        assert client.get("/api/config").status_code == 200
        assert client.post("/api/heartbeat", json={}).status_code == 200


# ══════════════════════════════════════════════════════════════════
# PUSH SESSIONS
# ══════════════════════════════════════════════════════════════════


class _StreamConnection:
    """Drives one GET /api/stream against the ASGI app, chunk by chunk.

    TestClient buffers a response until the app returns, which an event
    stream never does on its own.
    """

    def __init__(self, app, client_ip: str = "10.0.0.5") -> None:
        self.app = app
        self.scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/api/stream",
            "raw_path": b"/api/stream",
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"testserver"), (b"user-agent", b"kiosk-browser")],
            "client": (client_ip, 50000),
            "server": ("testserver", 80),
        }
        self.messages: asyncio.Queue = asyncio.Queue()
        self.disconnected = asyncio.Event()
        self._request_sent = False
        self.task: asyncio.Task | None = None

    async def _receive(self):
        if not self._request_sent:
            self._request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await self.disconnected.wait()
        return {"type": "http.disconnect"}

    async def _send(self, message):
        await self.messages.put(message)

    def open(self) -> None:
        self.task = asyncio.create_task(self.app(self.scope, self._receive, self._send))

    async def start(self) -> dict:
        return await asyncio.wait_for(self.messages.get(), timeout=5)

    async def next_event(self) -> tuple[str, dict]:
        while True:
            message = await asyncio.wait_for(self.messages.get(), timeout=5)
            body = message.get("body", b"").decode()
            if body.strip():
                break
        lines = body.strip().splitlines()
        name = lines[0].split(": ", 1)[1]
        data = json.loads(lines[1].split(": ", 1)[1])
        return name, data

    async def disconnect(self) -> None:
        self.disconnected.set()
        await asyncio.wait_for(self.task, timeout=5)


class TestSessionsAPI:
    @pytest.mark.asyncio
    async def test_stream_delivers_config_and_cleans_up(self, settings, console):
        app = create_app(settings, console)
        conn = _StreamConnection(app)
        conn.open()

        start = await conn.start()
        assert start["status"] == 200
        headers = dict(start["headers"])
        assert headers[b"content-type"].startswith(b"text/event-stream")

        name, data = await conn.next_event()
        assert name == "config"
        assert data["title"] == "Kiosk Display"
        assert len(console.broadcaster) == 1
        [session] = console.broadcaster.list_sessions()
        assert session["ip"] == "10.0.0.5"
        assert session["userAgent"] == "kiosk-browser"

        console.config.update({"kioskUrl": "https://example.com"})
        name, data = await conn.next_event()
        assert name == "config"
        assert data["kioskUrl"] == "https://example.com"

        await conn.disconnect()
        assert len(console.broadcaster) == 0

    @pytest.mark.asyncio
    async def test_stream_slot_freed_after_disconnect(self, settings):
        settings.max_sessions = 1
        console = KioskConsole(settings, discovery=_discovery())
        app = create_app(settings, console)

        first = _StreamConnection(app)
        first.open()
        await first.start()
        await first.next_event()
        await first.disconnect()

        second = _StreamConnection(app, client_ip="10.0.0.6")
        second.open()
        assert (await second.start())["status"] == 200
        name, _ = await second.next_event()
        assert name == "config"
        await second.disconnect()
        assert len(console.broadcaster) == 0

    def test_stream_capacity(self, settings):
        client, _ = make_client(settings, max_sessions=0)
        resp = client.get("/api/stream")
        assert resp.status_code == 503
        assert resp.json()["code"] == "capacity_exceeded"

    def test_action(self, client, console, channel_factory):
        ch = channel_factory()
        console.broadcaster.register_session("10.0.0.5", "ua", ch)
        assert client.post("/api/action", json={"type": "reload"}).json()["ok"] is True
        assert ch.events[-1].data == {"type": "reload", "value": True}
        client.post("/api/action", json={"type": "blackout", "value": False})
        assert ch.events[-1].data == {"type": "blackout", "value": False}

    def test_action_requires_type(self, client):
        resp = client.post("/api/action", json={"value": 1})
        assert resp.status_code == 400
        assert resp.json()["error"] == "type is required"

    def test_register_and_devices(self, client, console, channel_factory):
        console.broadcaster.register_session("testclient", "Chrome", channel_factory())
        resp = client.post("/api/register", json={"currentUrl": "https://shown.example"})
        assert resp.json() == {"ok": True, "ip": "testclient"}
        [device] = client.get("/api/devices").json()
        assert device["currentUrl"] == "https://shown.example"
        assert device["userAgent"] == "Chrome"


# ══════════════════════════════════════════════════════════════════
# POLL AGENTS
# ══════════════════════════════════════════════════════════════════


class TestHeartbeatAPI:
    def test_hostname_survives_empty_check_in(self, client):
        client.post("/api/heartbeat", json={"id": "agent-1", "hostname": "kiosk-7"})
        client.post("/api/heartbeat", json={"id": "agent-1"})
        [agent] = client.get("/api/heartbeat/clients").json()
        assert agent["key"] == "agent-1"
        assert agent["hostname"] == "kiosk-7"
        assert agent["online"] is True

    def test_command_delivered_exactly_once(self, client):
        resp = client.post(
            "/api/heartbeat/command", json={"target": "agent-1", "type": "reboot"}
        )
        assert resp.json() == {"ok": True, "queued": 1}

        first = client.post("/api/heartbeat", json={"id": "agent-1"}).json()
        assert [c["type"] for c in first["commands"]] == ["reboot"]
        assert first["commands"][0]["payload"] == {}
        assert first["ok"] is True
        assert "config" in first and "time" in first

        assert client.post("/api/heartbeat", json={"id": "agent-1"}).json()["commands"] == []

    def test_command_requires_target_and_type(self, client):
        resp = client.post("/api/heartbeat/command", json={"type": "reboot"})
        assert resp.status_code == 400

    def test_queue_full(self, settings):
        client, console = make_client(settings, max_queue_depth=1)
        client.post("/api/heartbeat/command", json={"target": "a", "type": "x"})
        resp = client.post("/api/heartbeat/command", json={"target": "a", "type": "y"})
        assert resp.status_code == 507
        assert console.commands.depth("a") == 1

    def test_rate_limited(self, settings):
        client, _ = make_client(settings, max_checkin_rate=2)
        assert client.post("/api/heartbeat", json={}).status_code == 200
        assert client.post("/api/heartbeat", json={}).status_code == 200
        resp = client.post("/api/heartbeat", json={})
        assert resp.status_code == 429
        assert resp.json()["retry_after"] >= 1
        assert "Retry-After" in resp.headers

    def test_agent_capacity(self, settings):
        client, _ = make_client(settings, max_agents=1)
        client.post("/api/heartbeat", json={"id": "a"})
        resp = client.post("/api/heartbeat", json={"id": "b"})
        assert resp.status_code == 503

    def test_empty_body(self, client):
        resp = client.post("/api/heartbeat")
        assert resp.status_code == 200
        assert client.get("/api/heartbeat/clients").json()[0]["key"] == "testclient"

    def test_fleet(self, client, console, channel_factory):
        console.broadcaster.register_session("testclient", "ua", channel_factory())
        client.post("/api/heartbeat", json={"id": "agent-1", "hostname": "kiosk-1"})
        [entry] = client.get("/api/fleet").json()
        assert entry["ip"] == "testclient"
        assert entry["hostname"] == "kiosk-1"
        assert len(entry["sessions"]) == 1
        assert entry["agents"][0]["key"] == "agent-1"


# ══════════════════════════════════════════════════════════════════
# LAN / REMOTE
# ══════════════════════════════════════════════════════════════════


class TestLanAPI:
    def test_scan(self, client):
        body = client.get("/api/lan/scan", params={"mode": "fast"}).json()
        assert body["totalDevices"] == 1
        assert body["devices"][0]["ip"] == "10.0.0.20"
        assert body["methods"] == ["arp"]

    def test_scan_invalid_mode(self, client):
        assert client.get("/api/lan/scan", params={"mode": "loud"}).status_code == 400

    def test_scan_degraded_without_sources(self, settings):
        client, _ = make_client(settings)
        resp = client.get("/api/lan/scan")
        assert resp.status_code == 200
        body = resp.json()
        assert body["devices"] == []
        assert "error" in body

    def test_arp_degraded(self, settings):
        client, _ = make_client(settings)
        assert client.get("/api/lan/arp").json()["count"] == 0

    def test_resolve_invalid(self, client):
        assert client.get("/api/lan/resolve/nope").status_code == 400


class TestRemoteAPI:
    def test_restart(self, client, ssh_hosts):
        ssh_hosts["10.0.0.2"] = MockSSHConnection({"sudo reboot": SSHResult()})
        ssh_hosts["10.0.0.3"] = OSError("No route to host")
        body = client.post(
            "/api/restart", json={"username": "pi", "hosts": ["10.0.0.2", "10.0.0.3"]}
        ).json()
        assert body["ok"] is True
        assert body["count"] == 2
        results = {r["host"]: r for r in body["results"]}
        assert results["pi@10.0.0.2"]["ok"] is True
        assert results["pi@10.0.0.3"]["ok"] is False
        assert "No route to host" in results["pi@10.0.0.3"]["error"]

    def test_restart_targets_from_scan(self, client, ssh_hosts):
        ssh_hosts["10.0.0.20"] = MockSSHConnection({"sudo reboot": SSHResult()})
        body = client.post("/api/restart", json={"username": "pi"}).json()
        assert [r["host"] for r in body["results"]] == ["pi@10.0.0.20"]

    def test_restart_requires_username(self, client):
        assert client.post("/api/restart", json={"hosts": ["10.0.0.2"]}).status_code == 400

    def test_restart_no_targets(self, client):
        resp = client.post("/api/restart", json={"username": "pi", "hosts": ["10.0.0.255"]})
        assert resp.status_code == 400

    def test_deploy_missing_script(self, client):
        resp = client.post(
            "/api/deploy", json={"username": "pi", "serverBase": "http://s", "hosts": ["10.0.0.2"]}
        )
        assert resp.status_code == 503

    def test_deploy_requires_server_base(self, client):
        resp = client.post("/api/deploy", json={"username": "pi", "hosts": ["10.0.0.2"]})
        assert resp.status_code == 400

    def test_deploy(self, client, settings, ssh_hosts):
        settings.client_script.write_text('#!/bin/bash\nSERVER_BASE=""\n')
        conn = MockSSHConnection({"sudo mkdir": SSHResult(returncode=0)})
        ssh_hosts["10.0.0.2"] = conn
        body = client.post(
            "/api/deploy",
            json={"username": "pi", "serverBase": "http://s", "hosts": ["10.0.0.2"]},
        ).json()
        assert body["results"][0]["ok"] is True
        assert conn.uploads == [(str(settings.client_script), "/tmp/start-kiosk.sh")]


class TestClientScriptAPI:
    def test_templated_download(self, client, settings):
        settings.client_script.write_text('#!/bin/bash\nSERVER_BASE="http://old"\n')
        resp = client.get("/client/start-kiosk.sh", params={"serverBase": "http://10.0.0.2:4000"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/x-shellscript")
        assert "attachment" in resp.headers["content-disposition"]
        assert 'SERVER_BASE="http://10.0.0.2:4000"' in resp.text

    def test_defaults_to_request_origin(self, client, settings):
        settings.client_script.write_text('#!/bin/bash\nSERVER_BASE=""\n')
        resp = client.get("/client/start-kiosk.sh")
        assert 'SERVER_BASE="http://testserver"' in resp.text


class TestServerBehaviour:
    def test_import_builds_no_app(self):
        assert not hasattr(server, "app")

    def test_main_runs_app_factory(self, monkeypatch):
        import uvicorn

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))
        monkeypatch.setenv("KIOSK_PORT", "4100")
        server.main()
        [(args, kwargs)] = calls
        assert args == ("kiosk.server:create_app",)
        assert kwargs["factory"] is True
        assert kwargs["port"] == 4100

    def test_https_redirect(self, settings):
        client, _ = make_client(settings, force_https=True)
        resp = client.get("/api/time", follow_redirects=False)
        assert resp.status_code == 301
        assert resp.headers["location"].startswith("https://")
        ok = client.get("/api/time", headers={"X-Forwarded-Proto": "https"})
        assert ok.status_code == 200

    def test_unhandled_error_is_generic(self, settings, monkeypatch):
        client, console = make_client(settings)

        def boom(address):
            raise RuntimeError("secret internals")

        monkeypatch.setattr(console.config, "get_for_target", boom)
        resp = client.get("/api/config")
        assert resp.status_code == 500
        assert resp.json() == {"ok": False, "error": "Internal server error"}


# ══════════════════════════════════════════════════════════════════
# CONSOLE
# ══════════════════════════════════════════════════════════════════


class TestKioskConsole:
    @pytest.mark.asyncio
    async def test_open_session_seeds_resolved_config(self, settings):
        console = KioskConsole(settings, discovery=_discovery())
        console.config.set_target_override("10.0.0.5", {"title": "Lobby"})
        session_id, channel = console.open_session("::ffff:10.0.0.5", "ua")
        event = await channel.receive(timeout=1)
        assert event.event == "config"
        assert event.data["title"] == "Lobby"
        console.close_session(session_id)
        assert await channel.receive(timeout=1) is None

    @pytest.mark.asyncio
    async def test_start_stop(self, settings):
        console = KioskConsole(settings, discovery=_discovery())
        _, channel = console.open_session("10.0.0.5", "ua")
        await console.start()
        await console.stop()
        assert len(console.broadcaster) == 0
        assert channel.closed

    def test_sweep(self, settings):
        console = KioskConsole(settings, discovery=_discovery())
        console.presence.check_in("a", "10.0.0.5", {})
        console.sweep()
        assert len(console.presence) == 1
