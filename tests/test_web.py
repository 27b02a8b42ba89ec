from __future__ import annotations

import asyncio
import json
import warnings

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestClient, TestServer

from common.auth import Hs256TokenVerifier
from common.kvstore import FileKeyValueStore
from common.runner import CommandRunner
from panel.jobs import JobSpec, JobTracker
from panel.sessions import SessionRegistry
from panel.sources import LaunchPlan
from panel.web import CLAIMS_KEY, JOBS_KEY, REGISTRY_KEY, PanelWebApp, service_target
from tests.helpers import wait_until

SECRET = "test-secret"


class FixtureSources:
    def __init__(self, log_path: str):
        self.log_path = log_path

    def resolve(self, target: str) -> LaunchPlan:
        if target == "demo:file":
            return LaunchPlan(target=target, source="demo", command="cat", args=(self.log_path,), notices=("Streaming logs from demo",))
        if target == "demo:forever":
            return LaunchPlan(target=target, source="forever", command="sleep", args=("30",))
        raise ValueError(f"unknown log source {target!r}")


@pytest.fixture
async def panel(tmp_path, home):
    log_path = tmp_path / "demo.log"
    log_path.write_text("first\nsecond\n", encoding="utf-8")
    jobs = JobTracker(FileKeyValueStore(tmp_path / "jobs"), CommandRunner(), tmp_path / "job_logs")
    registry = SessionRegistry(FixtureSources(str(log_path)), jobs=jobs, grace_period=0.2, shell="/bin/sh")
    web_app = PanelWebApp({"sse_keepalive_seconds": 0.1}, registry, jobs, Hs256TokenVerifier(SECRET))
    client = TestClient(TestServer(web_app.app))
    await client.start_server()
    yield client, web_app
    await client.close()
    await registry.close()
    await jobs.close()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {Hs256TokenVerifier(SECRET).sign({'sub': 'admin'})}"}


def _data_frames(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


async def test_health_is_public(panel):
    client, _ = panel
    resp = await client.get("/api/health")
    assert resp.status == 200
    assert (await resp.json())["ok"] is True


async def test_guarded_routes_require_a_valid_token(panel, auth_headers):
    client, _ = panel
    resp = await client.get("/api/sessions")
    assert resp.status == 401
    assert await resp.json() == {"ok": False, "error": "unauthorized"}

    resp = await client.get("/api/sessions", headers={"Authorization": "Bearer nonsense"})
    assert resp.status == 401

    token = auth_headers["Authorization"].split(" ", 1)[1]
    resp = await client.get("/api/sessions", headers={"Cookie": f"auth_token={token}"})
    assert resp.status == 200
    assert (await resp.json())["sessions"] == []


async def test_log_stream_delivers_records_then_end(panel, auth_headers):
    client, _ = panel
    resp = await client.get("/api/logs/stream", params={"target": "demo:file"}, headers=auth_headers)
    assert resp.status == 200
    assert resp.headers["Content-Type"].startswith("text/event-stream")

    body = await asyncio.wait_for(resp.text(), timeout=5.0)

    frames = _data_frames(body)
    assert frames[0]["target"] == "demo:file"
    messages = [f["message"] for f in frames[1:-1]]
    assert messages == ["Streaming logs from demo", "first", "second"]
    assert all(f["service"] == "demo" for f in frames[1:-1])
    assert frames[1]["level"] == "info"
    assert "event: end" in body


async def test_log_stream_keepalive_and_disconnect(panel, auth_headers):
    client, web_app = panel
    resp = await client.get("/api/logs/stream", params={"target": "demo:forever"}, headers=auth_headers)
    assert resp.status == 200

    async def _until_keepalive() -> None:
        while True:
            line = await resp.content.readline()
            assert line, "stream ended early"
            if line.startswith(b": keepalive"):
                return

    await asyncio.wait_for(_until_keepalive(), timeout=5.0)
    assert web_app.registry.find("demo:forever") is not None
    resp.close()

    await wait_until(lambda: web_app.registry.find("demo:forever") is None)


async def test_log_stream_rejects_bad_targets(panel, auth_headers):
    client, _ = panel
    resp = await client.get("/api/logs/stream", headers=auth_headers)
    assert resp.status == 400
    resp = await client.get("/api/logs/stream", params={"target": "nope:x"}, headers=auth_headers)
    assert resp.status == 400
    assert (await resp.json())["error"] == "bad_request"


async def test_job_endpoints(panel, auth_headers):
    client, web_app = panel
    job_id = await web_app.jobs.start(JobSpec(kind="test", command="sleep", args=("30",), marker="."))

    resp = await client.get(f"/api/jobs/{job_id}", headers=auth_headers)
    assert resp.status == 200
    assert (await resp.json())["job"]["status"] == "running"

    resp = await client.get("/api/jobs", headers=auth_headers)
    assert [j["id"] for j in (await resp.json())["jobs"]] == [job_id]

    resp = await client.delete(f"/api/jobs/{job_id}", headers=auth_headers)
    assert resp.status == 400

    resp = await client.post(f"/api/jobs/{job_id}/cancel", headers=auth_headers)
    assert (await resp.json())["job"]["status"] == "cancelled"

    resp = await client.delete(f"/api/jobs/{job_id}", headers=auth_headers)
    assert resp.status == 200

    resp = await client.get(f"/api/jobs/{job_id}", headers=auth_headers)
    assert resp.status == 404
    assert await resp.json() == {"ok": False, "error": "not_found"}


async def test_job_creation_validates_action(panel, auth_headers):
    client, _ = panel
    resp = await client.post("/api/jobs", json={"action": "explode"}, headers=auth_headers)
    assert resp.status == 400
    resp = await client.post("/api/jobs", json={"action": "extract", "archive": "/srv/a.rar"}, headers=auth_headers)
    assert resp.status == 400
    resp = await client.post("/api/jobs", json={"action": "compress", "paths": "nope"}, headers=auth_headers)
    assert resp.status == 400


async def test_terminal_websocket_round_trip(panel, auth_headers):
    client, web_app = panel
    resp = await client.post("/api/terminal/new", headers=auth_headers)
    session_id = (await resp.json())["session_id"]

    ws = await client.ws_connect(f"/ws/terminal/{session_id}?cols=100&rows=40", headers=auth_headers)
    await ws.send_str(json.dumps({"type": "data", "data": "echo $((6*7))\n"}))
    output = b""
    while b"42" not in output:
        msg = await ws.receive(timeout=5.0)
        assert msg.type == WSMsgType.BINARY
        output += msg.data

    await ws.send_str(json.dumps({"type": "resize", "cols": 120, "rows": 50}))
    await ws.send_bytes(b"stty size\n")
    while b"50 120" not in output:
        msg = await ws.receive(timeout=5.0)
        assert msg.type == WSMsgType.BINARY
        output += msg.data

    await ws.close()
    await wait_until(lambda: web_app.registry.find(f"terminal:{session_id}") is None)


async def test_terminal_websocket_rejects_unknown_session(panel, auth_headers):
    client, _ = panel
    ws = await client.ws_connect("/ws/terminal/deadbeef", headers=auth_headers)
    msg = await ws.receive(timeout=5.0)
    assert msg.type == WSMsgType.TEXT
    assert "[terminal-error]" in msg.data
    msg = await ws.receive(timeout=5.0)
    assert msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED)


def test_legacy_service_query_maps_to_journal_units():
    assert service_target("nginx") == "journal:nginx"
    assert service_target(" php8.2-fpm ") == "journal:php8.2-fpm"
    assert service_target("all") == "journal:php*-fpm"
    assert service_target("") == ""


async def test_app_state_uses_typed_keys(tmp_path):
    jobs = JobTracker(FileKeyValueStore(tmp_path / "jobs"), CommandRunner(), tmp_path / "job_logs")
    registry = SessionRegistry(FixtureSources(str(tmp_path / "none.log")), jobs=jobs)
    with warnings.catch_warnings():
        warnings.simplefilter("error", web.NotAppKeyWarning)
        web_app = PanelWebApp({}, registry, jobs, Hs256TokenVerifier(SECRET))
    assert web_app.app[REGISTRY_KEY] is registry
    assert web_app.app[JOBS_KEY] is jobs

    async def whoami(request: web.Request) -> web.Response:
        return web.json_response({"sub": request[CLAIMS_KEY]["sub"]})

    web_app.app.router.add_get("/whoami", web_app.auth(whoami))
    client = TestClient(TestServer(web_app.app))
    await client.start_server()
    try:
        token = Hs256TokenVerifier(SECRET).sign({"sub": "admin"})
        resp = await client.get("/whoami", headers={"Authorization": f"Bearer {token}"})
        assert await resp.json() == {"sub": "admin"}
    finally:
        await client.close()
        await registry.close()
        await jobs.close()
