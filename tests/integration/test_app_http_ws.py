"""
End-to-end checks of the HTTP routes and the /ws protocol, served by the real
FastAPI app over an in-memory sandbox runtime (no Docker required).
"""

from typing import Any, Dict

import pytest
from docker.errors import DockerException
from fastapi.testclient import TestClient

from ds_server.app.main import create_app, ensure_docker_available_on_startup
from ds_server.app.security import DownloadTokenStore

from fakes import FakeClock, FakeRuntime, make_settings


def _until(ws, event: str, limit: int = 50) -> Dict[str, Any]:
    """Next frame named ``event``; tree snapshots and other frames are skipped."""
    for _ in range(limit):
        frame = ws.receive_json()
        if frame["event"] == event:
            return frame["data"]
    raise AssertionError(f"no {event} frame within {limit} frames")


@pytest.fixture
def app_client():
    settings = make_settings(session_grace_period_ms=60_000)
    runtime = FakeRuntime(settings)
    app = create_app(settings, runtime=runtime, check_docker=False)
    with TestClient(app) as client:
        yield client, app, runtime


def _init(ws, username: str = "alice", **extra) -> Dict[str, Any]:
    ws.send_json({"event": "workspace:init", "data": {"username": username, **extra}})
    return _until(ws, "workspace:ready")


# --------------------------
# HTTP
# --------------------------

def test_health_and_config(app_client):
    client, _, _ = app_client
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["sessions"] == {"count": 0, "pending": 0, "users": {}}

    cfg = client.get("/config").json()
    assert cfg["baseImage"] == "dev-base:latest"
    assert cfg["allowlist"] == ["dev-base:latest"]
    assert cfg["network"] == {"allowedModes": ["none"], "defaultMode": "none"}
    assert cfg["fsMode"] == "simple-json"
    assert cfg["sessionGraceSeconds"] == 60


def test_session_cookie(app_client):
    client, _, _ = app_client
    r = client.post("/set-session-cookie", json={"sessionId": "alice_0123456789ab", "username": "alice"})
    assert r.status_code == 200 and r.json() == {"ok": True}
    assert r.cookies.get("devspace_session") == "alice_0123456789ab"
    assert r.cookies.get("devspace_user") == "alice"
    set_cookie = r.headers.get("set-cookie", "").lower()
    assert "httponly" in set_cookie and "samesite=lax" in set_cookie

    r = client.post("/set-session-cookie", json={"username": "alice"})
    assert r.status_code == 400
    assert r.json() == {"error": "Missing sessionId or username"}


def test_download_unknown_token(app_client):
    client, _, _ = app_client
    r = client.get("/download", params={"token": "nope"})
    assert r.status_code == 404
    assert r.json()["detail"] == "Invalid token"


# --------------------------
# WebSocket
# --------------------------

def test_ws_session_terminal_roundtrip(app_client):
    client, _, runtime = app_client
    with client.websocket_connect("/ws") as ws:
        ready = _init(ws)
        sid, token = ready["sessionId"], ready["token"]
        assert client.get("/health").json()["sessions"]["count"] == 1

        ws.send_json({"event": "terminal:input", "data": {"sessionId": sid, "token": token, "data": "ls\n"}})
        ws.send_json({"event": "terminal:resize", "data": {"sessionId": sid, "token": token, "cols": 100, "rows": 30}})
        ws.send_json({"event": "terminal:kill", "data": {"sessionId": sid, "token": token}})
        assert _until(ws, "terminal:exit") == {"code": 137, "signal": "SIGKILL", "reason": "killed"}

    sandbox = runtime.sandboxes[sid]
    assert sandbox.stdin == b"ls\n"
    assert sandbox.resizes == [(100, 30)]
    assert runtime.destroyed == [sid]


def test_ws_malformed_frames_are_ignored(app_client):
    client, _, _ = app_client
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        ws.send_text('["event", "workspace:init"]')
        ws.send_json({"data": {"username": "alice"}})
        ws.send_json({"event": "workspace:init", "data": {"username": "no spaces allowed"}})
        assert _until(ws, "workspace:error") == {"message": "Invalid init request"}


def test_ws_binary_frame_is_skipped_and_session_survives(app_client):
    client, _, runtime = app_client
    with client.websocket_connect("/ws") as ws:
        ready = _init(ws)
        auth = {"sessionId": ready["sessionId"], "token": ready["token"]}
        ws.send_bytes(b"\x00\x01")
        ws.send_json({"event": "terminal:input", "data": {**auth, "data": "ok\n"}})
        ws.send_json({"event": "terminal:kill", "data": auth})
        assert _until(ws, "terminal:exit")["reason"] == "killed"

    assert runtime.sandboxes[ready["sessionId"]].stdin == b"ok\n"


def test_ws_filesystem_and_download(app_client):
    client, app, _ = app_client
    with client.websocket_connect("/ws") as ws:
        ready = _init(ws)
        auth = {"sessionId": ready["sessionId"], "token": ready["token"]}

        ws.send_json({"event": "fs:write", "data": {**auth, "requestId": "w1", "path": "notes/a.md", "content": "# hi\n"}})
        result = _until(ws, "fs:writeResult")
        assert result["requestId"] == "w1" and result["path"] == "notes/a.md" and result["size"] == 5
        assert _until(ws, "fs:delta") == {"change": "write", "path": "notes/a.md"}

        ws.send_json({"event": "fs:read", "data": {**auth, "requestId": "r1", "path": "notes/a.md"}})
        assert _until(ws, "fs:readResult")["content"] == "# hi\n"

        ws.send_json({"event": "fs:list", "data": {**auth, "requestId": "l1", "path": "notes"}})
        listing = _until(ws, "fs:listResult")
        assert [e["name"] for e in listing["entries"]] == ["a.md"]

        ws.send_json({"event": "fs:treeSimple:resync", "data": {}})
        snap = _until(ws, "fs:treeSimple")
        while snap["reason"] != "manual-resync":
            snap = _until(ws, "fs:treeSimple")
        assert snap["tree"] == {"notes": {"a.md": None}}

        ws.send_json({"event": "fs:downloadToken", "data": {**auth, "requestId": "d1", "path": "notes"}})
        grant = _until(ws, "fs:downloadTokenResult")
        assert grant["requestId"] == "d1"

        r = client.get("/download", params={"token": grant["token"]})
        assert r.status_code == 200
        assert r.content == b"TAR:/workspace/notes"
        assert r.headers["content-disposition"] == 'attachment; filename="notes.tar"'
        assert r.headers["content-type"] == "application/x-tar"

        again = client.get("/download", params={"token": grant["token"]})
        assert again.status_code == 404

        clock = FakeClock()
        app.state.controller.downloads = DownloadTokenStore(ttl_seconds=60, clock=clock)
        ws.send_json({"event": "fs:downloadToken", "data": {**auth, "requestId": "d2", "path": "notes/a.md"}})
        late = _until(ws, "fs:downloadTokenResult")["token"]
        clock.advance(61)
        r = client.get("/download", params={"token": late})
        assert r.status_code == 410
        assert r.json()["detail"] == "Token expired"


def test_ws_fs_error_and_unauthorized(app_client):
    client, _, _ = app_client
    with client.websocket_connect("/ws") as ws:
        ready = _init(ws)
        auth = {"sessionId": ready["sessionId"], "token": ready["token"]}
        ws.send_json({"event": "fs:delete", "data": {**auth, "requestId": 7, "path": "/"}})
        err = _until(ws, "fs:error")
        assert err["requestId"] == 7 and err["op"] == "delete"
        assert err["message"] == "Refusing to delete the workspace root"

        forged = {**auth, "token": "v1." + "f" * 64}
        ws.send_json({"event": "fs:read", "data": {**forged, "requestId": 8, "path": "a"}})
        assert _until(ws, "fs:error") == {"requestId": 8, "op": "read", "message": "Unauthorized"}


def test_ws_reconnect_resumes_session(app_client):
    client, _, runtime = app_client
    with client.websocket_connect("/ws") as ws:
        ready = _init(ws)
    sid, old_token = ready["sessionId"], ready["token"]

    with client.websocket_connect("/ws") as ws2:
        resumed = _init(ws2, sessionId=sid)
        assert resumed["resumed"] is True
        assert resumed["sessionId"] == sid
        assert resumed["token"] != old_token
        assert _until(ws2, "fs:treeSimple")["version"] >= 1

        # the old token is useless on the new connection
        ws2.send_json({"event": "terminal:input", "data": {"sessionId": sid, "token": old_token, "data": "x"}})
        ws2.send_json({"event": "terminal:input", "data": {"sessionId": sid, "token": resumed["token"], "data": "y"}})
        ws2.send_json({"event": "terminal:kill", "data": {"sessionId": sid, "token": resumed["token"]}})
        _until(ws2, "terminal:exit")

    assert runtime.sandboxes[sid].stdin == b"y"
    assert runtime.provisioned == [sid]


# --------------------------
# Startup
# --------------------------

class _PingRuntime(FakeRuntime):
    def __init__(self, settings, error=None):
        super().__init__(settings)
        self.error = error
        self.pings = 0

    def ping(self):
        self.pings += 1
        if self.error is not None:
            raise self.error


def test_startup_checks_docker_through_the_runtime():
    settings = make_settings()
    runtime = _PingRuntime(settings)
    with TestClient(create_app(settings, runtime=runtime, check_docker=True)) as client:
        assert client.get("/health").json()["status"] == "ok"
    assert runtime.pings == 1


def test_unreachable_docker_exits():
    runtime = _PingRuntime(make_settings(), error=DockerException("connection refused"))
    with pytest.raises(SystemExit):
        ensure_docker_available_on_startup(runtime)
    assert runtime.pings == 1
