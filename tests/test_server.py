"""HTTP tests for /raw, /run and /health through the real FastAPI app.

Everything runs for real: Rego compilation, the watchdog observer, path
resolution and child processes (the test interpreter, via ``pyrun``).
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from gatedrun.config import ServerConfig
from gatedrun.gate import Invocation
from gatedrun.protocol import NDJSON_MEDIA_TYPE, ExitEvent, encode_event
from gatedrun.runner import TRUNCATION_MARKER, ProcessStream, spawn
from gatedrun.server import ProcessStreamingResponse, create_app

from .conftest import BROKEN_POLICY, PYRUN_POLICY, py, wait_until


def make_client(**config) -> TestClient:
    return TestClient(create_app(ServerConfig(reload_debounce_ms=50, **config)))


@pytest.fixture
def client(policy_dir: Path):
    with make_client(policy_dir=policy_dir) as c:
        yield c


def read_events(response) -> list[dict]:
    return [json.loads(line) for line in response.iter_lines() if line]


def stream_bytes(events: list[dict], name: str) -> bytes:
    return b"".join(base64.b64decode(e["data_b64"]) for e in events if e["event"] == name)


# ── /run (aggregate) ─────────────────────────────────────────────────────────


class TestRunEndpoint:
    def test_allowed_command(self, client: TestClient):
        resp = client.post("/run", json={"executable": "pyrun", "args": py("print('hi')")})
        assert resp.status_code == 200
        assert resp.json() == {"stdout": "hi\n", "stderr": "", "exitCode": 0}

    def test_curl_head_request_runs(self, client: TestClient):
        resp = client.post(
            "/run", json={"executable": "curl", "args": ["-I", "https://example.com"]}
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["exitCode"] == 0
        assert body["stdout"] == "HTTP/2 200\n"
        assert body["stderr"] == "curl -I https://example.com\n"

    def test_curl_post_denied_without_spawning(self, client: TestClient):
        with patch("gatedrun.runner.asyncio.create_subprocess_exec") as spawn:
            resp = client.post(
                "/run",
                json={"executable": "curl", "args": ["-X", "POST", "https://example.com"]},
            )
        assert resp.status_code == 403
        assert resp.json() == {"error": "Command not allowed: curl", "kind": "policy_denied"}
        spawn.assert_not_called()

    def test_output_capped(self, client: TestClient):
        code = "import sys; sys.stdout.write('x' * (2 * 1024 * 1024))"
        resp = client.post("/run", json={"executable": "pyrun", "args": py(code)})
        stdout = resp.json()["stdout"]
        assert stdout.endswith(TRUNCATION_MARKER)
        assert len(stdout) == 1024 * 1024 + len(TRUNCATION_MARKER)

    def test_cwd_is_honoured(self, client: TestClient, tmp_path: Path):
        resp = client.post(
            "/run",
            json={
                "executable": "pyrun",
                "args": py("import os; print(os.getcwd())"),
                "cwd": str(tmp_path),
            },
        )
        assert Path(resp.json()["stdout"].strip()).resolve() == tmp_path.resolve()

    def test_allowed_env_is_forwarded(self, client: TestClient):
        resp = client.post(
            "/run",
            json={
                "executable": "pyrun",
                "args": py("import os; print(os.environ['GATEDRUN_TEST_TOKEN'])"),
                "env": {"GATEDRUN_TEST_TOKEN": "abc"},
            },
        )
        assert resp.status_code == 200
        assert resp.json()["stdout"] == "abc\n"

    def test_disallowed_env_is_denied(self, client: TestClient):
        resp = client.post(
            "/run",
            json={"executable": "pyrun", "args": py("pass"), "env": {"LD_PRELOAD": "/x.so"}},
        )
        assert resp.status_code == 403


# ── Error mapping ────────────────────────────────────────────────────────────


class TestErrorMapping:
    @pytest.mark.parametrize("endpoint", ["/run", "/raw"])
    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"executable": ""},
            {"executable": "pyrun", "args": "-c pass"},
            {"executable": "pyrun", "env": {"A": 1}},
            {"executable": "pyrun", "unexpected": True},
        ],
    )
    def test_malformed_body_is_400(self, client: TestClient, endpoint: str, body: dict):
        resp = client.post(endpoint, json=body)
        assert resp.status_code == 400
        assert resp.json()["kind"] == "malformed_request"
        assert resp.json()["error"].startswith("invalid request body")

    def test_invalid_json_is_400(self, client: TestClient):
        resp = client.post(
            "/raw", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert resp.status_code == 400
        assert resp.json()["kind"] == "malformed_request"

    def test_unresolvable_executable_is_403(self, client: TestClient):
        resp = client.post("/raw", json={"executable": "no-such-binary-xyz"})
        assert resp.status_code == 403
        assert resp.headers["content-type"].startswith("application/json")
        body = resp.json()
        assert body["kind"] == "policy_denied"
        assert "Failed to resolve executable path" in body["error"]

    def test_spawn_failure_is_500_before_stream(self, client: TestClient, tmp_path: Path):
        resp = client.post(
            "/raw",
            json={"executable": "pyrun", "args": py("pass"), "cwd": str(tmp_path / "missing")},
        )
        assert resp.status_code == 500
        assert resp.headers["content-type"].startswith("application/json")
        assert resp.json()["kind"] == "internal_error"

    def test_deny_all_at_startup(self, tmp_path: Path, bin_dir: Path):
        empty = tmp_path / "empty"
        empty.mkdir()
        with make_client(policy_dir=empty) as client:
            resp = client.post("/raw", json={"executable": "pyrun", "args": py("pass")})
            assert resp.status_code == 403
            assert resp.json()["kind"] == "policy_denied"
            assert "deny-all" in resp.json()["error"]

    def test_no_policy_source_denies(self, bin_dir: Path):
        with make_client() as client:
            resp = client.post("/run", json={"executable": "pyrun", "args": py("pass")})
            assert resp.status_code == 403
            assert "no policy source configured" in resp.json()["error"]


# ── /raw (streaming) ─────────────────────────────────────────────────────────


class TestRawEndpoint:
    def test_event_sequence(self, client: TestClient):
        code = "import sys; print('a'); print('b', file=sys.stderr); sys.exit(4)"
        with client.stream("POST", "/raw", json={"executable": "pyrun", "args": py(code)}) as resp:
            assert resp.status_code == 200
            assert resp.headers["content-type"].startswith(NDJSON_MEDIA_TYPE)
            events = read_events(resp)

        assert events[0]["event"] == "start"
        assert events[0]["command"] == "pyrun"
        assert isinstance(events[0]["pid"], int)
        assert events[-1] == {"event": "exit", "exitCode": 4}
        assert [e["event"] for e in events].count("start") == 1
        terminal = [e for e in events if e["event"] in ("exit", "error")]
        assert len(terminal) == 1
        assert stream_bytes(events, "stdout") == b"a\n"
        assert stream_bytes(events, "stderr") == b"b\n"

    def test_several_megabytes_round_trip(self, client: TestClient):
        size = 4 * 1024 * 1024
        code = (
            "import sys\n"
            f"sys.stdout.buffer.write(bytes(i % 256 for i in range({size})))\n"
        )
        with client.stream("POST", "/raw", json={"executable": "pyrun", "args": py(code)}) as resp:
            events = read_events(resp)

        stdout_events = [e for e in events if e["event"] == "stdout"]
        assert len(stdout_events) > 1
        data = stream_bytes(events, "stdout")
        assert data == bytes(i % 256 for i in range(size))
        assert TRUNCATION_MARKER.encode() not in data
        assert events[-1] == {"event": "exit", "exitCode": 0}

    def test_signal_exit_has_null_code(self, client: TestClient):
        code = "import os, signal; os.kill(os.getpid(), signal.SIGKILL)"
        with client.stream("POST", "/raw", json={"executable": "pyrun", "args": py(code)}) as resp:
            events = read_events(resp)
        assert events[-1] == {"event": "exit", "exitCode": None}

    def test_denied_is_plain_json(self, client: TestClient):
        resp = client.post("/raw", json={"executable": "pyrun", "args": ["-m", "http.server"]})
        assert resp.status_code == 403
        assert resp.json() == {"error": "Command not allowed: pyrun", "kind": "policy_denied"}


# ── Live reload ──────────────────────────────────────────────────────────────


class TestLiveReload:
    def test_syntax_error_then_fix(self, client: TestClient, policy_dir: Path):
        body = {"executable": "pyrun", "args": py("print('ok')")}
        assert client.post("/run", json=body).status_code == 200

        (policy_dir / "pyrun.rego").write_text(BROKEN_POLICY)
        assert wait_until(lambda: client.get("/health").json()["policy"]["mode"] == "deny_all")
        resp = client.post("/run", json=body)
        assert resp.status_code == 403
        assert "deny-all" in resp.json()["error"]

        (policy_dir / "pyrun.rego").write_text(PYRUN_POLICY)
        assert wait_until(lambda: client.get("/health").json()["policy"]["mode"] == "valid")
        resp = client.post("/run", json=body)
        assert resp.status_code == 200
        assert resp.json()["stdout"] == "ok\n"


# ── /health ──────────────────────────────────────────────────────────────────


class TestHealth:
    def test_valid_policy(self, client: TestClient):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["policy"]["mode"] == "valid"
        assert body["policy"]["module_count"] == 3
        assert len(body["policy"]["digest"]) == 64
        assert body["watcher"]["status"] == "valid"

    def test_deny_all_reason(self, tmp_path: Path):
        with make_client(policy_dir=tmp_path / "missing") as client:
            body = client.get("/health").json()
        assert body["policy"]["mode"] == "deny_all"
        assert "does not exist" in body["policy"]["reason"]

    def test_legacy_file_is_not_watched(self, policy_dir: Path):
        with make_client(policy_file=policy_dir / "main.rego") as client:
            body = client.get("/health").json()
        assert body["policy"]["mode"] == "valid"
        assert body["watcher"] is None


# ── Response teardown ────────────────────────────────────────────────────────


class TestStreamTeardown:
    async def test_broken_connection_kills_child(self):
        inv = Invocation(
            command="pyrun",
            path=Path(sys.executable),
            hash="0" * 64,
            args=py("import time\nwhile True:\n    print('tick', flush=True)\n    time.sleep(0.01)"),
        )
        stream = await ProcessStream.start(inv)
        response = ProcessStreamingResponse(stream)
        sent = []

        async def receive():
            await asyncio.Event().wait()

        async def send(message):
            if message["type"] == "http.response.body" and sent:
                raise OSError("connection reset by peer")
            sent.append(message)

        scope = {"type": "http", "asgi": {"spec_version": "2.4"}, "method": "POST"}
        with contextlib.suppress(Exception):
            await asyncio.wait_for(response(scope, receive, send), timeout=10)

        assert stream.process.returncode is not None
        assert sent[0]["type"] == "http.response.start"

    async def test_finished_stream_closes_cleanly(self):
        inv = Invocation(
            command="pyrun", path=Path(sys.executable), hash="0" * 64, args=py("print('x')")
        )
        stream = await ProcessStream.start(inv)
        response = ProcessStreamingResponse(stream)
        body = bytearray()

        async def receive():
            await asyncio.Event().wait()

        async def send(message):
            if message["type"] == "http.response.body":
                body.extend(message.get("body", b""))

        scope = {"type": "http", "asgi": {"spec_version": "2.4"}, "method": "POST"}
        await response(scope, receive, send)

        lines = bytes(body).splitlines(keepends=True)
        assert lines[-1] == encode_event(ExitEvent(exit_code=0))
        assert stream.process.returncode == 0

    async def test_read_failure_after_start_ends_with_one_error_event(self):
        inv = Invocation(
            command="pyrun",
            path=Path(sys.executable),
            hash="0" * 64,
            args=py("import time; time.sleep(30)"),
        )
        process = await spawn(inv)
        process.stdout.read = AsyncMock(side_effect=OSError("pipe exploded"))
        stream = ProcessStream(process, inv.command)
        response = ProcessStreamingResponse(stream)
        body = bytearray()

        async def receive():
            await asyncio.Event().wait()

        async def send(message):
            if message["type"] == "http.response.body":
                body.extend(message.get("body", b""))

        scope = {"type": "http", "asgi": {"spec_version": "2.4"}, "method": "POST"}
        await asyncio.wait_for(response(scope, receive, send), timeout=10)

        events = [json.loads(raw) for raw in bytes(body).splitlines() if raw]
        assert events[0]["event"] == "start"
        assert events[-1]["event"] == "error"
        assert "failed reading stdout" in events[-1]["message"]
        assert [e["event"] for e in events].count("error") == 1
        assert all(e["event"] != "exit" for e in events)
        assert process.returncode is not None
