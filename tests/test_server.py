from __future__ import annotations

import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import anyio
import httpx
import pytest

from conftest import APP_INFO, CountingStore, FakeApp, FakeDriver
from electrode_client import ControlClient
from electrode_driver import LaunchError
from electrode_server import ControlServer, Phase, ServerState, make_app
from electrode_session import SessionInfo, is_process_alive


ROOT = Path(__file__).resolve().parent.parent

SERVER_MAIN = """
import sys

import anyio

from electrode_driver import LaunchError
from electrode_server import ControlServer

server = ControlServer(sys.argv[1], timeout=60_000, port=0)
try:
    anyio.run(server.serve)
except LaunchError as e:
    print(e, file=sys.stderr)
    sys.exit(1)
"""


def owned_state(app: FakeApp | None = None) -> ServerState:
    app = app or FakeApp()
    return ServerState(target_path="/apps/demo", phase=Phase.SERVING, app=app, window=app.window)


def http_client(state: ServerState, on_close=lambda: None) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=make_app(state, on_close))
    return httpx.AsyncClient(transport=transport, base_url="http://127.0.0.1")


async def wait_for(predicate, timeout: float = 5.0):
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)


# ============================================================================
# Control protocol
# ============================================================================

@pytest.mark.anyio
async def test_status_without_process():
    async with http_client(ServerState(target_path="/apps/demo")) as client:
        response = await client.get("/status")
    assert response.status_code == 500
    assert response.json() == {"error": "No app running"}


@pytest.mark.anyio
async def test_status_reports_target_and_identity():
    async with http_client(owned_state()) as client:
        response = await client.get("/status")
    assert response.status_code == 200
    assert response.json() == {"status": "running", "targetPath": "/apps/demo", **APP_INFO}


@pytest.mark.anyio
async def test_status_while_closing_has_no_process():
    state = owned_state()
    state.phase = Phase.CLOSING
    async with http_client(state) as client:
        response = await client.get("/status")
    assert response.status_code == 500


@pytest.mark.anyio
async def test_eval_returns_result():
    async with http_client(owned_state()) as client:
        response = await client.post("/eval", json={"script": "return 1+1"})
    assert response.status_code == 200
    assert response.json() == {"success": True, "result": 2}


@pytest.mark.anyio
async def test_eval_runs_against_window():
    app = FakeApp()
    async with http_client(owned_state(app)) as client:
        response = await client.post("/eval", json={"script": "await window.click('button')"})
    assert response.json() == {"success": True, "result": None}
    assert app.window.clicked == ["button"]


@pytest.mark.anyio
@pytest.mark.parametrize("body", [{}, {"script": ""}, {"script": "   "}, {"script": 5}])
async def test_eval_missing_script_is_rejected_without_driver(body):
    app = FakeApp()
    async with http_client(owned_state(app)) as client:
        response = await client.post("/eval", json=body)
    assert response.status_code == 400
    assert "script" in response.json()["error"]
    assert app.evaluated == []
    assert app.window.clicked == []


@pytest.mark.anyio
async def test_eval_missing_script_before_process_is_still_400():
    async with http_client(ServerState(target_path="/apps/demo")) as client:
        response = await client.post("/eval", json={})
    assert response.status_code == 400


@pytest.mark.anyio
async def test_eval_without_process():
    async with http_client(ServerState(target_path="/apps/demo")) as client:
        response = await client.post("/eval", json={"script": "return 1"})
    assert response.status_code == 500
    assert response.json()["error"] == "No app running"


@pytest.mark.anyio
async def test_eval_script_failure_is_execution_error():
    async with http_client(owned_state()) as client:
        failed = await client.post("/eval", json={"script": "raise KeyError('gone')"})
        broken = await client.post("/eval", json={"script": "return ("})
        nul = await client.post("/eval", json={"script": "return 1\x00"})
    assert failed.status_code == 500
    assert failed.json() == {"error": "KeyError: 'gone'", "kind": "script"}
    assert broken.status_code == 500
    assert broken.json()["kind"] == "script"
    assert nul.status_code == 500
    assert nul.json()["kind"] == "script"


@pytest.mark.anyio
async def test_malformed_body_is_rejected():
    async with http_client(owned_state()) as client:
        response = await client.post("/eval", content=b"{nope", headers={"content-type": "application/json"})
        listed = await client.post("/eval", json=["return 1"])
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON body"}
    assert listed.status_code == 400


@pytest.mark.anyio
async def test_screenshot_writes_file(tmp_path):
    app = FakeApp()
    output = str(tmp_path / "shot.png")
    async with http_client(owned_state(app)) as client:
        response = await client.post("/screenshot", json={"output": output})
    assert response.status_code == 200
    assert response.json() == {"success": True, "path": output}
    assert app.window.screenshots == [output]


@pytest.mark.anyio
async def test_screenshot_missing_output():
    async with http_client(owned_state()) as client:
        response = await client.post("/screenshot", json={})
    assert response.status_code == 400
    assert "output" in response.json()["error"]


@pytest.mark.anyio
async def test_screenshot_driver_failure(tmp_path):
    output = str(tmp_path / "missing-dir" / "shot.png")
    async with http_client(owned_state()) as client:
        response = await client.post("/screenshot", json={"output": output})
    assert response.status_code == 500
    assert response.json()["kind"] == "driver"


@pytest.mark.anyio
async def test_close_acknowledges_then_calls_back():
    calls = []
    async with http_client(owned_state(), on_close=lambda: calls.append("close")) as client:
        response = await client.post("/close")
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Closing app"}
    assert calls == ["close"]


@pytest.mark.anyio
@pytest.mark.parametrize("method,path", [("GET", "/"), ("POST", "/status"), ("GET", "/eval"), ("DELETE", "/close")])
async def test_unknown_routes(method, path):
    async with http_client(owned_state()) as client:
        response = await client.request(method, path)
    assert response.status_code == 404
    assert response.json() == {"error": "Not found"}


# ============================================================================
# Lifecycle
# ============================================================================

@pytest.mark.anyio
async def test_session_lifecycle_over_loopback(store, driver):
    server = ControlServer("/apps/demo", args=["--flag"], port=0, store=store, driver_factory=driver.factory)
    client = ControlClient(store=store)

    async with anyio.create_task_group() as tg:
        tg.start_soon(server.serve)
        await wait_for(lambda: store.load() is not None)

        session = store.load()
        assert session.app_path == "/apps/demo"
        assert session.port == server.bound_port
        assert session.pid == os.getpid()
        assert server.state.phase is Phase.SERVING

        status = await anyio.to_thread.run_sync(client.status)
        assert status.success
        assert status.data["targetPath"] == "/apps/demo"
        assert status.data["name"] == "demo"

        result = await anyio.to_thread.run_sync(client.eval_script, "return 1+1")
        assert result.success
        assert result.data["result"] == 2

        closed = await anyio.to_thread.run_sync(client.close)
        assert closed.success
        assert closed.data == {"success": True, "message": "Closing app"}

    assert driver.launches[0]["args"] == ["--flag"]
    assert driver.app.window.load_states == ["domcontentloaded"]
    assert driver.app.close_calls == 1
    assert store.load() is None
    assert store.clears == 1
    assert server.state.phase is Phase.TERMINAL


@pytest.mark.anyio
async def test_app_exit_closes_session(store, driver):
    server = ControlServer("/apps/demo", port=0, store=store, driver_factory=driver.factory)

    async with anyio.create_task_group() as tg:
        tg.start_soon(server.serve)
        await wait_for(lambda: store.load() is not None)
        await driver.app.exit()

    assert store.load() is None
    assert store.clears == 1
    assert server.state.phase is Phase.TERMINAL


@pytest.mark.anyio
async def test_launch_failure_writes_no_descriptor(store):
    driver = FakeDriver(error=LaunchError("Could not find Electron binary"))
    server = ControlServer("/apps/missing", port=0, store=store, driver_factory=driver.factory)

    with pytest.raises(LaunchError, match="Could not find"):
        await server.serve()

    assert store.load() is None
    assert server.state.phase is Phase.LAUNCHING


@pytest.mark.anyio
async def test_bind_failure_closes_app(store, driver):
    import socket

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
        taken.bind(("127.0.0.1", 0))
        taken.listen(1)
        port = taken.getsockname()[1]

        server = ControlServer("/apps/demo", port=port, store=store, driver_factory=driver.factory)
        with pytest.raises(OSError):
            await server.serve()

    assert driver.app.close_calls == 1
    assert store.load() is None


@pytest.mark.anyio
async def test_concurrent_close_triggers_clean_up_once(store):
    app = FakeApp()
    server = ControlServer("/apps/demo", store=store)
    server.state.app = app
    server.state.window = app.window
    server.state.phase = Phase.SERVING
    app.on_exit(lambda: server.shutdown("app exited"))
    store.save(SessionInfo.create(port=1, app_path="/apps/demo"))

    async with anyio.create_task_group() as tg:
        tg.start_soon(server.shutdown, "close requested")
        tg.start_soon(app.exit)
        tg.start_soon(server.shutdown, "signal SIGTERM")

    await server.shutdown("again")

    assert app.close_calls == 1
    assert store.clears == 1
    assert store.load() is None
    assert server.state.phase is Phase.TERMINAL


@pytest.mark.anyio
async def test_clear_on_missing_descriptor_does_not_raise(state_dir):
    store = CountingStore()
    server = ControlServer("/apps/demo", store=store)
    server.state.phase = Phase.SERVING
    await server.shutdown("close requested")
    assert store.clears == 1
    assert store.load() is None


@pytest.mark.anyio
async def test_slow_eval_does_not_block_other_requests(store, driver):
    server = ControlServer("/apps/demo", port=0, store=store, driver_factory=driver.factory)
    client = ControlClient(store=store)
    script = "await window.wait_for_timeout(2000)\n'slow'"
    results = []

    async def slow_eval():
        results.append(await anyio.to_thread.run_sync(client.eval_script, script))

    async with anyio.create_task_group() as tg:
        tg.start_soon(server.serve)
        await wait_for(lambda: store.load() is not None)

        tg.start_soon(slow_eval)
        tg.start_soon(slow_eval)
        # Both evals are inside the window at once.
        await wait_for(lambda: len(driver.app.window.waits) == 2, timeout=1.5)

        with anyio.fail_after(1):
            status = await anyio.to_thread.run_sync(client.status)
        assert status.success
        assert results == []

        await wait_for(lambda: len(results) == 2)
        await anyio.to_thread.run_sync(client.close)

    assert [r.data["result"] for r in results] == ["slow", "slow"]


@pytest.mark.anyio
async def test_shutdown_while_launching_aborts_launch(store):
    driver = FakeDriver(hang=True)
    server = ControlServer("/apps/demo", port=0, store=store, driver_factory=driver.factory)

    async def serve():
        with pytest.raises(LaunchError, match="interrupted by signal SIGTERM"):
            await server.serve()

    async with anyio.create_task_group() as tg:
        tg.start_soon(serve)
        await wait_for(lambda: driver.launches)
        await server.shutdown("signal SIGTERM")

    assert driver.aborted
    assert driver.app.close_calls == 0
    assert store.load() is None
    assert store.clears == 0
    assert server.state.phase is Phase.TERMINAL


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signals")
def test_sigterm_while_launching_kills_app(tmp_path, state_dir):
    pid_file = tmp_path / "app.pid"
    fake = tmp_path / "electron"
    fake.write_text(f"#!/bin/sh\necho $$ > {pid_file}\nexec sleep 1000\n")
    fake.chmod(0o755)

    env = {**os.environ, "PYTHONPATH": str(ROOT)}
    server = subprocess.Popen(
        [sys.executable, "-c", SERVER_MAIN, str(fake)],
        env=env,
        stderr=subprocess.PIPE,
        text=True,
    )
    try:
        deadline = time.monotonic() + 20
        while not pid_file.exists() or not pid_file.read_text().strip():
            assert server.poll() is None, "server exited before the app started"
            assert time.monotonic() < deadline, "app never started"
            time.sleep(0.05)
        app_pid = int(pid_file.read_text())

        server.send_signal(signal.SIGTERM)
        _, err = server.communicate(timeout=20)
    finally:
        if server.poll() is None:
            server.kill()
            server.wait()

    assert server.returncode == 1
    assert "interrupted by signal SIGTERM" in err
    assert not is_process_alive(app_pid)
    assert not (state_dir / "session.json").exists()
