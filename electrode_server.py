"""
Electrode Server: one Electron application behind a loopback control port.

Lifecycle:
    launching  driver starts the app
    ready      first window reached domcontentloaded
    serving    port bound, session descriptor written
    closing    close request, app exit or SIGINT/SIGTERM
    terminal   app closed, descriptor cleared, server stopped

A failed launch never gets past launching, so no descriptor is ever written for
it. A signal during launching aborts the launch and kills the app. Closing runs
at most once however many triggers arrive.

Control protocol (JSON over HTTP, 127.0.0.1 only):
    GET  /status      {status, targetPath, name, version, locale, path}
    POST /eval        {script}  -> {success, result}
    POST /screenshot  {output}  -> {success, path}
    POST /close       -> {success, message}, answered before teardown

Requests are not serialized: two calls in flight run concurrently against the
same window. Clients that care wait for one response before the next call.
"""

from __future__ import annotations

import contextlib
import enum
import json
import signal
import socket
import sys
from dataclasses import dataclass
from typing import Any, Callable

import anyio
import anyio.abc
import uvicorn

from electrode_driver import (
    DEFAULT_LAUNCH_TIMEOUT,
    AutomationDriver,
    ElectronDriver,
    LaunchError,
    get_app_info,
    log,
    wait_for_window,
)
from electrode_script import ScriptCompileError, ScriptExecutionError, execute_script
from electrode_session import LOOPBACK, SessionInfo, SessionStore, default_port


NO_PROCESS = "No app running"

DriverFactory = Callable[[anyio.abc.TaskGroup], AutomationDriver]


# ============================================================================
# State
# ============================================================================

class Phase(enum.Enum):
    LAUNCHING = "launching"
    READY = "ready"
    SERVING = "serving"
    CLOSING = "closing"
    TERMINAL = "terminal"


@dataclass
class ServerState:
    """Everything a request handler may touch."""
    target_path: str
    phase: Phase = Phase.LAUNCHING
    app: Any = None
    window: Any = None

    @property
    def owns_process(self) -> bool:
        return (
            self.app is not None
            and self.window is not None
            and self.phase in (Phase.READY, Phase.SERVING)
        )


# ============================================================================
# ASGI plumbing
# ============================================================================

async def send_response(send, status: int, headers: list[tuple[bytes, bytes]], body: bytes):
    await send({
        "type": "http.response.start",
        "status": status,
        "headers": headers,
    })
    await send({
        "type": "http.response.body",
        "body": body,
    })


async def send_json(send, status: int, data: Any):
    body = json.dumps(data).encode()
    await send_response(send, status, [
        (b"content-type", b"application/json"),
        (b"content-length", str(len(body)).encode()),
    ], body)


async def read_json(receive) -> dict:
    """Read the request body as a JSON object; empty means {}."""
    body = b""
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            break
        body += message.get("body", b"")
        if not message.get("more_body", False):
            break

    if not body.strip():
        return {}
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("request body must be a JSON object")
    return data


# ============================================================================
# Handlers
# ============================================================================

async def handle_status(state: ServerState) -> tuple[int, dict]:
    if not state.owns_process:
        return 500, {"error": NO_PROCESS}
    try:
        info = await get_app_info(state.app)
    except Exception as e:
        return 500, {"error": str(e), "kind": "driver"}
    return 200, {"status": "running", "targetPath": state.target_path, **info}


async def handle_eval(state: ServerState, body: dict) -> tuple[int, dict]:
    script = body.get("script")
    if not isinstance(script, str) or not script.strip():
        return 400, {"error": "Missing script parameter"}
    if not state.owns_process:
        return 500, {"error": NO_PROCESS}
    try:
        result = await execute_script(script, state.app, state.window)
    except (ScriptCompileError, ScriptExecutionError) as e:
        return 500, {"error": str(e), "kind": "script"}
    return 200, {"success": True, "result": result}


async def handle_screenshot(state: ServerState, body: dict) -> tuple[int, dict]:
    output = body.get("output")
    if not isinstance(output, str) or not output:
        return 400, {"error": "Missing output parameter"}
    if not state.owns_process:
        return 500, {"error": NO_PROCESS}
    try:
        await state.window.screenshot(path=output)
    except Exception as e:
        return 500, {"error": str(e), "kind": "driver"}
    return 200, {"success": True, "path": output}


BODY_ROUTES = {
    "/eval": handle_eval,
    "/screenshot": handle_screenshot,
}


def make_app(state: ServerState, on_close: Callable[[], None]):
    """Raw ASGI application for the control protocol.

    on_close is called after the /close acknowledgement has been sent.
    """

    async def app(scope, receive, send):
        if scope["type"] != "http":
            return

        path = scope["path"]
        method = scope["method"]

        try:
            if method == "GET" and path == "/status":
                status, payload = await handle_status(state)
            elif method == "POST" and path in BODY_ROUTES:
                try:
                    body = await read_json(receive)
                except ValueError:
                    status, payload = 400, {"error": "Invalid JSON body"}
                else:
                    status, payload = await BODY_ROUTES[path](state, body)
            elif method == "POST" and path == "/close":
                await send_json(send, 200, {"success": True, "message": "Closing app"})
                on_close()
                return
            else:
                status, payload = 404, {"error": "Not found"}
        except Exception as e:
            log("ERR", {"error": str(e), "context": path})
            status, payload = 500, {"error": str(e)}

        await send_json(send, status, payload)

    return app


# ============================================================================
# Server
# ============================================================================

class _ControlUvicorn(uvicorn.Server):
    """uvicorn minus its signal handling; ControlServer handles signals."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ControlServer:
    """Owns one application for the lifetime of the session."""

    def __init__(
        self,
        target_path: str,
        args: list[str] | None = None,
        timeout: float = DEFAULT_LAUNCH_TIMEOUT,
        port: int | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        store: SessionStore | None = None,
        driver_factory: DriverFactory = ElectronDriver,
    ):
        self.state = ServerState(target_path=target_path)
        self.bound_port: int | None = None
        self._args = list(args or [])
        self._timeout = timeout
        self._port = default_port() if port is None else port
        self._cwd = cwd
        self._env = env
        self._store = store or SessionStore()
        self._driver_factory = driver_factory
        self._tg: anyio.abc.TaskGroup | None = None
        self._uvicorn: _ControlUvicorn | None = None
        self._closed: anyio.Event | None = None
        self._launch_scope: anyio.CancelScope | None = None
        self._interrupted: str | None = None

    async def serve(self):
        """Run until closed.

        Raises LaunchError at startup, including when a signal arrives while
        the app is still launching, or OSError when the port cannot be bound.
        """
        failure: Exception | None = None
        async with anyio.create_task_group() as tg:
            self._tg = tg
            self._closed = anyio.Event()
            await tg.start(self._watch_signals)
            try:
                await self._run(tg)
            except (LaunchError, OSError) as e:
                failure = e
            tg.cancel_scope.cancel()
        if failure is not None:
            raise failure

    async def _run(self, tg: anyio.abc.TaskGroup):
        self._launch_scope = anyio.CancelScope()
        with self._launch_scope:
            await self._launch(self._driver_factory(tg))
        if self._interrupted is not None:
            raise LaunchError(f"Launch interrupted by {self._interrupted}")

        self._uvicorn = _ControlUvicorn(uvicorn.Config(
            make_app(self.state, self._request_close),
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=2,
        ))
        self.state.app.on_exit(self._on_app_exit)

        try:
            sock = self._bind()
        except OSError:
            await self.shutdown("bind failed")
            raise

        tg.start_soon(self._announce)

        # Exits straight away if shutdown already ran.
        await self._uvicorn.serve(sockets=[sock])
        await self.shutdown("server stopped")
        await self._closed.wait()

    async def _launch(self, driver: AutomationDriver):
        log("state", {"event": "launching", "targetPath": self.state.target_path})
        app = await driver.launch(
            self.state.target_path,
            args=self._args,
            timeout=self._timeout,
            cwd=self._cwd,
            env=self._env,
        )
        try:
            window = await wait_for_window(app, timeout=self._timeout)
            info = await get_app_info(app)
        except BaseException as e:
            with anyio.CancelScope(shield=True):
                await app.close()
            if isinstance(e, Exception) and not isinstance(e, LaunchError):
                raise LaunchError(str(e)) from e
            raise

        self.state.app = app
        self.state.window = window
        self.state.phase = Phase.READY
        log("state", {"event": "ready", "name": info.get("name"), "version": info.get("version")})

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((LOOPBACK, self._port))
            sock.listen(128)
        except OSError:
            sock.close()
            raise
        self.bound_port = sock.getsockname()[1]
        return sock

    async def _announce(self):
        """Write the descriptor once uvicorn is accepting connections."""
        while not self._uvicorn.started:
            if self._uvicorn.should_exit:
                return
            await anyio.sleep(0.01)

        if self.state.phase is not Phase.READY:
            return
        self.state.phase = Phase.SERVING
        self._store.save(SessionInfo.create(port=self.bound_port, app_path=self.state.target_path))
        log("state", {"event": "serving", "port": self.bound_port})

        print("=" * 60, file=sys.stderr)
        print("ELECTRODE SESSION STARTED", file=sys.stderr)
        print(f"  App:      {self.state.target_path}", file=sys.stderr)
        print(f"  PID:      {self.state.app.pid}", file=sys.stderr)
        print(f"  Control:  http://{LOOPBACK}:{self.bound_port}", file=sys.stderr)
        print("  Commands:", file=sys.stderr)
        print("    electrode -e \"await window.click('button')\"", file=sys.stderr)
        print("    electrode screenshot output.png", file=sys.stderr)
        print("    electrode close", file=sys.stderr)
        print("  Press Ctrl+C to close the application", file=sys.stderr)
        print("=" * 60, file=sys.stderr, flush=True)

    async def _watch_signals(self, *, task_status=anyio.TASK_STATUS_IGNORED):
        with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
            task_status.started()
            async for signum in signals:
                await self.shutdown(f"signal {signal.Signals(signum).name}")

    async def _on_app_exit(self):
        await self.shutdown("app exited")

    def _request_close(self):
        if self._tg is not None:
            self._tg.start_soon(self.shutdown, "close requested")

    async def shutdown(self, reason: str):
        """Close the app, clear the descriptor, stop serving. Runs once."""
        if self.state.phase in (Phase.CLOSING, Phase.TERMINAL):
            return
        if self.state.phase is Phase.LAUNCHING:
            # No descriptor yet; the launch cleans up after itself on cancel.
            log("state", {"event": "interrupted", "reason": reason})
            self._interrupted = reason
            self.state.phase = Phase.TERMINAL
            if self._launch_scope is not None:
                self._launch_scope.cancel()
            if self._closed is not None:
                self._closed.set()
            return
        self.state.phase = Phase.CLOSING
        log("state", {"event": "closing", "reason": reason})

        with anyio.CancelScope(shield=True):
            if self.state.app is not None:
                try:
                    await self.state.app.close()
                except Exception as e:
                    log("ERR", {"error": str(e), "context": "close"})
            self._store.clear()
            if self._uvicorn is not None:
                self._uvicorn.should_exit = True

        self.state.phase = Phase.TERMINAL
        log("state", {"event": "closed"})
        if self._closed is not None:
            self._closed.set()


async def run_server(
    target_path: str,
    args: list[str] | None = None,
    timeout: float = DEFAULT_LAUNCH_TIMEOUT,
    port: int | None = None,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
):
    """Launch target_path and serve the control protocol until closed."""
    server = ControlServer(target_path, args=args, timeout=timeout, port=port, cwd=cwd, env=env)
    await server.serve()
