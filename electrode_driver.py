"""
Electrode Driver: Electron applications under Playwright.

Playwright for Python cannot launch Electron directly, so the binary is started
with both debugging endpoints enabled and picked up from its stderr:

    --inspect=0                 Node inspector for the main process
    --remote-debugging-port=0   Chromium DevTools for the windows

Windows are driven through Playwright attached over CDP. Main-process code runs
through the inspector's Runtime.evaluate, with the electron module passed in
the same way Playwright's ElectronApplication.evaluate does it:

    await app.evaluate("({ app }) => app.getName()")
"""

from __future__ import annotations

import json
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

import anyio
import anyio.abc
import websockets
from anyio.streams.buffered import BufferedByteReceiveStream
from playwright.async_api import Browser, Page, Playwright, async_playwright

from electrode_session import ElectrodeError


# ============================================================================
# Constants
# ============================================================================

DEFAULT_LAUNCH_TIMEOUT = 30_000  # ms, Playwright convention
CLOSE_GRACE = 5.0  # seconds between quit -> terminate -> kill
MAX_STDERR_LINE = 64 * 1024

INSPECTOR_RE = re.compile(rb"Debugger listening on (ws://\S+)")
DEVTOOLS_RE = re.compile(rb"DevTools listening on (ws://\S+)")

APP_INFO_QUERIES = {
    "name": "({ app }) => app.getName()",
    "version": "({ app }) => app.getVersion()",
    "locale": "({ app }) => app.getLocale()",
    "path": "({ app }) => app.getAppPath()",
}

QUIT_SCRIPT = "({ app }) => { app.quit(); }"

ExitCallback = Callable[[], Awaitable[None]]


class LaunchError(ElectrodeError):
    """The application could not be started or attached to."""


class EvaluationError(ElectrodeError):
    """Main-process evaluation failed."""


def log(tag: str, msg: dict):
    """Log to stderr."""
    compact = json.dumps(msg, separators=(",", ":"))
    print(f"[{tag}] {compact}", file=sys.stderr, flush=True)


# ============================================================================
# Binary discovery
# ============================================================================

def electron_dist_binary(project_dir: Path) -> Path:
    dist = project_dir / "node_modules" / "electron" / "dist"
    if sys.platform == "darwin":
        return dist / "Electron.app" / "Contents" / "MacOS" / "Electron"
    if sys.platform == "win32":
        return dist / "electron.exe"
    return dist / "electron"


def find_electron_binary(app_path: str | Path) -> str:
    """Resolve what to execute for app_path.

    A file is taken to be the Electron binary itself. A directory is an
    Electron project and must have electron installed in node_modules.
    """
    path = Path(app_path).resolve()
    if path.is_file():
        return str(path)

    binary = electron_dist_binary(path)
    if binary.exists():
        return str(binary)

    raise LaunchError(
        f"Could not find Electron binary at {binary}. "
        f"Make sure 'electron' is installed in the project's node_modules."
    )


# ============================================================================
# Node inspector
# ============================================================================

class InspectorSession:
    """CDP connection to the Node inspector of Electron's main process."""

    def __init__(self, ws):
        self._ws = ws
        self._next_id = 0
        self._pending: dict[int, anyio.Event] = {}
        self._replies: dict[int, dict] = {}
        self._closed = False

    @classmethod
    async def connect(cls, url: str) -> "InspectorSession":
        ws = await websockets.connect(url, max_size=None, ping_interval=None)
        return cls(ws)

    async def run(self):
        """Route replies to their callers until the socket goes away."""
        try:
            async for raw in self._ws:
                message = json.loads(raw)
                event = self._pending.pop(message.get("id"), None)
                if event is not None:
                    self._replies[message["id"]] = message
                    event.set()
        except websockets.ConnectionClosed:
            pass
        finally:
            self._closed = True
            for event in self._pending.values():
                event.set()
            self._pending.clear()

    async def call(self, method: str, params: dict | None = None) -> dict:
        if self._closed:
            raise EvaluationError("inspector connection closed")

        self._next_id += 1
        msg_id = self._next_id
        done = anyio.Event()
        self._pending[msg_id] = done
        try:
            await self._ws.send(json.dumps({"id": msg_id, "method": method, "params": params or {}}))
        except websockets.ConnectionClosed as e:
            self._pending.pop(msg_id, None)
            raise EvaluationError(f"inspector connection closed: {e}") from e

        await done.wait()
        reply = self._replies.pop(msg_id, None)
        if reply is None:
            raise EvaluationError("inspector connection closed")
        if "error" in reply:
            raise EvaluationError(reply["error"].get("message", "inspector error"))
        return reply.get("result", {})

    async def close(self):
        self._closed = True
        await self._ws.close()


# ============================================================================
# Application handle
# ============================================================================

class ElectronApp:
    """A running Electron application.

    Owns the process, the inspector connection and the Playwright connection.
    Background tasks (exit watcher, inspector reader, stderr drain) run in the
    task group handed over by the driver.
    """

    def __init__(
        self,
        process: anyio.abc.Process,
        inspector: InspectorSession,
        playwright: Playwright,
        browser: Browser,
        task_group: anyio.abc.TaskGroup,
    ):
        self._process = process
        self._inspector = inspector
        self._playwright = playwright
        self._browser = browser
        self._tg = task_group
        self._exit_callbacks: list[ExitCallback] = []
        self._exited = anyio.Event()
        self._closed = False

        task_group.start_soon(self._inspector.run)
        task_group.start_soon(self._wait_exit)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    def on_exit(self, callback: ExitCallback):
        """Register an async callback fired once when the process exits.

        Registering after the exit schedules the callback right away.
        """
        if self._exited.is_set():
            self._tg.start_soon(self._fire_exit, callback)
        else:
            self._exit_callbacks.append(callback)

    async def _wait_exit(self):
        code = await self._process.wait()
        log("app", {"event": "exited", "pid": self.pid, "code": code})
        self._exited.set()
        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            await self._fire_exit(callback)

    async def _fire_exit(self, callback: ExitCallback):
        try:
            await callback()
        except Exception as e:
            log("ERR", {"error": str(e), "context": "on_exit"})

    async def first_window(self, timeout: float = DEFAULT_LAUNCH_TIMEOUT) -> Page:
        """Return the first application window, waiting for one to open."""
        contexts = self._browser.contexts
        if not contexts:
            raise LaunchError("Electron exposed no browser context")
        context = contexts[0]

        def is_app_window(page: Page) -> bool:
            return not page.url.startswith("devtools://")

        for page in context.pages:
            if is_app_window(page):
                return page
        return await context.wait_for_event("page", predicate=is_app_window, timeout=timeout)

    async def evaluate(self, fn: str, arg: Any = None) -> Any:
        """Run a JavaScript function in the main process.

        fn receives the electron module and arg; its (awaited) return value
        comes back by value.
        """
        expression = f"(async () => ({fn})(require('electron'), {json.dumps(arg)}))()"
        result = await self._inspector.call("Runtime.evaluate", {
            "expression": expression,
            "awaitPromise": True,
            "returnByValue": True,
            "includeCommandLineAPI": True,
        })
        details = result.get("exceptionDetails")
        if details:
            exception = details.get("exception") or {}
            raise EvaluationError(exception.get("description") or details.get("text") or "evaluation failed")
        return result.get("result", {}).get("value")

    async def close(self):
        """Quit the application, escalating to terminate and kill."""
        if self._closed:
            return
        self._closed = True

        if self.running:
            try:
                await self.evaluate(QUIT_SCRIPT)
            except EvaluationError as e:
                # The inspector usually drops mid-call while the app quits.
                log("app", {"event": "quit", "detail": str(e)})
            with anyio.move_on_after(CLOSE_GRACE):
                await self._exited.wait()

        if self.running:
            self._process.terminate()
            with anyio.move_on_after(CLOSE_GRACE):
                await self._exited.wait()
        if self.running:
            self._process.kill()

        await self._disconnect()

    async def _disconnect(self):
        for context, closer in (
            ("browser", self._browser.close),
            ("playwright", self._playwright.stop),
            ("inspector", self._inspector.close),
        ):
            try:
                await closer()
            except Exception as e:
                log("ERR", {"error": str(e), "context": context})


# ============================================================================
# Driver
# ============================================================================

class AutomationDriver(Protocol):
    """What the control server needs from a driver."""

    async def launch(
        self,
        target_path: str,
        args: list[str] | None = None,
        timeout: float = DEFAULT_LAUNCH_TIMEOUT,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ElectronApp: ...


async def _read_endpoints(process: anyio.abc.Process) -> tuple[str, str, BufferedByteReceiveStream]:
    """Read stderr until both debugging endpoints have been announced."""
    stderr = BufferedByteReceiveStream(process.stderr)
    inspector_url = devtools_url = None
    tail: list[str] = []

    while inspector_url is None or devtools_url is None:
        try:
            line = await stderr.receive_until(b"\n", MAX_STDERR_LINE)
        except (anyio.IncompleteRead, anyio.EndOfStream, anyio.DelimiterNotFound):
            code = await process.wait()
            detail = "\n".join(tail[-10:])
            raise LaunchError(f"Electron exited with code {code} before it was ready\n{detail}".rstrip())

        tail.append(line.decode(errors="replace"))
        if m := INSPECTOR_RE.search(line):
            inspector_url = m.group(1).decode()
        elif m := DEVTOOLS_RE.search(line):
            devtools_url = m.group(1).decode()

    return inspector_url, devtools_url, stderr


async def _drain(stream: BufferedByteReceiveStream):
    """Keep reading app stderr so the pipe never fills."""
    try:
        async for _ in stream:
            pass
    except (anyio.ClosedResourceError, anyio.BrokenResourceError):
        pass


class ElectronDriver:
    """Launches Electron applications.

    Every application launched here keeps background tasks in task_group, so
    the group must outlive the application.
    """

    def __init__(self, task_group: anyio.abc.TaskGroup):
        self._tg = task_group

    async def launch(
        self,
        target_path: str,
        args: list[str] | None = None,
        timeout: float = DEFAULT_LAUNCH_TIMEOUT,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ElectronApp:
        binary = find_electron_binary(target_path)

        launch_args = list(args or [])
        app_path = Path(target_path).resolve()
        if app_path.is_dir():
            launch_args.insert(0, str(app_path))

        command = [binary, "--inspect=0", "--remote-debugging-port=0", *launch_args]
        merged_env = {**os.environ, **env} if env else None

        try:
            process = await anyio.open_process(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=merged_env,
            )
        except OSError as e:
            raise LaunchError(f"Failed to start {binary}: {e}") from e

        log("app", {"event": "spawned", "pid": process.pid, "command": command})

        playwright = None
        try:
            with anyio.fail_after(timeout / 1000):
                inspector_url, devtools_url, stderr = await _read_endpoints(process)
                inspector = await InspectorSession.connect(inspector_url)
                playwright = await async_playwright().start()
                browser = await playwright.chromium.connect_over_cdp(devtools_url)
        except BaseException as e:
            with anyio.CancelScope(shield=True):
                await _abort(process, playwright)
            if isinstance(e, TimeoutError):
                raise LaunchError(f"Timed out after {timeout:g}ms waiting for Electron to start") from e
            if isinstance(e, Exception) and not isinstance(e, LaunchError):
                raise LaunchError(str(e)) from e
            raise

        self._tg.start_soon(_drain, stderr)
        return ElectronApp(process, inspector, playwright, browser, self._tg)


async def _abort(process: anyio.abc.Process, playwright: Playwright | None):
    if process.returncode is None:
        process.kill()
        await process.wait()
    if playwright is not None:
        try:
            await playwright.stop()
        except Exception as e:
            log("ERR", {"error": str(e), "context": "playwright"})


# ============================================================================
# Helpers
# ============================================================================

async def wait_for_window(app: ElectronApp, timeout: float = DEFAULT_LAUNCH_TIMEOUT) -> Page:
    """First window of app, once its DOM content has loaded."""
    try:
        window = await app.first_window(timeout=timeout)
        await window.wait_for_load_state("domcontentloaded", timeout=timeout)
    except LaunchError:
        raise
    except Exception as e:
        raise LaunchError(f"No window became ready: {e}") from e
    return window


async def get_app_info(app: ElectronApp) -> dict:
    """Name, version, locale and app path, queried concurrently."""
    info: dict[str, Any] = {}
    errors: list[Exception] = []

    async def fetch(key: str, fn: str):
        try:
            info[key] = await app.evaluate(fn)
        except Exception as e:
            errors.append(e)

    async with anyio.create_task_group() as tg:
        for key, fn in APP_INFO_QUERIES.items():
            tg.start_soon(fetch, key, fn)

    if errors:
        raise errors[0]
    return {key: info[key] for key in APP_INFO_QUERIES}
