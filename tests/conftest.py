from __future__ import annotations

from pathlib import Path

import anyio
import pytest

from electrode_driver import APP_INFO_QUERIES, EvaluationError
from electrode_session import SessionStore


APP_INFO = {
    "name": "demo",
    "version": "1.2.3",
    "locale": "en-US",
    "path": "/apps/demo/resources/app.asar",
}


class FakeWindow:
    """Stands in for a Playwright Page."""

    def __init__(self):
        self.load_states: list[str] = []
        self.clicked: list[str] = []
        self.screenshots: list[str] = []
        self.waits: list[float] = []

    async def wait_for_load_state(self, state: str = "load", timeout: float | None = None):
        self.load_states.append(state)

    async def wait_for_timeout(self, timeout: float):
        self.waits.append(timeout)
        await anyio.sleep(timeout / 1000)

    async def title(self) -> str:
        return "Demo"

    async def click(self, selector: str):
        self.clicked.append(selector)

    async def screenshot(self, path: str | None = None) -> bytes:
        data = b"\x89PNG fake"
        if path is not None:
            Path(path).write_bytes(data)
            self.screenshots.append(path)
        return data


class FakeApp:
    """Stands in for ElectronApp; exit callbacks fire once, inline."""

    def __init__(self, pid: int = 4242):
        self.pid = pid
        self.window = FakeWindow()
        self.close_calls = 0
        self.evaluated: list[str] = []
        self._callbacks = []
        self._exited = False

    def on_exit(self, callback):
        self._callbacks.append(callback)

    async def first_window(self, timeout: float | None = None) -> FakeWindow:
        return self.window

    async def evaluate(self, fn: str, arg=None):
        self.evaluated.append(fn)
        for key, source in APP_INFO_QUERIES.items():
            if fn == source:
                await anyio.sleep(0)
                return APP_INFO[key]
        raise EvaluationError(f"ReferenceError: unexpected evaluate {fn}")

    async def close(self):
        self.close_calls += 1
        await self.exit()

    async def exit(self):
        """Simulate the process going away."""
        if self._exited:
            return
        self._exited = True
        for callback in list(self._callbacks):
            await callback()


class FakeDriver:
    def __init__(self, app: FakeApp | None = None, error: Exception | None = None, hang: bool = False):
        self.app = app or FakeApp()
        self.error = error
        self.hang = hang
        self.aborted = False
        self.launches: list[dict] = []

    def factory(self, task_group) -> "FakeDriver":
        return self

    async def launch(self, target_path, args=None, timeout=30_000, cwd=None, env=None) -> FakeApp:
        self.launches.append({"target_path": target_path, "args": args, "timeout": timeout, "cwd": cwd, "env": env})
        if self.error is not None:
            raise self.error
        if self.hang:
            try:
                await anyio.sleep_forever()
            finally:
                self.aborted = True
        return self.app


class CountingStore(SessionStore):
    def __init__(self, path: Path | None = None):
        super().__init__(path)
        self.clears = 0

    def clear(self):
        self.clears += 1
        super().clear()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def state_dir(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "state"
    monkeypatch.setenv("ELECTRODE_HOME", str(path))
    return path


@pytest.fixture
def store(state_dir) -> CountingStore:
    return CountingStore()


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()
