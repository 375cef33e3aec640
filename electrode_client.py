"""
Electrode Client: find the running session and make one control call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import httpx

from electrode_session import (
    LOOPBACK,
    ElectrodeError,
    SessionInfo,
    SessionStore,
    is_session_alive,
)


# Connecting is quick or not at all; a script may legitimately run for ages.
REQUEST_TIMEOUT = httpx.Timeout(None, connect=5.0)

OPEN_HINT = "  electrode open -p /path/to/electron/app"


class SessionError(ElectrodeError):
    """No usable session; the message tells the user what to do."""


class NoSessionError(SessionError):
    def __init__(self):
        super().__init__("No active session found. Start one with:\n" + OPEN_HINT)


class SessionNotAliveError(SessionError):
    def __init__(self, session: SessionInfo):
        super().__init__(
            f"Session exists but its process (pid {session.pid}) is not running. "
            "Start a new session with:\n" + OPEN_HINT
        )
        self.session = session


@dataclass
class ClientResponse:
    success: bool
    data: Any = None
    error: str | None = None


class ControlClient:
    """One-shot calls against the session recorded in the store."""

    def __init__(
        self,
        store: SessionStore | None = None,
        transport: httpx.BaseTransport | None = None,
        probe: Callable[[SessionInfo], bool] = is_session_alive,
    ):
        self._store = store or SessionStore()
        self._transport = transport
        self._probe = probe

    def resolve_active_session(self) -> SessionInfo:
        session = self._store.load()
        if session is None:
            raise NoSessionError()
        if not self._probe(session):
            raise SessionNotAliveError(session)
        return session

    def request(self, session: SessionInfo, method: str, path: str, body: dict | None = None) -> ClientResponse:
        url = f"http://{LOOPBACK}:{session.port}{path}"
        try:
            with httpx.Client(transport=self._transport, timeout=REQUEST_TIMEOUT) as http:
                response = http.request(method, url, json=body)
        except httpx.TransportError as e:
            return ClientResponse(success=False, error=f"Connection failed: {e}")

        try:
            parsed = response.json()
        except ValueError:
            return ClientResponse(success=False, error="Invalid response")

        if response.status_code == 200:
            return ClientResponse(success=True, data=parsed)
        message = parsed.get("error") if isinstance(parsed, dict) else None
        return ClientResponse(success=False, error=message or "Request failed")

    def call(self, method: str, path: str, body: dict | None = None) -> ClientResponse:
        return self.request(self.resolve_active_session(), method, path, body)

    def status(self) -> ClientResponse:
        return self.call("GET", "/status")

    def eval_script(self, script: str) -> ClientResponse:
        return self.call("POST", "/eval", {"script": script})

    def screenshot(self, output: str) -> ClientResponse:
        return self.call("POST", "/screenshot", {"output": output})

    def close(self) -> ClientResponse:
        return self.call("POST", "/close")


# ============================================================================
# Module-level shortcuts
# ============================================================================

def get_active_session() -> SessionInfo:
    return ControlClient().resolve_active_session()


def get_status() -> ClientResponse:
    return ControlClient().status()


def eval_script(script: str) -> ClientResponse:
    return ControlClient().eval_script(script)


def take_screenshot(output: str) -> ClientResponse:
    return ControlClient().screenshot(output)


def close_app() -> ClientResponse:
    return ControlClient().close()
