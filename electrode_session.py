"""
Electrode Session: the on-disk session descriptor.

A single JSON file records whether a session server is running and how to
reach it. Its presence alone proves nothing: the server may have died without
cleaning up, so readers pair it with a liveness probe on the recorded pid.

File layout (~/.electrode/session.json, or $ELECTRODE_HOME/session.json):
    port        - loopback port of the control server
    appPath     - what was launched
    pid         - pid of the control server process
    startedAt   - ISO-8601 UTC timestamp
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path


# ============================================================================
# Configuration
# ============================================================================

DEFAULT_PORT = 9847
LOOPBACK = "127.0.0.1"
SESSION_FILENAME = "session.json"


class ElectrodeError(Exception):
    """Base for every error electrode raises on purpose."""


def session_dir() -> Path:
    """Directory holding the session descriptor."""
    override = os.environ.get("ELECTRODE_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".electrode"


def session_file() -> Path:
    return session_dir() / SESSION_FILENAME


def default_port() -> int:
    """Control port, from $ELECTRODE_PORT when set."""
    raw = os.environ.get("ELECTRODE_PORT", "")
    try:
        return int(raw) if raw else DEFAULT_PORT
    except ValueError:
        return DEFAULT_PORT


# ============================================================================
# Descriptor
# ============================================================================

@dataclass(frozen=True)
class SessionInfo:
    """Where a running session lives."""
    port: int
    app_path: str
    pid: int
    started_at: str

    @classmethod
    def create(cls, port: int, app_path: str, pid: int | None = None) -> "SessionInfo":
        return cls(
            port=port,
            app_path=app_path,
            pid=os.getpid() if pid is None else pid,
            started_at=datetime.now(timezone.utc).isoformat(),
        )

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "appPath": self.app_path,
            "pid": self.pid,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionInfo":
        return cls(
            port=int(data["port"]),
            app_path=str(data["appPath"]),
            pid=int(data["pid"]),
            started_at=str(data["startedAt"]),
        )


class SessionStore:
    """Persists at most one SessionInfo.

    The descriptor is never edited in place; ``save`` replaces it wholesale
    and ``clear`` removes it. All three operations are idempotent.
    """

    def __init__(self, path: Path | None = None):
        self._path = path

    @property
    def path(self) -> Path:
        # Resolved lazily so $ELECTRODE_HOME changes are picked up.
        return self._path if self._path is not None else session_file()

    def save(self, session: SessionInfo):
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(session.to_dict(), indent=2))
        tmp.replace(path)

    def load(self) -> SessionInfo | None:
        """Read the descriptor; missing or unreadable state means no session."""
        try:
            data = json.loads(self.path.read_text())
            if not isinstance(data, dict):
                return None
            return SessionInfo.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def clear(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


# ============================================================================
# Liveness
# ============================================================================

def is_process_alive(pid: int) -> bool:
    """Probe the process table with signal 0.

    A pid the OS has since handed to another process reads as alive; the
    descriptor does not record enough to tell the two apart.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError:
        # ProcessLookupError: gone. PermissionError: someone else's process,
        # which cannot be the server we are looking for either.
        return False
    return True


def is_session_alive(session: SessionInfo) -> bool:
    return is_process_alive(session.pid)
