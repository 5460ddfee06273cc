"""Persisted router state: workspaces, the daemon record and the shared engine record.

The file is one pretty-printed JSON document per data directory::

    {
      "version": 1,
      "daemon": {"pid": 4242, "port": 51234, "baseUrl": "http://127.0.0.1:51234", "startedAt": 1700000000000},
      "engine": {"pid": 4243, "port": 51235, "baseUrl": "http://127.0.0.1:51235", "startedAt": 1700000000500},
      "activeId": "ws-0123456789ab",
      "workspaces": [...],
      "diagnostics": {}
    }

All read-modify-write cycles go through ``StateRepository.transaction()``.
"""
from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from openwrk.core.locks import file_lock
from openwrk.process.supervisor import is_process_alive

logger = logging.getLogger("openwrk.router")

SCHEMA_VERSION = 1


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_workspace_path(value: str) -> str:
    resolved = os.path.abspath(os.path.expanduser(value.strip()))
    stripped = resolved.rstrip("/\\")
    return stripped or resolved


def ensure_workspace_dir(path: str) -> str:
    """Create the workspace directory and seed ``opencode.json`` if it has none."""
    resolved = os.path.abspath(os.path.expanduser(path))
    os.makedirs(resolved, exist_ok=True)
    config_path = os.path.join(resolved, "opencode.json")
    if not os.path.exists(config_path):
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump({"$schema": "https://opencode.ai/config.json"}, f, indent=2)
            f.write("\n")
    return resolved


def _short_hash(key: str) -> str:
    return "ws-" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]


def workspace_id_for_local(path: str) -> str:
    return _short_hash(normalize_workspace_path(path))


def workspace_id_for_remote(base_url: str, directory: Optional[str] = None) -> str:
    key = f"{base_url}::{directory}" if directory else base_url
    return _short_hash(key)


@dataclass
class Workspace:
    id: str
    name: str
    path: str
    workspace_type: str = "local"
    base_url: Optional[str] = None
    directory: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    last_used_at: Optional[int] = None

    @property
    def is_remote(self) -> bool:
        return self.workspace_type == "remote"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "workspaceType": self.workspace_type,
            "createdAt": self.created_at,
        }
        if self.base_url is not None:
            data["baseUrl"] = self.base_url
        if self.directory is not None:
            data["directory"] = self.directory
        if self.last_used_at is not None:
            data["lastUsedAt"] = self.last_used_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Workspace":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            path=str(data.get("path") or ""),
            workspace_type=data.get("workspaceType") or "local",
            base_url=data.get("baseUrl"),
            directory=data.get("directory"),
            created_at=int(data.get("createdAt") or now_ms()),
            last_used_at=data.get("lastUsedAt"),
        )


@dataclass
class ProcessRecord:
    pid: int
    port: int
    base_url: str
    started_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"pid": self.pid, "port": self.port, "baseUrl": self.base_url, "startedAt": self.started_at}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ProcessRecord"]:
        if not isinstance(data, dict):
            return None
        try:
            return cls(
                pid=int(data["pid"]),
                port=int(data["port"]),
                base_url=str(data["baseUrl"]),
                started_at=int(data.get("startedAt") or 0),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass
class RouterState:
    schema_version: int = SCHEMA_VERSION
    daemon: Optional[ProcessRecord] = None
    engine: Optional[ProcessRecord] = None
    active_id: str = ""
    workspaces: list[Workspace] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.schema_version,
            "daemon": self.daemon.to_dict() if self.daemon else None,
            "engine": self.engine.to_dict() if self.engine else None,
            "activeId": self.active_id,
            "workspaces": [ws.to_dict() for ws in self.workspaces],
            "diagnostics": self.diagnostics,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RouterState":
        workspaces = []
        for item in data.get("workspaces") or []:
            if isinstance(item, dict) and item.get("id"):
                workspaces.append(Workspace.from_dict(item))
        engine = data.get("engine")
        if engine is None:
            engine = data.get("opencode")
        diagnostics = data.get("diagnostics")
        return cls(
            schema_version=int(data.get("version") or SCHEMA_VERSION),
            daemon=ProcessRecord.from_dict(data.get("daemon")),
            engine=ProcessRecord.from_dict(engine),
            active_id=str(data.get("activeId") or ""),
            workspaces=workspaces,
            diagnostics=diagnostics if isinstance(diagnostics, dict) else {},
        )

    def upsert(self, workspace: Workspace) -> Workspace:
        """Replace the entry with the same id (keeping its createdAt) or append it."""
        existing = self.get(workspace.id)
        if existing is not None:
            workspace.created_at = existing.created_at
        self.workspaces = [ws for ws in self.workspaces if ws.id != workspace.id]
        self.workspaces.append(workspace)
        if not self.active_id:
            self.active_id = workspace.id
        return workspace

    def get(self, workspace_id: str) -> Optional[Workspace]:
        for ws in self.workspaces:
            if ws.id == workspace_id:
                return ws
        return None

    @property
    def active(self) -> Optional[Workspace]:
        return self.get(self.active_id) if self.active_id else None


def find_workspace(state: RouterState, ref: str) -> Optional[Workspace]:
    """Look a workspace up by id, then name, then normalised local path."""
    ref = (ref or "").strip()
    if not ref:
        return None
    for ws in state.workspaces:
        if ws.id == ref or ws.name == ref:
            return ws
    normalized = normalize_workspace_path(ref)
    for ws in state.workspaces:
        if ws.path and normalize_workspace_path(ws.path) == normalized:
            return ws
    return None


def live_daemon(state: RouterState) -> Optional[ProcessRecord]:
    if state.daemon and is_process_alive(state.daemon.pid):
        return state.daemon
    return None


def live_engine(state: RouterState) -> Optional[ProcessRecord]:
    if state.engine and is_process_alive(state.engine.pid):
        return state.engine
    return None


class StateRepository:
    """Load and save ``RouterState`` for one data directory."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.lock_path = path + ".lock"
        self._lock = threading.RLock()
        self._depth = 0
        self._current: Optional[RouterState] = None

    def load(self) -> RouterState:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return RouterState()
        except (OSError, ValueError) as exc:
            logger.warning("Router state at %s is unreadable (%s); starting fresh", self.path, exc)
            return RouterState()
        if not isinstance(data, dict):
            logger.warning("Router state at %s is not an object; starting fresh", self.path)
            return RouterState()
        try:
            return RouterState.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Router state at %s is malformed (%s); starting fresh", self.path, exc)
            return RouterState()

    def save(self, state: RouterState) -> None:
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        payload = json.dumps(state.to_dict(), indent=2) + "\n"
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".state-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.remove(tmp_path)
            raise

    @contextlib.contextmanager
    def transaction(self) -> Iterator[RouterState]:
        """Read, let the caller mutate, then write back, all under both locks.

        Nested transactions on the same thread share the outer lock and the
        outer write.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._current
                finally:
                    self._depth -= 1
                return
            with file_lock(self.lock_path):
                state = self.load()
                self._current = state
                self._depth = 1
                try:
                    yield state
                    self.save(state)
                finally:
                    self._depth = 0
                    self._current = None
