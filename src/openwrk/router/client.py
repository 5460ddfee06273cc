"""Attach to the router daemon, spawning it in the background when none is running.

``ensure_daemon`` is probe-existing -> spawn-if-absent -> poll-until-healthy.
Its collaborators (state loader, liveness check, health probe, spawner) are
parameters so the whole decision can be exercised without real processes.
Spawning happens under ``<data-dir>/daemon.lock`` and the state is probed
again once the lock is held, so two CLI invocations racing to start the
daemon end up sharing one.
"""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from openwrk.core.config import Settings
from openwrk.core.locks import file_lock
from openwrk.core.net import resolve_port
from openwrk.errors import DaemonUnavailable, OpenwrkError
from openwrk.process.health import http_health_check, wait_healthy
from openwrk.process.supervisor import is_process_alive, spawn_detached
from openwrk.router.state import RouterState, StateRepository

logger = logging.getLogger("openwrk.router")

REUSE_PROBE_TIMEOUT = 1.5
REUSE_PROBE_POLL = 0.15
SPAWN_PROBE_TIMEOUT = 10.0
SPAWN_PROBE_POLL = 0.25


class RouterRequestError(OpenwrkError):
    def __init__(self, message: str, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class DaemonTarget:
    base_url: str
    data_dir: str
    pid: Optional[int] = None
    spawned: bool = False


def probe_daemon(base_url: str, timeout: float, poll_interval: float) -> Any:
    return wait_healthy(http_health_check(base_url), timeout, poll_interval, label="openwrk daemon")


def daemon_argv(settings: Settings, host: str, port: int) -> list[str]:
    """Command line for a background ``openwrk daemon run`` carrying the engine flags.

    Every flag is a global option, so all of them precede the subcommand.
    """
    argv = [
        sys.executable, "-m", "openwrk",
        "--data-dir", settings.data_dir,
        "--daemon-host", host,
        "--daemon-port", str(port),
        "--opencode-source", settings.opencode_source,
        "--sidecar-source", settings.sidecar_source,
        "--sidecar-dir", settings.sidecar_dir,
        "--sidecar-base-url", settings.sidecar_base_url,
        "--sidecar-manifest", settings.sidecar_manifest_url,
    ]
    for flag, value in (
        ("--opencode-bin", settings.opencode_bin),
        ("--opencode-host", settings.opencode_host),
        ("--opencode-port", settings.opencode_port),
        ("--opencode-workdir", settings.opencode_workdir),
        ("--opencode-username", settings.opencode_username),
        ("--opencode-password", settings.opencode_password),
        ("--cors", settings.cors),
    ):
        if value:
            argv.extend([flag, str(value)])
    if settings.allow_external:
        argv.append("--allow-external")
    argv.extend(["daemon", "run"])
    return argv


def spawn_router_daemon(settings: Settings, host: str, port: int) -> int:
    return spawn_detached(daemon_argv(settings, host, port), env=dict(os.environ))


def ensure_daemon(
    settings: Settings,
    auto_start: bool = True,
    *,
    load_state: Optional[Callable[[], RouterState]] = None,
    is_alive: Callable[[Optional[int]], bool] = is_process_alive,
    probe: Callable[[str, float, float], Any] = probe_daemon,
    spawn: Callable[[Settings, str, int], int] = spawn_router_daemon,
) -> DaemonTarget:
    """Return a healthy daemon for ``settings.data_dir``, starting one if allowed."""
    if load_state is None:
        load_state = StateRepository(settings.state_path).load

    def _existing() -> Optional[DaemonTarget]:
        record = load_state().daemon
        if record is None or not record.base_url or not is_alive(record.pid):
            return None
        try:
            probe(record.base_url, REUSE_PROBE_TIMEOUT, REUSE_PROBE_POLL)
        except OpenwrkError as exc:
            logger.info("Recorded daemon pid=%s did not answer (%s)", record.pid, exc)
            return None
        return DaemonTarget(base_url=record.base_url, data_dir=settings.data_dir, pid=record.pid)

    found = _existing()
    if found is not None:
        return found
    if not auto_start:
        raise DaemonUnavailable("openwrk daemon is not running")

    with file_lock(os.path.join(settings.data_dir, "daemon.lock")):
        found = _existing()
        if found is not None:
            return found
        host = settings.daemon_host
        port = resolve_port(settings.daemon_port, host)
        connect_host = "127.0.0.1" if host in ("0.0.0.0", "::", "") else host
        base_url = f"http://{connect_host}:{port}"
        logger.info("Starting openwrk daemon on %s", base_url)
        pid = spawn(settings, host, port)
        probe(base_url, SPAWN_PROBE_TIMEOUT, SPAWN_PROBE_POLL)
        return DaemonTarget(base_url=base_url, data_dir=settings.data_dir, pid=pid, spawned=True)


def request_router(
    settings: Settings,
    method: str,
    path: str,
    body: Any = None,
    *,
    auto_start: bool = True,
    timeout: float = 30.0,
) -> Any:
    target = ensure_daemon(settings, auto_start)
    url = target.base_url.rstrip("/") + path
    with httpx.Client(timeout=timeout) as client:
        response = client.request(method, url, json=body)
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if not response.is_success:
        message = payload.get("error") if isinstance(payload, dict) else None
        raise RouterRequestError(message or f"HTTP {response.status_code}", response.status_code)
    return payload
