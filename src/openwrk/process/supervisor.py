"""Launch, watch and stop sidecar processes.

Each child's stdout/stderr is drained by a daemon thread that forwards
every line to the logging subsystem under ``openwrk.sidecar.<name>``.
``stop_process`` is terminate -> wait(grace) -> kill -> wait(grace), so it
returns within twice the grace period even for a child that ignores
SIGTERM.
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import uuid
from dataclasses import dataclass, field
from typing import IO, Callable, Optional

from openwrk.core.logging_config import log_sidecar_line
from openwrk.errors import ProcessSpawnError

logger = logging.getLogger("openwrk.supervisor")

DEFAULT_GRACE_PERIOD = 2.5


@dataclass
class ProcessHandle:
    name: str
    process: subprocess.Popen
    command: list[str]
    readers: list[threading.Thread] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.poll()

    def is_running(self) -> bool:
        return self.process.poll() is None


def build_env(name: str, overrides: Optional[dict[str, str]] = None, run_id: Optional[str] = None) -> dict[str, str]:
    """Ambient environment plus the service's overrides, tagged with the run id."""
    run_id = run_id or os.getenv("OPENWRK_RUN_ID") or uuid.uuid4().hex
    env = dict(os.environ)
    env.update({key: value for key, value in (overrides or {}).items() if value is not None})
    env["OPENWRK_RUN_ID"] = run_id
    attributes = f"service.name={name},openwrk.run_id={run_id}"
    existing = env.get("OTEL_RESOURCE_ATTRIBUTES", "").strip()
    env["OTEL_RESOURCE_ATTRIBUTES"] = f"{existing},{attributes}" if existing else attributes
    return env


def _pump(name: str, stream_name: str, stream: IO[str]) -> None:
    try:
        for line in stream:
            line = line.rstrip("\r\n")
            if line.strip():
                log_sidecar_line(name, stream_name, line)
    except (OSError, ValueError):
        # Stream closed underneath us during shutdown
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


def start_process(
    command: str,
    args: list[str],
    *,
    name: str,
    cwd: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
    run_id: Optional[str] = None,
) -> ProcessHandle:
    argv = [command, *args]
    logger.info("Starting %s: %s (cwd=%s)", name, " ".join(argv), cwd or os.getcwd())
    try:
        process = subprocess.Popen(
            argv,
            cwd=cwd,
            env=build_env(name, env, run_id),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            creationflags=subprocess.CREATE_NEW_PROCESS_GROUP if sys.platform == "win32" else 0,
        )
    except OSError as exc:
        raise ProcessSpawnError(f"Failed to start {name} ({command}): {exc}") from exc

    handle = ProcessHandle(name=name, process=process, command=argv)
    for stream_name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
        if stream is None:
            continue
        reader = threading.Thread(
            target=_pump,
            args=(name, stream_name, stream),
            name=f"{name}-{stream_name}",
            daemon=True,
        )
        reader.start()
        handle.readers.append(reader)
    logger.info("%s started (pid=%s)", name, process.pid)
    return handle


def stop_process(handle: ProcessHandle, grace_period: float = DEFAULT_GRACE_PERIOD) -> Optional[int]:
    """Stop *handle*, escalating to a kill after *grace_period* seconds.

    Returns the exit code, or None if the child somehow survived both waits.
    """
    process = handle.process
    if process.poll() is not None:
        return process.returncode

    logger.info("Stopping %s (pid=%s)", handle.name, process.pid)
    try:
        process.terminate()
    except OSError as exc:
        logger.warning("Error terminating %s: %s", handle.name, exc)
    try:
        return process.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        pass

    logger.warning("%s did not exit after %.1fs; killing", handle.name, grace_period)
    try:
        process.kill()
    except OSError as exc:
        logger.warning("Error killing %s: %s", handle.name, exc)
    try:
        return process.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        logger.error("%s (pid=%s) still running after kill", handle.name, process.pid)
        return None


def is_process_alive(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    if sys.platform == "win32":
        result = subprocess.run(
            ["tasklist", "/FI", f"PID eq {pid}", "/NH"],
            capture_output=True,
            text=True,
        )
        return str(pid) in result.stdout
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def spawn_detached(argv: list[str], *, cwd: Optional[str] = None, env: Optional[dict[str, str]] = None) -> int:
    """Start *argv* in its own session with stdio discarded and return its pid."""
    kwargs: dict = {
        "cwd": cwd,
        "env": env,
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "close_fds": True,
    }
    if os.name == "nt":
        kwargs["creationflags"] = (
            getattr(subprocess, "DETACHED_PROCESS", 0)
            | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        )
    else:
        kwargs["start_new_session"] = True
    try:
        process = subprocess.Popen(argv, **kwargs)
    except OSError as exc:
        raise ProcessSpawnError(f"Failed to start {argv[0]}: {exc}") from exc
    logger.info("Spawned detached process pid=%s: %s", process.pid, " ".join(argv))
    return process.pid


@dataclass
class _Child:
    handle: ProcessHandle
    critical: bool
    watcher: Optional[threading.Thread] = None


class Session:
    """Children started for one foreground run, stopped together.

    A watcher thread per child notices exits that nobody asked for. When a
    critical child exits, every sibling is stopped and the run is marked
    failed with that child's exit code; a non-critical exit is only logged.
    """

    def __init__(
        self,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        on_failure: Optional[Callable[[str, Optional[int]], None]] = None,
    ) -> None:
        self.grace_period = grace_period
        self.on_failure = on_failure
        self._children: list[_Child] = []
        self._lock = threading.Lock()
        self._stopping = False
        self._done = threading.Event()
        self.exit_code: Optional[int] = None
        self.failed_child: Optional[str] = None

    @property
    def handles(self) -> list[ProcessHandle]:
        with self._lock:
            return [child.handle for child in self._children]

    def start(
        self,
        command: str,
        args: list[str],
        *,
        name: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        critical: bool = True,
    ) -> ProcessHandle:
        handle = start_process(command, args, name=name, cwd=cwd, env=env)
        self.adopt(handle, critical=critical)
        return handle

    def adopt(self, handle: ProcessHandle, *, critical: bool = True) -> None:
        child = _Child(handle=handle, critical=critical)
        with self._lock:
            self._children.append(child)
        child.watcher = threading.Thread(
            target=self._watch,
            args=(child,),
            name=f"watch-{handle.name}",
            daemon=True,
        )
        child.watcher.start()

    def _watch(self, child: _Child) -> None:
        code = child.handle.process.wait()
        with self._lock:
            if self._stopping:
                return
        if not child.critical:
            logger.warning("%s exited (code=%s); continuing without it", child.handle.name, code)
            return
        logger.error("%s exited unexpectedly (code=%s); stopping session", child.handle.name, code)
        with self._lock:
            if self.failed_child is None:
                self.failed_child = child.handle.name
                self.exit_code = code if code and code > 0 else 1
        if self.on_failure is not None:
            self.on_failure(child.handle.name, code)
        self.stop_all()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the session has been stopped; True if it was."""
        return self._done.wait(timeout)

    @property
    def failed(self) -> bool:
        return self.failed_child is not None

    def stop_all(self) -> None:
        """Stop every child in reverse start order. Safe to call repeatedly."""
        with self._lock:
            if self._stopping:
                already = True
            else:
                already = False
                self._stopping = True
            children = list(reversed(self._children))
        if already:
            self._done.wait(self.grace_period * 2 * max(len(children), 1) + 1)
            return
        try:
            for child in children:
                stop_process(child.handle, self.grace_period)
        finally:
            self._done.set()


def install_signal_handlers(handler: Callable[[], None]) -> None:
    """Route SIGINT/SIGTERM to *handler*; only works on the main thread."""

    def _on_signal(signum: int, _frame: object) -> None:
        logger.info("Received signal %s", signum)
        handler()

    signal.signal(signal.SIGINT, _on_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _on_signal)
