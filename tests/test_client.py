import tempfile
import threading
import time
from unittest.mock import patch

import httpx
import pytest

from openwrk.core.config import Settings
from openwrk.errors import DaemonUnavailable, HealthTimeout
from openwrk.router.client import DaemonTarget, RouterRequestError, daemon_argv, ensure_daemon, request_router
from openwrk.router.state import ProcessRecord, RouterState


class FakeHost:
    """In-memory stand-in for the state file, process table and spawner."""

    def __init__(self, record: ProcessRecord | None = None, spawn_delay: float = 0.0) -> None:
        self.state = RouterState(daemon=record)
        self.alive: set[int] = {record.pid} if record else set()
        self.healthy: set[str] = {record.base_url} if record else set()
        self.spawned: list[tuple[str, int]] = []
        self.spawn_delay = spawn_delay
        self._lock = threading.Lock()

    def load_state(self) -> RouterState:
        with self._lock:
            return RouterState(daemon=self.state.daemon)

    def is_alive(self, pid) -> bool:
        return pid in self.alive

    def probe(self, base_url: str, timeout: float, poll: float):
        if base_url not in self.healthy:
            raise HealthTimeout("Timed out waiting for openwrk daemon", "connection refused")
        return {"ok": True}

    def spawn(self, settings: Settings, host: str, port: int) -> int:
        time.sleep(self.spawn_delay)
        with self._lock:
            pid = 5000 + len(self.spawned)
            self.spawned.append((host, port))
            base_url = f"http://127.0.0.1:{port}"
            self.state = RouterState(daemon=ProcessRecord(pid=pid, port=port, base_url=base_url))
            self.alive.add(pid)
            self.healthy.add(base_url)
        return pid

    def ensure(self, settings: Settings, auto_start: bool = True) -> DaemonTarget:
        return ensure_daemon(
            settings,
            auto_start,
            load_state=self.load_state,
            is_alive=self.is_alive,
            probe=self.probe,
            spawn=self.spawn,
        )


def _settings(tmpdir: str) -> Settings:
    return Settings.from_env().override(data_dir=tmpdir, daemon_host="127.0.0.1")


def test_reuses_live_daemon() -> None:
    host = FakeHost(ProcessRecord(pid=42, port=51234, base_url="http://127.0.0.1:51234"))
    with tempfile.TemporaryDirectory() as tmpdir:
        target = host.ensure(_settings(tmpdir))
    assert target.base_url == "http://127.0.0.1:51234"
    assert target.pid == 42
    assert target.spawned is False
    assert host.spawned == []


def test_spawns_when_record_is_stale() -> None:
    host = FakeHost(ProcessRecord(pid=42, port=51234, base_url="http://127.0.0.1:51234"))
    host.alive.clear()
    with tempfile.TemporaryDirectory() as tmpdir:
        target = host.ensure(_settings(tmpdir))
    assert target.spawned is True
    assert len(host.spawned) == 1


def test_spawns_when_recorded_daemon_does_not_answer() -> None:
    host = FakeHost(ProcessRecord(pid=42, port=51234, base_url="http://127.0.0.1:51234"))
    host.healthy.clear()
    with tempfile.TemporaryDirectory() as tmpdir:
        target = host.ensure(_settings(tmpdir))
    assert target.spawned is True
    assert len(host.spawned) == 1


def test_second_attach_reuses_first_spawn() -> None:
    host = FakeHost()
    with tempfile.TemporaryDirectory() as tmpdir:
        settings = _settings(tmpdir)
        first = host.ensure(settings)
        second = host.ensure(settings)
    assert len(host.spawned) == 1
    assert first.base_url == second.base_url
    assert second.spawned is False


def test_concurrent_attach_spawns_once() -> None:
    host = FakeHost(spawn_delay=0.2)
    results: list[DaemonTarget] = []
    with tempfile.TemporaryDirectory() as tmpdir:
        settings = _settings(tmpdir)
        threads = [threading.Thread(target=lambda: results.append(host.ensure(settings))) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
    assert len(host.spawned) == 1
    assert len(results) == 5
    assert len({r.base_url for r in results}) == 1


def test_no_auto_start_raises() -> None:
    host = FakeHost()
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(DaemonUnavailable, match="openwrk daemon is not running"):
            host.ensure(_settings(tmpdir), auto_start=False)
    assert host.spawned == []


def test_daemon_argv_puts_global_flags_before_subcommand() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        settings = _settings(tmpdir).override(allow_external=True, opencode_bin="/opt/opencode", opencode_port=4096)
        argv = daemon_argv(settings, "127.0.0.1", 51234)
    assert argv[1:3] == ["-m", "openwrk"]
    assert argv[-2:] == ["daemon", "run"]
    assert argv[argv.index("--daemon-port") + 1] == "51234"
    assert argv[argv.index("--opencode-bin") + 1] == "/opt/opencode"
    assert argv[argv.index("--opencode-port") + 1] == "4096"
    assert "--allow-external" in argv


def _mock_client(handler):
    real_client = httpx.Client
    transport = httpx.MockTransport(handler)
    return lambda **kwargs: real_client(transport=transport, **kwargs)


def test_request_router_returns_json_and_raises_on_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/workspaces":
            return httpx.Response(200, json={"activeId": "", "workspaces": []})
        return httpx.Response(404, json={"error": "workspace not found"})

    target = DaemonTarget(base_url="http://127.0.0.1:51234", data_dir="/tmp")
    with tempfile.TemporaryDirectory() as tmpdir:
        settings = _settings(tmpdir)
        with patch("openwrk.router.client.ensure_daemon", return_value=target), \
             patch("openwrk.router.client.httpx.Client", _mock_client(handler)):
            assert request_router(settings, "GET", "/workspaces") == {"activeId": "", "workspaces": []}
            with pytest.raises(RouterRequestError, match="workspace not found") as excinfo:
                request_router(settings, "POST", "/workspaces/missing/activate")
    assert excinfo.value.status_code == 404
