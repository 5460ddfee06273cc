"""Foreground ``openwrk start``: engine, server and bot for one workspace, no daemon.

Startup order is engine -> engine health -> server -> server health ->
server verification -> bot version -> bot. Any failure along the way stops
whatever was already started and propagates; once running, a critical
child's exit stops the rest (see ``process.supervisor.Session``).
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from openwrk.core.config import DEFAULT_APPROVAL_TIMEOUT_MS, DEFAULT_OPENWORK_PORT, Settings, parse_list
from openwrk.core.net import resolve_connect_url, resolve_port
from openwrk.errors import OpenwrkError
from openwrk.integrations.opencode import OpencodeClient, start_opencode
from openwrk.integrations.openwork_server import (
    OpenworkServerClient,
    ServerError,
    start_openwork_server,
    start_owpenbot,
    verify_openwork_server,
)
from openwrk.process.health import engine_health_check, http_health_check, wait_healthy
from openwrk.process.supervisor import Session, install_signal_handlers
from openwrk.router.state import ensure_workspace_dir
from openwrk.sidecars.resolver import SidecarResolver, verify_binary_version

logger = logging.getLogger("openwrk.session")


@dataclass
class StartOptions:
    workspace: str
    opencode_bind_host: str = "0.0.0.0"
    opencode_port: Optional[int] = None
    opencode_auth: bool = True
    opencode_username: Optional[str] = None
    opencode_password: Optional[str] = None
    openwork_host: str = "0.0.0.0"
    openwork_port: Optional[int] = None
    openwork_token: Optional[str] = None
    openwork_host_token: Optional[str] = None
    approval_mode: str = "manual"
    approval_timeout_ms: int = DEFAULT_APPROVAL_TIMEOUT_MS
    read_only: bool = False
    cors: str = "*"
    connect_host: Optional[str] = None
    openwork_server_bin: Optional[str] = None
    owpenbot_bin: Optional[str] = None
    owpenbot_enabled: bool = True
    bot_optional: bool = False
    check: bool = False
    check_events: bool = False


class StartSession:
    def __init__(
        self,
        settings: Settings,
        options: StartOptions,
        resolver: Optional[SidecarResolver] = None,
    ) -> None:
        self.settings = settings
        self.options = options
        self.resolver = resolver or SidecarResolver.from_settings(settings)
        self.session = Session()
        self.summary: dict[str, Any] = {}
        self.engine_client: Optional[OpencodeClient] = None
        self.server_client: Optional[OpenworkServerClient] = None

    def start(self) -> dict[str, Any]:
        """Bring every sidecar up and verify it; returns the run summary."""
        try:
            return self._start()
        except BaseException:
            logger.error("Startup failed; stopping started sidecars")
            self.session.stop_all()
            raise

    def _start(self) -> dict[str, Any]:
        opts = self.options
        settings = self.settings
        workspace = ensure_workspace_dir(opts.workspace)

        engine_port = resolve_port(opts.opencode_port, "127.0.0.1")
        server_port = resolve_port(opts.openwork_port, "127.0.0.1", DEFAULT_OPENWORK_PORT)
        username = (opts.opencode_username or settings.opencode_username) if opts.opencode_auth else None
        password = (opts.opencode_password or str(uuid.uuid4())) if opts.opencode_auth else None
        token = opts.openwork_token or str(uuid.uuid4())
        host_token = opts.openwork_host_token or str(uuid.uuid4())
        cors = parse_list(opts.cors) or ["*"]

        engine = self.resolver.resolve(
            "opencode", settings.opencode_bin, settings.opencode_source, settings.allow_external
        )
        engine = verify_binary_version("opencode", engine)
        server = self.resolver.resolve(
            "openwork-server", opts.openwork_server_bin, settings.sidecar_source, settings.allow_external
        )
        bot = None
        if opts.owpenbot_enabled:
            bot = self.resolver.resolve(
                "owpenbot", opts.owpenbot_bin, settings.sidecar_source, settings.allow_external
            )

        engine_url = f"http://127.0.0.1:{engine_port}"
        engine_connect = resolve_connect_url(engine_port, opts.connect_host)["connect_url"] or engine_url
        server_url = f"http://127.0.0.1:{server_port}"
        server_connect = resolve_connect_url(server_port, opts.connect_host)["connect_url"] or server_url

        engine_handle = start_opencode(
            engine.path,
            workdir=workspace,
            host=opts.opencode_bind_host,
            port=engine_port,
            username=username,
            password=password,
            cors_origins=cors,
        )
        self.session.adopt(engine_handle)
        self.engine_client = OpencodeClient(engine_url, directory=workspace, username=username, password=password)
        wait_healthy(engine_health_check(self.engine_client), 10.0, 0.25, label="opencode")

        server_handle = start_openwork_server(
            server.path,
            host=opts.openwork_host,
            port=server_port,
            workspace=workspace,
            token=token,
            host_token=host_token,
            approval_mode="auto" if opts.approval_mode == "auto" else "manual",
            approval_timeout_ms=opts.approval_timeout_ms,
            read_only=opts.read_only,
            cors_origins=cors,
            opencode_base_url=engine_connect,
            opencode_directory=workspace,
            opencode_username=username,
            opencode_password=password,
        )
        self.session.adopt(server_handle)
        wait_healthy(http_health_check(server_url), 10.0, 0.25, label="openwork-server")

        self.server_client = OpenworkServerClient(server_url, token=token, host_token=host_token)
        server_version = verify_openwork_server(
            self.server_client,
            expected_version=server.expected_version,
            expected_workspace=workspace,
            expected_opencode_base_url=engine_connect,
            expected_opencode_directory=workspace,
            expected_opencode_username=username,
            expected_opencode_password=password,
        )

        if bot is not None:
            bot = verify_binary_version("owpenbot", bot)
            bot_handle = start_owpenbot(
                bot.path,
                workspace=workspace,
                opencode_url=engine_connect,
                opencode_username=username,
                opencode_password=password,
            )
            self.session.adopt(bot_handle, critical=not opts.bot_optional)

        self.summary = {
            "workspace": workspace,
            "approval": {"mode": opts.approval_mode, "timeoutMs": opts.approval_timeout_ms, "readOnly": opts.read_only},
            "opencode": {
                "baseUrl": engine_url,
                "connectUrl": engine_connect,
                "username": username,
                "password": password,
                "bindHost": opts.opencode_bind_host,
                "port": engine_port,
                "version": engine.actual_version,
                "source": engine.source,
            },
            "openwork": {
                "baseUrl": server_url,
                "connectUrl": server_connect,
                "host": opts.openwork_host,
                "port": server_port,
                "token": token,
                "hostToken": host_token,
                "version": server_version,
                "source": server.source,
            },
            "owpenbot": {
                "enabled": bot is not None,
                "version": bot.actual_version if bot else None,
            },
        }
        return self.summary

    def run_checks(self) -> None:
        """Exercise the running server and engine end to end."""
        if self.server_client is None or self.engine_client is None:
            raise OpenwrkError("session is not started")
        items = self.server_client.workspaces()
        if not items:
            raise ServerError("OpenWork server returned no workspaces")
        self.server_client.workspace_config(str(items[0].get("id")))

        created = self.engine_client.create_session("OpenWork headless check")
        self.engine_client.session_messages(created["id"], limit=10)

        if self.options.check_events:
            events: list[dict[str, Any]] = []
            stop = threading.Event()
            reader = threading.Thread(
                target=self.engine_client.collect_events,
                kwargs={"stop": stop, "limit": 10, "sink": events},
                name="check-events",
                daemon=True,
            )
            reader.start()
            self.engine_client.create_session("OpenWork headless check events")
            time.sleep(1.2)
            stop.set()
            reader.join(timeout=5.0)
            if not events:
                raise OpenwrkError("No SSE events observed during check")

    def wait(self) -> int:
        """Block until a critical child exits or SIGINT/SIGTERM arrives."""
        install_signal_handlers(lambda: threading.Thread(target=self.session.stop_all, daemon=True).start())
        while not self.session.wait(timeout=0.5):
            pass
        if self.session.failed:
            return self.session.exit_code or 1
        return 0

    def stop(self) -> None:
        self.session.stop_all()
