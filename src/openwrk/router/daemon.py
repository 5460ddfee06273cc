"""Long-lived router daemon: workspace registry plus one shared engine, over HTTP.

``run_router_daemon`` is what ``openwrk daemon run`` executes (usually in a
detached child spawned by ``router.client.ensure_daemon``). ``create_app``
builds the FastAPI app around a ``RouterDaemon`` and is what the tests
drive through ``TestClient``.
"""
from __future__ import annotations

import enum
import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from openwrk import __version__
from openwrk.core.config import DEFAULT_CORS, Settings, parse_list
from openwrk.core.net import resolve_port
from openwrk.errors import OpenwrkError
from openwrk.integrations.opencode import OpencodeClient, start_opencode
from openwrk.process.health import engine_health_check, wait_healthy
from openwrk.process.supervisor import ProcessHandle, is_process_alive, stop_process
from openwrk.router.state import (
    ProcessRecord,
    RouterState,
    StateRepository,
    Workspace,
    ensure_workspace_dir,
    find_workspace,
    live_daemon,
    live_engine,
    now_ms,
    workspace_id_for_local,
    workspace_id_for_remote,
)
from openwrk.sidecars.downloader import ManifestCache
from openwrk.sidecars.models import SidecarBinary
from openwrk.sidecars.resolver import SidecarResolver, verify_binary_version

logger = logging.getLogger("openwrk.router")

ENGINE_REUSE_TIMEOUT = 2.0
ENGINE_REUSE_POLL = 0.2
ENGINE_LAUNCH_TIMEOUT = 10.0
ENGINE_LAUNCH_POLL = 0.25


class DaemonPhase(str, enum.Enum):
    STARTING = "starting"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class EnginePhase(str, enum.Enum):
    NOT_STARTED = "not_started"
    LAUNCHING = "launching"
    HEALTHY = "healthy"


class WorkspaceNotFound(OpenwrkError):
    pass


class RouterDaemon:
    """State machine and operations behind the daemon's HTTP routes."""

    def __init__(
        self,
        settings: Settings,
        repository: Optional[StateRepository] = None,
        resolver: Optional[SidecarResolver] = None,
        port: Optional[int] = None,
    ) -> None:
        self.settings = settings
        self.repository = repository or StateRepository(settings.state_path)
        self.resolver = resolver
        self.manifests = ManifestCache()
        self.host = settings.daemon_host
        self.port = port
        self.phase = DaemonPhase.STARTING
        self.engine_phase = EnginePhase.NOT_STARTED
        self.engine_binary: Optional[SidecarBinary] = None
        self.last_engine_error: Optional[str] = None
        self.shutdown_hook: Optional[Callable[[], None]] = None
        self._engine_handle: Optional[ProcessHandle] = None
        self._engine_lock = threading.Lock()
        self._phase_lock = threading.Lock()
        self._engine_workdir: Optional[str] = None
        self._published: Optional[ProcessRecord] = None

    # ── startup ───────────────────────────────────────────────

    @property
    def connect_host(self) -> str:
        return "127.0.0.1" if self.host in ("0.0.0.0", "::", "") else self.host

    @property
    def base_url(self) -> str:
        return f"http://{self.connect_host}:{self.port}"

    def prepare(self) -> None:
        """Pick the listen port: requested, then last recorded, then ephemeral."""
        state = self.repository.load()
        previous = state.daemon.port if state.daemon else None
        self.port = resolve_port(self.settings.daemon_port, self.host, previous)
        logger.info("Router daemon will listen on %s:%s", self.host, self.port)

    def _engine_auth(self) -> tuple[Optional[str], Optional[str]]:
        password = self.settings.opencode_password
        return (self.settings.opencode_username if password else None, password)

    def engine_client(self, base_url: str, directory: Optional[str]) -> OpencodeClient:
        username, password = self._engine_auth()
        return OpencodeClient(base_url=base_url, directory=directory or None, username=username, password=password)

    def _engine_workdir_for(self, state: RouterState) -> str:
        if self._engine_workdir is None:
            workdir = self.settings.opencode_workdir
            if not workdir:
                active = state.active
                workdir = active.path if active and not active.is_remote else os.getcwd()
            self._engine_workdir = ensure_workspace_dir(workdir)
        return self._engine_workdir

    def resolve_engine_binary(self) -> SidecarBinary:
        if self.engine_binary is None:
            if self.resolver is None:
                self.resolver = SidecarResolver.from_settings(self.settings, self.manifests)
            binary = self.resolver.resolve(
                "opencode",
                self.settings.opencode_bin,
                self.settings.opencode_source,
                self.settings.allow_external,
            )
            self.engine_binary = verify_binary_version("opencode", binary)
            logger.info(
                "Engine binary %s (source=%s, version=%s)",
                self.engine_binary.path, self.engine_binary.source, self.engine_binary.actual_version,
            )
        return self.engine_binary

    def ensure_engine(self) -> ProcessRecord:
        """Return the live shared engine, launching it if needed. Serialised per daemon."""
        with self._engine_lock:
            state = self.repository.load()
            workdir = self._engine_workdir_for(state)
            existing = live_engine(state)
            if existing is not None:
                try:
                    wait_healthy(
                        engine_health_check(self.engine_client(existing.base_url, workdir)),
                        ENGINE_REUSE_TIMEOUT,
                        ENGINE_REUSE_POLL,
                        label="opencode",
                    )
                except OpenwrkError as exc:
                    logger.warning("Recorded engine pid=%s is unhealthy (%s); relaunching", existing.pid, exc)
                else:
                    self.engine_phase = EnginePhase.HEALTHY
                    return existing
            return self._launch_engine(state, workdir)

    def _launch_engine(self, state: RouterState, workdir: str) -> ProcessRecord:
        self.engine_phase = EnginePhase.LAUNCHING
        if self._engine_handle is not None:
            stop_process(self._engine_handle)
            self._engine_handle = None
        try:
            binary = self.resolve_engine_binary()
            recorded = state.engine.port if state.engine else None
            port = resolve_port(self.settings.opencode_port or recorded, "127.0.0.1", recorded)
            host = self.settings.opencode_host
            username, password = self._engine_auth()
            cors = parse_list(self.settings.cors or DEFAULT_CORS) or ["*"]
            handle = start_opencode(
                binary.path,
                workdir=workdir,
                host=host,
                port=port,
                username=username,
                password=password,
                cors_origins=cors,
            )
            self._engine_handle = handle
            base_url = f"http://{'127.0.0.1' if host in ('0.0.0.0', '::') else host}:{port}"
            wait_healthy(
                engine_health_check(self.engine_client(base_url, workdir)),
                ENGINE_LAUNCH_TIMEOUT,
                ENGINE_LAUNCH_POLL,
                label="opencode",
            )
        except OpenwrkError as exc:
            self.engine_phase = EnginePhase.NOT_STARTED
            self.last_engine_error = str(exc)
            if self._engine_handle is not None:
                stop_process(self._engine_handle)
                self._engine_handle = None
            self._record_diagnostics()
            raise

        record = ProcessRecord(pid=handle.pid, port=port, base_url=base_url)
        with self.repository.transaction() as current:
            current.engine = record
            current.diagnostics = self._diagnostics_snapshot(EnginePhase.HEALTHY, None)
        self.engine_phase = EnginePhase.HEALTHY
        self.last_engine_error = None
        logger.info("Engine healthy at %s (pid=%s)", base_url, handle.pid)
        return record

    def _diagnostics_snapshot(self, phase: EnginePhase, error: Optional[str]) -> dict[str, Any]:
        return {
            "dataDir": self.settings.data_dir,
            "statePath": self.repository.path,
            "engineBinary": self.engine_binary.to_dict() if self.engine_binary else None,
            "engineState": phase.value,
            "lastEngineError": error,
        }

    def _record_diagnostics(self) -> None:
        with self.repository.transaction() as state:
            state.diagnostics = self._diagnostics_snapshot(self.engine_phase, self.last_engine_error)

    # ── lifecycle ─────────────────────────────────────────────

    def mark_listening(self) -> None:
        """Publish this process as the daemon. A no-op once shutdown has begun."""
        record = ProcessRecord(pid=os.getpid(), port=int(self.port or 0), base_url=self.base_url)
        # Held across the write so a concurrent shutdown sees either no record or ours
        with self._phase_lock:
            if self.phase != DaemonPhase.STARTING:
                return
            with self.repository.transaction() as state:
                state.daemon = record
            self._published = record
            self.phase = DaemonPhase.LISTENING
        logger.info("openwrk daemon running on %s:%s", self.host, self.port)

    def _owns(self, record: Optional[ProcessRecord]) -> bool:
        published = self._published
        return (
            record is not None
            and published is not None
            and record.pid == os.getpid()
            and record.port == published.port
            and record.started_at == published.started_at
        )

    def request_shutdown(self) -> None:
        if self.shutdown_hook is not None:
            self.shutdown_hook()
        else:
            self.shutdown()

    def shutdown(self) -> None:
        with self._phase_lock:
            if self.phase in (DaemonPhase.SHUTTING_DOWN, DaemonPhase.TERMINATED):
                return
            self.phase = DaemonPhase.SHUTTING_DOWN
        logger.info("Router daemon shutting down")
        with self._engine_lock:
            if self._engine_handle is not None:
                stop_process(self._engine_handle)
                self._engine_handle = None
            self.engine_phase = EnginePhase.NOT_STARTED
        with self.repository.transaction() as state:
            if self._owns(state.daemon):
                state.daemon = None
            elif state.daemon is not None:
                logger.info("Leaving daemon record for pid=%s in place", state.daemon.pid)
            if state.engine and not is_process_alive(state.engine.pid):
                state.engine = None
        with self._phase_lock:
            self.phase = DaemonPhase.TERMINATED

    # ── operations ────────────────────────────────────────────

    def health(self) -> dict[str, Any]:
        state = self.repository.load()
        daemon = live_daemon(state)
        engine = live_engine(state)
        payload: dict[str, Any] = {
            "ok": True,
            "daemon": daemon.to_dict() if daemon else None,
            "engine": engine.to_dict() if engine else None,
            "activeId": state.active_id,
            "workspaceCount": len(state.workspaces),
            "version": __version__,
        }
        payload.update(self._diagnostics_snapshot(self.engine_phase, self.last_engine_error))
        return payload

    def list_workspaces(self) -> dict[str, Any]:
        state = self.repository.load()
        return {"activeId": state.active_id, "workspaces": [ws.to_dict() for ws in state.workspaces]}

    def add_local(self, path: str, name: Optional[str] = None) -> dict[str, Any]:
        resolved = ensure_workspace_dir(path)
        default_name = os.path.basename(resolved.rstrip("/\\")) or "Workspace"
        workspace = Workspace(
            id=workspace_id_for_local(resolved),
            name=(name or "").strip() or default_name,
            path=resolved,
            workspace_type="local",
            last_used_at=now_ms(),
        )
        with self.repository.transaction() as state:
            state.upsert(workspace)
            active_id = state.active_id
        logger.info("Registered local workspace %s (%s)", workspace.id, resolved)
        return {"activeId": active_id, "workspace": workspace.to_dict()}

    def add_remote(self, base_url: str, directory: Optional[str] = None, name: Optional[str] = None) -> dict[str, Any]:
        directory = (directory or "").strip()
        workspace = Workspace(
            id=workspace_id_for_remote(base_url, directory or None),
            name=(name or "").strip() or base_url,
            path=directory,
            workspace_type="remote",
            base_url=base_url,
            directory=directory or None,
            last_used_at=now_ms(),
        )
        with self.repository.transaction() as state:
            state.upsert(workspace)
            active_id = state.active_id
        logger.info("Registered remote workspace %s (%s)", workspace.id, base_url)
        return {"activeId": active_id, "workspace": workspace.to_dict()}

    def get_workspace(self, ref: str) -> dict[str, Any]:
        workspace = find_workspace(self.repository.load(), ref)
        if workspace is None:
            raise WorkspaceNotFound("workspace not found")
        return {"workspace": workspace.to_dict()}

    def activate(self, ref: str) -> dict[str, Any]:
        with self.repository.transaction() as state:
            workspace = find_workspace(state, ref)
            if workspace is None:
                raise WorkspaceNotFound("workspace not found")
            state.active_id = workspace.id
            workspace.last_used_at = now_ms()
            return {"activeId": state.active_id, "workspace": workspace.to_dict()}

    def _target_for(self, ref: str) -> tuple[Workspace, str, Optional[str]]:
        workspace = find_workspace(self.repository.load(), ref)
        if workspace is None:
            raise WorkspaceNotFound("workspace not found")
        if workspace.is_remote:
            base_url = workspace.base_url or ""
            directory = workspace.directory
        else:
            base_url = self.ensure_engine().base_url
            directory = workspace.path
        if not base_url:
            raise HTTPException(status_code=400, detail="workspace baseUrl missing")
        return workspace, base_url, directory

    def _touch(self, workspace_id: str) -> Optional[Workspace]:
        with self.repository.transaction() as state:
            workspace = state.get(workspace_id)
            if workspace is not None:
                workspace.last_used_at = now_ms()
            return workspace

    def workspace_path(self, ref: str) -> dict[str, Any]:
        workspace, base_url, directory = self._target_for(ref)
        path_info = self.engine_client(base_url, directory).path()
        workspace = self._touch(workspace.id) or workspace
        return {"workspace": workspace.to_dict(), "path": path_info}

    def dispose(self, ref: str) -> dict[str, Any]:
        workspace, base_url, directory = self._target_for(ref)
        disposed = self.engine_client(base_url, directory).dispose_instance()
        self._touch(workspace.id)
        return {"disposed": disposed}


class AddWorkspaceRequest(BaseModel):
    path: Optional[str] = None
    name: Optional[str] = None


class AddRemoteWorkspaceRequest(BaseModel):
    baseUrl: Optional[str] = None
    directory: Optional[str] = None
    name: Optional[str] = None


def create_app(daemon: RouterDaemon, *, record_on_startup: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(application: FastAPI):
        if record_on_startup:
            daemon.mark_listening()
        yield
        daemon.shutdown()

    app = FastAPI(title="openwrk router", version=__version__, lifespan=lifespan)
    app.state.daemon = daemon

    # ---- error rendering ----

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "invalid request") if errors else "invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(WorkspaceNotFound)
    async def _not_found(request: Request, exc: WorkspaceNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(OpenwrkError)
    async def _openwrk_error(request: Request, exc: OpenwrkError) -> JSONResponse:
        logger.warning("Request %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.exception_handler(httpx.HTTPError)
    async def _upstream_error(request: Request, exc: httpx.HTTPError) -> JSONResponse:
        logger.warning("Upstream call for %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": str(exc) or exc.__class__.__name__})

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error in %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": str(exc) or exc.__class__.__name__})

    @app.middleware("http")
    async def _cors(request: Request, call_next):
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    # ---- routes ----

    @app.get("/health")
    def health() -> dict[str, Any]:
        return daemon.health()

    @app.get("/workspaces")
    def list_workspaces() -> dict[str, Any]:
        return daemon.list_workspaces()

    @app.post("/workspaces")
    def add_workspace(body: Optional[AddWorkspaceRequest] = None) -> dict[str, Any]:
        path = (body.path or "").strip() if body else ""
        if not path:
            raise HTTPException(status_code=400, detail="path is required")
        return daemon.add_local(path, body.name if body else None)

    @app.post("/workspaces/remote")
    def add_remote_workspace(body: Optional[AddRemoteWorkspaceRequest] = None) -> dict[str, Any]:
        base_url = (body.baseUrl or "").strip() if body else ""
        if not base_url.startswith(("http://", "https://")):
            raise HTTPException(status_code=400, detail="baseUrl must start with http:// or https://")
        return daemon.add_remote(base_url, body.directory, body.name)

    # Refs may be local paths, so they use the path converter; the
    # suffixed routes have to be registered before the bare lookup.
    @app.post("/workspaces/{ref:path}/activate")
    def activate_workspace(ref: str) -> dict[str, Any]:
        return daemon.activate(ref)

    @app.get("/workspaces/{ref:path}/path")
    def workspace_path(ref: str) -> dict[str, Any]:
        return daemon.workspace_path(ref)

    @app.get("/workspaces/{ref:path}")
    def get_workspace(ref: str) -> dict[str, Any]:
        return daemon.get_workspace(ref)

    @app.post("/instances/{ref:path}/dispose")
    def dispose_instance(ref: str) -> dict[str, Any]:
        return daemon.dispose(ref)

    @app.post("/shutdown")
    def shutdown() -> dict[str, bool]:
        threading.Thread(target=daemon.request_shutdown, daemon=True, name="router-shutdown").start()
        return {"ok": True}

    @app.api_route("/{rest:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
    def not_found(rest: str) -> None:
        raise HTTPException(status_code=404, detail="not found")

    return app


def _publish_when_listening(daemon: RouterDaemon, server: uvicorn.Server, done: threading.Event) -> None:
    while not done.is_set():
        if server.started:
            daemon.mark_listening()
            return
        done.wait(0.05)


def serve_daemon(daemon: RouterDaemon) -> None:
    """Serve *daemon* with uvicorn until it is asked to stop.

    The daemon record is written only once the listening socket is bound;
    uvicorn runs the lifespan startup hook before binding, and a failed
    bind exits through ``SystemExit``.
    """
    app = create_app(daemon, record_on_startup=False)
    config = uvicorn.Config(app, host=daemon.host, port=int(daemon.port or 0), log_level="warning", access_log=False)
    server = uvicorn.Server(config)

    def _stop_server() -> None:
        server.should_exit = True

    daemon.shutdown_hook = _stop_server
    done = threading.Event()
    publisher = threading.Thread(
        target=_publish_when_listening,
        args=(daemon, server, done),
        name="router-publish",
        daemon=True,
    )
    publisher.start()
    try:
        server.run()
    finally:
        done.set()
        publisher.join(timeout=1.0)
        daemon.shutdown()


def run_router_daemon(settings: Settings, resolver: Optional[SidecarResolver] = None) -> int:
    """Start the engine, then serve until ``/shutdown`` or SIGINT/SIGTERM."""
    daemon = RouterDaemon(settings, resolver=resolver)
    daemon.prepare()
    daemon.ensure_engine()
    serve_daemon(daemon)
    return 0
