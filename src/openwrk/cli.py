from __future__ import annotations

import json
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional
from urllib.parse import quote

import httpx
import typer
from dotenv import load_dotenv

from openwrk.core.config import Settings
from openwrk.errors import ConfigurationError, OpenwrkError

app = typer.Typer(add_completion=False, help="Run OpenCode, the OpenWork server and owpenbot together.")
daemon_app = typer.Typer(add_completion=False, help="Manage the workspace router daemon.")
workspace_app = typer.Typer(add_completion=False, help="Register and switch workspaces.")
instance_app = typer.Typer(add_completion=False, help="Engine instance operations.")
approvals_app = typer.Typer(add_completion=False, help="Inspect and answer OpenWork approval requests.")
app.add_typer(daemon_app, name="daemon")
app.add_typer(workspace_app, name="workspace")
app.add_typer(instance_app, name="instance")
app.add_typer(approvals_app, name="approvals")

JSON_OPTION = typer.Option(False, "--json", help="Print machine-readable JSON")


@dataclass
class CliState:
    settings: Settings
    json_output: bool = False
    # Only set when the user chose one; ``start`` and the daemon default differently
    engine_bind_host: Optional[str] = None


def _load_env() -> None:
    load_dotenv()


def _setup_logging(settings: Settings, *, console: bool) -> None:
    from openwrk.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, to_stdout=console)


def _state(ctx: typer.Context) -> CliState:
    if not isinstance(ctx.obj, CliState):
        _load_env()
        ctx.obj = CliState(settings=Settings.from_env())
    return ctx.obj


def _wants_json(ctx: typer.Context, json_output: bool) -> bool:
    return json_output or _state(ctx).json_output


def output_result(payload: Any, as_json: bool) -> None:
    if isinstance(payload, str) and not as_json:
        typer.echo(payload)
        return
    typer.echo(json.dumps(payload, indent=2))


def output_error(error: BaseException, as_json: bool) -> None:
    message = str(error) or error.__class__.__name__
    if as_json:
        typer.echo(json.dumps({"ok": False, "error": message}, indent=2))
    else:
        typer.echo(message, err=True)


@contextmanager
def command_errors(as_json: bool) -> Iterator[None]:
    """Render library errors as one line (or JSON) and exit 1."""
    try:
        yield
    except (OpenwrkError, httpx.HTTPError) as exc:
        output_error(exc, as_json)
        raise typer.Exit(code=1)


@app.callback()
def main_callback(
    ctx: typer.Context,
    data_dir: Optional[str] = typer.Option(None, "--data-dir", help="State, logs and sidecar cache directory"),
    daemon_host: Optional[str] = typer.Option(None, "--daemon-host", help="Router daemon bind host"),
    daemon_port: Optional[int] = typer.Option(None, "--daemon-port", help="Router daemon port"),
    allow_external: bool = typer.Option(False, "--allow-external", help="Allow binaries from PATH or explicit paths"),
    sidecar_source: Optional[str] = typer.Option(None, "--sidecar-source", help="auto|bundled|downloaded|external"),
    opencode_source: Optional[str] = typer.Option(None, "--opencode-source", help="auto|bundled|downloaded|external"),
    sidecar_dir: Optional[str] = typer.Option(None, "--sidecar-dir", help="Download cache directory"),
    sidecar_base_url: Optional[str] = typer.Option(None, "--sidecar-base-url", help="Release asset base URL"),
    sidecar_manifest: Optional[str] = typer.Option(None, "--sidecar-manifest", help="Remote sidecar manifest URL"),
    opencode_bin: Optional[str] = typer.Option(None, "--opencode-bin", help="Explicit opencode binary"),
    opencode_host: Optional[str] = typer.Option(
        None, "--opencode-host", help="Engine bind host (default 127.0.0.1 for the daemon, 0.0.0.0 for start)"
    ),
    opencode_port: Optional[int] = typer.Option(None, "--opencode-port", help="Engine port"),
    opencode_workdir: Optional[str] = typer.Option(None, "--opencode-workdir", help="Engine working directory"),
    opencode_username: Optional[str] = typer.Option(None, "--opencode-username", help="Engine basic-auth user"),
    opencode_password: Optional[str] = typer.Option(None, "--opencode-password", help="Engine basic-auth password"),
    cors: Optional[str] = typer.Option(
        None, "--cors", help="CORS origins, comma separated (default: desktop origins for the daemon, * for start)"
    ),
    openwork_server_bin: Optional[str] = typer.Option(None, "--openwork-server-bin", help="Explicit openwork-server binary"),
    owpenbot_bin: Optional[str] = typer.Option(None, "--owpenbot-bin", help="Explicit owpenbot binary"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="debug|info|warning|error"),
    json_output: bool = JSON_OPTION,
) -> None:
    _load_env()
    settings = Settings.from_env().override(
        data_dir=data_dir,
        daemon_host=daemon_host,
        daemon_port=daemon_port,
        allow_external=True if allow_external else None,
        sidecar_source=sidecar_source.lower() if sidecar_source else None,
        opencode_source=opencode_source.lower() if opencode_source else None,
        sidecar_dir=sidecar_dir,
        sidecar_base_url=sidecar_base_url,
        sidecar_manifest_url=sidecar_manifest,
        opencode_bin=opencode_bin,
        opencode_host=opencode_host,
        opencode_port=opencode_port,
        opencode_workdir=opencode_workdir,
        opencode_username=opencode_username,
        opencode_password=opencode_password,
        cors=cors,
        openwork_server_bin=openwork_server_bin,
        owpenbot_bin=owpenbot_bin,
        log_level=log_level,
    )
    if sidecar_source and not opencode_source and not os.getenv("OPENWRK_OPENCODE_SOURCE"):
        settings.opencode_source = settings.sidecar_source
    ctx.obj = CliState(
        settings=settings,
        json_output=json_output,
        engine_bind_host=opencode_host or os.getenv("OPENWRK_OPENCODE_HOST"),
    )


@app.command()
def version() -> None:
    from openwrk import __version__

    typer.echo(__version__)


# ── router daemon ────────────────────────────────────────────


@daemon_app.command("run")
def daemon_run(ctx: typer.Context) -> None:
    """Run the router daemon in the foreground."""
    from openwrk.router.daemon import run_router_daemon

    settings = _state(ctx).settings
    _setup_logging(settings, console=True)
    with command_errors(_wants_json(ctx, False)):
        code = run_router_daemon(settings)
    raise typer.Exit(code=code)


def _daemon_health(ctx: typer.Context, auto_start: bool) -> dict[str, Any]:
    from openwrk.process.health import http_health_check, wait_healthy
    from openwrk.router.client import ensure_daemon

    target = ensure_daemon(_state(ctx).settings, auto_start)
    health = wait_healthy(http_health_check(target.base_url), 2.0, 0.2, label="openwrk daemon")
    return {"ok": True, "baseUrl": target.base_url, **health}


@daemon_app.command("start")
def daemon_start(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Start the router daemon in the background if it is not running."""
    as_json = _wants_json(ctx, json_output)
    _setup_logging(_state(ctx).settings, console=False)
    with command_errors(as_json):
        output_result(_daemon_health(ctx, True), as_json)


@daemon_app.command("status")
def daemon_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    as_json = _wants_json(ctx, json_output)
    _setup_logging(_state(ctx).settings, console=False)
    with command_errors(as_json):
        output_result(_daemon_health(ctx, False), as_json)


@daemon_app.command("stop")
def daemon_stop(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    from openwrk.router.client import request_router

    as_json = _wants_json(ctx, json_output)
    settings = _state(ctx).settings
    _setup_logging(settings, console=False)
    with command_errors(as_json):
        request_router(settings, "POST", "/shutdown", auto_start=False)
        output_result({"ok": True}, as_json)


# ── workspaces ───────────────────────────────────────────────


def _route(ctx: typer.Context, json_output: bool, method: str, path: str, body: Any = None) -> None:
    from openwrk.router.client import request_router

    as_json = _wants_json(ctx, json_output)
    settings = _state(ctx).settings
    _setup_logging(settings, console=False)
    with command_errors(as_json):
        result = request_router(settings, method, path, body)
        payload = {"ok": True}
        if isinstance(result, dict):
            payload.update(result)
        output_result(payload, as_json)


@workspace_app.command("add")
def workspace_add(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Workspace directory"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    json_output: bool = JSON_OPTION,
) -> None:
    _route(ctx, json_output, "POST", "/workspaces", {"path": path, "name": name})


@workspace_app.command("add-remote")
def workspace_add_remote(
    ctx: typer.Context,
    base_url: str = typer.Argument(..., help="Remote engine base URL"),
    directory: Optional[str] = typer.Option(None, "--directory", help="Directory on the remote engine"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    json_output: bool = JSON_OPTION,
) -> None:
    _route(ctx, json_output, "POST", "/workspaces/remote", {"baseUrl": base_url, "directory": directory, "name": name})


@workspace_app.command("list")
def workspace_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    _route(ctx, json_output, "GET", "/workspaces")


@workspace_app.command("switch")
def workspace_switch(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Workspace id, name or path"),
    json_output: bool = JSON_OPTION,
) -> None:
    _route(ctx, json_output, "POST", f"/workspaces/{quote(ref, safe='')}/activate")


@workspace_app.command("info")
def workspace_info(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Workspace id, name or path"),
    json_output: bool = JSON_OPTION,
) -> None:
    _route(ctx, json_output, "GET", f"/workspaces/{quote(ref, safe='')}")


@workspace_app.command("path")
def workspace_path(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Workspace id, name or path"),
    json_output: bool = JSON_OPTION,
) -> None:
    _route(ctx, json_output, "GET", f"/workspaces/{quote(ref, safe='')}/path")


@instance_app.command("dispose")
def instance_dispose(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Workspace id, name or path"),
    json_output: bool = JSON_OPTION,
) -> None:
    _route(ctx, json_output, "POST", f"/instances/{quote(ref, safe='')}/dispose")


# ── approvals ────────────────────────────────────────────────


def _server_client(openwork_url: Optional[str], host_token: Optional[str]):
    from openwrk.integrations.openwork_server import OpenworkServerClient

    if not openwork_url:
        raise ConfigurationError("--openwork-url is required")
    if not host_token:
        raise ConfigurationError("--host-token is required")
    return OpenworkServerClient(openwork_url, host_token=host_token)


OPENWORK_URL_OPTION = typer.Option(
    None, "--openwork-url", envvar=["OPENWORK_URL", "OPENWORK_SERVER_URL"], help="OpenWork server URL"
)
HOST_TOKEN_OPTION = typer.Option(None, "--host-token", envvar="OPENWORK_HOST_TOKEN", help="OpenWork host token")


@approvals_app.command("list")
def approvals_list(
    ctx: typer.Context,
    openwork_url: Optional[str] = OPENWORK_URL_OPTION,
    host_token: Optional[str] = HOST_TOKEN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    as_json = _wants_json(ctx, json_output)
    with command_errors(as_json):
        output_result(_server_client(openwork_url, host_token).approvals(), as_json)


@approvals_app.command("reply")
def approvals_reply(
    ctx: typer.Context,
    approval_id: str = typer.Argument(..., help="Approval request id"),
    allow: bool = typer.Option(False, "--allow", help="Allow the request"),
    deny: bool = typer.Option(False, "--deny", help="Deny the request"),
    openwork_url: Optional[str] = OPENWORK_URL_OPTION,
    host_token: Optional[str] = HOST_TOKEN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    as_json = _wants_json(ctx, json_output)
    with command_errors(as_json):
        if allow == deny:
            raise ConfigurationError("Specify exactly one of --allow or --deny")
        output_result(_server_client(openwork_url, host_token).reply_approval(approval_id, allow), as_json)


# ── status ───────────────────────────────────────────────────


@app.command()
def status(
    ctx: typer.Context,
    openwork_url: Optional[str] = OPENWORK_URL_OPTION,
    opencode_url: Optional[str] = typer.Option(None, "--opencode-url", envvar="OPENCODE_URL", help="OpenCode URL"),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether an OpenWork server and/or OpenCode engine answer."""
    from openwrk.integrations.opencode import OpencodeClient
    from openwrk.process.health import http_health_check, wait_healthy

    as_json = _wants_json(ctx, json_output)
    settings = _state(ctx).settings
    with command_errors(as_json):
        if not openwork_url and not opencode_url:
            raise ConfigurationError("status requires --openwork-url or --opencode-url")

    result: dict[str, Any] = {}
    lines: list[str] = []
    if openwork_url:
        try:
            wait_healthy(http_health_check(openwork_url), 5.0, 0.4, label="openwork server")
            result["openwork"] = {"ok": True, "url": openwork_url}
        except OpenwrkError as exc:
            result["openwork"] = {"ok": False, "url": openwork_url, "error": str(exc)}
        lines.append(f"OpenWork server: {'ok' if result['openwork']['ok'] else 'error'} ({openwork_url})")
    if opencode_url:
        password = settings.opencode_password
        client = OpencodeClient(
            opencode_url,
            username=settings.opencode_username if password else None,
            password=password,
        )
        try:
            result["opencode"] = {"ok": True, "url": opencode_url, "health": client.health()}
        except (OpenwrkError, httpx.HTTPError) as exc:
            result["opencode"] = {"ok": False, "url": opencode_url, "error": str(exc)}
        lines.append(f"OpenCode: {'ok' if result['opencode']['ok'] else 'error'} ({opencode_url})")

    output_result(result if as_json else "\n".join(lines), as_json)
    if not all(entry["ok"] for entry in result.values()):
        raise typer.Exit(code=1)


# ── foreground session ───────────────────────────────────────


def _print_summary(summary: dict[str, Any]) -> None:
    opencode = summary["opencode"]
    openwork = summary["openwork"]
    typer.echo("Openwrk running")
    typer.echo(f"Workspace: {summary['workspace']}")
    typer.echo(f"OpenCode: {opencode['baseUrl']}")
    typer.echo(f"OpenCode connect URL: {opencode['connectUrl']}")
    if opencode.get("password"):
        typer.echo(f"OpenCode auth: {opencode['username']} / {opencode['password']}")
    typer.echo(f"OpenWork server: {openwork['baseUrl']}")
    typer.echo(f"OpenWork connect URL: {openwork['connectUrl']}")
    typer.echo(f"Client token: {openwork['token']}")
    typer.echo(f"Host token: {openwork['hostToken']}")


@app.command()
def start(
    ctx: typer.Context,
    workspace: Optional[str] = typer.Option(None, "--workspace", envvar="OPENWORK_WORKSPACE", help="Workspace directory"),
    opencode_auth: bool = typer.Option(True, "--opencode-auth/--no-opencode-auth", help="Protect the engine with basic auth"),
    openwork_host: str = typer.Option("0.0.0.0", "--openwork-host", help="OpenWork server bind host"),
    openwork_port: Optional[int] = typer.Option(None, "--openwork-port", help="OpenWork server port (default 8787)"),
    openwork_token: Optional[str] = typer.Option(None, "--openwork-token", envvar="OPENWORK_TOKEN", help="Client token"),
    openwork_host_token: Optional[str] = typer.Option(
        None, "--openwork-host-token", envvar="OPENWORK_HOST_TOKEN", help="Host token"
    ),
    approval: str = typer.Option("manual", "--approval", help="manual|auto"),
    approval_timeout: int = typer.Option(30000, "--approval-timeout", help="Approval timeout in ms"),
    read_only: bool = typer.Option(False, "--read-only", help="Start the OpenWork server read-only"),
    connect_host: Optional[str] = typer.Option(None, "--connect-host", help="Host to advertise in connect URLs"),
    owpenbot: bool = typer.Option(True, "--owpenbot/--no-owpenbot", help="Start owpenbot"),
    bot_optional: bool = typer.Option(False, "--bot-optional", help="Keep running if owpenbot exits"),
    check: bool = typer.Option(False, "--check", help="Run end-to-end checks, then exit"),
    check_events: bool = typer.Option(False, "--check-events", help="Also check the engine event stream"),
    json_output: bool = JSON_OPTION,
) -> None:
    """Start the engine, the OpenWork server and owpenbot for one workspace."""
    from openwrk.integrations.openwork_server import APPROVAL_MODES
    from openwrk.session import StartOptions, StartSession

    as_json = _wants_json(ctx, json_output)
    settings = _state(ctx).settings
    _setup_logging(settings, console=True)

    with command_errors(as_json):
        if approval not in APPROVAL_MODES:
            raise ConfigurationError("--approval must be manual or auto")
        options = StartOptions(
            workspace=workspace or os.getcwd(),
            opencode_bind_host=_state(ctx).engine_bind_host or "0.0.0.0",
            opencode_port=settings.opencode_port,
            opencode_auth=opencode_auth,
            opencode_username=settings.opencode_username,
            opencode_password=settings.opencode_password,
            openwork_host=openwork_host,
            openwork_port=openwork_port,
            openwork_token=openwork_token,
            openwork_host_token=openwork_host_token,
            approval_mode=approval,
            approval_timeout_ms=approval_timeout,
            read_only=read_only,
            cors=settings.cors or "*",
            connect_host=connect_host,
            openwork_server_bin=settings.openwork_server_bin,
            owpenbot_bin=settings.owpenbot_bin,
            owpenbot_enabled=owpenbot,
            bot_optional=bot_optional,
            check=check,
            check_events=check_events,
        )
        session = StartSession(settings, options)
        summary = session.start()

    if as_json:
        output_result(summary, True)
    else:
        _print_summary(summary)

    if check:
        try:
            session.run_checks()
        except (OpenwrkError, httpx.HTTPError) as exc:
            typer.echo(f"Checks failed: {exc}", err=True)
            session.stop()
            raise typer.Exit(code=1)
        if not as_json:
            typer.echo("Checks: ok")
        session.stop()
        raise typer.Exit(code=0)

    raise typer.Exit(code=session.wait())


def main() -> None:
    app()
