"""Launch and talk to the openwork server and the owpenbot companion."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from openwrk.errors import OpenwrkError
from openwrk.process.supervisor import ProcessHandle, start_process
from openwrk.router.state import normalize_workspace_path
from openwrk.sidecars.resolver import assert_version_match, resolve_bin_command

logger = logging.getLogger("openwrk.openwork_server")

HOST_TOKEN_HEADER = "X-OpenWork-Host-Token"
APPROVAL_MODES = ("manual", "auto")


class ServerError(OpenwrkError):
    pass


def fetch_json(method: str, url: str, *, headers: Optional[dict[str, str]] = None, body: Any = None, timeout: float = 10.0) -> Any:
    with httpx.Client(timeout=timeout) as client:
        response = client.request(method, url, headers=headers, json=body)
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if not response.is_success:
        message = ""
        if isinstance(payload, dict):
            detail = payload.get("message") or payload.get("error")
            if detail:
                message = f" {detail}"
        raise ServerError(f"HTTP {response.status_code}{message}")
    return payload


@dataclass
class OpenworkServerClient:
    base_url: str
    token: Optional[str] = None
    host_token: Optional[str] = None

    def _url(self, path: str) -> str:
        return self.base_url.rstrip("/") + path

    def _bearer(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _host(self) -> dict[str, str]:
        if not self.host_token:
            raise ServerError("host token is required")
        return {HOST_TOKEN_HEADER: self.host_token}

    def health(self) -> Any:
        return fetch_json("GET", self._url("/health"))

    def workspaces(self) -> list[dict[str, Any]]:
        payload = fetch_json("GET", self._url("/workspaces"), headers=self._bearer())
        items = payload.get("items") if isinstance(payload, dict) else None
        return [item for item in items or [] if isinstance(item, dict)]

    def workspace_config(self, workspace_id: str) -> Any:
        return fetch_json("GET", self._url(f"/workspace/{workspace_id}/config"), headers=self._bearer())

    def approvals(self) -> Any:
        return fetch_json("GET", self._url("/approvals"), headers=self._host())

    def reply_approval(self, approval_id: str, allow: bool) -> Any:
        body = {"reply": "allow" if allow else "deny"}
        return fetch_json("POST", self._url(f"/approvals/{approval_id}"), headers=self._host(), body=body)


def server_args(
    *,
    host: str,
    port: int,
    workspace: str,
    token: str,
    host_token: str,
    approval_mode: str,
    approval_timeout_ms: int,
    read_only: bool = False,
    cors_origins: Optional[list[str]] = None,
    opencode_base_url: Optional[str] = None,
    opencode_directory: Optional[str] = None,
    opencode_username: Optional[str] = None,
    opencode_password: Optional[str] = None,
) -> list[str]:
    args = [
        "--host", host,
        "--port", str(port),
        "--token", token,
        "--host-token", host_token,
        "--workspace", workspace,
        "--approval", approval_mode,
        "--approval-timeout", str(approval_timeout_ms),
    ]
    if read_only:
        args.append("--read-only")
    if cors_origins:
        args.extend(["--cors", ",".join(cors_origins)])
    for flag, value in (
        ("--opencode-base-url", opencode_base_url),
        ("--opencode-directory", opencode_directory),
        ("--opencode-username", opencode_username),
        ("--opencode-password", opencode_password),
    ):
        if value:
            args.extend([flag, value])
    return args


def start_openwork_server(binary_path: str, **options: Any) -> ProcessHandle:
    env = {
        "OPENWORK_TOKEN": options["token"],
        "OPENWORK_HOST_TOKEN": options["host_token"],
    }
    for key, name in (
        ("opencode_base_url", "OPENWORK_OPENCODE_BASE_URL"),
        ("opencode_directory", "OPENWORK_OPENCODE_DIRECTORY"),
        ("opencode_username", "OPENWORK_OPENCODE_USERNAME"),
        ("opencode_password", "OPENWORK_OPENCODE_PASSWORD"),
    ):
        if options.get(key):
            env[name] = options[key]
    command, prefix = resolve_bin_command(binary_path)
    return start_process(
        command,
        [*prefix, *server_args(**options)],
        name="openwork-server",
        cwd=options["workspace"],
        env=env,
    )


def start_owpenbot(
    binary_path: str,
    *,
    workspace: str,
    opencode_url: Optional[str] = None,
    opencode_username: Optional[str] = None,
    opencode_password: Optional[str] = None,
) -> ProcessHandle:
    args = ["start", workspace]
    if opencode_url:
        args.extend(["--opencode-url", opencode_url])
    env: dict[str, str] = {}
    if opencode_username:
        env["OPENCODE_SERVER_USERNAME"] = opencode_username
    if opencode_password:
        env["OPENCODE_SERVER_PASSWORD"] = opencode_password
    command, prefix = resolve_bin_command(binary_path)
    return start_process(command, [*prefix, *args], name="owpenbot", cwd=workspace, env=env)


def verify_openwork_server(
    client: OpenworkServerClient,
    *,
    expected_version: Optional[str],
    expected_workspace: str,
    expected_opencode_base_url: Optional[str] = None,
    expected_opencode_directory: Optional[str] = None,
    expected_opencode_username: Optional[str] = None,
    expected_opencode_password: Optional[str] = None,
) -> Optional[str]:
    """Check a freshly started server reports what we launched it with.

    Returns the version the server reported.
    """
    health = client.health()
    actual = health.get("version") if isinstance(health, dict) else None
    actual = actual if isinstance(actual, str) else None
    assert_version_match("openwork-server", expected_version, actual, f"{client.base_url}/health")

    items = client.workspaces()
    if not items:
        raise ServerError("OpenWork server returned no workspaces")

    expected_path = normalize_workspace_path(expected_workspace)
    matched = None
    for item in items:
        path = item.get("path")
        if isinstance(path, str) and path and normalize_workspace_path(path) == expected_path:
            matched = item
            break
    if matched is None:
        raise ServerError(f"OpenWork server workspace mismatch. Expected {expected_path}.")

    opencode = matched.get("opencode") if isinstance(matched.get("opencode"), dict) else {}
    if expected_opencode_base_url and opencode.get("baseUrl") != expected_opencode_base_url:
        raise ServerError(
            "OpenWork server OpenCode base URL mismatch: "
            f"expected {expected_opencode_base_url}, got {opencode.get('baseUrl') or '<missing>'}."
        )
    if expected_opencode_directory and opencode.get("directory") != expected_opencode_directory:
        raise ServerError(
            "OpenWork server OpenCode directory mismatch: "
            f"expected {expected_opencode_directory}, got {opencode.get('directory') or '<missing>'}."
        )
    if expected_opencode_username and opencode.get("username") != expected_opencode_username:
        raise ServerError("OpenWork server OpenCode username mismatch.")
    if expected_opencode_password and opencode.get("password") != expected_opencode_password:
        raise ServerError("OpenWork server OpenCode password mismatch.")

    client.approvals()
    return actual
