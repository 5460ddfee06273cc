from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from openwrk.errors import OpenwrkError
from openwrk.process.supervisor import ProcessHandle, start_process
from openwrk.sidecars.resolver import resolve_bin_command

logger = logging.getLogger("openwrk.opencode")


class EngineError(OpenwrkError):
    pass


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
        if message:
            return f"HTTP {response.status_code} {message}"
    return f"HTTP {response.status_code}"


@dataclass
class OpencodeClient:
    """Thin client for the engine's HTTP API, optionally scoped to one directory."""

    base_url: str
    directory: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    timeout: float = 10.0

    @property
    def _auth(self) -> Optional[tuple[str, str]]:
        if self.password:
            return (self.username or "opencode", self.password)
        return None

    def _params(self, extra: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.directory:
            params["directory"] = self.directory
        params.update(extra or {})
        return params

    def _request(self, method: str, path: str, *, params: Optional[dict[str, Any]] = None, body: Any = None) -> httpx.Response:
        url = self.base_url.rstrip("/") + path
        with httpx.Client(timeout=self.timeout, auth=self._auth) as client:
            return client.request(method, url, params=self._params(params), json=body)

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._request(method, path, **kwargs)
        if not response.is_success:
            raise EngineError(f"opencode {method} {path} failed: {_error_detail(response)}")
        try:
            return response.json()
        except ValueError:
            return None

    def health(self) -> dict[str, Any]:
        payload = self._json("GET", "/global/health")
        return payload if isinstance(payload, dict) else {}

    def path(self) -> Any:
        return self._json("GET", "/path")

    def dispose_instance(self) -> Any:
        """Ask the engine to drop its instance for ``directory``; False unless 2xx."""
        response = self._request("POST", "/instance/dispose")
        if not response.is_success:
            logger.warning("Dispose for %s returned HTTP %s", self.directory, response.status_code)
            return False
        try:
            return response.json()
        except ValueError:
            return True

    def create_session(self, title: str) -> dict[str, Any]:
        payload = self._json("POST", "/session", body={"title": title})
        if not isinstance(payload, dict) or not payload.get("id"):
            raise EngineError("opencode returned no session id")
        return payload

    def session_messages(self, session_id: str, limit: int = 10) -> Any:
        return self._json("GET", f"/session/{session_id}/message", params={"limit": limit})

    def collect_events(
        self,
        stop: threading.Event,
        limit: int = 10,
        read_timeout: float = 3.0,
        sink: Optional[list[dict[str, Any]]] = None,
    ) -> list[dict[str, Any]]:
        """Read ``/event`` server-sent events until *limit* arrive or *stop* is set.

        Each event is reduced to ``{"type": ...}`` and appended to *sink*
        as it arrives; unparseable lines are skipped. Setting *stop* ends
        the subscription at the next line or read timeout.
        """
        events: list[dict[str, Any]] = sink if sink is not None else []
        url = self.base_url.rstrip("/") + "/event"
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout, read=read_timeout), auth=self._auth) as client:
                with client.stream("GET", url, params=self._params()) as response:
                    if not response.is_success:
                        raise EngineError(f"opencode event stream failed: HTTP {response.status_code}")
                    for line in response.iter_lines():
                        event = normalize_event(line)
                        if event is not None:
                            events.append(event)
                        if stop.is_set() or len(events) >= limit:
                            break
        except httpx.ReadTimeout:
            # A quiet stream for one read window ends the subscription
            pass
        except httpx.HTTPError as exc:
            logger.debug("Event stream ended: %s", exc)
        return events


def normalize_event(line: str) -> Optional[dict[str, Any]]:
    if not line.startswith("data:"):
        return None
    try:
        raw = json.loads(line[len("data:"):].strip())
    except ValueError:
        return None
    if not isinstance(raw, dict):
        return None
    if isinstance(raw.get("type"), str):
        return {"type": raw["type"]}
    payload = raw.get("payload")
    if isinstance(payload, dict) and isinstance(payload.get("type"), str):
        return {"type": payload["type"]}
    return None


def engine_args(host: str, port: int, cors_origins: list[str]) -> list[str]:
    args = ["serve", "--hostname", host, "--port", str(port)]
    for origin in cors_origins:
        args.extend(["--cors", origin])
    return args


def start_opencode(
    binary_path: str,
    *,
    workdir: str,
    host: str,
    port: int,
    username: Optional[str] = None,
    password: Optional[str] = None,
    cors_origins: Optional[list[str]] = None,
) -> ProcessHandle:
    command, prefix = resolve_bin_command(binary_path)
    env = {"OPENCODE_CLIENT": "openwrk", "OPENWORK": "1"}
    if username:
        env["OPENCODE_SERVER_USERNAME"] = username
    if password:
        env["OPENCODE_SERVER_PASSWORD"] = password
    return start_process(
        command,
        [*prefix, *engine_args(host, port, cors_origins or [])],
        name="opencode",
        cwd=workdir,
        env=env,
    )
