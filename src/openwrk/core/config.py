from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from openwrk import __version__

SOURCE_CHOICES = ("auto", "bundled", "downloaded", "external")

DEFAULT_DAEMON_HOST = "127.0.0.1"
DEFAULT_OPENCODE_HOST = "127.0.0.1"
DEFAULT_OPENCODE_USERNAME = "opencode"
DEFAULT_OPENWORK_PORT = 8787
DEFAULT_APPROVAL_TIMEOUT_MS = 30000
DEFAULT_CORS = "http://localhost:5173,tauri://localhost,http://tauri.localhost"
DEFAULT_SIDECAR_BASE_URL = (
    f"https://github.com/different-ai/openwork/releases/download/openwrk-v{__version__}"
)
STATE_FILENAME = "openwrk-state.json"


def _env_get(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def _env_bool(*names: str, default: bool) -> bool:
    value = _env_get(*names)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(*names: str) -> Optional[int]:
    value = _env_get(*names)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_list(value: Optional[str]) -> list[str]:
    """Split a comma/semicolon separated list, or a JSON array, into items."""
    if not value:
        return []
    trimmed = value.strip()
    if not trimmed:
        return []
    if trimmed.startswith("["):
        try:
            parsed = json.loads(trimmed)
        except ValueError:
            return []
        if isinstance(parsed, list):
            return [str(item) for item in parsed if str(item)]
        return []
    items = trimmed.replace(";", ",").split(",")
    return [item.strip() for item in items if item.strip()]


def default_data_dir() -> str:
    return str(Path(os.path.expanduser("~")) / ".openwork" / "openwrk")


@dataclass
class Settings:
    log_level: str
    data_dir: str
    daemon_host: str
    daemon_port: Optional[int]
    allow_external: bool
    sidecar_source: str
    opencode_source: str
    sidecar_dir: str
    sidecar_base_url: str
    sidecar_manifest_url: str
    opencode_bin: Optional[str]
    opencode_host: str
    opencode_port: Optional[int]
    opencode_workdir: Optional[str]
    opencode_username: str
    opencode_password: Optional[str]
    cors: Optional[str]
    openwork_server_bin: Optional[str]
    owpenbot_bin: Optional[str]

    @property
    def log_dir(self) -> str:
        return os.path.join(self.data_dir, "logs")

    @property
    def state_path(self) -> str:
        return os.path.join(self.data_dir, STATE_FILENAME)

    def override(self, **values: Any) -> "Settings":
        """Return a copy with every non-None keyword applied (CLI flags win over env)."""
        changes = {key: value for key, value in values.items() if value is not None}
        updated = dataclasses.replace(self, **changes)
        if "data_dir" in changes:
            updated.data_dir = os.path.abspath(os.path.expanduser(updated.data_dir))
            if "sidecar_dir" not in changes and _env_get("OPENWRK_SIDECAR_DIR") is None:
                updated.sidecar_dir = os.path.join(updated.data_dir, "sidecars")
        if "sidecar_base_url" in changes and "sidecar_manifest_url" not in changes:
            if _env_get("OPENWRK_SIDECAR_MANIFEST") is None:
                updated.sidecar_manifest_url = _manifest_url_for(updated.sidecar_base_url)
        return updated

    @staticmethod
    def from_env() -> "Settings":
        data_dir = _env_get("OPENWRK_DATA_DIR", "OPENWORK_DATA_DIR") or default_data_dir()
        data_dir = os.path.abspath(os.path.expanduser(data_dir))
        base_url = _env_get("OPENWRK_SIDECAR_BASE_URL") or DEFAULT_SIDECAR_BASE_URL
        sidecar_source = (_env_get("OPENWRK_SIDECAR_SOURCE") or "auto").lower()
        return Settings(
            log_level=_env_get("OPENWRK_LOG_LEVEL") or "info",
            data_dir=data_dir,
            daemon_host=_env_get("OPENWRK_DAEMON_HOST") or DEFAULT_DAEMON_HOST,
            daemon_port=_env_int("OPENWRK_DAEMON_PORT"),
            allow_external=_env_bool("OPENWRK_ALLOW_EXTERNAL", default=False),
            sidecar_source=sidecar_source,
            opencode_source=(_env_get("OPENWRK_OPENCODE_SOURCE") or sidecar_source).lower(),
            sidecar_dir=_env_get("OPENWRK_SIDECAR_DIR") or os.path.join(data_dir, "sidecars"),
            sidecar_base_url=base_url,
            sidecar_manifest_url=_env_get("OPENWRK_SIDECAR_MANIFEST") or _manifest_url_for(base_url),
            opencode_bin=_env_get("OPENWRK_OPENCODE_BIN"),
            opencode_host=_env_get("OPENWRK_OPENCODE_HOST") or DEFAULT_OPENCODE_HOST,
            opencode_port=_env_int("OPENWRK_OPENCODE_PORT"),
            opencode_workdir=_env_get("OPENWRK_OPENCODE_WORKDIR"),
            opencode_username=_env_get("OPENWORK_OPENCODE_USERNAME", "OPENCODE_SERVER_USERNAME")
            or DEFAULT_OPENCODE_USERNAME,
            opencode_password=_env_get("OPENWORK_OPENCODE_PASSWORD", "OPENCODE_SERVER_PASSWORD"),
            cors=_env_get("OPENWRK_OPENCODE_CORS"),
            openwork_server_bin=_env_get("OPENWORK_SERVER_BIN"),
            owpenbot_bin=_env_get("OWPENBOT_BIN"),
        )


def _manifest_url_for(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/openwrk-sidecars.json"
