"""Platform target names used by release manifests and the sidecar cache."""
from __future__ import annotations

import platform
import sys
from typing import Optional

# Services that ship as a platform archive instead of a bare executable
ARCHIVE_SERVICES = frozenset({"opencode"})

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
}


def current_target(system: Optional[str] = None, machine: Optional[str] = None) -> Optional[str]:
    """Return e.g. ``linux-x64`` / ``darwin-arm64`` / ``windows-x64``, or None if unsupported."""
    system = system or sys.platform
    machine = (machine or platform.machine() or "").lower()
    if system.startswith("linux"):
        os_name = "linux"
    elif system == "darwin":
        os_name = "darwin"
    elif system in ("win32", "cygwin"):
        os_name = "windows"
    else:
        return None
    arch = _ARCH_ALIASES.get(machine)
    if arch is None:
        return None
    return f"{os_name}-{arch}"


def is_windows_target(target: str) -> bool:
    return target.startswith("windows")


def executable_name(service: str, target: Optional[str] = None) -> str:
    windows = is_windows_target(target) if target else sys.platform == "win32"
    return f"{service}.exe" if windows else service


def archive_suffix(target: str) -> str:
    return ".zip" if is_windows_target(target) else ".tar.gz"


def default_asset_name(service: str, target: str) -> str:
    if service in ARCHIVE_SERVICES:
        return f"{service}-{target}{archive_suffix(target)}"
    return executable_name(f"{service}-{target}", target)
