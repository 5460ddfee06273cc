"""Decide which executable to run for a sidecar and which version it must report.

Sources, in ``auto`` order:

1. bundled    - executable shipped next to openwrk, listed in ``versions.json``
2. downloaded - release asset fetched through the sidecar manifest
3. external   - explicit ``--<service>-bin`` path, a local build, an
                installed package, or the bare command on PATH

An explicit path under ``auto`` is tried right after bundled, ahead of the
download.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from openwrk.core.config import SOURCE_CHOICES, Settings
from openwrk.errors import (
    ConfigurationError,
    OpenwrkError,
    ResolutionExhausted,
    VersionMismatch,
)
from openwrk.sidecars.downloader import ManifestCache, SidecarDownloader
from openwrk.sidecars.integrity import is_executable, verify_checksum
from openwrk.sidecars.models import SidecarBinary
from openwrk.sidecars.platforms import current_target, executable_name

logger = logging.getLogger("openwrk.resolver")

VERSION_MANIFEST = "versions.json"
VERSION_PATTERN = re.compile(r"\d+\.\d+\.\d+(?:-[\w.-]+)?")

# npm package that carries each sidecar when installed as a dependency
_PACKAGE_NAMES = {
    "opencode": "opencode-ai",
    "openwork-server": "openwork-server",
    "owpenbot": "owpenwork",
}


class SourceUnavailable(OpenwrkError):
    """One source had nothing to offer; ``auto`` moves on to the next."""


@dataclass
class BundledManifest:
    directory: str
    entries: dict[str, dict[str, Any]] = field(default_factory=dict)

    def version(self, service: str) -> Optional[str]:
        entry = self.entries.get(service) or {}
        value = entry.get("version")
        return value if isinstance(value, str) and value else None


def bundle_dirs() -> list[str]:
    dirs = []
    override = os.getenv("OPENWRK_BUNDLE_DIR", "").strip()
    if override:
        dirs.append(override)
    dirs.append(os.path.dirname(os.path.abspath(sys.executable)))
    dirs.append(str(Path(__file__).resolve().parent.parent / "bin"))
    return dirs


def read_bundled_manifest(candidates: list[str]) -> Optional[BundledManifest]:
    for directory in candidates:
        path = os.path.join(directory, VERSION_MANIFEST)
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                entries = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable %s: %s", path, exc)
            return BundledManifest(directory=directory)
        if not isinstance(entries, dict):
            entries = {}
        return BundledManifest(directory=directory, entries=entries)
    return None


def _read_package_version(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    version = data.get("version") if isinstance(data, dict) else None
    return version if isinstance(version, str) and version else None


def parse_version(output: str) -> Optional[str]:
    match = VERSION_PATTERN.search(output or "")
    return match.group(0) if match else None


def resolve_bin_command(path: str) -> tuple[str, list[str]]:
    """Return ``(command, prefix_args)`` for running *path*; scripts go through a runtime."""
    if path.endswith(".ts"):
        return "bun", [path, "--"]
    if path.endswith(".js"):
        if "openwork-server" in path or os.path.join("packages", "server") in path:
            return "bun", [path, "--"]
        return "node", [path, "--"]
    return path, []


def read_cli_version(path: str, timeout: float = 4.0) -> Optional[str]:
    """Run ``<bin> --version`` and pull the first semver-looking token out of its output."""
    command, prefix = resolve_bin_command(path)
    try:
        proc = subprocess.run(
            [command, *prefix, "--version"],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning("%s --version timed out after %.1fs", path, timeout)
        return None
    except OSError as exc:
        logger.warning("Could not run %s --version: %s", path, exc)
        return None
    return parse_version(f"{proc.stdout or ''}\n{proc.stderr or ''}".strip())


def assert_version_match(name: str, expected: Optional[str], actual: Optional[str], context: str) -> None:
    if not expected:
        return
    if not actual:
        raise VersionMismatch(f"Unable to determine {name} version from {context}. Expected {expected}.")
    if expected != actual:
        raise VersionMismatch(f"{name} version mismatch: expected {expected}, got {actual}.")


def verify_binary_version(name: str, binary: SidecarBinary) -> SidecarBinary:
    """Read the binary's reported version and fail unless it matches the expected one."""
    actual = read_cli_version(binary.path)
    assert_version_match(name, binary.expected_version, actual, f"{binary.path} --version")
    return binary.with_actual_version(actual)


class SidecarResolver:
    def __init__(
        self,
        downloader: SidecarDownloader,
        cache_dir: str,
        manifest_url: str,
        base_url: str,
        *,
        bundle_candidates: Optional[list[str]] = None,
        target: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> None:
        self.downloader = downloader
        self.cache_dir = cache_dir
        self.manifest_url = manifest_url
        self.base_url = base_url
        self.bundle_candidates = bundle_candidates if bundle_candidates is not None else bundle_dirs()
        self.target = target or current_target()
        self.cwd = cwd or os.getcwd()
        self._manifest: Optional[BundledManifest] = None
        self._manifest_loaded = False

    @classmethod
    def from_settings(cls, settings: Settings, manifests: Optional[ManifestCache] = None) -> "SidecarResolver":
        return cls(
            SidecarDownloader(manifests or ManifestCache()),
            cache_dir=settings.sidecar_dir,
            manifest_url=settings.sidecar_manifest_url,
            base_url=settings.sidecar_base_url,
        )

    @property
    def bundled_manifest(self) -> Optional[BundledManifest]:
        if not self._manifest_loaded:
            self._manifest = read_bundled_manifest(self.bundle_candidates)
            self._manifest_loaded = True
        return self._manifest

    def resolve(
        self,
        service: str,
        explicit: Optional[str],
        source_preference: str,
        allow_external: bool,
    ) -> SidecarBinary:
        source_preference = (source_preference or "auto").lower()
        if source_preference not in SOURCE_CHOICES:
            raise ConfigurationError(
                f"Unknown source {source_preference!r} for {service}; expected one of {', '.join(SOURCE_CHOICES)}"
            )
        if explicit:
            if not allow_external:
                raise ConfigurationError(f"{service}-bin requires --allow-external")
            if source_preference not in ("auto", "external"):
                raise ConfigurationError(
                    f"{service}-bin cannot be combined with source {source_preference!r}"
                )
        if source_preference == "external" and not allow_external:
            raise ConfigurationError(f"{service} source 'external' requires --allow-external")

        expected = self.expected_version(service)

        if source_preference == "bundled":
            try:
                return self._bundled(service, expected)
            except SourceUnavailable as exc:
                raise ResolutionExhausted(
                    service,
                    [f"{exc}. Bundled mode requires an openwrk build that ships its sidecars "
                     f"({VERSION_MANIFEST} next to the executable); use --allow-external for dev"],
                ) from exc
        if source_preference == "downloaded":
            try:
                return self._downloaded(service, expected)
            except SourceUnavailable as exc:
                raise ResolutionExhausted(service, [str(exc)]) from exc
        if source_preference == "external":
            try:
                return self._external(service, explicit, expected)
            except SourceUnavailable as exc:
                raise ResolutionExhausted(service, [str(exc)]) from exc

        branches: list[tuple[str, Optional[str]]] = [("bundled", None)]
        if explicit:
            branches.append(("external", explicit))
        branches.append(("downloaded", None))
        if allow_external and not explicit:
            branches.append(("external", None))

        reasons: list[str] = []
        for source, path in branches:
            try:
                if source == "bundled":
                    return self._bundled(service, expected)
                if source == "downloaded":
                    return self._downloaded(service, expected)
                return self._external(service, path, expected)
            except (OpenwrkError, OSError) as exc:
                logger.info("%s: %s source unavailable: %s", service, source, exc)
                reasons.append(f"{source}: {exc}")
        if not allow_external:
            reasons.append("external: not allowed without --allow-external")
        raise ResolutionExhausted(service, reasons)

    def expected_version(self, service: str) -> Optional[str]:
        manifest = self.bundled_manifest
        if manifest is not None and manifest.version(service):
            return manifest.version(service)
        env_name = f"OPENWRK_{service.upper().replace('-', '_')}_VERSION"
        override = os.getenv(env_name, "").strip()
        if override:
            return override
        for package_json in self._package_json_candidates(service):
            version = _read_package_version(package_json)
            if version:
                return version
        return None

    # ── sources ───────────────────────────────────────────────

    def _bundled(self, service: str, expected: Optional[str]) -> SidecarBinary:
        manifest = self.bundled_manifest
        if manifest is None:
            raise SourceUnavailable(f"Bundled {service} binary missing: no {VERSION_MANIFEST} found")
        path = os.path.join(manifest.directory, executable_name(service))
        entry = manifest.entries.get(service)
        if not is_executable(path):
            raise SourceUnavailable(f"Bundled {service} binary missing from {manifest.directory}")
        if not isinstance(entry, dict):
            raise SourceUnavailable(f"Bundled {service} binary has no {VERSION_MANIFEST} entry")
        verify_checksum(path, entry.get("sha256"))
        logger.info("Using bundled %s at %s", service, path)
        return SidecarBinary(path=path, source="bundled", expected_version=expected)

    def _downloaded(self, service: str, expected: Optional[str]) -> SidecarBinary:
        if self.target is None:
            raise SourceUnavailable("unsupported platform for sidecar downloads")
        binary = self.downloader.download(service, self.target, self.cache_dir, self.manifest_url, self.base_url)
        if binary is None:
            raise SourceUnavailable(f"no {service} asset for {self.target} in {self.manifest_url}")
        if expected:
            binary = SidecarBinary(path=binary.path, source="downloaded", expected_version=expected)
        return binary

    def _external(self, service: str, explicit: Optional[str], expected: Optional[str]) -> SidecarBinary:
        if explicit:
            path = explicit
            if "/" in path or "\\" in path or path.startswith("."):
                path = os.path.abspath(os.path.join(self.cwd, path))
                if not os.path.exists(path):
                    raise SourceUnavailable(f"{service}-bin not found: {path}")
            logger.info("Using external %s at %s", service, path)
            return SidecarBinary(path=path, source="external", expected_version=expected)

        for candidate in self._external_candidates(service):
            if candidate.endswith(".js") and os.path.isfile(candidate):
                return SidecarBinary(path=candidate, source="external", expected_version=expected)
            if is_executable(candidate):
                return SidecarBinary(path=candidate, source="external", expected_version=expected)
        found = shutil.which(service)
        if found:
            return SidecarBinary(path=found, source="external", expected_version=expected)
        raise SourceUnavailable(f"{service} not found in local builds, installed packages or PATH")

    # ── well-known locations ──────────────────────────────────

    def _repo_dirs(self, service: str) -> list[str]:
        dirs = []
        if service == "owpenbot":
            for name in ("OWPENBOT_REPO", "OWPENBOT_DIR"):
                value = os.getenv(name, "").strip()
                if value:
                    dirs.append(value)
        dirs.append(os.path.join(self.cwd, "packages", service))
        package = _PACKAGE_NAMES.get(service, service)
        dirs.append(os.path.join(self.cwd, "node_modules", package))
        return dirs

    def _external_candidates(self, service: str) -> list[str]:
        candidates = []
        for repo in self._repo_dirs(service):
            candidates.append(os.path.join(repo, "dist", "bin", executable_name(service)))
            candidates.append(os.path.join(repo, "dist", "cli.js"))
        return candidates

    def _package_json_candidates(self, service: str) -> list[str]:
        return [os.path.join(repo, "package.json") for repo in self._repo_dirs(service)]
