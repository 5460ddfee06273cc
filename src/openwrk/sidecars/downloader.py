"""Fetch sidecar release assets described by a remote JSON manifest.

Manifest document::

    {
      "opencode": {
        "version": "1.1.4",
        "targets": {
          "linux-x64": {"asset": "opencode-linux-x64.tar.gz", "sha256": "..."},
          "windows-x64": {"url": "https://.../opencode-windows-x64.zip", "sha256": "..."}
        }
      },
      "openwork-server": {...}
    }

Downloads land in ``<cache>/<service>/<version>/<target>/`` and are written
to a temp file in that directory first, then renamed into place, so the
final path never holds a partial file.
"""
from __future__ import annotations

import collections
import logging
import os
import shutil
import tarfile
import tempfile
import threading
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Optional

import httpx

from openwrk.errors import DownloadError, IntegrityError
from openwrk.sidecars.integrity import checksum_matches, make_executable, sha256_file
from openwrk.sidecars.models import SidecarBinary
from openwrk.sidecars.platforms import ARCHIVE_SERVICES, default_asset_name, executable_name

logger = logging.getLogger("openwrk.downloader")

# Records which archive checksum an extracted binary came from
_STAMP_SUFFIX = ".source-sha256"
_ARCHIVE_SUFFIXES = (".zip", ".tar.gz", ".tgz")


@dataclass(frozen=True)
class TargetAsset:
    asset_name: Optional[str] = None
    url: Optional[str] = None
    sha256: Optional[str] = None


@dataclass(frozen=True)
class RemoteManifestEntry:
    version: str
    targets: dict[str, TargetAsset] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["RemoteManifestEntry"]:
        if not isinstance(raw, dict):
            return None
        version = raw.get("version")
        if not isinstance(version, str) or not version.strip():
            return None
        targets: dict[str, TargetAsset] = {}
        for name, item in (raw.get("targets") or {}).items():
            if not isinstance(item, dict):
                continue
            targets[name] = TargetAsset(
                asset_name=item.get("asset") or item.get("assetName"),
                url=item.get("url"),
                sha256=item.get("sha256"),
            )
        return cls(version=version.strip(), targets=targets)


class ManifestCache:
    """Per-process cache of manifest documents keyed by URL.

    Concurrent callers asking for the same URL share one request: the
    first caller fetches while holding that URL's lock, later callers
    wait on the lock and reuse the stored result (or the stored error).
    """

    def __init__(
        self,
        client_factory: Callable[..., httpx.Client] = httpx.Client,
        timeout: float = 30.0,
    ) -> None:
        self._client_factory = client_factory
        self._timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._documents: dict[str, dict[str, Any]] = {}
        self._errors: dict[str, DownloadError] = {}

    def fetch(self, url: str) -> dict[str, Any]:
        with self._guard:
            lock = self._locks.setdefault(url, threading.Lock())
        with lock:
            if url in self._documents:
                return self._documents[url]
            if url in self._errors:
                raise self._errors[url]
            try:
                document = self._request(url)
            except DownloadError as exc:
                self._errors[url] = exc
                raise
            self._documents[url] = document
            return document

    def entry(self, url: str, service: str) -> Optional[RemoteManifestEntry]:
        return RemoteManifestEntry.from_dict(self.fetch(url).get(service))

    def clear(self) -> None:
        with self._guard:
            self._documents.clear()
            self._errors.clear()
            self._locks.clear()

    def _request(self, url: str) -> dict[str, Any]:
        logger.info("Fetching sidecar manifest %s", url)
        try:
            with self._client_factory(timeout=self._timeout, follow_redirects=True) as client:
                response = client.get(url)
        except httpx.HTTPError as exc:
            raise DownloadError(f"Failed to fetch sidecar manifest {url}: {exc}") from exc
        if response.status_code >= 400:
            raise DownloadError(f"Failed to fetch sidecar manifest {url}: HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise DownloadError(f"Sidecar manifest {url} is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise DownloadError(f"Sidecar manifest {url} must be a JSON object")
        return payload


class SidecarDownloader:
    def __init__(
        self,
        manifests: ManifestCache,
        client_factory: Callable[..., httpx.Client] = httpx.Client,
        timeout: float = 300.0,
    ) -> None:
        self.manifests = manifests
        self._client_factory = client_factory
        self._timeout = timeout

    def download(
        self,
        service: str,
        target: str,
        cache_dir: str,
        manifest_url: str,
        base_url: str,
    ) -> Optional[SidecarBinary]:
        """Return a verified cached binary for *service* on *target*, downloading if needed.

        Returns None when the manifest has no entry for the service or the
        target, so the caller can fall through to another source.
        """
        entry = self.manifests.entry(manifest_url, service)
        if entry is None:
            logger.info("No manifest entry for %s", service)
            return None
        asset = entry.targets.get(target)
        if asset is None:
            logger.info("No %s asset for target %s in manifest", service, target)
            return None

        asset_name = asset.asset_name
        if not asset_name and asset.url:
            asset_name = asset.url.rstrip("/").rsplit("/", 1)[-1]
        if not asset_name:
            asset_name = default_asset_name(service, target)
        url = asset.url or f"{base_url.rstrip('/')}/{asset_name}"
        archive = service in ARCHIVE_SERVICES or asset_name.endswith(_ARCHIVE_SUFFIXES)

        dest_dir = os.path.join(cache_dir, service, entry.version, target)
        os.makedirs(dest_dir, exist_ok=True)
        final_path = os.path.join(dest_dir, executable_name(service, target) if archive else asset_name)
        result = SidecarBinary(path=final_path, source="downloaded", expected_version=entry.version)

        attempts = 2
        if os.path.exists(final_path):
            if self._cached_is_valid(final_path, asset.sha256, archive):
                logger.info("Using cached %s %s (%s)", service, entry.version, final_path)
                return result
            logger.warning("Cached %s failed integrity check; re-downloading", final_path)
            _remove_quietly(final_path)
            _remove_quietly(final_path + _STAMP_SUFFIX)
            attempts = 1

        for attempt in range(1, attempts + 1):
            try:
                if archive:
                    self._install_archive(service, target, url, asset.sha256, final_path)
                else:
                    self._install_binary(url, asset.sha256, final_path)
            except IntegrityError:
                if attempt >= attempts:
                    raise
                logger.warning("Downloaded %s failed integrity check; retrying once", url)
                continue
            logger.info("Downloaded %s %s to %s", service, entry.version, final_path)
            return result
        return None

    # ── internal helpers ──────────────────────────────────────

    @staticmethod
    def _cached_is_valid(path: str, sha256: Optional[str], archive: bool) -> bool:
        if not sha256:
            return True
        if not archive:
            return checksum_matches(path, sha256)
        stamp = path + _STAMP_SUFFIX
        try:
            recorded = Path(stamp).read_text(encoding="utf-8").strip().lower()
        except OSError:
            return False
        return recorded == sha256.strip().lower()

    def _fetch_to(self, url: str, dest_dir: str, suffix: str) -> str:
        """Stream *url* into a new temp file inside *dest_dir* and return its path."""
        fd, tmp_path = tempfile.mkstemp(dir=dest_dir, prefix=".download-", suffix=suffix)
        logger.info("Downloading %s", url)
        try:
            with os.fdopen(fd, "wb") as handle:
                with self._client_factory(timeout=self._timeout, follow_redirects=True) as client:
                    with client.stream("GET", url) as response:
                        if response.status_code >= 400:
                            raise DownloadError(f"Failed to download {url}: HTTP {response.status_code}")
                        for chunk in response.iter_bytes():
                            handle.write(chunk)
        except httpx.HTTPError as exc:
            _remove_quietly(tmp_path)
            raise DownloadError(f"Failed to download {url}: {exc}") from exc
        except BaseException:
            _remove_quietly(tmp_path)
            raise
        return tmp_path

    def _install_binary(self, url: str, sha256: Optional[str], final_path: str) -> None:
        tmp_path = self._fetch_to(url, os.path.dirname(final_path), ".part")
        try:
            if not checksum_matches(tmp_path, sha256):
                raise IntegrityError(f"Integrity check failed for {url}")
            make_executable(tmp_path)
            os.replace(tmp_path, final_path)
        finally:
            _remove_quietly(tmp_path)

    def _install_archive(
        self,
        service: str,
        target: str,
        url: str,
        sha256: Optional[str],
        final_path: str,
    ) -> None:
        dest_dir = os.path.dirname(final_path)
        suffix = ".zip" if url.endswith(".zip") else ".tar.gz"
        archive_path = self._fetch_to(url, dest_dir, suffix)
        extract_dir = tempfile.mkdtemp(dir=dest_dir, prefix=".extract-")
        staged = final_path + ".part"
        try:
            archive_sha = sha256_file(archive_path)
            if sha256 and archive_sha.lower() != sha256.strip().lower():
                raise IntegrityError(f"Integrity check failed for {url}")
            extract_archive(archive_path, extract_dir)
            found = find_executable(extract_dir, service)
            if found is None:
                raise DownloadError(f"{executable_name(service, target)} missing in archive {url}")
            shutil.copyfile(found, staged)
            make_executable(staged)
            os.replace(staged, final_path)
            Path(final_path + _STAMP_SUFFIX).write_text(archive_sha + "\n", encoding="utf-8")
        finally:
            shutil.rmtree(extract_dir, ignore_errors=True)
            _remove_quietly(archive_path)
            _remove_quietly(staged)


def extract_archive(archive_path: str, dest_dir: str) -> None:
    """Extract a ``.zip`` or ``.tar.gz`` into *dest_dir*, refusing entries that escape it."""
    root = Path(dest_dir).resolve()
    try:
        if zipfile.is_zipfile(archive_path):
            with zipfile.ZipFile(archive_path) as zf:
                for name in zf.namelist():
                    _check_member(root, name)
                zf.extractall(root)
            return
        with tarfile.open(archive_path, "r:*") as tf:
            for member in tf.getmembers():
                _check_member(root, member.name)
                if member.issym() or member.islnk():
                    raise DownloadError(f"Archive entry {member.name!r} is a link")
            if hasattr(tarfile, "data_filter"):
                tf.extractall(root, filter="data")
            else:
                tf.extractall(root)
    except (zipfile.BadZipFile, tarfile.TarError) as exc:
        raise DownloadError(f"Failed to extract {archive_path}: {exc}") from exc


def _check_member(root: Path, name: str) -> None:
    rel = PurePosixPath(name.replace("\\", "/"))
    if rel.is_absolute() or ".." in rel.parts:
        raise DownloadError(f"Archive entry {name!r} escapes the extraction directory")
    if not (root / Path(*rel.parts)).resolve().is_relative_to(root):
        raise DownloadError(f"Archive entry {name!r} escapes the extraction directory")


def find_executable(root: str, service: str) -> Optional[str]:
    """Breadth-first search of *root* for a file named ``service`` or ``service.exe``.

    Uses an explicit queue with sorted directory listings, so the first
    match is the shallowest one and ties resolve alphabetically.
    """
    wanted = {service, f"{service}.exe"}
    queue: collections.deque[str] = collections.deque([root])
    while queue:
        current = queue.popleft()
        try:
            entries = sorted(os.scandir(current), key=lambda e: e.name)
        except OSError:
            continue
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                queue.append(entry.path)
            elif entry.is_file(follow_symlinks=False) and entry.name in wanted:
                return entry.path
    return None


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.debug("Could not remove %s: %s", path, exc)
