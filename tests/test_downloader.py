import hashlib
import io
import os
import tarfile
import tempfile
import threading
import time
import zipfile

import httpx
import pytest

from openwrk.errors import DownloadError, IntegrityError
from openwrk.sidecars.downloader import ManifestCache, SidecarDownloader, extract_archive, find_executable

MANIFEST_URL = "https://releases.test/openwrk-sidecars.json"
BASE_URL = "https://releases.test/download"
TARGET = "linux-x64"


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _tarball(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeReleases:
    """Serves a manifest plus assets and records every request path."""

    def __init__(self, manifest: dict, assets: dict[str, bytes]) -> None:
        self.manifest = manifest
        self.assets = assets
        self.requests: list[str] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        if str(request.url) == MANIFEST_URL:
            return httpx.Response(200, json=self.manifest)
        name = request.url.path.rsplit("/", 1)[-1]
        if name in self.assets:
            return httpx.Response(200, content=self.assets[name])
        return httpx.Response(404)

    def client(self, **kwargs) -> httpx.Client:
        return httpx.Client(transport=self.transport, **kwargs)

    def asset_requests(self) -> int:
        return sum(1 for path in self.requests if not path.endswith(".json"))

    def downloader(self) -> SidecarDownloader:
        return SidecarDownloader(ManifestCache(client_factory=self.client), client_factory=self.client)


def _server_manifest(data: bytes, sha: str | None = None) -> dict:
    return {
        "openwork-server": {
            "version": "0.3.1",
            "targets": {TARGET: {"asset": "openwork-server-linux-x64", "sha256": sha or _sha(data)}},
        }
    }


def test_downloads_binary_into_versioned_cache() -> None:
    data = b"#!/bin/sh\necho openwork-server 0.3.1\n"
    releases = FakeReleases(_server_manifest(data), {"openwork-server-linux-x64": data})
    with tempfile.TemporaryDirectory() as cache:
        downloader = releases.downloader()
        binary = downloader.download("openwork-server", TARGET, cache, MANIFEST_URL, BASE_URL)
        assert binary is not None
        assert binary.source == "downloaded"
        assert binary.expected_version == "0.3.1"
        assert binary.path == os.path.join(cache, "openwork-server", "0.3.1", TARGET, "openwork-server-linux-x64")
        with open(binary.path, "rb") as f:
            assert f.read() == data
        assert os.listdir(os.path.dirname(binary.path)) == ["openwork-server-linux-x64"]

        again = downloader.download("openwork-server", TARGET, cache, MANIFEST_URL, BASE_URL)
        assert again == binary
        assert releases.asset_requests() == 1


def test_cached_mismatch_is_redownloaded_exactly_once() -> None:
    good = b"good binary"
    releases = FakeReleases(_server_manifest(good), {"openwork-server-linux-x64": good})
    with tempfile.TemporaryDirectory() as cache:
        final_dir = os.path.join(cache, "openwork-server", "0.3.1", TARGET)
        os.makedirs(final_dir)
        with open(os.path.join(final_dir, "openwork-server-linux-x64"), "wb") as f:
            f.write(b"tampered")
        binary = releases.downloader().download("openwork-server", TARGET, cache, MANIFEST_URL, BASE_URL)
        assert binary is not None
        with open(binary.path, "rb") as f:
            assert f.read() == good
        assert releases.asset_requests() == 1


def test_cached_mismatch_with_bad_redownload_fails_without_retry() -> None:
    served = b"still wrong"
    releases = FakeReleases(_server_manifest(b"expected", _sha(b"expected")), {"openwork-server-linux-x64": served})
    with tempfile.TemporaryDirectory() as cache:
        final_dir = os.path.join(cache, "openwork-server", "0.3.1", TARGET)
        os.makedirs(final_dir)
        with open(os.path.join(final_dir, "openwork-server-linux-x64"), "wb") as f:
            f.write(b"tampered")
        with pytest.raises(IntegrityError):
            releases.downloader().download("openwork-server", TARGET, cache, MANIFEST_URL, BASE_URL)
        assert releases.asset_requests() == 1
        assert os.listdir(final_dir) == []


def test_fresh_download_retries_once_on_checksum_failure() -> None:
    releases = FakeReleases(_server_manifest(b"expected"), {"openwork-server-linux-x64": b"corrupted"})
    with tempfile.TemporaryDirectory() as cache:
        with pytest.raises(IntegrityError):
            releases.downloader().download("openwork-server", TARGET, cache, MANIFEST_URL, BASE_URL)
        assert releases.asset_requests() == 2
        final_dir = os.path.join(cache, "openwork-server", "0.3.1", TARGET)
        assert os.listdir(final_dir) == []


def test_missing_service_or_target_returns_none() -> None:
    releases = FakeReleases(_server_manifest(b"x"), {})
    with tempfile.TemporaryDirectory() as cache:
        downloader = releases.downloader()
        assert downloader.download("owpenbot", TARGET, cache, MANIFEST_URL, BASE_URL) is None
        assert downloader.download("openwork-server", "darwin-arm64", cache, MANIFEST_URL, BASE_URL) is None
        assert releases.asset_requests() == 0


def test_http_error_becomes_download_error() -> None:
    manifest = {"owpenbot": {"version": "0.1.0", "targets": {TARGET: {"asset": "owpenbot-linux-x64"}}}}
    releases = FakeReleases(manifest, {})
    with tempfile.TemporaryDirectory() as cache:
        with pytest.raises(DownloadError, match="HTTP 404"):
            releases.downloader().download("owpenbot", TARGET, cache, MANIFEST_URL, BASE_URL)


def test_archive_is_extracted_and_shallowest_match_wins() -> None:
    archive = _tarball({
        "opencode-linux-x64/deep/bin/opencode": b"deep",
        "opencode-linux-x64/opencode": b"shallow",
        "opencode-linux-x64/README.md": b"docs",
    })
    manifest = {
        "opencode": {
            "version": "1.1.4",
            "targets": {TARGET: {"asset": "opencode-linux-x64.tar.gz", "sha256": _sha(archive)}},
        }
    }
    releases = FakeReleases(manifest, {"opencode-linux-x64.tar.gz": archive})
    with tempfile.TemporaryDirectory() as cache:
        downloader = releases.downloader()
        binary = downloader.download("opencode", TARGET, cache, MANIFEST_URL, BASE_URL)
        assert binary is not None
        assert binary.path == os.path.join(cache, "opencode", "1.1.4", TARGET, "opencode")
        with open(binary.path, "rb") as f:
            assert f.read() == b"shallow"
        # temp archive and extraction directory are gone
        assert sorted(os.listdir(os.path.dirname(binary.path))) == ["opencode", "opencode.source-sha256"]

        downloader.download("opencode", TARGET, cache, MANIFEST_URL, BASE_URL)
        assert releases.asset_requests() == 1


def test_archive_without_executable_fails() -> None:
    archive = _tarball({"opencode-linux-x64/README.md": b"docs"})
    manifest = {"opencode": {"version": "1.1.4", "targets": {TARGET: {"asset": "opencode-linux-x64.tar.gz"}}}}
    releases = FakeReleases(manifest, {"opencode-linux-x64.tar.gz": archive})
    with tempfile.TemporaryDirectory() as cache:
        with pytest.raises(DownloadError, match="missing in archive"):
            releases.downloader().download("opencode", TARGET, cache, MANIFEST_URL, BASE_URL)
        assert os.listdir(os.path.join(cache, "opencode", "1.1.4", TARGET)) == []


def test_manifest_fetch_is_shared_between_threads() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        time.sleep(0.1)
        return httpx.Response(200, json={"opencode": {"version": "1.0.0", "targets": {}}})

    transport = httpx.MockTransport(handler)
    cache = ManifestCache(client_factory=lambda **kw: httpx.Client(transport=transport, **kw))
    results: list[dict] = []
    threads = [threading.Thread(target=lambda: results.append(cache.fetch(MANIFEST_URL))) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(calls) == 1
    assert len(results) == 8
    assert all(r is results[0] for r in results)


def test_manifest_errors_are_cached() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(500)

    transport = httpx.MockTransport(handler)
    cache = ManifestCache(client_factory=lambda **kw: httpx.Client(transport=transport, **kw))
    for _ in range(2):
        with pytest.raises(DownloadError, match="HTTP 500"):
            cache.fetch(MANIFEST_URL)
    assert len(calls) == 1
    cache.clear()
    with pytest.raises(DownloadError):
        cache.fetch(MANIFEST_URL)
    assert len(calls) == 2


def test_extract_rejects_escaping_entries() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        archive = os.path.join(tmpdir, "evil.zip")
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../escape.txt", b"nope")
        dest = os.path.join(tmpdir, "out")
        os.makedirs(dest)
        with pytest.raises(DownloadError, match="escapes"):
            extract_archive(archive, dest)
        assert not os.path.exists(os.path.join(tmpdir, "escape.txt"))


def test_find_executable_breadth_first() -> None:
    with tempfile.TemporaryDirectory() as root:
        os.makedirs(os.path.join(root, "a", "b"))
        os.makedirs(os.path.join(root, "z"))
        for rel in (("a", "b", "owpenbot"), ("z", "owpenbot")):
            with open(os.path.join(root, *rel), "w") as f:
                f.write("x")
        assert find_executable(root, "owpenbot") == os.path.join(root, "z", "owpenbot")
        assert find_executable(root, "opencode") is None
