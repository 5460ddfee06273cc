import hashlib
import json
import os
import sys
import tempfile

import httpx
import pytest

from openwrk.errors import ConfigurationError, IntegrityError, ResolutionExhausted, VersionMismatch
from openwrk.sidecars.downloader import ManifestCache, SidecarDownloader
from openwrk.sidecars.resolver import (
    SidecarResolver,
    assert_version_match,
    parse_version,
    read_cli_version,
    resolve_bin_command,
    verify_binary_version,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh scripts")

MANIFEST_URL = "https://releases.test/openwrk-sidecars.json"


@pytest.fixture(autouse=True)
def _no_version_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("OPENWRK_OPENCODE_VERSION", "OPENWRK_OPENWORK_SERVER_VERSION", "OPENWRK_OWPENBOT_VERSION",
                 "OWPENBOT_REPO", "OWPENBOT_DIR"):
        monkeypatch.delenv(name, raising=False)


def _script(path: str, version_line: str) -> str:
    with open(path, "w") as f:
        f.write(f"#!/bin/sh\necho '{version_line}'\n")
    os.chmod(path, 0o755)
    return path


def _offline_downloader() -> SidecarDownloader:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected network access: {request.url}")

    transport = httpx.MockTransport(handler)
    factory = lambda **kw: httpx.Client(transport=transport, **kw)  # noqa: E731
    return SidecarDownloader(ManifestCache(client_factory=factory), client_factory=factory)


def _releases_downloader(manifest: dict, assets: dict[str, bytes]) -> tuple[SidecarDownloader, list[str]]:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if str(request.url) == MANIFEST_URL:
            return httpx.Response(200, json=manifest)
        name = request.url.path.rsplit("/", 1)[-1]
        if name in assets:
            return httpx.Response(200, content=assets[name])
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    factory = lambda **kw: httpx.Client(transport=transport, **kw)  # noqa: E731
    return SidecarDownloader(ManifestCache(client_factory=factory), client_factory=factory), seen


def _resolver(tmpdir: str, downloader: SidecarDownloader, bundle_dir: str | None = None) -> SidecarResolver:
    return SidecarResolver(
        downloader,
        cache_dir=os.path.join(tmpdir, "cache"),
        manifest_url=MANIFEST_URL,
        base_url="https://releases.test/download",
        bundle_candidates=[bundle_dir] if bundle_dir else [],
        target="linux-x64",
        cwd=tmpdir,
    )


def _bundle(tmpdir: str, service: str, version: str, reported: str, sha: str | None = None) -> str:
    bundle_dir = os.path.join(tmpdir, "bundle")
    os.makedirs(bundle_dir, exist_ok=True)
    path = _script(os.path.join(bundle_dir, service), f"{service} {reported}")
    with open(path, "rb") as f:
        digest = hashlib.sha256(f.read()).hexdigest()
    with open(os.path.join(bundle_dir, "versions.json"), "w") as f:
        json.dump({service: {"version": version, "sha256": sha or digest}}, f)
    return bundle_dir


@posix_only
def test_bundled_resolves_without_network() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        bundle_dir = _bundle(tmpdir, "opencode", "1.2.3", "1.2.3")
        resolver = _resolver(tmpdir, _offline_downloader(), bundle_dir)
        binary = resolver.resolve("opencode", None, "bundled", False)
        assert binary.source == "bundled"
        assert binary.path == os.path.join(bundle_dir, "opencode")
        assert binary.expected_version == "1.2.3"
        verified = verify_binary_version("opencode", binary)
        assert verified.actual_version == "1.2.3"
        # auto picks the bundle first, too
        assert resolver.resolve("opencode", None, "auto", False).source == "bundled"


@posix_only
def test_bundled_checksum_mismatch_is_fatal() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        bundle_dir = _bundle(tmpdir, "opencode", "1.2.3", "1.2.3", sha="0" * 64)
        resolver = _resolver(tmpdir, _offline_downloader(), bundle_dir)
        with pytest.raises(IntegrityError):
            resolver.resolve("opencode", None, "bundled", False)


def test_bundled_mode_without_bundle_explains_itself() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        resolver = _resolver(tmpdir, _offline_downloader())
        with pytest.raises(ResolutionExhausted) as excinfo:
            resolver.resolve("opencode", None, "bundled", False)
        assert "Bundled mode requires" in str(excinfo.value)
        assert str(excinfo.value).startswith("Unable to resolve opencode binary")


@pytest.mark.parametrize(
    "explicit,source,allow_external",
    [
        ("/usr/bin/opencode", "auto", False),
        ("/usr/bin/opencode", "downloaded", True),
        ("/usr/bin/opencode", "bundled", True),
        (None, "external", False),
        (None, "nightly", True),
    ],
)
def test_invalid_combinations_fail_before_io(explicit, source, allow_external) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        resolver = _resolver(tmpdir, _offline_downloader())
        with pytest.raises(ConfigurationError):
            resolver.resolve("opencode", explicit, source, allow_external)


def test_explicit_bin_requires_allow_external_message() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        resolver = _resolver(tmpdir, _offline_downloader())
        with pytest.raises(ConfigurationError, match="opencode-bin requires --allow-external"):
            resolver.resolve("opencode", "/usr/bin/opencode", "auto", False)


def test_auto_falls_back_to_download() -> None:
    data = b"owpenbot binary"
    manifest = {
        "owpenbot": {
            "version": "0.2.0",
            "targets": {"linux-x64": {"asset": "owpenbot-linux-x64", "sha256": hashlib.sha256(data).hexdigest()}},
        }
    }
    downloader, seen = _releases_downloader(manifest, {"owpenbot-linux-x64": data})
    with tempfile.TemporaryDirectory() as tmpdir:
        resolver = _resolver(tmpdir, downloader)
        binary = resolver.resolve("owpenbot", None, "auto", False)
        assert binary.source == "downloaded"
        assert binary.expected_version == "0.2.0"
        assert binary.path.startswith(os.path.join(tmpdir, "cache", "owpenbot", "0.2.0"))
        assert any(path.endswith("owpenbot-linux-x64") for path in seen)


def test_auto_exhausted_lists_every_source() -> None:
    downloader, _ = _releases_downloader({}, {})
    with tempfile.TemporaryDirectory() as tmpdir:
        resolver = _resolver(tmpdir, downloader)
        with pytest.raises(ResolutionExhausted) as excinfo:
            resolver.resolve("openwork-server", None, "auto", False)
        reasons = excinfo.value.reasons
        assert reasons[0].startswith("bundled:")
        assert reasons[1].startswith("downloaded:")
        assert reasons[-1] == "external: not allowed without --allow-external"


@posix_only
def test_auto_prefers_explicit_path_over_download() -> None:
    downloader, seen = _releases_downloader({}, {})
    with tempfile.TemporaryDirectory() as tmpdir:
        os.makedirs(os.path.join(tmpdir, "bin"))
        _script(os.path.join(tmpdir, "bin", "openwork-server"), "openwork-server 0.3.1")
        resolver = _resolver(tmpdir, downloader)
        binary = resolver.resolve("openwork-server", "./bin/openwork-server", "auto", True)
        assert binary.source == "external"
        assert binary.path == os.path.join(tmpdir, "bin", "openwork-server")
        assert seen == []


def test_explicit_missing_path_is_reported() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        resolver = _resolver(tmpdir, _offline_downloader())
        with pytest.raises(ResolutionExhausted, match="openwork-server-bin not found"):
            resolver.resolve("openwork-server", "./nope/openwork-server", "external", True)


def test_external_finds_local_build_and_package_version() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        package_dir = os.path.join(tmpdir, "packages", "owpenbot")
        os.makedirs(os.path.join(package_dir, "dist"))
        with open(os.path.join(package_dir, "dist", "cli.js"), "w") as f:
            f.write("console.log('0.4.0')\n")
        with open(os.path.join(package_dir, "package.json"), "w") as f:
            json.dump({"name": "owpenwork", "version": "0.4.0"}, f)
        resolver = _resolver(tmpdir, _offline_downloader())
        binary = resolver.resolve("owpenbot", None, "external", True)
        assert binary.path == os.path.join(package_dir, "dist", "cli.js")
        assert binary.expected_version == "0.4.0"


def test_expected_version_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENWRK_OPENWORK_SERVER_VERSION", "0.9.0")
    with tempfile.TemporaryDirectory() as tmpdir:
        resolver = _resolver(tmpdir, _offline_downloader())
        assert resolver.expected_version("openwork-server") == "0.9.0"
        assert resolver.expected_version("owpenbot") is None


@posix_only
def test_version_mismatch_is_reported() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        bundle_dir = _bundle(tmpdir, "opencode", "1.2.3", "9.9.9")
        binary = _resolver(tmpdir, _offline_downloader(), bundle_dir).resolve("opencode", None, "bundled", False)
        with pytest.raises(VersionMismatch, match="expected 1.2.3, got 9.9.9"):
            verify_binary_version("opencode", binary)


@posix_only
def test_read_cli_version_extracts_semver() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _script(os.path.join(tmpdir, "tool"), "tool v1.4.0-beta.2 (build abc)")
        assert read_cli_version(path) == "1.4.0-beta.2"
        assert read_cli_version(os.path.join(tmpdir, "missing")) is None


def test_version_helpers() -> None:
    assert parse_version("opencode 0.15.2\n") == "0.15.2"
    assert parse_version("no version here") is None
    assert_version_match("owpenbot", None, None, "ctx")
    assert_version_match("owpenbot", "1.0.0", "1.0.0", "ctx")
    with pytest.raises(VersionMismatch, match="Unable to determine owpenbot version from ctx"):
        assert_version_match("owpenbot", "1.0.0", None, "ctx")


def test_resolve_bin_command() -> None:
    assert resolve_bin_command("/opt/opencode") == ("/opt/opencode", [])
    assert resolve_bin_command("/src/cli.ts") == ("bun", ["/src/cli.ts", "--"])
    assert resolve_bin_command("/repo/node_modules/owpenwork/dist/cli.js") == (
        "node", ["/repo/node_modules/owpenwork/dist/cli.js", "--"]
    )
    assert resolve_bin_command("/repo/packages/openwork-server/dist/cli.js")[0] == "bun"
