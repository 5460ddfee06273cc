import hashlib
import os
import sys
import tempfile

import pytest

from openwrk.errors import IntegrityError
from openwrk.sidecars.integrity import checksum_matches, is_executable, make_executable, sha256_file, verify_checksum
from openwrk.sidecars.models import SidecarBinary
from openwrk.sidecars.platforms import current_target, default_asset_name, executable_name


def test_current_target_mapping() -> None:
    assert current_target("linux", "x86_64") == "linux-x64"
    assert current_target("linux", "aarch64") == "linux-arm64"
    assert current_target("darwin", "arm64") == "darwin-arm64"
    assert current_target("win32", "AMD64") == "windows-x64"
    assert current_target("freebsd13", "x86_64") is None
    assert current_target("linux", "riscv64") is None


def test_executable_and_asset_names() -> None:
    assert executable_name("opencode", "windows-x64") == "opencode.exe"
    assert executable_name("opencode", "linux-x64") == "opencode"
    assert default_asset_name("opencode", "linux-x64") == "opencode-linux-x64.tar.gz"
    assert default_asset_name("opencode", "windows-x64") == "opencode-windows-x64.zip"
    assert default_asset_name("owpenbot", "darwin-arm64") == "owpenbot-darwin-arm64"
    assert default_asset_name("openwork-server", "windows-x64") == "openwork-server-windows-x64.exe"


def test_checksum_helpers() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "blob")
        with open(path, "wb") as f:
            f.write(b"sidecar bytes")
        digest = hashlib.sha256(b"sidecar bytes").hexdigest()
        assert sha256_file(path) == digest
        assert checksum_matches(path, digest.upper())
        assert checksum_matches(path, None)
        assert not checksum_matches(path, "0" * 64)
        verify_checksum(path, digest)
        with pytest.raises(IntegrityError):
            verify_checksum(path, "0" * 64)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
def test_make_executable() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "tool")
        with open(path, "w") as f:
            f.write("#!/bin/sh\n")
        os.chmod(path, 0o644)
        assert not is_executable(path)
        make_executable(path)
        assert is_executable(path)
        assert not is_executable(os.path.join(tmpdir, "missing"))


def test_sidecar_binary_is_immutable() -> None:
    binary = SidecarBinary(path="/opt/opencode", source="bundled", expected_version="1.2.3")
    verified = binary.with_actual_version("1.2.3")
    assert binary.actual_version is None
    assert verified.actual_version == "1.2.3"
    assert verified.to_dict() == {
        "path": "/opt/opencode",
        "source": "bundled",
        "expectedVersion": "1.2.3",
        "actualVersion": "1.2.3",
    }
    with pytest.raises(Exception):
        binary.path = "/elsewhere"  # type: ignore[misc]
