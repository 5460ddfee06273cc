from __future__ import annotations

import hashlib
import logging
import os
import stat
import sys
from typing import Optional

from openwrk.errors import IntegrityError

logger = logging.getLogger("openwrk.integrity")

_CHUNK = 1024 * 1024


def sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_matches(path: str, expected: Optional[str]) -> bool:
    """True when no checksum is declared or the file's sha256 equals it."""
    if not expected:
        return True
    return sha256_file(path).lower() == expected.strip().lower()


def verify_checksum(path: str, expected: Optional[str]) -> None:
    if not checksum_matches(path, expected):
        raise IntegrityError(f"Integrity check failed for {path}")


def make_executable(path: str) -> None:
    if sys.platform == "win32":
        return
    mode = os.stat(path).st_mode
    os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def is_executable(path: str) -> bool:
    if not os.path.isfile(path):
        return False
    if sys.platform == "win32":
        return True
    return os.access(path, os.X_OK)
