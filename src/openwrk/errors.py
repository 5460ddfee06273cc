"""Exception hierarchy shared by every openwrk component.

Library code (resolver, downloader, supervisor, health waiter) raises these;
the CLI turns them into a single line on stderr and exit code 1, and the
router daemon turns them into JSON error responses.
"""
from __future__ import annotations

from typing import Optional


class OpenwrkError(RuntimeError):
    pass


class ConfigurationError(OpenwrkError):
    """Invalid flag or option combination. Raised before any I/O."""


class ResolutionExhausted(OpenwrkError):
    """No binary source produced a usable executable."""

    def __init__(self, service: str, reasons: list[str]) -> None:
        self.service = service
        self.reasons = list(reasons)
        detail = "; ".join(reasons) if reasons else "no source available"
        super().__init__(f"Unable to resolve {service} binary: {detail}")


class IntegrityError(OpenwrkError):
    """A file's sha256 does not match the declared checksum."""


class VersionMismatch(OpenwrkError):
    pass


class DownloadError(OpenwrkError):
    pass


class ProcessSpawnError(OpenwrkError):
    pass


class HealthTimeout(OpenwrkError):
    def __init__(self, message: str, last_error: Optional[str] = None) -> None:
        self.last_error = last_error
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)


class DaemonUnavailable(OpenwrkError):
    pass
