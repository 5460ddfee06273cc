from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Literal, Optional

BinarySource = Literal["bundled", "downloaded", "external"]


@dataclass(frozen=True)
class SidecarBinary:
    """An executable chosen for one run; never mutated once resolved."""

    path: str
    source: BinarySource
    expected_version: Optional[str] = None
    actual_version: Optional[str] = None

    def with_actual_version(self, version: Optional[str]) -> "SidecarBinary":
        return dataclasses.replace(self, actual_version=version)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "source": self.source,
            "expectedVersion": self.expected_version,
            "actualVersion": self.actual_version,
        }
