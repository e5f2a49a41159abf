# SPDX-License-Identifier: MPL-2.0
"""Content digests."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

_HEX_SHA256 = re.compile(r"[0-9a-f]{64}")


@dataclass(frozen=True)
class Digest:
    """A SHA-256 content digest, rendered as ``sha256:<hex>``."""

    hex: str
    algorithm: str = "sha256"

    def __post_init__(self) -> None:
        if self.algorithm != "sha256":
            raise ValueError(f"Unsupported digest algorithm: {self.algorithm}")
        if not _HEX_SHA256.fullmatch(self.hex):
            raise ValueError(f"Invalid sha256 digest: {self.hex!r}")

    @classmethod
    def parse(cls, value: str) -> Digest:
        """Parse ``sha256:<hex>`` or a bare lowercase hex digest."""
        if not isinstance(value, str):
            raise ValueError("Digest must be a string")
        algorithm, sep, hex_value = value.partition(":")
        if not sep:
            algorithm, hex_value = "sha256", value
        return cls(hex=hex_value, algorithm=algorithm)

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"


def digest(data: bytes) -> Digest:
    """Return the SHA-256 digest of ``data``."""
    return Digest(hex=hashlib.sha256(data).hexdigest())
