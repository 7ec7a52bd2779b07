"""
Integrity helpers — streaming MD5, uppercase hex on the wire.

ChecksumVerifier()       one instance per file
"""

from __future__ import annotations

import hashlib
from .errors import ChecksumMismatch


class ChecksumVerifier:
    """Incremental MD5 over the exact bytes written to one destination file."""

    def __init__(self) -> None:
        self._md5 = hashlib.md5()
        self._digest: str | None = None
        self.bytes_seen = 0

    def update(self, data: bytes) -> None:
        if self._digest is not None:
            raise RuntimeError("verifier already finalized")
        self._md5.update(data)
        self.bytes_seen += len(data)

    def finalize_hex(self) -> str:
        """Return the 32-character uppercase hex digest."""
        if self._digest is None:
            self._digest = self._md5.hexdigest().upper()
        return self._digest

    def matches(self, declared: str) -> bool:
        return self.finalize_hex() == declared.strip().upper()

    def check(self, declared: str) -> None:
        """Raise ChecksumMismatch unless *declared* equals the computed digest."""
        if not self.matches(declared):
            raise ChecksumMismatch(declared, self.finalize_hex())

