"""
Error taxonomy for homesync.

TransportError          connection reset / timeout / premature end of stream
  ProtocolError         malformed frame or out-of-range value
UnsafePathError         client id or file name that would escape its directory
ChecksumMismatch        per-file, non-fatal
MetadataPersistenceError  per-client record could not be created or written
StartupError            bind failure / storage root unusable
"""

from __future__ import annotations


class HomeSyncError(Exception):
    """Base class for every error raised by homesync."""


class TransportError(HomeSyncError):
    pass


class ProtocolError(TransportError):
    pass


class UnsafePathError(HomeSyncError, ValueError):
    pass


class ChecksumMismatch(HomeSyncError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"checksum mismatch: declared {expected}, computed {actual}")
        self.expected = expected
        self.actual = actual


class MetadataPersistenceError(HomeSyncError):
    pass


class StartupError(HomeSyncError):
    pass
