"""
Process configuration.

SessionConfig is built once (normally by the CLI) and handed to the
listener, which passes it to every session.  It is never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .protocol import DEFAULT_BUFFER_SIZE, DEFAULT_PORT

DEFAULT_STORAGE_ROOT: str = "./sync"
DEFAULT_TIMEOUT: float = 300.0


@dataclass(frozen=True)
class SessionConfig:
    host: str = ""
    port: int = DEFAULT_PORT
    storage_root: Path = Path(DEFAULT_STORAGE_ROOT)
    buffer_size: int = DEFAULT_BUFFER_SIZE
    timeout: float | None = DEFAULT_TIMEOUT     # per-session socket timeout (s)

    def __post_init__(self) -> None:
        # frozen: normalise through object.__setattr__
        object.__setattr__(self, "storage_root", Path(self.storage_root))
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")
        if not 0 < self.buffer_size <= 0x7FFFFFFF:
            raise ValueError(f"buffer size out of range: {self.buffer_size}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive: {self.timeout}")
