"""
Push-side file selection and chunked reading.

walk_targets(paths) → Iterator[FileEntry]
    Yields a FileEntry for every file in *paths*.  Directories are walked
    recursively; individual files are emitted under their base name.

changed_since(entries, last_sync) → list[FileEntry]
    Entries modified after the server's last-sync timestamp.

chunk_file(path, chunk_size, limit) → Iterator[bytes]
    Reads a file in raw chunks of at most *chunk_size* bytes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator

from .protocol import DEFAULT_BUFFER_SIZE, TIMESTAMP_FORMAT


@dataclass
class FileEntry:
    abs_path: Path       # absolute path on disk
    rel_path: str        # name the server stores it under ("/" separated)
    size: int            # file size in bytes
    mtime: float         # modification time (unix timestamp)


def _entry(abs_path: Path, rel_path: str) -> FileEntry:
    st = abs_path.stat()
    return FileEntry(abs_path=abs_path, rel_path=rel_path,
                     size=st.st_size, mtime=st.st_mtime)


def walk_targets(paths: Iterable[str | Path]) -> Iterator[FileEntry]:
    """
    Yield a FileEntry for each file found under *paths*.

    * A plain file → single FileEntry with its basename as rel_path.
    * A directory  → all files inside, rel_path relative to the directory.
    """
    for raw in paths:
        p = Path(raw).resolve()
        if p.is_file():
            yield _entry(p, p.name)
        elif p.is_dir():
            for root, dirs, files in os.walk(p):
                dirs.sort()
                for fname in sorted(files):
                    abs_p = Path(root) / fname
                    rel = str(abs_p.relative_to(p)).replace(os.sep, "/")
                    yield _entry(abs_p, rel)
        else:
            raise FileNotFoundError(f"Path not found: {p}")


def changed_since(entries: Iterable[FileEntry], last_sync: str) -> list[FileEntry]:
    """Entries whose mtime is later than *last_sync* (server local time).

    An unparseable timestamp selects everything.
    """
    entries = list(entries)
    try:
        cutoff = datetime.strptime(last_sync.strip(), TIMESTAMP_FORMAT).timestamp()
    except (ValueError, OverflowError, OSError):
        return entries
    return [e for e in entries if e.mtime > cutoff]


def chunk_file(
    path: Path | str,
    chunk_size: int = DEFAULT_BUFFER_SIZE,
    limit: int | None = None,
) -> Iterator[bytes]:
    """
    Yield raw chunks of *path* up to *chunk_size* bytes each, stopping after
    *limit* bytes when given.  Empty files yield nothing.
    """
    remaining = limit
    with open(path, "rb") as fh:
        while remaining is None or remaining > 0:
            want = chunk_size if remaining is None else min(chunk_size, remaining)
            block = fh.read(want)
            if not block:
                break
            if remaining is not None:
                remaining -= len(block)
            yield block
